"""Bidirectional voice relay between a browser socket and the ElevenLabs agent."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, Protocol, Union

import httpx
from fastapi import WebSocket, WebSocketDisconnect
from typing_extensions import assert_never
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ..config import Settings, settings as default_settings
from ..exceptions import RelayError, UpstreamConnectionClosed, UpstreamConnectionError
from ..models.events import (
    Frame,
    UpstreamEvent,
    UpstreamEventKind,
    conversation_initiation_message,
    parse_upstream_message,
    translate_client_frame,
)
from ..models.schemas import ClientNotice, ToolCall
from .activity import ActivityBuffer, HistoryStore
from .coach_directory import CoachDirectory
from .elevenlabs import ElevenLabsClient
from .session_bootstrap import SessionPlan, establish_session
from .supabase_persistence import SupabasePersistence
from .tool_dispatch import ToolDispatcher

logger = logging.getLogger(__name__)

# Bound on waiting for cancelled pumps; a stuck socket read must not block teardown.
PUMP_SHUTDOWN_SECONDS = 5.0


class RelayState(Enum):
    """States of one relay session."""
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class UpstreamConnection(Protocol):
    async def send(self, message: Union[str, bytes]) -> None: ...

    async def recv(self) -> Frame: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class UpstreamConnector(Protocol):
    async def get_signed_url(self, agent_id: str) -> str: ...

    async def connect(self, signed_url: str) -> Any: ...


def _closed_failure(exc: ConnectionClosed) -> UpstreamConnectionClosed:
    close = exc.rcvd
    return UpstreamConnectionClosed(
        "ElevenLabs connection closed",
        code=close.code if close is not None else None,
        reason=close.reason if close is not None else "",
    )


class VoiceSessionRelay:
    """Owns both connections of one coaching session and keeps them paired.

    Two pumps run concurrently, one per direction. Whichever ends first
    triggers ``_teardown``, the single place where the other side is closed,
    pending notices reach the browser and the activity buffer gets its final
    save. Tool calls, flushes and the delayed initiation message run as
    background tasks owned by the session; their errors are logged in
    ``_on_task_done`` and never reach the pumps.
    """

    def __init__(
        self,
        plan: SessionPlan,
        *,
        client: WebSocket,
        upstream: UpstreamConnection,
        dispatcher: ToolDispatcher,
        store: HistoryStore,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.plan = plan
        self.state = RelayState.CONNECTING
        self._config = config or default_settings
        self._client = client
        self._upstream = upstream
        self._dispatcher = dispatcher
        self._client_closed = False
        self._upstream_closed = False
        self._upstream_send_lock = asyncio.Lock()
        self._notices: list[ClientNotice] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._initiation: Optional[asyncio.Task[None]] = None
        self.activity = ActivityBuffer(
            user_id=plan.user_id,
            agent_id=plan.agent_id,
            store=store,
            interval_seconds=self._config.activity_flush_interval_seconds,
            clock=clock,
            spawn=self.spawn,
            label=self.session_id,
            close_timeout_seconds=self._config.persistence_timeout_seconds,
        )

    # -- background work -------------------------------------------------

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> "asyncio.Task[None]":
        """Run ``coro`` without blocking the relay; failures are only logged."""

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, RelayError):
            logger.warning(f"[Session {self.session_id}] {task.get_name()} failed: {exc.message}")
        else:
            logger.error(f"[Session {self.session_id}] {task.get_name()} crashed", exc_info=exc)

    # -- lifecycle -------------------------------------------------------

    async def run(self) -> None:
        """Relay until either side goes away. The client must already be accepted."""

        self.state = RelayState.ACTIVE
        logger.info(
            f"[Session {self.session_id}] Relay active for agent {self.plan.agent_id} "
            f"(user={self.plan.user_id or 'anonymous'}, voice={self.plan.voice_id})"
        )
        await self._send_client_notice(ClientNotice(type="connected"))
        self._initiation = self.spawn(self._initiate_conversation(), f"initiate-{self.session_id}")

        pumps = {
            asyncio.create_task(self._pump_client_to_upstream(), name=f"client-pump-{self.session_id}"),
            asyncio.create_task(self._pump_upstream_to_client(), name=f"upstream-pump-{self.session_id}"),
        }
        try:
            await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self._teardown(pumps)

    async def _initiate_conversation(self) -> None:
        await asyncio.sleep(self._config.conversation_start_delay_seconds)
        if self.state is not RelayState.ACTIVE:
            return
        voice_override = None
        if self._config.voice_override_enabled and self.plan.voice_explicit:
            voice_override = self.plan.voice_id
        await self._send_upstream(conversation_initiation_message(voice_override))
        logger.info(f"[Session {self.session_id}] Sent conversation initiation")

    async def _teardown(self, pumps: set["asyncio.Task[None]"]) -> None:
        self.state = RelayState.CLOSING
        for pump in pumps:
            if not pump.done():
                pump.cancel()
        done, stuck = await asyncio.wait(pumps, timeout=PUMP_SHUTDOWN_SECONDS)
        for pump in stuck:
            logger.warning(f"[Session {self.session_id}] {pump.get_name()} did not stop in time")
        for pump in done:
            if pump.cancelled():
                continue
            exc = pump.exception()
            if isinstance(exc, Exception):
                logger.error(f"[Session {self.session_id}] Relay pump failed", exc_info=exc)
                self._notices.append(ClientNotice(type="error", message="Relay error"))
        if self._initiation is not None and not self._initiation.done():
            self._initiation.cancel()

        if self._upstream_closed and not self._notices:
            self._notices.append(ClientNotice(type="disconnected", code=None, reason=""))
        for notice in self._notices:
            await self._send_client_notice(notice)

        await self._close_upstream()
        await self._close_client()
        self.state = RelayState.CLOSED
        logger.info(f"[Session {self.session_id}] Relay closed")
        await self.activity.close()

    # -- client -> upstream ----------------------------------------------

    async def _pump_client_to_upstream(self) -> None:
        while self.state is RelayState.ACTIVE:
            try:
                message = await self._client.receive()
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.warning(f"[Session {self.session_id}] Client WebSocket error: {exc!r}")
                self._client_closed = True
                return

            if message.get("type") == "websocket.disconnect":
                logger.info(f"[Session {self.session_id}] Client WebSocket closed ({message.get('code')})")
                self._client_closed = True
                return

            frame = translate_client_frame(message.get("bytes"), message.get("text"))
            if frame is None:
                continue
            logger.debug(f"[Session {self.session_id}] Client frame: {frame.kind.value}")
            if not await self._send_upstream(frame.outbound):
                return

    async def _send_upstream(self, payload: str) -> bool:
        if self._upstream_closed:
            return False
        async with self._upstream_send_lock:
            try:
                await self._upstream.send(payload)
            except ConnectionClosed as exc:
                self._mark_upstream_closed(exc)
                return False
        return True

    # -- upstream -> client ----------------------------------------------

    async def _pump_upstream_to_client(self) -> None:
        while self.state is RelayState.ACTIVE:
            try:
                raw = await self._upstream.recv()
            except ConnectionClosed as exc:
                self._mark_upstream_closed(exc)
                return
            except (OSError, asyncio.TimeoutError) as exc:
                logger.error(f"[Session {self.session_id}] ElevenLabs WebSocket error: {exc!r}")
                self._notices.append(self._error_notice(UpstreamConnectionError("ElevenLabs connection error")))
                return

            await self._handle_upstream_frame(raw)
            if self._client_closed:
                return

    def _mark_upstream_closed(self, exc: ConnectionClosed) -> None:
        if self._upstream_closed:
            return
        self._upstream_closed = True
        failure = _closed_failure(exc)
        logger.info(
            f"[Session {self.session_id}] ElevenLabs WebSocket closed: {failure.code} {failure.reason}"
        )
        if not isinstance(exc, ConnectionClosedOK):
            self._notices.append(self._error_notice(UpstreamConnectionError("ElevenLabs connection error")))
        self._notices.append(
            ClientNotice(type="disconnected", code=failure.code, reason=failure.reason)
        )

    @staticmethod
    def _error_notice(exc: RelayError) -> ClientNotice:
        return ClientNotice(type="error", message=exc.message)

    async def _handle_upstream_frame(self, raw: Frame) -> None:
        event = parse_upstream_message(raw)
        logger.debug(f"[Session {self.session_id}] ElevenLabs message type: {event.type_tag or event.kind.value}")

        if self.activity.enabled:
            self.activity.observe(event)
            self.activity.maybe_flush()

        kind = event.kind
        if kind is UpstreamEventKind.TOOL_INVOCATION:
            self._intercept_tool_invocation(event)
        elif (
            kind is UpstreamEventKind.INTERRUPTION
            or kind is UpstreamEventKind.AUDIO
            or kind is UpstreamEventKind.CONVERSATION_UPDATE
            or kind is UpstreamEventKind.USER_TRANSCRIPT
            or kind is UpstreamEventKind.AGENT_RESPONSE
            or kind is UpstreamEventKind.PING
            or kind is UpstreamEventKind.PASSTHROUGH
            or kind is UpstreamEventKind.NON_JSON
        ):
            await self._send_to_client(event.raw)
        else:
            assert_never(kind)

    def _intercept_tool_invocation(self, event: UpstreamEvent) -> None:
        tool_call = event.tool_call
        if tool_call is None or not tool_call.tool_call_id:
            logger.warning(f"[Session {self.session_id}] Dropping uncorrelated tool invocation: {event.raw!r}")
            return
        logger.info(f"[Session {self.session_id}] Tool invocation request: {tool_call.name} ({tool_call.tool_call_id})")
        self.spawn(
            self._answer_tool_call(tool_call, tool_call.tool_call_id),
            f"tool-{tool_call.name}-{tool_call.tool_call_id}",
        )

    async def _answer_tool_call(self, tool_call: ToolCall, tool_call_id: str) -> None:
        result = await self._dispatcher.dispatch(
            tool_call,
            tool_call_id=tool_call_id,
            user_id=self.plan.user_id,
            agent_id=self.plan.agent_id,
        )
        if not await self._send_upstream(result.model_dump_json()):
            logger.warning(
                f"[Session {self.session_id}] Upstream closed before tool result {tool_call_id} was delivered"
            )

    # -- client plumbing -------------------------------------------------

    async def _send_to_client(self, frame: Frame) -> bool:
        if self._client_closed:
            logger.warning(f"[Session {self.session_id}] Client socket not open, message dropped")
            return False
        try:
            if isinstance(frame, bytes):
                await self._client.send_bytes(frame)
            else:
                await self._client.send_text(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.info(f"[Session {self.session_id}] Client went away while sending: {exc!r}")
            self._client_closed = True
            return False
        return True

    async def _send_client_notice(self, notice: ClientNotice) -> bool:
        return await self._send_to_client(notice.model_dump_json(exclude_none=True))

    async def _close_upstream(self) -> None:
        if self._upstream_closed:
            return
        self._upstream_closed = True
        try:
            await self._upstream.close()
        except (ConnectionClosed, OSError) as exc:
            logger.debug(f"[Session {self.session_id}] Upstream close raised {exc!r}")

    async def _close_client(self) -> None:
        if self._client_closed:
            return
        self._client_closed = True
        try:
            await self._client.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug(f"[Session {self.session_id}] Client close raised {exc!r}")


async def reject_websocket(websocket: WebSocket, exc: RelayError) -> None:
    """Refuse the handshake with an HTTP status when the server allows it."""

    logger.warning(f"Rejecting relay request: {exc.message} ({exc.status_code})")
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(exc.to_response())
    else:
        await websocket.close(code=exc.close_code, reason=exc.message)


class RelayManager:
    """Entry point for inbound relay requests; tracks the live sessions."""

    def __init__(
        self,
        *,
        directory: CoachDirectory,
        upstream: UpstreamConnector,
        dispatcher: ToolDispatcher,
        store: HistoryStore,
        config: Settings | None = None,
    ) -> None:
        self._directory = directory
        self._upstream = upstream
        self._dispatcher = dispatcher
        self._store = store
        self._config = config or default_settings
        self.active_sessions: dict[str, VoiceSessionRelay] = {}

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient, config: Settings | None = None) -> "RelayManager":
        cfg = config or default_settings
        persistence = SupabasePersistence(cfg)
        return cls(
            directory=CoachDirectory(persistence, cfg.agent_id_prefix),
            upstream=ElevenLabsClient(http, config=cfg),
            dispatcher=ToolDispatcher(http, config=cfg),
            store=persistence,
            config=cfg,
        )

    async def handle(self, websocket: WebSocket) -> None:
        try:
            plan = await establish_session(
                websocket.query_params,
                websocket.headers,
                directory=self._directory,
                upstream=self._upstream,
                config=self._config,
            )
            upstream_connection = await self._upstream.connect(plan.signed_url)
        except RelayError as exc:
            await reject_websocket(websocket, exc)
            return

        try:
            await websocket.accept()
        except Exception:
            await upstream_connection.close()
            raise

        relay = VoiceSessionRelay(
            plan,
            client=websocket,
            upstream=upstream_connection,
            dispatcher=self._dispatcher,
            store=self._store,
            config=self._config,
        )
        self.active_sessions[relay.session_id] = relay
        try:
            await relay.run()
        finally:
            self.active_sessions.pop(relay.session_id, None)
