"""Best-effort capture of session activity into ``conversation_history``."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, Optional, Protocol

from typing_extensions import assert_never

from ..exceptions import ActivityFlushFailure
from ..models.events import UpstreamEvent, UpstreamEventKind
from ..models.schemas import ConversationHistoryRecord

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_INTERVAL_SECONDS = 30.0
TOPICS_MAX_CHARS = 100
INSIGHTS_MAX_CHARS = 200
DEFAULT_CLOSE_TIMEOUT_SECONDS = 10.0

Spawn = Callable[[Coroutine[Any, Any, None], str], "asyncio.Task[None]"]


class HistoryStore(Protocol):
    async def upsert_conversation_history(self, record: ConversationHistoryRecord) -> bool: ...


def _default_spawn(coro: Coroutine[Any, Any, None], name: str) -> "asyncio.Task[None]":
    return asyncio.create_task(coro, name=name)


class ActivityBuffer:
    """Rolling text log of one session, upserted per (user, agent) on an interval.

    The buffer is cumulative: every flush writes the whole history so far.
    Anonymous sessions (no ``user_id``) never record or write anything.
    """

    def __init__(
        self,
        *,
        user_id: Optional[str],
        agent_id: str,
        store: HistoryStore,
        interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        spawn: Spawn = _default_spawn,
        label: str = "",
        close_timeout_seconds: float = DEFAULT_CLOSE_TIMEOUT_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.agent_id = agent_id
        self._store = store
        self._interval = interval_seconds
        self._clock = clock
        self._spawn = spawn
        self._label = label or agent_id
        self._close_timeout = close_timeout_seconds
        self._text = ""
        self._persisted_length = 0
        self._last_flush = clock()
        self._flush_task: Optional[asyncio.Task[None]] = None

    @property
    def enabled(self) -> bool:
        return self.user_id is not None

    @property
    def text(self) -> str:
        return self._text

    @property
    def has_unsaved_content(self) -> bool:
        return bool(self._text.strip()) and len(self._text) != self._persisted_length

    @property
    def flush_in_flight(self) -> bool:
        return self._flush_task is not None and not self._flush_task.done()

    def _append(self, line: str) -> None:
        self._text += f"\n{line}"

    def observe(self, event: UpstreamEvent) -> bool:
        """Record the annotation ``event`` warrants; return whether anything was added."""

        if not self.enabled:
            return False

        kind = event.kind
        if kind is UpstreamEventKind.INTERRUPTION:
            self._append("[User speaking detected]")
            return True
        if kind is UpstreamEventKind.AUDIO:
            if event.has_audio:
                self._append("[Agent audio response]")
                return True
            return False
        if kind is UpstreamEventKind.CONVERSATION_UPDATE or kind is UpstreamEventKind.AGENT_RESPONSE:
            if event.text:
                self._append(f"Agent: {event.text}")
                return True
            return False
        if kind is UpstreamEventKind.USER_TRANSCRIPT:
            if event.text:
                self._append(f"User: {event.text}")
                return True
            return False
        if (
            kind is UpstreamEventKind.TOOL_INVOCATION
            or kind is UpstreamEventKind.PING
            or kind is UpstreamEventKind.PASSTHROUGH
            or kind is UpstreamEventKind.NON_JSON
        ):
            return False
        assert_never(kind)

    def is_due(self, now: Optional[float] = None) -> bool:
        if not self.enabled or not self._text.strip() or self.flush_in_flight:
            return False
        current = self._clock() if now is None else now
        return current - self._last_flush > self._interval

    def maybe_flush(self, now: Optional[float] = None) -> Optional["asyncio.Task[None]"]:
        """Start a background flush when the interval has elapsed; never blocks."""

        if not self.is_due(now):
            return None
        logger.info(f"[Session {self._label}] Saving conversation buffer to database...")
        self._flush_task = self._spawn(self.flush(), f"activity-flush-{self._label}")
        return self._flush_task

    def build_record(self) -> ConversationHistoryRecord:
        if self.user_id is None:
            raise ActivityFlushFailure("Anonymous sessions have no conversation history")
        lines = self._text.split("\n")
        return ConversationHistoryRecord(
            user_id=self.user_id,
            agent_id=self.agent_id,
            conversation_summary=self._text,
            last_topics=[" ".join(lines[-3:])[:TOPICS_MAX_CHARS]],
            key_insights=[" ".join(lines[-2:])[:INSIGHTS_MAX_CHARS]],
        )

    async def flush(self) -> None:
        """Write the whole buffer; raise ``ActivityFlushFailure`` if the store refuses it."""

        record = self.build_record()
        snapshot_length = len(self._text)
        written = await self._store.upsert_conversation_history(record)
        if not written:
            raise ActivityFlushFailure(f"Conversation history for {self._label} was not saved")
        self._last_flush = self._clock()
        self._persisted_length = snapshot_length
        logger.info(f"[Session {self._label}] Conversation saved successfully")

    async def close(self) -> None:
        """Final best-effort flush of anything written since the last save."""

        if self._flush_task is not None and not self._flush_task.done():
            _, still_running = await asyncio.wait({self._flush_task}, timeout=self._close_timeout)
            if still_running:
                logger.warning(f"[Session {self._label}] Earlier save still running; skipping final save")
                return
        if not self.enabled or not self.has_unsaved_content:
            return
        try:
            await asyncio.wait_for(self.flush(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Session {self._label}] Final conversation save timed out")
        except ActivityFlushFailure as exc:
            logger.warning(f"[Session {self._label}] Final conversation save failed: {exc.message}")
