"""Dispatch of agent tool invocations to the backend's handler functions."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from ..config import Settings, settings as default_settings
from ..exceptions import AuthenticationRequired, RelayError
from ..models.schemas import HandlerResponse, ToolCall, ToolResultMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolHandler:
    """How one supported tool maps onto a backend function."""

    name: str
    function: str
    include_agent_id: bool
    auth_message: str
    success_text: Callable[[dict[str, Any]], str]
    failure_prefix: str
    error_prefix: str


TOOL_HANDLERS: dict[str, ToolHandler] = {
    "update_user_profile": ToolHandler(
        name="update_user_profile",
        function="update-user-profile",
        include_agent_id=False,
        auth_message="User must be authenticated to save profile information",
        success_text=lambda args: f"Profile updated successfully for {args.get('userName')}",
        failure_prefix="Failed to update profile",
        error_prefix="Error updating profile",
    ),
    "store_conversation_summary": ToolHandler(
        name="store_conversation_summary",
        function="store-conversation-summary",
        include_agent_id=True,
        auth_message="User must be authenticated to save conversation summary",
        success_text=lambda args: "Conversation summary saved successfully",
        failure_prefix="Failed to save conversation summary",
        error_prefix="Error saving conversation summary",
    ),
}


class ToolDispatcher:
    """Turns a ``ToolCall`` into exactly one ``ToolResultMessage``.

    ``dispatch`` never raises: every failure, local or remote, becomes a
    failure result carrying the original ``tool_call_id``.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        config: Settings | None = None,
        handlers: Optional[dict[str, ToolHandler]] = None,
    ) -> None:
        cfg = config or default_settings
        self._http = http
        self._functions_url = cfg.functions_base_url
        self._service_key = cfg.supabase_service_role_key
        self._timeout = cfg.tool_dispatch_timeout_seconds
        self._handlers = handlers if handlers is not None else TOOL_HANDLERS

    def supports(self, name: Optional[str]) -> bool:
        return name in self._handlers

    async def dispatch(
        self,
        tool_call: ToolCall,
        *,
        tool_call_id: str,
        user_id: Optional[str],
        agent_id: str,
    ) -> ToolResultMessage:
        if not self.supports(tool_call.name):
            logger.warning(f"Unsupported tool invocation: {tool_call.name}")
            return ToolResultMessage.build(tool_call_id, f"Unsupported tool: {tool_call.name}")
        handler = self._handlers[tool_call.name]

        try:
            args = self._parse_arguments(tool_call.arguments)
            logger.info(f"Tool {handler.name} invoked with {args}")
            if not user_id:
                raise AuthenticationRequired(handler.auth_message)
            result = await self._call_handler(handler, args, user_id=user_id, agent_id=agent_id)
        except Exception as exc:
            message = exc.message if isinstance(exc, RelayError) else str(exc)
            logger.warning(f"Error handling tool call {handler.name}: {message}")
            return ToolResultMessage.build(tool_call_id, f"{handler.error_prefix}: {message}")

        logger.info(f"Tool {handler.name} result: {result}")
        if result.success:
            return ToolResultMessage.build(tool_call_id, handler.success_text(args))
        return ToolResultMessage.build(tool_call_id, f"{handler.failure_prefix}: {result.error}")

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if not isinstance(raw, str):
            raise ValueError(f"Tool arguments must be a JSON-encoded string, got {type(raw).__name__}")
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return parsed

    async def _call_handler(
        self,
        handler: ToolHandler,
        args: dict[str, Any],
        *,
        user_id: str,
        agent_id: str,
    ) -> HandlerResponse:
        if not self._functions_url or not self._service_key:
            raise RuntimeError("Supabase functions are not configured")

        # Identity fields are written last so agent-supplied arguments cannot override them.
        body: dict[str, Any] = dict(args)
        body["userId"] = user_id
        if handler.include_agent_id:
            body["agentId"] = agent_id

        resp = await self._http.post(
            f"{self._functions_url}/{handler.function}",
            json=body,
            headers={"Authorization": f"Bearer {self._service_key}"},
            timeout=self._timeout,
        )
        try:
            return HandlerResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            return HandlerResponse(success=False, error=f"HTTP {resp.status_code}")
