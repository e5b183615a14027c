"""Pydantic models describing wire payloads and persisted rows."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ToolCall(BaseModel):
    """Function call embedded by the voice agent in its message stream."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    # Normally a JSON-encoded string; anything else is rejected when the arguments are parsed.
    arguments: Any = None
    tool_call_id: Optional[str] = None

    @field_validator("name", "tool_call_id", mode="before")
    @classmethod
    def _coerce_scalar(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ToolResultEvent(BaseModel):
    tool_call_id: str
    result: str


class ToolResultMessage(BaseModel):
    """Envelope returned upstream for every answered tool invocation."""

    type: str = "agent_tool_result"
    agent_tool_result_event: ToolResultEvent

    @classmethod
    def build(cls, tool_call_id: str, result: str) -> "ToolResultMessage":
        return cls(agent_tool_result_event=ToolResultEvent(tool_call_id=tool_call_id, result=result))


class HandlerResponse(BaseModel):
    """JSON body returned by the backend's tool handler functions."""

    model_config = ConfigDict(extra="allow")

    success: bool = False
    error: Optional[str] = None
    message: Optional[str] = None


class ConversationHistoryRecord(BaseModel):
    """Row written to ``conversation_history``; one per (user, agent) pair."""

    user_id: str
    agent_id: str
    conversation_summary: str
    last_topics: List[str] = Field(default_factory=list)
    key_insights: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthResponse(BaseModel):
    service: str
    status: str
    active_sessions: int = 0


class ClientNotice(BaseModel):
    """Synthetic lifecycle notification sent by the relay to the browser."""

    type: str
    message: Optional[str] = None
    code: Optional[int] = None
    reason: Optional[str] = None
