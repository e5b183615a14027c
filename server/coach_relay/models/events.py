"""Closed set of message kinds exchanged over the relay's two connections.

Upstream frames are classified once, on arrival, into an ``UpstreamEvent``;
everything the relay does not specifically recognise lands in
``UpstreamEventKind.PASSTHROUGH`` and is forwarded to the browser untouched.
"""
from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import ValidationError

from .schemas import ToolCall

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class UpstreamEventKind(Enum):
    TOOL_INVOCATION = "agent_tool_invocation_request"
    INTERRUPTION = "interruption"
    AUDIO = "audio"
    CONVERSATION_UPDATE = "conversation_update"
    USER_TRANSCRIPT = "user_transcript"
    AGENT_RESPONSE = "agent_response"
    PING = "ping"
    PASSTHROUGH = "passthrough"
    NON_JSON = "non_json"


_TYPE_TAGS: dict[str, UpstreamEventKind] = {
    "agent_tool_invocation_request": UpstreamEventKind.TOOL_INVOCATION,
    "interruption": UpstreamEventKind.INTERRUPTION,
    "audio": UpstreamEventKind.AUDIO,
    "conversation_event": UpstreamEventKind.CONVERSATION_UPDATE,
    "conversation_update": UpstreamEventKind.CONVERSATION_UPDATE,
    "user_transcript": UpstreamEventKind.USER_TRANSCRIPT,
    "agent_response": UpstreamEventKind.AGENT_RESPONSE,
    "ping": UpstreamEventKind.PING,
}


@dataclass(slots=True)
class UpstreamEvent:
    """One frame received from the voice agent, with the fields the relay reads."""

    kind: UpstreamEventKind
    raw: Frame
    type_tag: Optional[str] = None
    text: Optional[str] = None
    has_audio: bool = False
    tool_call: Optional[ToolCall] = None


def _nested_text(payload: dict[str, Any], event_key: str, field_name: str) -> Optional[str]:
    nested = payload.get(event_key)
    if isinstance(nested, dict):
        value = nested.get(field_name)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _inline_text(payload: dict[str, Any]) -> Optional[str]:
    for key in ("text", "content"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _tool_call(payload: dict[str, Any]) -> Optional[ToolCall]:
    request = payload.get("agent_tool_invocation_request_event")
    raw_call = request.get("tool_call") if isinstance(request, dict) else None
    if not isinstance(raw_call, dict):
        logger.warning(f"Malformed tool invocation payload: {payload}")
        return None
    try:
        return ToolCall.model_validate(raw_call)
    except ValidationError:
        logger.warning(f"Malformed tool call, answering by id only: {raw_call}")
    # Any call with a usable id is answered, even if only with an error.
    tool_call_id = raw_call.get("tool_call_id")
    if isinstance(tool_call_id, bool) or not isinstance(tool_call_id, (str, int, float)):
        return None
    name = raw_call.get("name")
    return ToolCall(
        name=name if isinstance(name, str) else None,
        arguments=raw_call.get("arguments"),
        tool_call_id=str(tool_call_id),
    )


def parse_upstream_message(raw: Frame) -> UpstreamEvent:
    """Classify a raw upstream frame."""

    if isinstance(raw, bytes):
        return UpstreamEvent(kind=UpstreamEventKind.NON_JSON, raw=raw)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return UpstreamEvent(kind=UpstreamEventKind.NON_JSON, raw=raw)
    if not isinstance(payload, dict):
        return UpstreamEvent(kind=UpstreamEventKind.PASSTHROUGH, raw=raw)

    type_tag = payload.get("type")
    if not isinstance(type_tag, str):
        type_tag = None
    kind = _TYPE_TAGS.get(type_tag or "", UpstreamEventKind.PASSTHROUGH)
    event = UpstreamEvent(kind=kind, raw=raw, type_tag=type_tag)

    if kind is UpstreamEventKind.TOOL_INVOCATION:
        event.tool_call = _tool_call(payload)
    elif kind is UpstreamEventKind.AUDIO:
        event.has_audio = bool(payload.get("audio") or payload.get("audio_event"))
    elif kind is UpstreamEventKind.CONVERSATION_UPDATE:
        event.text = _inline_text(payload)
    elif kind is UpstreamEventKind.USER_TRANSCRIPT:
        event.text = _nested_text(payload, "user_transcription_event", "user_transcript")
    elif kind is UpstreamEventKind.AGENT_RESPONSE:
        event.text = _nested_text(payload, "agent_response_event", "agent_response")
    return event


class ClientFrameKind(Enum):
    AUDIO = "audio"
    JSON = "json"
    RAW_TEXT = "raw_text"


@dataclass(slots=True)
class ClientFrame:
    kind: ClientFrameKind
    outbound: str


def encode_audio_chunk(chunk: bytes) -> str:
    """Wrap raw audio bytes in the upstream's ``user_audio_chunk`` envelope."""

    return json.dumps({"user_audio_chunk": base64.b64encode(chunk).decode("ascii")})


def translate_client_frame(data: Optional[bytes] = None, text: Optional[str] = None) -> Optional[ClientFrame]:
    """Translate one browser frame into what the upstream should receive.

    Binary frames are always re-encoded; text frames go through verbatim
    whether or not they parse as JSON.
    """

    if data is not None:
        return ClientFrame(kind=ClientFrameKind.AUDIO, outbound=encode_audio_chunk(data))
    if text is None:
        return None
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return ClientFrame(kind=ClientFrameKind.RAW_TEXT, outbound=text)
    return ClientFrame(kind=ClientFrameKind.JSON, outbound=text)


def conversation_initiation_message(voice_id: Optional[str] = None) -> str:
    message: dict[str, Any] = {"type": "conversation_initiation_client_data"}
    if voice_id:
        message["conversation_config_override"] = {"tts": {"voice_id": voice_id}}
    return json.dumps(message)
