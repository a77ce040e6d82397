"""
Frame protocol for the browser websocket.

One JSON object per websocket message, routed by its `type` field. Inbound
frames are decoded with decode_frame() and their payloads validated with the
pydantic models below; outbound frames are built with the *_frame() helpers.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pentrelay.engine.models import ConnectionSpec, Fingerprint, FingerprintSpec
from pentrelay.errors import ErrorCode, ProtocolError

logger = logging.getLogger(__name__)

# Inbound frames larger than this are rejected before JSON decoding
MAX_FRAME_BYTES = 1024 * 1024


class FrameKind(str, Enum):
    SYSTEM = "system"
    ERROR = "error"
    OUTPUT = "output"
    PING = "liveness-ping"
    PONG = "liveness-pong"
    EXECUTE_COMMAND = "execute-command"
    COMMAND_OUTPUT = "command_output"
    START_PENTEST = "start_pentest"
    STOP_PENTEST = "stop_pentest"
    RESIZE = "resize"


# Spellings accepted from older dashboard builds
FRAME_ALIASES: Dict[str, FrameKind] = {
    "ping": FrameKind.PING,
    "pong": FrameKind.PONG,
    "execute_command": FrameKind.EXECUTE_COMMAND,
    "command-output": FrameKind.COMMAND_OUTPUT,
    "start-autonomous-session": FrameKind.START_PENTEST,
    "stop-autonomous-session": FrameKind.STOP_PENTEST,
    "resize-terminal": FrameKind.RESIZE,
}

INBOUND_KINDS = frozenset({
    FrameKind.PING,
    FrameKind.PONG,
    FrameKind.EXECUTE_COMMAND,
    FrameKind.COMMAND_OUTPUT,
    FrameKind.START_PENTEST,
    FrameKind.STOP_PENTEST,
    FrameKind.RESIZE,
})


# --- Inbound payload models ---

class ExecuteCommandFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str = Field(..., max_length=16384)
    connection: ConnectionSpec
    interactive: bool = False

    @field_validator("command")
    @classmethod
    def non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("command cannot be empty")
        return v


class CommandOutputFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: str = ""
    output: str = ""


class AISpec(BaseModel):
    """Reasoning-service settings chosen in the dashboard."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: str = "flowise"
    model: Optional[str] = None
    endpoint: Optional[str] = None
    flowise_endpoint: Optional[str] = Field(None, alias="flowiseEndpoint")
    flowise_chatflow_id: Optional[str] = Field(None, alias="flowiseChatflowId")
    api_key: Optional[str] = Field(None, alias="apiKey")
    prompt_template: Optional[str] = Field(None, alias="promptTemplate")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")

    def __repr__(self) -> str:
        return f"AISpec(provider={self.provider!r}, endpoint={self.endpoint or self.flowise_endpoint!r})"


class StartPentestFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target: str = Field(..., min_length=1, max_length=2048)
    headless_mode: bool = Field(False, alias="headlessMode")
    ai: AISpec = Field(default_factory=AISpec)
    additional_info: str = Field("", alias="additionalInfo", max_length=16384)
    connection: Optional[FingerprintSpec] = None

    @field_validator("target")
    @classmethod
    def strip_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target cannot be empty")
        return v


class ResizeFrame(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rows: int = Field(..., ge=1, le=1000)
    cols: int = Field(..., ge=1, le=1000)
    connection: Optional[FingerprintSpec] = None


M = TypeVar("M", bound=BaseModel)


def decode_frame(raw: Any) -> Tuple[FrameKind, Dict[str, Any]]:
    """
    Decode one inbound websocket message into (kind, payload).

    Raises:
        ProtocolError: invalid JSON, non-object payload, missing or unknown type
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ProtocolError("Frame must be a text message", code=ErrorCode.FRAME_INVALID_JSON)
    if len(raw) > MAX_FRAME_BYTES:
        raise ProtocolError(
            f"Frame exceeds {MAX_FRAME_BYTES} bytes",
            code=ErrorCode.FRAME_INVALID_JSON,
            details={"size": len(raw)},
        )

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e.msg}", code=ErrorCode.FRAME_INVALID_JSON)

    if not isinstance(payload, dict):
        raise ProtocolError("Frame must be a JSON object", code=ErrorCode.FRAME_INVALID_JSON)

    frame_type = payload.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise ProtocolError("Frame is missing a 'type' field", code=ErrorCode.FRAME_UNKNOWN_TYPE)

    kind = FRAME_ALIASES.get(frame_type)
    if kind is None:
        try:
            kind = FrameKind(frame_type)
        except ValueError:
            kind = None
    if kind is None or kind not in INBOUND_KINDS:
        raise ProtocolError(
            f"Unknown frame type: {frame_type}",
            code=ErrorCode.FRAME_UNKNOWN_TYPE,
            details={"type": frame_type},
        )
    return kind, payload


def parse_payload(model: Type[M], payload: Dict[str, Any]) -> M:
    """Validate a decoded payload against `model`, mapping failures to ProtocolError."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'frame'}: {err['msg']}"
            for err in e.errors()
        )
        code = ErrorCode.FRAME_INVALID_AUTH if "sshKey" in problems or "password" in problems else ErrorCode.FRAME_INVALID_FIELDS
        raise ProtocolError(f"Invalid {payload.get('type', 'frame')} frame: {problems}", code=code)


# --- Outbound builders ---

def system_frame(content: str, **extra: Any) -> Dict[str, Any]:
    return {"type": FrameKind.SYSTEM.value, "content": content, **extra}


def output_frame(content: str, **extra: Any) -> Dict[str, Any]:
    return {"type": FrameKind.OUTPUT.value, "content": content, **extra}


def error_frame(message: str, **extra: Any) -> Dict[str, Any]:
    return {"type": FrameKind.ERROR.value, "message": message, "content": message, **extra}


def ping_frame() -> Dict[str, Any]:
    return {"type": FrameKind.PING.value}


def pong_frame() -> Dict[str, Any]:
    return {"type": FrameKind.PONG.value}


def execute_command_frame(
    command: str,
    connection: Optional[Fingerprint] = None,
    auto_execute: bool = False,
    explanation: Optional[str] = None,
) -> Dict[str, Any]:
    frame: Dict[str, Any] = {
        "type": FrameKind.EXECUTE_COMMAND.value,
        "command": command,
        "autoExecute": auto_execute,
    }
    if connection is not None:
        frame["connection"] = connection.to_dict()
    if explanation:
        frame["explanation"] = explanation
    return frame
