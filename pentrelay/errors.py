"""Structured error taxonomy for the relay gateway."""
#
# PURPOSE:
# Every failure the gateway can report to a browser client is one of the
# classes below. Each carries an error code, a human-readable message and an
# optional details dictionary, and knows how to render itself as an `error`
# frame for the websocket or as a JSON body for the HTTP routes.
#
# ERROR CODE FORMAT:
# - CHAN_XXX: Remote command channel errors (SSH connect, auth, shell)
# - AI_XXX: Reasoning service errors
# - CMD_XXX: Command policy errors
# - FRAME_XXX: Inbound frame protocol errors
# - SESSION_XXX: Transport session / state machine errors
# - AUTH_XXX: Gateway authentication errors
# - SYSTEM_XXX: Anything else
#
# USAGE:
#   from pentrelay.errors import ChannelUnavailable
#
#   raise ChannelUnavailable(
#       "Connection to kali@10.0.0.5:22 is no longer usable",
#       details={"fingerprint": "kali@10.0.0.5:22"},
#   )
#

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Channel Errors
    CHAN_CONNECT_TIMEOUT = "CHAN_001"
    CHAN_AUTH_FAILED = "CHAN_002"
    CHAN_UNAVAILABLE = "CHAN_003"
    CHAN_CONNECT_FAILED = "CHAN_004"
    CHAN_SHELL_UNAVAILABLE = "CHAN_005"

    # AI Errors
    AI_REQUEST_FAILED = "AI_001"
    AI_TIMEOUT = "AI_002"
    AI_INVALID_RESPONSE = "AI_003"
    AI_JSON_PARSE_ERROR = "AI_004"

    # Command Policy Errors
    CMD_REJECTED = "CMD_001"

    # Frame Errors
    FRAME_INVALID_JSON = "FRAME_001"
    FRAME_UNKNOWN_TYPE = "FRAME_002"
    FRAME_INVALID_FIELDS = "FRAME_003"
    FRAME_INVALID_AUTH = "FRAME_004"

    # Session Errors
    SESSION_NOT_FOUND = "SESSION_001"
    SESSION_INVALID_STATE = "SESSION_002"
    SESSION_CLOSED = "SESSION_003"

    # Auth Errors
    AUTH_TOKEN_INVALID = "AUTH_001"
    AUTH_TOKEN_MISSING = "AUTH_002"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class RelayError(Exception):
    """
    Base exception class for the gateway with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g. "CHAN_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        http_status: Suggested HTTP status code for API responses
    """

    default_code: ErrorCode = ErrorCode.SYSTEM_INTERNAL_ERROR

    HTTP_STATUS_MAP: Dict[ErrorCode, int] = {
        ErrorCode.CHAN_CONNECT_TIMEOUT: 504,
        ErrorCode.CHAN_AUTH_FAILED: 401,
        ErrorCode.CHAN_UNAVAILABLE: 503,
        ErrorCode.CHAN_CONNECT_FAILED: 502,
        ErrorCode.CHAN_SHELL_UNAVAILABLE: 503,
        ErrorCode.AI_REQUEST_FAILED: 502,
        ErrorCode.AI_TIMEOUT: 504,
        ErrorCode.AI_INVALID_RESPONSE: 502,
        ErrorCode.AI_JSON_PARSE_ERROR: 502,
        ErrorCode.CMD_REJECTED: 422,
        ErrorCode.FRAME_INVALID_JSON: 400,
        ErrorCode.FRAME_UNKNOWN_TYPE: 400,
        ErrorCode.FRAME_INVALID_FIELDS: 400,
        ErrorCode.FRAME_INVALID_AUTH: 400,
        ErrorCode.SESSION_NOT_FOUND: 404,
        ErrorCode.SESSION_INVALID_STATE: 409,
        ErrorCode.SESSION_CLOSED: 410,
        ErrorCode.AUTH_TOKEN_INVALID: 401,
        ErrorCode.AUTH_TOKEN_MISSING: 401,
        ErrorCode.SYSTEM_INTERNAL_ERROR: 500,
    }

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[ErrorCode] = None,
        http_status: Optional[int] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        self.http_status = http_status or self.HTTP_STATUS_MAP.get(self.code, 500)

        # Code in the exception text keeps log lines greppable
        super().__init__(f"[{self.code.value}] {message}")

    @property
    def kind(self) -> str:
        """Taxonomy name reported to clients (the class name)."""
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
            "http_status": self.http_status,
        }

    def to_frame(self) -> Dict[str, Any]:
        """
        Render this error as an outbound `error` frame.

        Both `message` and `content` are populated because older dashboard
        builds read one or the other.
        """
        return {
            "type": "error",
            "code": self.code.value,
            "kind": self.kind,
            "message": self.message,
            "content": self.message,
        }


class ConnectionTimeout(RelayError):
    """Remote connection establishment exceeded the configured timeout."""
    default_code = ErrorCode.CHAN_CONNECT_TIMEOUT


class AuthenticationFailed(RelayError):
    """The remote host rejected the supplied credentials."""
    default_code = ErrorCode.CHAN_AUTH_FAILED


class ChannelUnavailable(RelayError):
    """A channel is stale, closed, or its host could not be reached."""
    default_code = ErrorCode.CHAN_UNAVAILABLE


class ShellUnavailable(RelayError):
    """An interactive shell could not be opened on an otherwise healthy channel."""
    default_code = ErrorCode.CHAN_SHELL_UNAVAILABLE


class CommandRejected(RelayError):
    """An agent-proposed command failed the command policy."""
    default_code = ErrorCode.CMD_REJECTED


class AIResponseMalformed(RelayError):
    """The reasoning service replied with text that holds no usable command."""
    default_code = ErrorCode.AI_INVALID_RESPONSE


class AIRequestFailed(RelayError):
    """Network or HTTP failure while calling the reasoning service."""
    default_code = ErrorCode.AI_REQUEST_FAILED


class ProtocolError(RelayError):
    """An inbound frame could not be decoded or routed."""
    default_code = ErrorCode.FRAME_INVALID_FIELDS


class InvalidTransition(RelayError):
    """A state machine was asked to make a transition its table forbids."""
    default_code = ErrorCode.SESSION_INVALID_STATE


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> RelayError:
    """
    Convert a generic exception to a RelayError.

    Args:
        error: The original exception
        context: Optional context string (e.g. "while executing command")

    Returns:
        RelayError (or subclass) with an appropriate code and message
    """
    if isinstance(error, RelayError):
        return error

    error_type = type(error).__name__
    message = str(error) or error_type
    if context:
        message = f"{context}: {message}"
    details = {"original_type": error_type, "original_message": str(error)}

    if isinstance(error, TimeoutError) or "Timeout" in error_type:
        return ConnectionTimeout(message, details=details)
    if isinstance(error, ConnectionError) or "Connection" in error_type:
        return ChannelUnavailable(message, details=details, code=ErrorCode.CHAN_CONNECT_FAILED)
    return RelayError(message, details=details)


__all__ = [
    "ErrorCode",
    "RelayError",
    "ConnectionTimeout",
    "AuthenticationFailed",
    "ChannelUnavailable",
    "ShellUnavailable",
    "CommandRejected",
    "AIResponseMalformed",
    "AIRequestFailed",
    "ProtocolError",
    "InvalidTransition",
    "handle_error",
]
