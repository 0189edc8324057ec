"""
Application error types and the JSON error envelope.
"""
from typing import Any, Optional
from fastapi import status
from fastapi.responses import JSONResponse


class ChatLimaError(Exception):
    """An error that maps directly onto an HTTP error response."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class ParseError(ValueError):
    """A provider model list could not be normalized."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.reason = message


class MCPConfigurationError(ValueError):
    """An MCP server entry is not usable as configured."""


class AttachmentError(ValueError):
    """Attachments were supplied that the selected model cannot accept."""


class MessageValidationError(ValueError):
    """The chat message list violates a structural invariant."""


class ProviderError(Exception):
    """A completion provider failed or returned an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429 or "rate limit" in str(self).lower()


def unauthorized(message: str = "Authentication required") -> ChatLimaError:
    return ChatLimaError("UNAUTHORIZED", message, status.HTTP_401_UNAUTHORIZED)


def forbidden(message: str = "Admin access required") -> ChatLimaError:
    return ChatLimaError("FORBIDDEN", message, status.HTTP_403_FORBIDDEN)


def internal_error(message: str, details: Optional[Any] = None) -> ChatLimaError:
    return ChatLimaError("INTERNAL_ERROR", message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)


def error_response(error: ChatLimaError) -> JSONResponse:
    """Render a ChatLimaError as the standard JSON error envelope."""
    return JSONResponse(status_code=error.status_code, content=error.to_dict())
