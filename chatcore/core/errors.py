from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    type: str
    request_id: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type,
            "request_id": self.request_id,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


class AppError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        error_type: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error_type = error_type
        self.message = message
        self.details = details or {}


class ConversationNotFoundError(AppError):
    def __init__(self, conversation_id: str):
        super().__init__(
            404,
            "conversation_not_found",
            "validation",
            f"Conversation not found: {conversation_id}",
        )
        self.conversation_id = conversation_id


class ModerationBlockedError(AppError):
    """Raised when the safety gate decides to block content."""

    def __init__(self, reason: str, categories: list[str]):
        super().__init__(
            403,
            "message_blocked_by_safety",
            "safety",
            reason,
            details={"categories": categories},
        )
        self.reason = reason
        self.categories = categories


def request_id_from_request(request: Request) -> str:
    state_id = getattr(request.state, "request_id", None)
    header_id = request.headers.get("x-request-id")
    return state_id or header_id or str(uuid4())


def app_error_response(
    status_code: int,
    code: str,
    error_type: str,
    message: str,
    request_id: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    envelope = ErrorEnvelope(
        code=code,
        message=message,
        type=error_type,
        request_id=request_id,
        details=details or {},
    )
    response = JSONResponse(status_code=status_code, content=envelope.as_dict())
    response.headers["x-request-id"] = request_id
    return response
