from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class LoadError(Exception):
    """Label mapping file is missing, malformed or empty."""


class ModelLoadError(Exception):
    """Model artifact is missing or incompatible with the runtime."""


class StartupError(RuntimeError):
    """Fatal: the service cannot be built and the process must not serve."""


class PreprocessError(ValueError):
    """Image bytes could not be decoded or converted to a tensor."""


class InferenceError(RuntimeError):
    """The model failed to produce an output for a well-formed input."""


class InferenceTimeoutError(InferenceError):
    pass


class ErrorCode(str, Enum):
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    too_large = "too_large"
    inference_failed = "inference_failed"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"


_CODE_TABLE: Final[dict[ErrorCode, tuple[int, str]]] = {
    ErrorCode.invalid_image: (status.HTTP_400_BAD_REQUEST, "Failed to decode image."),
    ErrorCode.unsupported_media_type: (
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
        "Unsupported media type.",
    ),
    ErrorCode.too_large: (status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Payload exceeds size limit."),
    ErrorCode.inference_failed: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Classification failed."),
    ErrorCode.timeout: (status.HTTP_504_GATEWAY_TIMEOUT, "Model busy, request timed out."),
    ErrorCode.internal_error: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error."),
    ErrorCode.unauthorized: (status.HTTP_401_UNAUTHORIZED, "Missing or invalid API key."),
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message, "request_id": self.request_id}


class AppError(Exception):
    """Raised inside request handlers; rendered as an ``ErrorResponse`` body."""

    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def status_for(code: ErrorCode) -> int:
    """HTTP status for ``code``: 4xx blames the caller's input, 5xx the server."""
    return _CODE_TABLE.get(code, (status.HTTP_500_INTERNAL_SERVER_ERROR, ""))[0]


def _default_message(code: ErrorCode) -> str:
    return _CODE_TABLE.get(code, (0, "Internal server error."))[1]


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message or _default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    return AppError(code, status_for(code), message or _default_message(code))
