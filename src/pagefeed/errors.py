"""Error taxonomy shared by the pipeline and the HTTP layer.

Every failure that can reach a client is a ``PageFeedError`` carrying a
stable ``ErrorCode``. The HTTP layer maps codes to status codes; nothing
below it knows about HTTP.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    MISSING_PARAMETER = "MISSING_PARAMETER"
    INVALID_URL = "INVALID_URL"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    INVALID_FEED = "INVALID_FEED"
    GENERATION_FAILED = "GENERATION_FAILED"


class PageFeedError(Exception):
    """Base error. ``status`` is the upstream status code when one exists."""

    code: ErrorCode = ErrorCode.GENERATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = False,
        status: int | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.status = status
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "status": self.status,
            **self.context,
        }


class MissingParameterError(PageFeedError):
    code = ErrorCode.MISSING_PARAMETER


class InvalidUrlError(PageFeedError):
    code = ErrorCode.INVALID_URL


class ExtractionError(PageFeedError):
    """The reader service was unreachable, timed out, or returned non-2xx."""

    code = ErrorCode.EXTRACTION_FAILED


class FeedValidationError(PageFeedError):
    """Model output lacks the minimal RSS structure."""

    code = ErrorCode.INVALID_FEED


class GenerationError(PageFeedError):
    """Every model candidate failed, or one failed in a non-retryable way."""

    code = ErrorCode.GENERATION_FAILED
