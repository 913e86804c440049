"""Custom exceptions for the kaption render engine.

Every error raised by the pipeline carries a machine-readable code so hosts
can map failures to user-facing messages without parsing text.

Cancellation is not part of this hierarchy: a cancelled render raises
``asyncio.CancelledError`` like any other cancelled coroutine.
"""

from typing import Any


class KaptionError(Exception):
    """Base exception for all kaption errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Input Errors (pre-encode, never retried)
# =============================================================================


class InvalidInputError(KaptionError):
    """Render inputs failed validation."""

    code = "INVALID_INPUT"
    message = "Invalid render input"


class AssetLoadError(KaptionError):
    """Source asset is missing, unreadable, or has no usable tracks."""

    code = "ASSET_LOAD_FAILED"
    message = "Failed to load asset"

    def __init__(self, message: str | None = None, *, source: str | None = None):
        details = {"source": source} if source else None
        super().__init__(message, details=details)
        self.source = source


class UnsupportedOrientationError(KaptionError):
    """Track transform is not one of the four canonical rotations."""

    code = "UNSUPPORTED_ORIENTATION"
    message = "Unsupported video orientation"

    def __init__(self, matrix: tuple[float, float, float, float] | None = None):
        message = f"Unsupported orientation matrix: {matrix}" if matrix else self.message
        details = {"matrix": list(matrix)} if matrix else None
        super().__init__(message, details=details)
        self.matrix = matrix


# =============================================================================
# Encode Errors
# =============================================================================


class CompositionError(KaptionError):
    """Encode backend refused to construct an encode session."""

    code = "COMPOSITION_FAILED"
    message = "Cannot create encode session"


class EncodeError(KaptionError):
    """Encode backend reported a terminal failure."""

    code = "ENCODE_FAILED"
    message = "Encoding failed"

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None):
        if message is None and cause is not None:
            message = f"Encoding failed: {cause}"
        super().__init__(message)
        self.cause = cause
