from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for personalization engine exceptions.

    Each exception class defines a stable error_code so callers can map
    failures without string matching:
    - dimension_mismatch
    - empty_input
    - malformed_binary
    - invalid_weights

    All of them are caller errors. The engine does no I/O, so nothing here
    is worth retrying.
    """

    error_code: str = "engine_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class DimensionMismatchError(EngineError):
    """Vectors or adapters with inconsistent shapes."""
    error_code = "dimension_mismatch"


class EmptyInputError(EngineError):
    """An operation that needs at least one input received none."""
    error_code = "empty_input"


class MalformedBinaryError(EngineError):
    """Serialized adapter bytes are truncated or corrupt."""
    error_code = "malformed_binary"


class InvalidWeightsError(EngineError):
    """Merge weights cannot be normalized."""
    error_code = "invalid_weights"


__all__ = [
    "EngineError",
    "DimensionMismatchError",
    "EmptyInputError",
    "MalformedBinaryError",
    "InvalidWeightsError",
]
