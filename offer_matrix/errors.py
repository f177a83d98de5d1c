"""Error taxonomy for the offer matrix.

Nothing raised here is fatal to the process: the worst case is a stale or
partially-edited view. User-facing actions (edit, delete, share) surface
these through the engine notifier; background refreshes only log them.
"""

from __future__ import annotations


class MatrixError(Exception):
    """Base class for all offer matrix errors."""

    code = "MATRIX_ERROR"
    retryable = False


class ValidationError(MatrixError):
    """Bad user input. Never leaves the client."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class IdentityResolutionError(MatrixError):
    """No backend row id could be found for a column yet."""

    code = "IDENTITY_UNRESOLVED"
    retryable = True

    def __init__(self, identity: str) -> None:
        super().__init__(
            f"Could not resolve record id for {identity!r} yet. Try again in a moment."
        )
        self.identity = identity


class PersistenceError(MatrixError):
    """Remote write failed. Optimistic state is kept."""

    code = "PERSISTENCE_ERROR"
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecodeError(MatrixError):
    """Malformed preference token."""

    code = "DECODE_ERROR"


class PartialBatchError(MatrixError):
    """Some documents in a batch failed upstream extraction.

    Built from error columns for display; the column builder never raises it.
    """

    code = "PARTIAL_BATCH"

    def __init__(self, failures: dict[str, str]) -> None:
        names = ", ".join(sorted(failures))
        super().__init__(f"{len(failures)} document(s) failed processing: {names}")
        self.failures = dict(failures)


class UnknownColumnError(MatrixError):
    """No column with this identity in the matrix."""

    code = "UNKNOWN_COLUMN"

    def __init__(self, identity: str) -> None:
        super().__init__(f"No column {identity!r} in the matrix")
        self.identity = identity
