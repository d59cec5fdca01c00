"""Error taxonomy shared by the pipeline and the HTTP layer.

Every error carries the HTTP status the control surface answers with, so
routes can simply raise and let the app-level handler render
``{"ok": false, "error": message}``.
"""

from dataclasses import dataclass
from typing import Optional


class StreamError(Exception):
    status = 500

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        """Store the message and override the class status when given."""
        super().__init__(message)
        self.message = str(message)
        if status is not None:
            self.status = int(status)


class ValidationError(StreamError):
    """Malformed or out-of-range client input."""

    status = 400


class PreconditionError(StreamError):
    """Operation is not possible in the current pipeline state."""

    status = 400


class ConflictError(StreamError):
    """An overlapping operation is already in flight."""

    status = 429


class NotFoundError(StreamError):
    status = 404


class UpstreamError(StreamError):
    """Destination credential fetch or remote notification failed."""

    status = 500


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a step whose failure is tolerated and only logged."""

    ok: bool
    warning: Optional[str] = None

    @classmethod
    def success(cls) -> "BestEffort":
        return cls(True)

    @classmethod
    def failed(cls, warning: str) -> "BestEffort":
        return cls(False, str(warning))
