"""Error taxonomy and the result types commands hand back to callers.

Only ``StoreUnavailable`` is ever raised, and only below the repository
boundary. Everything above it reports failures through ``CommandResult`` and
``BatchResult`` so "record not found" stays an ordinary outcome.
"""

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"


class TrackerError(Exception):
    kind: ErrorKind | None = None


class StoreUnavailable(TrackerError):
    """Raised by a store when the backend or (de)serialization fails."""
    kind = ErrorKind.STORE_UNAVAILABLE


@dataclass
class BatchResult:
    saved: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    @property
    def ok(self):
        return not self.failed

    @property
    def error(self):
        if not self.failed:
            return None
        # Nothing saved at all is just an unavailable store, anything else is a torn batch.
        if not self.saved:
            return ErrorKind.STORE_UNAVAILABLE
        return ErrorKind.PARTIAL_BATCH_FAILURE

    def __bool__(self):
        return self.ok


@dataclass
class CommandResult:
    ok: bool
    error: ErrorKind | None = None
    changed: list = field(default_factory=list)
    record: object = None
    message: str = ""

    @classmethod
    def success(cls, changed, record=None):
        return cls(ok=True, changed=list(changed), record=record)

    @classmethod
    def failure(cls, error, message, changed=()):
        return cls(ok=False, error=error, changed=list(changed), message=message)

    def __bool__(self):
        return self.ok
