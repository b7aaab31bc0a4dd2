"""Error taxonomy and result types for labbook.

Error handling philosophy:
- Local-store failures raise (the user-facing write genuinely failed)
- Remote calls never raise for expected failures; they return ``Err``
- Write-through discards ``Err`` after logging it
- Explicit pull/push aggregates ``Err`` values and raises ``SyncFailedError``
- A missing mapping is not an error: it means "not yet synced"
- Without a backend, writes stay local and explicit syncs raise
  ``RemoteNotConfiguredError``
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Generic, TypeVar, Union

if TYPE_CHECKING:
    from labbook.types import SyncResult

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Why a remote attempt did not succeed."""

    NOT_AUTHENTICATED = "not_authenticated"  # No current user
    REMOTE_UNAVAILABLE = "remote_unavailable"  # Network/service failure
    MAPPING_MISS = "mapping_miss"  # Parent or record not yet synced
    VALIDATION_REJECTED = "validation_rejected"  # Remote refused the payload


class LabbookError(Exception):
    """Base class for labbook errors."""


class LocalStoreError(LabbookError):
    """The local SQLite store failed to read or write."""


class MappingUnavailableError(LabbookError):
    """The identifier mapping table could not be read or written.

    Callers treat this as "not yet synced", never as "absent remotely".
    """


class NotAuthenticatedError(LabbookError):
    """An operation that needs a signed-in user ran without one."""

    def __init__(self, message: str = "No user is signed in"):
        super().__init__(message)
        self.kind = ErrorKind.NOT_AUTHENTICATED


class RemoteNotConfiguredError(LabbookError):
    """An explicit sync ran in a workspace with no backend."""

    def __init__(self, message: str = "No backend configured"):
        super().__init__(message)


class RemoteError(LabbookError):
    """A remote-store failure promoted to an exception."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(f"{kind.value}: {message}" if message else kind.value)
        self.kind = kind
        self.message = message


class SyncFailedError(LabbookError):
    """An explicit pull or push finished with one or more remote failures."""

    def __init__(self, direction: str, result: "SyncResult"):
        preview = "; ".join(result.errors[:3])
        more = f" (+{len(result.errors) - 3} more)" if len(result.errors) > 3 else ""
        super().__init__(f"Sync {direction} failed: {preview}{more}")
        self.direction = direction
        self.result = result


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful remote outcome."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed remote outcome."""

    kind: ErrorKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise RemoteError(self.kind, self.message)

    def describe(self) -> str:
        return f"{self.kind.value}: {self.message}" if self.message else self.kind.value


Result = Union[Ok[T], Err]
