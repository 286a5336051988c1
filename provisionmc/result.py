"""Tagged results returned across install phase boundaries, and the error taxonomy
used to classify failures.

Functions of a single phase raise `InstallError` subclasses, the top-level operation
of each component catches them and returns `Ok` or `Err` so that the caller never
has to guess from loosely typed flags.
"""

from typing import Optional, Any, Union, Generic, TypeVar


T = TypeVar("T")


class ErrorKind:
    """Namespace of the error kinds, each kind implies a recovery policy.
    """

    TRANSIENT_NETWORK = "transient_network"      # Retried with backoff, then surfaced.
    TRANSIENT_RESOURCE = "transient_resource"    # Retried once after a cooldown.
    CORRUPTION = "corruption"                    # One retry, then fatal for the artifact.
    NOT_FOUND = "not_found"                      # Fatal, no retry.
    HTTP_STATUS = "http_status"                  # Non-transient HTTP status, fatal.
    PARTIAL_CAPABILITY = "partial_capability"    # Degrades to the base version.
    FATAL_STRUCTURAL = "fatal_structural"        # Aborts immediately.
    INVALID_METADATA = "invalid_metadata"        # Upstream or local metadata is malformed.
    INSTALLER_FAILED = "installer_failed"        # External installer returned an error.
    NOT_SYNCHRONIZED = "not_synchronized"        # Verification of the installation failed.


class InstallError(Exception):
    """Base class for every classified error raised while installing, the kind is one
    of the `ErrorKind` constants.
    """

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(kind, message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}" if self.message else self.kind


class FetchError(InstallError):
    """Raised when a remote resource could not be fetched, the HTTP status is zero if
    no response was received at all.
    """

    def __init__(self, kind: str, url: str, status: int = 0, message: str = "") -> None:
        super().__init__(kind, message or f"failed to fetch {url} (status {status})")
        self.url = url
        self.status = status


class Ok(Generic[T]):
    """Successful result of an operation, holding its value.
    """

    __slots__ = "value",
    ok = True

    def __init__(self, value: T) -> None:
        self.value = value

    def unwrap(self) -> T:
        return self.value

    def __eq__(self, other) -> bool:
        return isinstance(other, Ok) and self.value == other.value

    def __repr__(self) -> str:
        return f"<Ok {self.value!r}>"


class Err:
    """Failed result of an operation, its kind is one of the `ErrorKind` constants and
    the message is human readable. The original error is kept when available.
    """

    __slots__ = "kind", "message", "error"
    ok = False

    def __init__(self, kind: str, message: str, error: Optional[BaseException] = None) -> None:
        self.kind = kind
        self.message = message
        self.error = error

    @classmethod
    def from_error(cls, error: InstallError) -> "Err":
        return cls(error.kind, error.message or str(error), error)

    def unwrap(self) -> Any:
        """Raise the error of this result.
        """
        if isinstance(self.error, InstallError):
            raise self.error
        raise InstallError(self.kind, self.message)

    def __eq__(self, other) -> bool:
        return isinstance(other, Err) and (self.kind, self.message) == (other.kind, other.message)

    def __repr__(self) -> str:
        return f"<Err {self.kind}: {self.message}>"


Result = Union[Ok, Err]
