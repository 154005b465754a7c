"""Error taxonomy for cursor-history.

Every error the core propagates derives from CursorHistoryError and carries
a kind plus the process exit code the CLI should use for it. The messages are
plain context ("what, where"); presentation is left to the caller.
"""

from enum import Enum, IntEnum
from pathlib import Path


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERAL_ERROR = 1
    USAGE_ERROR = 2
    NOT_FOUND = 3
    IO_ERROR = 4


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    LOCKED = "locked"
    CORRUPTED = "corrupted"
    INVALID_INPUT = "invalid_input"
    GENERAL = "general"


class CursorHistoryError(Exception):
    """Base class for all errors raised by cursor-history."""

    kind = ErrorKind.GENERAL
    exit_code = ExitCode.GENERAL_ERROR


class NotFoundError(CursorHistoryError):
    """No data, or an unknown session/workspace/identifier."""

    kind = ErrorKind.NOT_FOUND
    exit_code = ExitCode.NOT_FOUND

    def __init__(self, message: str, *, identifier: str | None = None, path: Path | str | None = None):
        super().__init__(message)
        self.identifier = identifier
        self.path = path


class SessionNotFoundError(NotFoundError):
    """A session reference could not be resolved against the current listing."""

    def __init__(self, identifier: str, session_count: int):
        if session_count > 0:
            hint = f"Valid range: 1-{session_count}"
        else:
            hint = "No sessions found"
        super().__init__(f"Session {identifier} not found. {hint}", identifier=identifier)
        self.session_count = session_count


class AlreadyExistsError(CursorHistoryError):
    """Destination is present and overwriting was not requested."""

    kind = ErrorKind.ALREADY_EXISTS
    exit_code = ExitCode.IO_ERROR

    def __init__(self, path: Path | str):
        super().__init__(f"File already exists: {path} (use --force to overwrite)")
        self.path = path


class InsufficientResourcesError(CursorHistoryError):
    """Not enough free disk space for the requested operation."""

    kind = ErrorKind.INSUFFICIENT_RESOURCES
    exit_code = ExitCode.IO_ERROR

    def __init__(self, path: Path | str, required_bytes: int, available_bytes: int):
        super().__init__(
            f"Insufficient disk space at {path}: "
            f"need {required_bytes} bytes, {available_bytes} available"
        )
        self.path = path
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class LockedError(CursorHistoryError):
    """The underlying store is held by an active writer."""

    kind = ErrorKind.LOCKED
    exit_code = ExitCode.IO_ERROR

    def __init__(self, path: Path | str):
        super().__init__(f"Database is locked: {path} (close Cursor and retry)")
        self.path = path


class CorruptedError(CursorHistoryError):
    """Checksum or manifest mismatch inside a backup archive."""

    kind = ErrorKind.CORRUPTED
    exit_code = ExitCode.GENERAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        path: Path | str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ):
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.actual = actual


class InvalidInputError(CursorHistoryError):
    """Malformed identifier, query or configuration value."""

    kind = ErrorKind.INVALID_INPUT
    exit_code = ExitCode.USAGE_ERROR

    def __init__(self, message: str, *, value: object = None):
        super().__init__(message)
        self.value = value


_EXIT_CODES = {
    cls.kind: cls.exit_code
    for cls in (
        NotFoundError,
        AlreadyExistsError,
        InsufficientResourcesError,
        LockedError,
        CorruptedError,
        InvalidInputError,
    )
}


def exit_code_for(kind: ErrorKind | None) -> ExitCode:
    """Map an error kind (as carried by result records) onto its exit code."""
    if kind is None:
        return ExitCode.GENERAL_ERROR
    return _EXIT_CODES.get(kind, ExitCode.GENERAL_ERROR)
