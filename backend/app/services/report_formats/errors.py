from __future__ import annotations

"""backend/app/services/report_formats/errors.py

Result codes and exceptions for report format operations.

Each public operation has its own IntEnum of results. The integer values
are the legacy numeric codes that API clients and scripts already rely on,
so they must never be renumbered. Failures are raised as
ReportFormatError carrying the enum member; the HTTP layer maps the
error's ErrorKind onto a status code.
"""

import enum
from typing import Dict


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    PERMISSION_DENIED = "permission-denied"
    VALIDATION_FAILED = "validation-failed"
    INTEGRITY_CONFLICT = "integrity-conflict"
    IO_FAILURE = "io-failure"
    TOOL_FAILURE = "tool-failure"
    INTERNAL = "internal-error"


class CreateResult(enum.IntEnum):
    OK = 0
    EXISTS = 1
    EMPTY_FILENAME = 2
    PARAM_VALUE_INVALID = 3
    PARAM_DEFAULT_INVALID = 4
    PARAM_DEFAULT_MISSING = 5
    BOUNDS_INVALID = 6
    TYPE_MISSING = 7
    DUPLICATE_PARAM_NAME = 8
    UNKNOWN_PARAM_TYPE = 9
    PERMISSION_DENIED = 99
    ERROR = -1


class CopyResult(enum.IntEnum):
    OK = 0
    EXISTS = 1
    SOURCE_NOT_FOUND = 2
    PERMISSION_DENIED = 99
    ERROR = -1


class ModifyResult(enum.IntEnum):
    OK = 0
    NOT_FOUND = 1
    ID_REQUIRED = 2
    PARAM_NOT_FOUND = 3
    PARAM_VALUE_INVALID = 4
    BAD_PREDEFINED_FLAG = 5
    PERMISSION_DENIED = 99
    ERROR = -1


class DeleteResult(enum.IntEnum):
    OK = 0
    IN_USE = 1
    NOT_FOUND = 2
    PREDEFINED = 3
    PERMISSION_DENIED = 99
    ERROR = -1


class RestoreResult(enum.IntEnum):
    OK = 0
    IN_USE = 1
    NOT_FOUND = 2
    NAME_EXISTS = 3
    UUID_EXISTS = 4
    ERROR = -1


class VerifyResult(enum.IntEnum):
    OK = 0
    NOT_FOUND = 1
    PERMISSION_DENIED = 99
    ERROR = -1


# Keyed by result class first: IntEnum members of different classes that
# share a value compare equal.
_KINDS: Dict[type, Dict[enum.IntEnum, ErrorKind]] = {
    CreateResult: {
        CreateResult.EXISTS: ErrorKind.ALREADY_EXISTS,
        CreateResult.EMPTY_FILENAME: ErrorKind.VALIDATION_FAILED,
        CreateResult.PARAM_VALUE_INVALID: ErrorKind.VALIDATION_FAILED,
        CreateResult.PARAM_DEFAULT_INVALID: ErrorKind.VALIDATION_FAILED,
        CreateResult.PARAM_DEFAULT_MISSING: ErrorKind.VALIDATION_FAILED,
        CreateResult.BOUNDS_INVALID: ErrorKind.VALIDATION_FAILED,
        CreateResult.TYPE_MISSING: ErrorKind.VALIDATION_FAILED,
        CreateResult.DUPLICATE_PARAM_NAME: ErrorKind.INTEGRITY_CONFLICT,
        CreateResult.UNKNOWN_PARAM_TYPE: ErrorKind.VALIDATION_FAILED,
        CreateResult.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    },
    CopyResult: {
        CopyResult.EXISTS: ErrorKind.ALREADY_EXISTS,
        CopyResult.SOURCE_NOT_FOUND: ErrorKind.NOT_FOUND,
        CopyResult.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    },
    ModifyResult: {
        ModifyResult.NOT_FOUND: ErrorKind.NOT_FOUND,
        ModifyResult.ID_REQUIRED: ErrorKind.VALIDATION_FAILED,
        ModifyResult.PARAM_NOT_FOUND: ErrorKind.NOT_FOUND,
        ModifyResult.PARAM_VALUE_INVALID: ErrorKind.VALIDATION_FAILED,
        ModifyResult.BAD_PREDEFINED_FLAG: ErrorKind.VALIDATION_FAILED,
        ModifyResult.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    },
    DeleteResult: {
        DeleteResult.IN_USE: ErrorKind.INTEGRITY_CONFLICT,
        DeleteResult.NOT_FOUND: ErrorKind.NOT_FOUND,
        DeleteResult.PREDEFINED: ErrorKind.PERMISSION_DENIED,
        DeleteResult.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    },
    RestoreResult: {
        RestoreResult.IN_USE: ErrorKind.INTEGRITY_CONFLICT,
        RestoreResult.NOT_FOUND: ErrorKind.NOT_FOUND,
        RestoreResult.NAME_EXISTS: ErrorKind.INTEGRITY_CONFLICT,
        RestoreResult.UUID_EXISTS: ErrorKind.INTEGRITY_CONFLICT,
    },
    VerifyResult: {
        VerifyResult.NOT_FOUND: ErrorKind.NOT_FOUND,
        VerifyResult.PERMISSION_DENIED: ErrorKind.PERMISSION_DENIED,
    },
}


def kind_of(result: enum.IntEnum) -> ErrorKind:
    """Error kind of a result code; ERROR and unlisted codes are internal."""
    return _KINDS.get(type(result), {}).get(result, ErrorKind.INTERNAL)


class ReportFormatError(Exception):
    """A report format operation failed with a specific result code."""

    def __init__(
        self,
        result: enum.IntEnum,
        message: str | None = None,
        *,
        kind: ErrorKind | None = None,
    ) -> None:
        self.result = result
        self.kind = kind or kind_of(result)
        super().__init__(message or f"{type(result).__name__}.{result.name}")

    @property
    def code(self) -> int:
        return int(self.result)


class AssetError(ReportFormatError):
    """A bundle directory could not be created, copied, moved or removed."""

    def __init__(self, result: enum.IntEnum, message: str) -> None:
        super().__init__(result, message, kind=ErrorKind.IO_FAILURE)


class SignatureToolError(ReportFormatError):
    """The signature verifier could not be spawned at all."""

    def __init__(self, message: str) -> None:
        super().__init__(VerifyResult.ERROR, message, kind=ErrorKind.TOOL_FAILURE)


class FeedSyncError(Exception):
    """A feed manifest is unreadable or misses a required field."""
