"""Error taxonomy for settings store migrations.

Every error carries the context (table, identifier, offset, ...) needed to
diagnose it without reading the source, and a distinct process exit code used
by the command-line shell. None of them are retried: each one reports a
structural precondition that a second attempt cannot fix.
"""

from __future__ import annotations

from typing import Any, Dict


class MigrationError(Exception):
    """Base class for every failure surfaced by the migration engine."""

    exit_code = 1

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }

    @property
    def kind(self) -> str:
        return type(self).__name__

    def with_context(self, **context: Any) -> "MigrationError":
        """Attach additional context without replacing what is already known."""

        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class SchemaMismatch(MigrationError):
    """The store does not match any known catalog version."""

    exit_code = 2


class DeviceNotFound(MigrationError):
    """The identifier owns no rows and is absent from the device table."""

    exit_code = 3


class PayloadFormatError(MigrationError):
    """A blob payload could not be framed, or a rewrite would change its layout."""

    exit_code = 4


class UnknownOccurrence(MigrationError):
    """A rewrite addressed an offset that scanning the payload did not produce."""

    exit_code = 5


class IdentifierWidthMismatch(MigrationError):
    """The target identifier does not fit the fixed-width slots of the source."""

    exit_code = 6


class StoreLocked(MigrationError):
    """Another process holds the store; close the vendor application first."""

    exit_code = 7


class BackupFailed(MigrationError):
    """The pre-write backup could not be created or verified."""

    exit_code = 8


class VerificationFailed(MigrationError):
    """The written graph does not match the plan; the transaction was rolled back."""

    exit_code = 9


class WriteFailed(MigrationError):
    """The database engine rejected a write or the commit; rolled back."""

    exit_code = 10


class SameDevice(MigrationError):
    """Source and target identify the same device."""

    exit_code = 11
