"""Exception taxonomy for the ledger.

    LedgerError
        ConfigError        sync root / db path missing or invalid
        ValidationError    bad write input, rejected before any mutation
        ParseError         malformed note file (collected by the synchronizer)
        NotFoundError      unknown note / revision / proposal on a write
        ConflictError      stale proposal base, proposal not pending
        StorageError       sqlite failure inside a write transaction
            MigrationError schema migration pass failed
"""

from __future__ import annotations

from pathlib import Path


class LedgerError(Exception):
    """Base class for every error raised by labledger."""


class ConfigError(LedgerError):
    """A required configuration value is absent or points nowhere."""


class ValidationError(LedgerError):
    """Write input failed validation. Nothing was written."""


class ParseError(LedgerError):
    """A note file could not be parsed into frontmatter + body."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.path = str(path) if path is not None else None


class NotFoundError(LedgerError):
    pass


class ConflictError(LedgerError):
    pass


class StorageError(LedgerError):
    """The storage engine failed; the enclosing transaction was rolled back."""


class MigrationError(StorageError):
    """Schema migration failed. The ledger must not serve requests."""
