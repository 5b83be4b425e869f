"""Exception hierarchy for the spreadsheet sync engine.

Conflicts are not exceptions -- they are returned as ConflictInfo data so
an operator can resolve them. Everything here describes a failed attempt
to talk to the spreadsheet or a failed lookup.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for spreadsheet sync failures."""


class TransientSyncError(SyncError):
    """A spreadsheet write reported failure; safe to retry with backoff."""


class NonRetryableSyncError(SyncError):
    """A failure that retrying cannot fix. RetryHandler gives up immediately."""


class RowNotFoundError(NonRetryableSyncError):
    """The entity's business key is not present on the sheet."""

    def __init__(self, entity_key: str, sheet_name: str | None = None) -> None:
        self.entity_key = entity_key
        self.sheet_name = sheet_name
        where = f" in sheet '{sheet_name}'" if sheet_name else ""
        super().__init__(f"Row for key '{entity_key}' not found{where}")


class ColumnMappingError(NonRetryableSyncError):
    """A field or header has no mapping, or the sheet lacks a mapped column."""


class SheetsAuthenticationError(SyncError):
    """Google credentials could not be resolved or the service not built."""


class EntityNotFoundError(LookupError):
    """No relational row exists for the given entity id."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")
