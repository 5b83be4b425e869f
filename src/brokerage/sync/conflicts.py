"""Detection and resolution of concurrent edits between the DB and the sheet.

A conflict exists when the sheet's current value for a changed field
differs from the value the last successful sync recorded for it, meaning
a staff member edited the cell after that sync. Conflicts are returned as
data; an operator settles them with resolve_conflict() or by re-submitting
with force=True.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from src.brokerage.sync.column_mapping import normalize_cell
from src.brokerage.sync.schemas import (
    ConflictCheckResult,
    ConflictInfo,
    ConflictStrategy,
    SyncTaskType,
    WriteResult,
)
from src.brokerage.sync.writers import SheetWriteService

logger = structlog.get_logger(__name__)


class ConflictResolver:
    """Compares expected and actual sheet values for one sheet.

    Args:
        write_service: Writer for the sheet, used for reads and overwrites.
    """

    def __init__(self, write_service: SheetWriteService) -> None:
        self._writer = write_service
        self._mapper = write_service.column_mapper

    def values_equal(self, field_name: str, sheet_value: Any, expected: Any) -> bool:
        """Equality after rendering expected in sheet format and normalising both."""
        return normalize_cell(sheet_value) == normalize_cell(
            self._mapper.format_value(field_name, expected)
        )

    async def check_conflict(
        self,
        entity_key: str,
        changed_fields: dict[str, Any],
        expected_values: dict[str, Any],
        last_synced_at: datetime | None,
    ) -> ConflictCheckResult:
        """Check each changed, mapped field against the live sheet row.

        Args:
            entity_key: Business key locating the row.
            changed_fields: Field -> new local value.
            expected_values: Field -> value the sheet held at the last sync.
            last_synced_at: None means the entity was never synced; there is
                nothing to diverge from and the sheet is not read.

        Returns:
            ConflictCheckResult listing every diverged field. A row missing
            from the sheet is not a conflict.
        """
        if last_synced_at is None:
            return ConflictCheckResult()

        mapped = {
            field_name: value
            for field_name, value in changed_fields.items()
            if self._mapper.sheet_column_for(field_name) is not None
        }
        if not mapped:
            return ConflictCheckResult()

        row = await self._writer.get_row_data(entity_key)
        if row is None:
            logger.debug("conflict_check.row_absent", entity_key=entity_key)
            return ConflictCheckResult()

        conflicts: list[ConflictInfo] = []
        for field_name, new_value in mapped.items():
            header = self._mapper.sheet_column_for(field_name)
            actual = row.get(header)
            expected = expected_values.get(field_name)
            if not self.values_equal(field_name, actual, expected):
                conflicts.append(
                    ConflictInfo(
                        field_name=field_name,
                        expected_value=expected,
                        actual_spreadsheet_value=actual,
                        local_new_value=new_value,
                        last_synced_at=last_synced_at,
                    )
                )

        if conflicts:
            logger.info(
                "conflict_check.conflicts_found",
                entity_key=entity_key,
                fields=[c.field_name for c in conflicts],
            )

        return ConflictCheckResult(
            has_conflict=bool(conflicts),
            conflicts=conflicts,
            can_auto_resolve=not conflicts,
        )

    async def check_field_conflict(
        self,
        entity_key: str,
        field_name: str,
        expected_value: Any,
    ) -> bool:
        """True when the sheet's current cell differs from expected_value."""
        current = await self._writer.get_current_value(entity_key, field_name)
        return not self.values_equal(field_name, current, expected_value)

    async def force_overwrite(self, entity_key: str, values: dict[str, Any]) -> WriteResult:
        """Write values to the sheet without checking for conflicts."""
        try:
            return await self._writer.update_fields(entity_key, values)
        except Exception as exc:
            logger.error("conflict.force_overwrite_failed", entity_key=entity_key, error=str(exc))
            return WriteResult(success=False, error=str(exc), operation=SyncTaskType.UPDATE)

    async def resolve_conflict(
        self,
        entity_key: str,
        conflicts: list[ConflictInfo],
        strategy: ConflictStrategy,
        resolved_values: dict[str, Any] | None = None,
    ) -> WriteResult:
        """Settle conflicts with the operator's chosen strategy.

        db_wins writes each conflict's local value, spreadsheet_wins leaves
        the sheet as it is, manual writes resolved_values.
        """
        logger.info(
            "conflict.resolving",
            entity_key=entity_key,
            strategy=strategy.value,
            fields=[c.field_name for c in conflicts],
        )

        if strategy == ConflictStrategy.DB_WINS:
            return await self.force_overwrite(
                entity_key, {c.field_name: c.local_new_value for c in conflicts}
            )
        if strategy == ConflictStrategy.SPREADSHEET_WINS:
            return WriteResult(success=True, operation=SyncTaskType.UPDATE)
        return await self.force_overwrite(entity_key, resolved_values or {})

    @staticmethod
    def generate_conflict_report(conflicts: list[ConflictInfo]) -> str:
        """Human-readable summary for operators."""
        if not conflicts:
            return "No conflicts detected."

        lines = [f"{len(conflicts)} conflict(s) detected:", ""]
        for conflict in conflicts:
            lines.append(f"Field: {conflict.field_name}")
            lines.append(f"  Local Value: {conflict.local_new_value}")
            lines.append(f"  Spreadsheet Value: {conflict.actual_spreadsheet_value}")
            lines.append(f"  Expected Value: {conflict.expected_value}")
            if conflict.last_synced_at is not None:
                lines.append(f"  Last Synced: {conflict.last_synced_at.isoformat()}")
            lines.append("")
        return "\n".join(lines)
