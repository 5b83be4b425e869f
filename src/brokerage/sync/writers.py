"""Write-back services from the database to the spreadsheet mirrors.

Rows are located by the entity's business key (buyer_number,
seller_number), which never changes after creation. Row positions are not
cached because staff insert, sort and delete rows freely.

Field updates only touch the cells of the changed, mapped fields. A missing
row is reported as WriteResult(row_not_found=True) and never creates a row;
full-record upserts (sync_to_spreadsheet) are the only path that appends.

Google API errors propagate from single-entity methods so RetryHandler can
classify them; batch methods catch them per entity.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from src.brokerage.sync.column_mapping import (
    ColumnMapper,
    buyer_column_mapper,
    seller_column_mapper,
)
from src.brokerage.sync.schemas import (
    BatchSyncResult,
    BatchWriteResult,
    SyncTaskType,
    WriteResult,
)

logger = structlog.get_logger(__name__)


class SpreadsheetClient(Protocol):
    """Operations the write services need from a sheet client."""

    async def get_headers(self) -> list[str]: ...

    def clear_header_cache(self) -> None: ...

    async def read_row(self, row_index: int) -> dict[str, Any] | None: ...

    async def find_row_by_column(self, header: str, value: Any) -> int | None: ...

    async def append_row(self, row: dict[str, Any]) -> None: ...

    async def update_cells(self, row_index: int, cells: dict[str, Any]) -> None: ...

    async def batch_update(self, updates: list[tuple[int, dict[str, Any]]]) -> None: ...


class SheetWriteService:
    """Field-level and record-level writes for one sheet.

    Args:
        sheets_client: Authenticated client for the target worksheet.
        column_mapper: Mapper whose key_field identifies rows.
    """

    def __init__(self, sheets_client: SpreadsheetClient, column_mapper: ColumnMapper) -> None:
        self._client = sheets_client
        self._mapper = column_mapper

    @property
    def column_mapper(self) -> ColumnMapper:
        return self._mapper

    def clear_header_cache(self) -> None:
        self._client.clear_header_cache()

    # ── Lookups ─────────────────────────────────────────────────────────

    async def find_row(self, entity_key: str) -> int | None:
        """Absolute row index holding the business key, None if absent."""
        return await self._client.find_row_by_column(self._mapper.key_column, entity_key)

    async def get_row_data(self, entity_key: str) -> dict[str, Any] | None:
        """Current sheet row as {header: value}, None if the key is absent."""
        row_index = await self.find_row(entity_key)
        if row_index is None:
            return None
        return await self._client.read_row(row_index)

    async def get_current_value(self, entity_key: str, field_name: str) -> Any | None:
        """Current sheet cell for one field, None if row or mapping is absent."""
        header = self._mapper.sheet_column_for(field_name)
        if header is None:
            return None
        row = await self.get_row_data(entity_key)
        if row is None:
            return None
        return row.get(header)

    # ── Field Writes ────────────────────────────────────────────────────

    async def update_fields(
        self,
        entity_key: str,
        changed_fields: dict[str, Any],
    ) -> WriteResult:
        """Write the changed, mapped fields into the entity's existing row.

        Unmapped fields are ignored. Columns outside changed_fields keep
        whatever staff typed into them.
        """
        cells = self._mapper.to_sheet(changed_fields)
        row_index = await self.find_row(entity_key)
        if row_index is None:
            logger.warning(
                "sheet_write.row_not_found",
                sheet_key=self._mapper.key_field,
                entity_key=entity_key,
            )
            return WriteResult(
                success=False,
                row_not_found=True,
                error=f"{entity_key} not found in spreadsheet",
                operation=SyncTaskType.UPDATE,
            )

        await self._client.update_cells(row_index, cells)
        logger.info(
            "sheet_write.fields_updated",
            entity_key=entity_key,
            row=row_index,
            fields=sorted(self._mapper.from_sheet(cells)),
        )
        return WriteResult(success=True, row_number=row_index, operation=SyncTaskType.UPDATE)

    async def update_field(self, entity_key: str, field_name: str, value: Any) -> WriteResult:
        """Write a single field."""
        if self._mapper.sheet_column_for(field_name) is None:
            return WriteResult(
                success=False,
                error=f"Column mapping not found for field: {field_name}",
                operation=SyncTaskType.UPDATE,
            )
        return await self.update_fields(entity_key, {field_name: value})

    async def batch_update_fields(
        self,
        updates: dict[str, dict[str, Any]],
    ) -> BatchWriteResult:
        """update_fields() for several entities; one failure does not stop the rest."""
        results: list[WriteResult] = []
        for entity_key, fields in updates.items():
            try:
                result = await self.update_fields(entity_key, fields)
            except Exception as exc:
                logger.error("sheet_write.batch_item_failed", entity_key=entity_key, error=str(exc))
                result = WriteResult(success=False, error=str(exc), operation=SyncTaskType.UPDATE)
            results.append(result)

        total_updated = sum(1 for r in results if r.success)
        total_failed = len(results) - total_updated
        return BatchWriteResult(
            success=total_failed == 0,
            results=results,
            total_updated=total_updated,
            total_failed=total_failed,
        )

    # ── Record Writes ───────────────────────────────────────────────────

    async def append_record(self, record: dict[str, Any]) -> WriteResult:
        """Append a new row holding every mapped field of record."""
        await self._client.append_row(self._mapper.to_sheet(record))
        logger.info(
            "sheet_write.row_appended",
            entity_key=record.get(self._mapper.key_field),
        )
        return WriteResult(success=True, operation=SyncTaskType.CREATE)

    async def sync_to_spreadsheet(self, record: dict[str, Any]) -> WriteResult:
        """Upsert a full record: overwrite its mapped cells, or append a row.

        Safe to repeat, so a create delivered twice still leaves one row.
        """
        entity_key = record.get(self._mapper.key_field)
        if not entity_key:
            return WriteResult(
                success=False,
                error=f"Record has no {self._mapper.key_field}",
                operation=SyncTaskType.CREATE,
            )

        row_index = await self.find_row(str(entity_key))
        if row_index is None:
            return await self.append_record(record)

        await self._client.update_cells(row_index, self._mapper.to_sheet(record))
        logger.info("sheet_write.row_synced", entity_key=entity_key, row=row_index)
        return WriteResult(success=True, row_number=row_index, operation=SyncTaskType.UPDATE)

    async def sync_batch(self, records: list[dict[str, Any]]) -> BatchSyncResult:
        """Upsert several records: one batch request for existing rows, appends for new."""
        errors: list[dict[str, str]] = []
        updates: list[tuple[int, dict[str, Any]]] = []
        new_rows: list[dict[str, Any]] = []

        for record in records:
            entity_key = str(record.get(self._mapper.key_field) or "")
            try:
                row_index = await self.find_row(entity_key)
            except Exception as exc:
                errors.append({"entity_key": entity_key, "error": str(exc)})
                continue
            if row_index is None:
                new_rows.append(record)
            else:
                updates.append((row_index, self._mapper.to_sheet(record)))

        try:
            if updates:
                await self._client.batch_update(updates)
            for record in new_rows:
                await self.append_record(record)
        except Exception as exc:
            logger.error("sheet_write.batch_failed", error=str(exc))
            return BatchSyncResult(
                success=False,
                total_rows=len(records),
                success_count=0,
                failure_count=len(records),
                errors=[*errors, {"entity_key": "batch", "error": str(exc)}],
            )

        success_count = len(records) - len(errors)
        return BatchSyncResult(
            success=not errors,
            total_rows=len(records),
            success_count=success_count,
            failure_count=len(errors),
            errors=errors,
        )


class BuyerWriteService(SheetWriteService):
    """Writes to the buyer sheet, rows located by buyer_number."""

    def __init__(
        self,
        sheets_client: SpreadsheetClient,
        column_mapper: ColumnMapper | None = None,
    ) -> None:
        super().__init__(sheets_client, column_mapper or buyer_column_mapper())


class SpreadsheetSyncService(SheetWriteService):
    """Writes to the seller sheet, rows located by seller_number."""

    def __init__(
        self,
        sheets_client: SpreadsheetClient,
        column_mapper: ColumnMapper | None = None,
    ) -> None:
        super().__init__(sheets_client, column_mapper or seller_column_mapper())
