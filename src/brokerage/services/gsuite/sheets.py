"""Async Google Sheets API client addressed by row index and header name.

All Google API calls are wrapped in asyncio.to_thread() to avoid
blocking the event loop, and pass through SheetsRateLimiter so bursts
from the sync queue stay inside the project quota.

Rows are exchanged as {header: value} dicts. Row indexes are absolute and
1-based, with the header row at index 1, matching A1 notation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from src.brokerage.services.gsuite.auth import GSuiteAuthManager
from src.brokerage.services.gsuite.rate_limit import SheetsRateLimiter
from src.brokerage.sync.column_mapping import column_letter
from src.brokerage.sync.errors import ColumnMappingError, SheetsAuthenticationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SheetRow = dict[str, Any]


class GoogleSheetsClient:
    """One worksheet inside one spreadsheet.

    Args:
        auth_manager: GSuiteAuthManager providing the Sheets service.
        spreadsheet_id: Spreadsheet ID from the sheet URL.
        sheet_name: Worksheet (tab) title.
        rate_limiter: Optional shared limiter; one per spreadsheet quota.
    """

    def __init__(
        self,
        auth_manager: GSuiteAuthManager,
        spreadsheet_id: str,
        sheet_name: str,
        rate_limiter: SheetsRateLimiter | None = None,
    ) -> None:
        if not spreadsheet_id:
            raise ValueError("spreadsheet_id is required")
        self._auth = auth_manager
        self._spreadsheet_id = spreadsheet_id
        self._sheet_name = sheet_name
        self._rate_limiter = rate_limiter
        self._service: Any = None
        self._header_cache: list[str] | None = None

    @property
    def sheet_name(self) -> str:
        return self._sheet_name

    # ── Authentication ──────────────────────────────────────────────────

    async def authenticate(self) -> None:
        """Build the Sheets service. Must complete before any read or write.

        Raises:
            SheetsAuthenticationError: If credentials cannot be loaded.
        """
        try:
            self._service = await asyncio.to_thread(self._auth.get_sheets_service)
        except Exception as exc:
            logger.error(
                "sheets.authentication_failed",
                spreadsheet_id=self._spreadsheet_id,
                error=str(exc),
            )
            raise SheetsAuthenticationError(
                f"Google Sheets authentication failed: {exc}"
            ) from exc

        logger.info(
            "sheets.authenticated",
            spreadsheet_id=self._spreadsheet_id,
            sheet_name=self._sheet_name,
        )

    def _values(self) -> Any:
        if self._service is None:
            raise SheetsAuthenticationError(
                "GoogleSheetsClient is not authenticated; call authenticate() first"
            )
        return self._service.spreadsheets().values()

    def _range(self, a1: str) -> str:
        escaped = self._sheet_name.replace("'", "''")
        return f"'{escaped}'!{a1}"

    async def _call(self, fn: Callable[[], T]) -> T:
        async def _run() -> T:
            return await asyncio.to_thread(fn)

        if self._rate_limiter is None:
            return await _run()
        return await self._rate_limiter.execute(_run)

    # ── Headers ─────────────────────────────────────────────────────────

    async def get_headers(self) -> list[str]:
        """Header row (row 1), cached until clear_header_cache()."""
        if self._header_cache is not None:
            return self._header_cache

        values = self._values()

        def _get() -> dict:
            return values.get(
                spreadsheetId=self._spreadsheet_id,
                range=self._range("1:1"),
            ).execute()

        response = await self._call(_get)
        rows = response.get("values", [])
        self._header_cache = [str(h) for h in rows[0]] if rows else []
        return self._header_cache

    def clear_header_cache(self) -> None:
        """Forget the cached header row (after staff add or move columns)."""
        self._header_cache = None

    async def _row_to_dict(self, row: list[Any]) -> SheetRow:
        headers = await self.get_headers()
        result: SheetRow = {}
        for index, header in enumerate(headers):
            value = row[index] if index < len(row) else None
            result[header] = value if value not in (None, "") else None
        return result

    async def _dict_to_row(self, values: SheetRow) -> list[Any]:
        headers = await self.get_headers()
        return [values.get(header) if values.get(header) is not None else "" for header in headers]

    # ── Reads ───────────────────────────────────────────────────────────

    async def read_all(self) -> list[SheetRow]:
        """All data rows (row 2 onward), one dict per row keyed by header."""
        values = self._values()

        def _get() -> dict:
            return values.get(
                spreadsheetId=self._spreadsheet_id,
                range=self._range("A2:ZZZ"),
            ).execute()

        response = await self._call(_get)
        return [await self._row_to_dict(row) for row in response.get("values", [])]

    async def read_row(self, row_index: int) -> SheetRow | None:
        """One absolute row as a header-keyed dict, None when empty."""
        values = self._values()

        def _get() -> dict:
            return values.get(
                spreadsheetId=self._spreadsheet_id,
                range=self._range(f"{row_index}:{row_index}"),
            ).execute()

        response = await self._call(_get)
        rows = response.get("values", [])
        if not rows:
            return None
        return await self._row_to_dict(rows[0])

    async def find_row_by_column(self, header: str, value: Any) -> int | None:
        """Absolute row index of the first row whose cell under header equals value.

        Raises:
            ColumnMappingError: If the header is not present on the sheet.
        """
        headers = await self.get_headers()
        if header not in headers:
            raise ColumnMappingError(
                f"Column '{header}' not found in sheet '{self._sheet_name}'"
            )

        letter = column_letter(headers.index(header))
        values = self._values()

        def _get() -> dict:
            return values.get(
                spreadsheetId=self._spreadsheet_id,
                range=self._range(f"{letter}2:{letter}"),
            ).execute()

        response = await self._call(_get)
        target = str(value).strip()
        for offset, cells in enumerate(response.get("values", [])):
            if cells and str(cells[0]).strip() == target:
                # +1 for the header row, +1 for 0-based -> 1-based
                return offset + 2
        return None

    # ── Writes ──────────────────────────────────────────────────────────

    async def append_row(self, row: SheetRow) -> None:
        """Append a row after the last non-empty row."""
        ordered = await self._dict_to_row(row)
        values = self._values()

        def _append() -> dict:
            return values.append(
                spreadsheetId=self._spreadsheet_id,
                range=self._range("A:A"),
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [ordered]},
            ).execute()

        await self._call(_append)
        logger.debug("sheets.row_appended", sheet_name=self._sheet_name)

    async def update_row(self, row_index: int, row: SheetRow) -> None:
        """Overwrite an absolute row with header-ordered values."""
        ordered = await self._dict_to_row(row)
        last = column_letter(max(len(ordered), 1) - 1)
        values = self._values()

        def _update() -> dict:
            return values.update(
                spreadsheetId=self._spreadsheet_id,
                range=self._range(f"A{row_index}:{last}{row_index}"),
                valueInputOption="RAW",
                body={"values": [ordered]},
            ).execute()

        await self._call(_update)
        logger.debug("sheets.row_updated", sheet_name=self._sheet_name, row=row_index)

    async def _cell_ranges(self, row_index: int, cells: SheetRow) -> list[dict[str, Any]]:
        headers = await self.get_headers()
        data: list[dict[str, Any]] = []
        for header, value in cells.items():
            if header not in headers:
                raise ColumnMappingError(
                    f"Column '{header}' not found in sheet '{self._sheet_name}'"
                )
            letter = column_letter(headers.index(header))
            data.append({
                "range": self._range(f"{letter}{row_index}"),
                "values": [["" if value is None else value]],
            })
        return data

    async def _batch_write(self, data: list[dict[str, Any]]) -> None:
        values = self._values()

        def _batch() -> dict:
            return values.batchUpdate(
                spreadsheetId=self._spreadsheet_id,
                body={"valueInputOption": "RAW", "data": data},
            ).execute()

        await self._call(_batch)

    async def update_cells(self, row_index: int, cells: SheetRow) -> None:
        """Overwrite only the given headers' cells on one row.

        Columns not named in cells are left untouched, so concurrent staff
        edits to other columns of the same row survive.

        Raises:
            ColumnMappingError: If a header is not present on the sheet.
        """
        if not cells:
            return

        data = await self._cell_ranges(row_index, cells)
        await self._batch_write(data)
        logger.debug(
            "sheets.cells_updated",
            sheet_name=self._sheet_name,
            row=row_index,
            columns=len(data),
        )

    async def batch_update(self, updates: list[tuple[int, SheetRow]]) -> None:
        """update_cells() for several rows in one API request."""
        data: list[dict[str, Any]] = []
        for row_index, cells in updates:
            data.extend(await self._cell_ranges(row_index, cells))
        if not data:
            return

        await self._batch_write(data)
        logger.debug(
            "sheets.batch_updated",
            sheet_name=self._sheet_name,
            rows=len(updates),
            cells=len(data),
        )
