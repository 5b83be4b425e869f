"""Tests for ConflictResolver against an in-memory buyer sheet."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.brokerage.sync.conflicts import ConflictResolver
from src.brokerage.sync.schemas import ConflictInfo, ConflictStrategy
from src.brokerage.sync.writers import BuyerWriteService

from tests.fakes import BUYER_HEADERS, FakeSheetsClient

T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def sheet() -> FakeSheetsClient:
    return FakeSheetsClient(
        BUYER_HEADERS,
        rows=[
            {"買主番号": "6001", "価格": "100", "★最新状況": "検討中", "●メアド": ""},
            {"買主番号": "6002", "価格": "200", "★最新状況": "", "●メアド": ""},
        ],
    )


@pytest.fixture
def resolver(sheet) -> ConflictResolver:
    return ConflictResolver(BuyerWriteService(sheet))


# ── Conflict Checks ──────────────────────────────────────────────────────────


class TestCheckConflict:
    """Field-by-field comparison of expected and live sheet values."""

    async def test_never_synced_reports_no_conflict_without_reading(self, resolver, sheet):
        sheet.rows[0]["価格"] = "999"

        result = await resolver.check_conflict("6001", {"price": 120}, {"price": 100}, None)

        assert result.has_conflict is False
        assert result.conflicts == []
        assert sheet.calls == []

    async def test_only_diverged_field_is_reported(self, resolver, sheet):
        sheet.rows[0]["価格"] = "150"

        result = await resolver.check_conflict(
            "6001",
            {"price": 120, "latest_status": "内覧済"},
            {"price": 100, "latest_status": "検討中"},
            T0,
        )

        assert result.has_conflict is True
        assert result.can_auto_resolve is False
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.field_name == "price"
        assert conflict.expected_value == 100
        assert conflict.actual_spreadsheet_value == "150"
        assert conflict.local_new_value == 120
        assert conflict.last_synced_at == T0

    async def test_null_and_empty_string_are_equal(self, resolver):
        result = await resolver.check_conflict(
            "6001", {"email": "a@example.com"}, {"email": None}, T0
        )
        assert result.has_conflict is False

    async def test_numeric_string_matches_number(self, resolver):
        result = await resolver.check_conflict("6002", {"price": 250}, {"price": 200.0}, T0)
        assert result.has_conflict is False

    async def test_missing_row_is_not_a_conflict(self, resolver):
        result = await resolver.check_conflict("9999", {"price": 1}, {"price": 0}, T0)
        assert result.has_conflict is False

    async def test_unmapped_fields_skip_the_read(self, resolver, sheet):
        result = await resolver.check_conflict("6001", {"notes": "x"}, {"notes": "y"}, T0)

        assert result.has_conflict is False
        assert sheet.calls == []

    async def test_read_errors_propagate(self, resolver, sheet):
        sheet.fail_next("find_row_by_column")

        with pytest.raises(ConnectionError):
            await resolver.check_conflict("6001", {"price": 1}, {"price": 100}, T0)

    async def test_check_field_conflict(self, resolver):
        assert await resolver.check_field_conflict("6001", "price", 100) is False
        assert await resolver.check_field_conflict("6001", "price", 101) is True


# ── Resolution ───────────────────────────────────────────────────────────────


def _price_conflict() -> ConflictInfo:
    return ConflictInfo(
        field_name="price",
        expected_value=100,
        actual_spreadsheet_value="150",
        local_new_value=120,
        last_synced_at=T0,
    )


class TestResolveConflict:
    """Operator-chosen resolution strategies."""

    async def test_db_wins_writes_local_values(self, resolver, sheet):
        result = await resolver.resolve_conflict(
            "6001", [_price_conflict()], ConflictStrategy.DB_WINS
        )

        assert result.success is True
        assert sheet.rows[0]["価格"] == 120

    async def test_spreadsheet_wins_leaves_sheet_alone(self, resolver, sheet):
        result = await resolver.resolve_conflict(
            "6001", [_price_conflict()], ConflictStrategy.SPREADSHEET_WINS
        )

        assert result.success is True
        assert sheet.calls_to("update_cells") == []

    async def test_manual_writes_resolved_values(self, resolver, sheet):
        result = await resolver.resolve_conflict(
            "6001", [_price_conflict()], ConflictStrategy.MANUAL, {"price": 135}
        )

        assert result.success is True
        assert sheet.rows[0]["価格"] == 135

    async def test_force_overwrite_reports_errors(self, sheet):
        writer = BuyerWriteService(sheet)
        writer.update_fields = AsyncMock(side_effect=ConnectionError("quota"))
        resolver = ConflictResolver(writer)

        result = await resolver.force_overwrite("6001", {"price": 1})

        assert result.success is False
        assert "quota" in result.error


# ── Reporting ────────────────────────────────────────────────────────────────


class TestConflictReport:
    """Human-readable conflict summaries."""

    def test_empty_report(self):
        assert ConflictResolver.generate_conflict_report([]) == "No conflicts detected."

    def test_report_lists_each_field(self):
        report = ConflictResolver.generate_conflict_report([_price_conflict()])

        assert report.startswith("1 conflict(s) detected:")
        assert "Field: price" in report
        assert "Local Value: 120" in report
        assert "Spreadsheet Value: 150" in report
        assert "Expected Value: 100" in report
        assert f"Last Synced: {T0.isoformat()}" in report
