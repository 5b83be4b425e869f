"""Tests for database-first buyer updates mirrored to the buyer sheet.

Covers the synchronous path (update_with_sync), the queued path
(update/create + process_task) and their failure modes against an
in-memory sheet and repository.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src.brokerage.buyers.service import BuyerService
from src.brokerage.sync.errors import EntityNotFoundError
from src.brokerage.sync.queue import SyncQueue
from src.brokerage.sync.schemas import (
    EntityType,
    FailedChangeCreate,
    FailedChangeStatus,
    SyncStatus,
    SyncTask,
    SyncTaskType,
)
from src.brokerage.sync.writers import BuyerWriteService

from tests.fakes import BUYER_HEADERS, FakeSheetsClient

T0 = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


class OrderedSheet(FakeSheetsClient):
    """FakeSheetsClient that also logs writes into a shared call log."""

    def __init__(self, log: list, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.log = log

    async def update_cells(self, row_index, cells):
        self.log.append(("sheet.update_cells", dict(cells)))
        await super().update_cells(row_index, cells)


@pytest.fixture
def buyer_sheet(call_log) -> OrderedSheet:
    return OrderedSheet(call_log, BUYER_HEADERS, rows=[{"買主番号": "6001", "価格": "100"}])


@pytest.fixture
def service(buyer_repository, buyer_sheet, retry_handler) -> BuyerService:
    return BuyerService(buyer_repository, BuyerWriteService(buyer_sheet), retry_handler)


@pytest.fixture
def synced_buyer(buyer_repository) -> dict:
    """Buyer 6001 last synced at T0 with price 100 on both sides."""
    return buyer_repository.seed(
        buyer_number="6001",
        price=100,
        last_synced_at=T0,
        sync_status=SyncStatus.SYNCED.value,
        sheet_snapshot={"price": 100},
    )


# ── Synchronous Path: Scenarios ──────────────────────────────────────────────


class TestUpdateWithSync:
    """update_with_sync() outcomes."""

    async def test_first_sync_writes_without_conflict_check(
        self, service, buyer_repository, buyer_sheet
    ):
        buyer = buyer_repository.seed(buyer_number="6001", price=None)
        buyer_sheet.rows[0]["価格"] = "999"

        outcome = await service.update_with_sync(buyer["id"], {"price": 100})

        assert outcome.sync_result.success is True
        assert outcome.sync_result.sync_status == SyncStatus.SYNCED
        assert outcome.entity["last_synced_at"] is not None
        assert outcome.entity["sheet_snapshot"] == {"price": 100}
        assert buyer_sheet.rows[0]["価格"] == 100
        assert buyer_sheet.calls_to("read_row") == []

    async def test_external_edit_is_reported_as_conflict(
        self, service, synced_buyer, buyer_repository, buyer_sheet, call_log
    ):
        buyer_sheet.rows[0]["価格"] = "150"

        outcome = await service.update_with_sync(synced_buyer["id"], {"price": 120})

        result = outcome.sync_result
        assert result.success is False
        assert result.sync_status == SyncStatus.CONFLICT
        (conflict,) = result.conflict
        assert conflict.field_name == "price"
        assert conflict.expected_value == 100
        assert conflict.actual_spreadsheet_value == "150"
        assert conflict.local_new_value == 120

        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["price"] == 100
        assert stored["last_synced_at"] == T0
        assert buyer_sheet.rows[0]["価格"] == "150"
        assert buyer_sheet.calls_to("update_cells") == []
        assert call_log == []

    async def test_one_conflicting_field_blocks_every_field(
        self, service, synced_buyer, buyer_repository, buyer_sheet
    ):
        buyer_repository.raw(synced_buyer["id"])["sheet_snapshot"]["budget"] = 500
        buyer_sheet.rows[0]["予算"] = "500"
        buyer_sheet.rows[0]["価格"] = "150"

        outcome = await service.update_with_sync(
            synced_buyer["id"], {"price": 120, "budget": 600}
        )

        assert [c.field_name for c in outcome.sync_result.conflict] == ["price"]
        assert buyer_sheet.calls_to("update_cells") == []

    async def test_transient_failures_recover_within_budget(
        self, service, synced_buyer, buyer_sheet, failed_changes, sleep
    ):
        buyer_sheet.fail_next("update_cells", times=2)

        outcome = await service.update_with_sync(synced_buyer["id"], {"price": 120})

        assert outcome.sync_result.success is True
        assert outcome.sync_result.attempts == 3
        assert sleep.delays == [1, 2]
        assert failed_changes.rows == {}
        assert buyer_sheet.rows[0]["価格"] == 120

    async def test_missing_row_fails_without_retrying(
        self, service, buyer_repository, buyer_sheet, failed_changes, sleep
    ):
        buyer = buyer_repository.seed(buyer_number="7777", price=1)

        outcome = await service.update_with_sync(buyer["id"], {"price": 2})

        assert outcome.sync_result.success is False
        assert outcome.sync_result.sync_status == SyncStatus.FAILED
        assert outcome.sync_result.attempts == 1
        assert sleep.delays == []
        assert failed_changes.rows == {}
        assert buyer_sheet.calls_to("update_cells") == []
        stored = buyer_repository.raw(buyer["id"])
        assert stored["price"] == 2
        assert stored["sync_status"] == SyncStatus.FAILED.value

    async def test_exhausted_retries_queue_one_change(
        self, service, synced_buyer, buyer_repository, buyer_sheet, failed_changes, sleep
    ):
        buyer_sheet.fail_next("update_cells", times=10)

        outcome = await service.update_with_sync(synced_buyer["id"], {"price": 120})

        assert outcome.sync_result.success is False
        assert outcome.sync_result.sync_status == SyncStatus.PENDING
        assert outcome.sync_result.attempts == 5
        assert sleep.delays == [1, 2, 4, 8]
        assert len(buyer_sheet.calls_to("update_cells")) == 5

        (row,) = failed_changes.rows.values()
        assert row.entity_type == EntityType.BUYER
        assert row.entity_key == "6001"
        assert row.field_name == "price"
        assert row.old_value == "100"
        assert row.new_value == "120"
        assert row.retry_count == 5
        assert row.status == FailedChangeStatus.PENDING

        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["price"] == 120
        assert stored["last_synced_at"] == T0
        assert stored["sync_status"] == SyncStatus.PENDING.value


class TestUpdateWithSyncDetails:
    """Ordering, force, and edge cases of update_with_sync()."""

    async def test_database_written_before_sheet(self, service, synced_buyer, call_log):
        await service.update_with_sync(synced_buyer["id"], {"price": 120})

        names = [name for name, _ in call_log]
        assert names == ["db.update_fields", "sheet.update_cells", "db.mark_synced"]

    async def test_force_skips_check_and_audits(self, service, synced_buyer, buyer_sheet):
        buyer_sheet.rows[0]["価格"] = "150"

        with patch("src.brokerage.sync.orchestrator.logger") as mock_logger:
            outcome = await service.update_with_sync(
                synced_buyer["id"],
                {"price": 120},
                user_id="u-1",
                user_email="agent@example.com",
                force=True,
            )

        assert outcome.sync_result.sync_status == SyncStatus.SYNCED
        assert buyer_sheet.rows[0]["価格"] == 120
        assert buyer_sheet.calls_to("read_row") == []
        mock_logger.warning.assert_any_call(
            "entity_sync.forced_overwrite",
            entity_type="buyer",
            entity_key="6001",
            fields=["price"],
            user_id="u-1",
            user_email="agent@example.com",
        )

    async def test_conflict_check_failure_queues_changes(
        self, service, synced_buyer, buyer_repository, buyer_sheet, failed_changes
    ):
        buyer_sheet.fail_next("read_row")

        outcome = await service.update_with_sync(synced_buyer["id"], {"price": 120})

        assert outcome.sync_result.sync_status == SyncStatus.PENDING
        assert outcome.sync_result.error.startswith("Conflict check failed")
        (row,) = failed_changes.rows.values()
        assert row.retry_count == 0
        assert row.last_error.startswith("Conflict check failed")
        assert buyer_repository.raw(synced_buyer["id"])["price"] == 120
        assert buyer_sheet.calls_to("update_cells") == []

    async def test_unchanged_values_skip_the_sheet(self, service, synced_buyer, buyer_sheet):
        outcome = await service.update_with_sync(synced_buyer["id"], {"price": "100"})

        assert outcome.sync_result.sync_status == SyncStatus.SYNCED
        assert buyer_sheet.calls == []

    async def test_protected_fields_are_ignored(self, service, synced_buyer, buyer_repository):
        await service.update_with_sync(
            synced_buyer["id"],
            {"buyer_number": "9999", "sync_status": "failed", "price": 120},
        )

        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["buyer_number"] == "6001"
        assert stored["sync_status"] == SyncStatus.SYNCED.value

    async def test_unknown_entity(self, service):
        with pytest.raises(EntityNotFoundError):
            await service.update_with_sync("missing", {"price": 1})

    async def test_get_unknown_entity(self, service):
        with pytest.raises(EntityNotFoundError):
            await service.get("missing")


# ── Per-Entity Serialization ─────────────────────────────────────────────────


class OverlapTrackingSheet(OrderedSheet):
    """Holds the first write open briefly and records how many writes overlap."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.active = 0
        self.max_active = 0
        self.first_write_delay = 0.05

    async def update_cells(self, row_index, cells):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay, self.first_write_delay = self.first_write_delay, 0
            await asyncio.sleep(delay)
            await super().update_cells(row_index, cells)
        finally:
            self.active -= 1


class TestEntitySerialization:
    """Work on one entity never overlaps, whichever path starts it."""

    @pytest.fixture
    def slow_sheet(self, call_log) -> OverlapTrackingSheet:
        return OverlapTrackingSheet(
            call_log, BUYER_HEADERS, rows=[{"買主番号": "6001", "価格": "100"}]
        )

    @pytest.fixture
    def slow_service(self, buyer_repository, slow_sheet, retry_handler) -> BuyerService:
        return BuyerService(buyer_repository, BuyerWriteService(slow_sheet), retry_handler)

    async def test_overlapping_requests_run_one_after_the_other(
        self, slow_service, slow_sheet, synced_buyer, buyer_repository
    ):
        first, second = await asyncio.gather(
            slow_service.update_with_sync(synced_buyer["id"], {"price": 120}),
            slow_service.update_with_sync(synced_buyer["id"], {"price": 130}),
        )

        assert slow_sheet.max_active == 1
        assert first.sync_result.sync_status == SyncStatus.SYNCED
        assert second.sync_result.sync_status == SyncStatus.SYNCED
        writes = [cells["価格"] for _, cells in slow_sheet.calls_to("update_cells")]
        assert writes == [120, 130]
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["price"] == 130
        assert stored["sheet_snapshot"]["price"] == 130
        assert slow_sheet.rows[0]["価格"] == 130

    async def test_queued_task_waits_for_running_request(
        self, slow_service, slow_sheet, synced_buyer
    ):
        task = SyncTask(
            type=SyncTaskType.UPDATE,
            entity_type=EntityType.BUYER,
            entity_id=synced_buyer["id"],
            changed_fields={"price": 120},
            expected_values={"price": 100},
        )

        request, queued = await asyncio.gather(
            slow_service.update_with_sync(synced_buyer["id"], {"price": 120}),
            slow_service.process_task(task),
        )

        assert slow_sheet.max_active == 1
        assert request.sync_result.sync_status == SyncStatus.SYNCED
        assert queued.sync_status == SyncStatus.SYNCED
        assert slow_sheet.rows[0]["価格"] == 120

    async def test_distinct_entities_do_not_wait_on_each_other(
        self, slow_service, slow_sheet, synced_buyer, buyer_repository
    ):
        other = buyer_repository.seed(buyer_number="6002", price=None)
        slow_sheet.rows.append({"買主番号": "6002", "価格": ""})

        await asyncio.gather(
            slow_service.update_with_sync(synced_buyer["id"], {"price": 120}),
            slow_service.update_with_sync(other["id"], {"price": 300}),
        )

        assert slow_sheet.max_active == 2
        assert slow_sheet.rows[1]["価格"] == 300


# ── Queued Path ──────────────────────────────────────────────────────────────


@pytest.fixture
def outbox() -> AsyncMock:
    mock = AsyncMock()
    mock.add.return_value = 11
    mock.is_done.return_value = False
    return mock


@pytest.fixture
def queued(buyer_repository, buyer_sheet, retry_handler, outbox):
    """(service, queue) pair where the queue processes through the service."""
    holder: dict = {}
    queue = SyncQueue(lambda task: holder["service"].process_task(task))
    holder["service"] = BuyerService(
        buyer_repository,
        BuyerWriteService(buyer_sheet),
        retry_handler,
        outbox=outbox,
        queue=queue,
    )
    return holder["service"], queue


class TestQueuedUpdate:
    """update() commits and returns; the sheet follows through the queue."""

    async def test_returns_before_sheet_write(self, queued, synced_buyer, buyer_sheet, outbox):
        service, queue = queued

        entity = await service.update(synced_buyer["id"], {"price": 120})

        assert entity["price"] == 120
        assert buyer_sheet.calls_to("update_cells") == []
        outbox.add.assert_awaited_once()
        assert outbox.add.await_args.kwargs["claimed"] is True

        await queue.wait_idle()

        assert buyer_sheet.rows[0]["価格"] == 120
        outbox.mark_done.assert_awaited_once_with(11)

    async def test_sequential_edits_reach_sheet_in_order(
        self, queued, synced_buyer, buyer_repository, buyer_sheet
    ):
        service, queue = queued

        await service.update(synced_buyer["id"], {"price": 120})
        await queue.wait_idle()
        await service.update(synced_buyer["id"], {"price": 130})
        await queue.wait_idle()

        writes = [cells["価格"] for _, cells in buyer_sheet.calls_to("update_cells")]
        assert writes == [120, 130]
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["sync_status"] == SyncStatus.SYNCED.value
        assert stored["sheet_snapshot"]["price"] == 130

    async def test_back_to_back_edits_each_write_the_latest_value(
        self, queued, synced_buyer, buyer_repository, buyer_sheet
    ):
        service, queue = queued

        await service.update(synced_buyer["id"], {"price": 120})
        await service.update(synced_buyer["id"], {"price": 130})
        await queue.wait_idle()

        writes = [cells["価格"] for _, cells in buyer_sheet.calls_to("update_cells")]
        assert len(writes) == 2
        assert writes[-1] == 130
        assert buyer_sheet.rows[0]["価格"] == 130
        assert buyer_repository.raw(synced_buyer["id"])["sheet_snapshot"]["price"] == 130

    async def test_without_queue_outbox_row_waits_for_relay(
        self, buyer_repository, buyer_sheet, retry_handler, outbox, synced_buyer
    ):
        service = BuyerService(
            buyer_repository, BuyerWriteService(buyer_sheet), retry_handler, outbox=outbox
        )

        await service.update(synced_buyer["id"], {"price": 120})

        assert outbox.add.await_args.kwargs["claimed"] is False
        assert buyer_sheet.calls_to("update_cells") == []

    async def test_no_task_for_unchanged_values(self, queued, synced_buyer, outbox):
        service, queue = queued

        await service.update(synced_buyer["id"], {"price": 100})

        outbox.add.assert_not_awaited()
        assert queue.stats().lanes == 0


class TestQueuedCreate:
    """create() allocates the key and appends the row through the queue."""

    async def test_create_appends_row(self, queued, buyer_repository, buyer_sheet):
        service, queue = queued

        created = await service.create({"name": "山田", "price": 500, "buyer_number": "x"})
        await queue.wait_idle()

        assert created["buyer_number"] == "1"
        row = buyer_sheet.row_for("買主番号", "1")
        assert row["●氏名・会社名"] == "山田"
        stored = buyer_repository.raw(created["id"])
        assert stored["sync_status"] == SyncStatus.SYNCED.value
        assert stored["sheet_snapshot"]["price"] == 500

    async def test_failed_create_is_left_for_unsynced_sweep(
        self, queued, buyer_repository, buyer_sheet, failed_changes
    ):
        service, queue = queued
        buyer_sheet.fail_next("append_row", times=5)

        created = await service.create({"name": "山田"})
        await queue.wait_idle()

        stored = buyer_repository.raw(created["id"])
        assert stored["sync_status"] == SyncStatus.PENDING.value
        assert stored["last_synced_at"] is None
        assert failed_changes.rows == {}

        result = await service.sync_all_unsynced()

        assert result.success is True
        assert buyer_sheet.row_for("買主番号", created["buyer_number"]) is not None
        assert buyer_repository.raw(created["id"])["sync_status"] == SyncStatus.SYNCED.value


class TestProcessTask:
    """Queue processor behaviour for redelivered and conflicting tasks."""

    def _task(self, entity_id: str, price: int, outbox_id: int | None = 11) -> SyncTask:
        return SyncTask(
            type=SyncTaskType.UPDATE,
            entity_type=EntityType.BUYER,
            entity_id=entity_id,
            changed_fields={"price": price},
            expected_values={"price": 100},
            outbox_id=outbox_id,
        )

    async def test_identical_tasks_each_write(
        self, queued, synced_buyer, buyer_repository, buyer_sheet
    ):
        _, queue = queued
        buyer_repository.raw(synced_buyer["id"])["price"] = 120
        task = self._task(synced_buyer["id"], 120, outbox_id=None)

        queue.enqueue(task)
        queue.enqueue(task.model_copy())
        await queue.wait_idle()

        writes = [cells["価格"] for _, cells in buyer_sheet.calls_to("update_cells")]
        assert writes == [120, 120]

    async def test_settled_outbox_row_is_not_replayed(
        self, queued, synced_buyer, buyer_sheet, outbox
    ):
        service, _ = queued
        outbox.is_done.return_value = True

        result = await service.process_task(self._task(synced_buyer["id"], 120))

        assert result.sync_status == SyncStatus.SYNCED
        assert buyer_sheet.calls_to("update_cells") == []
        outbox.is_done.assert_awaited_once_with(11)
        outbox.mark_done.assert_not_awaited()

    async def test_reclaimed_older_task_writes_current_value(
        self, queued, synced_buyer, buyer_repository, buyer_sheet
    ):
        service, _ = queued
        buyer_repository.raw(synced_buyer["id"])["price"] = 130

        newer = await service.process_task(self._task(synced_buyer["id"], 130, outbox_id=12))
        older = await service.process_task(self._task(synced_buyer["id"], 120, outbox_id=11))

        assert newer.sync_status == SyncStatus.SYNCED
        assert older.sync_status == SyncStatus.SYNCED
        writes = [cells["価格"] for _, cells in buyer_sheet.calls_to("update_cells")]
        assert writes == [130, 130]
        assert buyer_sheet.rows[0]["価格"] == 130
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["sheet_snapshot"]["price"] == 130

    async def test_conflict_is_recorded_on_entity(
        self, queued, synced_buyer, buyer_repository, buyer_sheet, outbox
    ):
        service, _ = queued
        buyer_sheet.rows[0]["価格"] = "150"

        result = await service.process_task(self._task(synced_buyer["id"], 120))

        assert result.sync_status == SyncStatus.CONFLICT
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["sync_status"] == SyncStatus.CONFLICT.value
        assert stored["sync_error"].startswith("1 conflict(s) detected:")
        assert buyer_sheet.calls_to("update_cells") == []
        outbox.mark_done.assert_awaited_once_with(11)

    async def test_missing_entity_fails(self, queued):
        service, _ = queued

        result = await service.process_task(self._task("gone", 120))

        assert result.sync_status == SyncStatus.FAILED

    async def test_processor_errors_mark_outbox_failed(self, queued, buyer_repository, outbox):
        service, _ = queued
        buyer_repository.get = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await service.process_task(self._task("any", 120))

        outbox.mark_failed.assert_awaited_once_with(11, "db down")
        outbox.mark_done.assert_not_awaited()


# ── Reconciliation ───────────────────────────────────────────────────────────


class TestReconcileFailedChanges:
    """process_pending() against rows that later edits have overtaken."""

    async def test_change_overtaken_by_later_sync_leaves_sheet_alone(
        self, service, synced_buyer, buyer_repository, buyer_sheet, failed_changes, retry_handler
    ):
        buyer_sheet.fail_next("update_cells", times=5)
        await service.update_with_sync(synced_buyer["id"], {"price": 120})
        later = await service.update_with_sync(synced_buyer["id"], {"price": 130})
        assert later.sync_result.sync_status == SyncStatus.SYNCED
        writes_before = len(buyer_sheet.calls_to("update_cells"))

        result = await retry_handler.process_pending(service.apply_failed_change)

        assert (result.processed, result.succeeded) == (1, 1)
        assert len(buyer_sheet.calls_to("update_cells")) == writes_before
        assert buyer_sheet.rows[0]["価格"] == 130
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["price"] == 130
        assert stored["sheet_snapshot"]["price"] == 130
        assert failed_changes.rows[1].status == FailedChangeStatus.COMPLETED

    async def test_change_behind_database_writes_database_value(
        self, service, synced_buyer, buyer_repository, buyer_sheet, failed_changes, retry_handler
    ):
        buyer_sheet.fail_next("update_cells", times=5)
        await service.update_with_sync(synced_buyer["id"], {"price": 120})
        buyer_repository.raw(synced_buyer["id"])["price"] = 130

        result = await retry_handler.process_pending(service.apply_failed_change)

        assert result.succeeded == 1
        assert buyer_sheet.rows[0]["価格"] == 130
        stored = buyer_repository.raw(synced_buyer["id"])
        assert stored["sheet_snapshot"]["price"] == 130
        assert stored["sync_status"] == SyncStatus.SYNCED.value

    async def test_unknown_entity_is_not_written(self, service, buyer_sheet, failed_changes):
        change = await failed_changes.add(
            FailedChangeCreate(
                entity_type=EntityType.BUYER,
                entity_key="6001",
                field_name="price",
                new_value="120",
            )
        )

        assert await service.apply_failed_change(change) is False
        assert buyer_sheet.calls_to("update_cells") == []
