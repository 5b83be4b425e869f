"""Sync orchestration: database write first, spreadsheet write second.

EntitySyncService ties one entity table to its sheet:

    update_with_sync()  request waits for the sheet (conflict check, write
                        with retry, bookkeeping) and reports the outcome
    update() / create() request returns after the database commit; the
                        sheet write runs later through SyncQueue
    process_task()      queue processor for one SyncTask

Each sheet write moves through the same states:

    PENDING -> conflict check -> CONFLICT (halt, nothing written)
                              -> PROCEEDING -> write with retry -> SYNCED
                                                                -> QUEUED_FOR_RETRY
                                                                -> FAILED (row missing)

A sync failure never rolls back the database write. last_synced_at only
moves forward after a confirmed sheet write. Every path that writes an
entity's row holds that entity's lock, so two sheet writes for one entity
never overlap.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime
from typing import Any

import structlog

from src.brokerage.sync.column_mapping import normalize_cell
from src.brokerage.sync.conflicts import ConflictResolver
from src.brokerage.sync.errors import EntityNotFoundError, RowNotFoundError, TransientSyncError
from src.brokerage.sync.outbox import SyncOutboxRepository
from src.brokerage.sync.queue import SyncQueue, SyncQueueClosedError
from src.brokerage.sync.repository import BOOKKEEPING_FIELDS, SyncedEntityRepository
from src.brokerage.sync.retry import RetryHandler
from src.brokerage.sync.schemas import (
    BatchSyncResult,
    EntityType,
    FailedChangeCreate,
    FailedChangeRead,
    RetryResult,
    SyncResult,
    SyncStatus,
    SyncTask,
    SyncTaskType,
    UpdateWithSyncResult,
)
from src.brokerage.sync.writers import SheetWriteService

logger = structlog.get_logger(__name__)


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


class EntitySyncService:
    """Keeps one entity table and its spreadsheet mirror in step.

    Args:
        entity_type: Which entity this service owns.
        repository: Relational persistence for the entity.
        writer: Sheet writer for the entity's spreadsheet.
        conflict_resolver: Resolver bound to the same writer.
        retry_handler: Backoff runner and failed-change recorder.
        outbox: Durable sync intent; optional for deployments without it.
        queue: In-process queue for the asynchronous path; optional when
            sync is disabled, in which case outbox rows wait for a relay.
    """

    def __init__(
        self,
        entity_type: EntityType,
        repository: SyncedEntityRepository,
        writer: SheetWriteService,
        conflict_resolver: ConflictResolver,
        retry_handler: RetryHandler,
        outbox: SyncOutboxRepository | None = None,
        queue: SyncQueue | None = None,
    ) -> None:
        self._entity_type = entity_type
        self._repository = repository
        self._writer = writer
        self._mapper = writer.column_mapper
        self._resolver = conflict_resolver
        self._retry = retry_handler
        self._outbox = outbox
        self._queue = queue
        # Entries disappear once no coroutine holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def entity_type(self) -> EntityType:
        return self._entity_type

    def _entity_lock(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entity_id] = lock
        return lock

    # ── Presentation ────────────────────────────────────────────────────

    async def _present(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Hook for subclasses to decorate returned records."""
        return entity

    async def get(self, entity_id: str) -> dict[str, Any]:
        """Fetch one record.

        Raises:
            EntityNotFoundError: If no row has this id.
        """
        entity = await self._repository.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(self._entity_type.value, entity_id)
        return await self._present(entity)

    # ── Field Helpers ───────────────────────────────────────────────────

    def _strip_protected(self, data: dict[str, Any]) -> dict[str, Any]:
        protected = BOOKKEEPING_FIELDS | {self._repository.key_field}
        stripped = sorted(k for k in data if k in protected)
        if stripped:
            logger.info(
                "entity_sync.protected_fields_ignored",
                entity_type=self._entity_type.value,
                fields=stripped,
            )
        return {k: v for k, v in data.items() if k not in protected}

    def _same(self, field_name: str, left: Any, right: Any) -> bool:
        return normalize_cell(self._mapper.format_value(field_name, left)) == normalize_cell(
            self._mapper.format_value(field_name, right)
        )

    def _sheet_changes(self, existing: dict[str, Any], clean: dict[str, Any]) -> dict[str, Any]:
        """Mapped fields whose value actually changes."""
        return {
            field_name: value
            for field_name, value in clean.items()
            if self._mapper.sheet_column_for(field_name) is not None
            and not self._same(field_name, existing.get(field_name), value)
        }

    def _expected_values(
        self,
        entity: dict[str, Any],
        changed: dict[str, Any],
    ) -> dict[str, Any]:
        """Value the sheet should hold for each field if nobody edited it.

        The snapshot of the last confirmed write wins. Fields never written
        by this engine fall back to the pre-edit database value.
        """
        snapshot = entity.get("sheet_snapshot") or {}
        expected: dict[str, Any] = {}
        for field_name in changed:
            if field_name in snapshot:
                expected[field_name] = snapshot[field_name]
            else:
                expected[field_name] = self._mapper.format_value(field_name, entity.get(field_name))
        return expected

    def _snapshot_of(self, values: dict[str, Any]) -> dict[str, Any]:
        return {
            field_name: self._mapper.format_value(field_name, value)
            for field_name, value in values.items()
            if self._mapper.sheet_column_for(field_name) is not None
        }

    def _audit_force(
        self,
        entity_key: str,
        fields: list[str],
        user_id: str | None,
        user_email: str | None,
    ) -> None:
        logger.warning(
            "entity_sync.forced_overwrite",
            entity_type=self._entity_type.value,
            entity_key=entity_key,
            fields=sorted(fields),
            user_id=user_id,
            user_email=user_email,
        )

    # ── Sheet Operations ────────────────────────────────────────────────

    async def _write_fields(self, entity_key: str, changed: dict[str, Any]) -> None:
        result = await self._writer.update_fields(entity_key, changed)
        if result.row_not_found:
            raise RowNotFoundError(entity_key)
        if not result.success:
            raise TransientSyncError(result.error or "Spreadsheet write reported failure")

    async def _write_record(self, entity: dict[str, Any]) -> None:
        result = await self._writer.sync_to_spreadsheet(entity)
        if not result.success:
            raise TransientSyncError(result.error or "Spreadsheet write reported failure")

    async def _queue_changes(
        self,
        entity_key: str,
        changed: dict[str, Any],
        expected: dict[str, Any],
        attempts: int,
        error: str | None,
    ) -> None:
        for field_name, value in changed.items():
            await self._retry.queue_failed_change(
                FailedChangeCreate(
                    entity_type=self._entity_type,
                    entity_key=entity_key,
                    field_name=field_name,
                    old_value=_as_text(expected.get(field_name)),
                    new_value=_as_text(self._mapper.format_value(field_name, value)),
                    retry_count=attempts,
                    last_error=error,
                )
            )

    async def _settle_write(
        self,
        entity_id: str,
        entity_key: str,
        changed: dict[str, Any],
        expected: dict[str, Any],
        retry: RetryResult,
    ) -> tuple[dict[str, Any] | None, SyncResult]:
        """Persist the outcome of a field write and build the SyncResult."""
        if retry.success:
            entity = await self._repository.mark_synced(entity_id, self._snapshot_of(changed))
            return entity, SyncResult(
                success=True, sync_status=SyncStatus.SYNCED, attempts=retry.attempts
            )

        if retry.terminal:
            entity = await self._repository.mark_sync_status(
                entity_id, SyncStatus.FAILED, retry.error
            )
            return entity, SyncResult(
                success=False,
                sync_status=SyncStatus.FAILED,
                error=retry.error,
                attempts=retry.attempts,
            )

        await self._queue_changes(entity_key, changed, expected, retry.attempts, retry.error)
        entity = await self._repository.mark_sync_status(
            entity_id, SyncStatus.PENDING, retry.error
        )
        return entity, SyncResult(
            success=False,
            sync_status=SyncStatus.PENDING,
            error=retry.error,
            attempts=retry.attempts,
        )

    # ── Synchronous Path ────────────────────────────────────────────────

    async def update_with_sync(
        self,
        entity_id: str,
        update_data: dict[str, Any],
        user_id: str | None = None,
        user_email: str | None = None,
        force: bool = False,
    ) -> UpdateWithSyncResult:
        """Update the record, then push the change to the sheet before returning.

        Args:
            entity_id: Primary key.
            update_data: Field -> new value. Protected fields are ignored.
            user_id: Acting user, recorded in the audit log on force.
            user_email: Acting user's email, recorded with user_id.
            force: Skip the conflict check and overwrite the sheet.

        Returns:
            The stored record and the sync outcome. On conflict the database
            is left untouched and the record is returned as it was.

        Raises:
            EntityNotFoundError: If no row has this id.
        """
        async with self._entity_lock(entity_id):
            return await self._update_with_sync(
                entity_id, update_data, user_id, user_email, force
            )

    async def _update_with_sync(
        self,
        entity_id: str,
        update_data: dict[str, Any],
        user_id: str | None,
        user_email: str | None,
        force: bool,
    ) -> UpdateWithSyncResult:
        existing = await self._repository.get(entity_id)
        if existing is None:
            raise EntityNotFoundError(self._entity_type.value, entity_id)

        entity_key = existing[self._repository.key_field]
        clean = self._strip_protected(update_data)
        changed = self._sheet_changes(existing, clean)
        expected = self._expected_values(existing, changed)
        last_synced_at: datetime | None = existing.get("last_synced_at")

        check_error: str | None = None
        if force:
            self._audit_force(entity_key, list(changed), user_id, user_email)
        elif last_synced_at is not None and changed:
            try:
                check = await self._resolver.check_conflict(
                    entity_key, changed, expected, last_synced_at
                )
            except Exception as exc:
                check_error = f"Conflict check failed: {exc}"
                logger.error(
                    "entity_sync.conflict_check_failed",
                    entity_type=self._entity_type.value,
                    entity_key=entity_key,
                    error=str(exc),
                )
            else:
                if check.has_conflict:
                    return UpdateWithSyncResult(
                        entity=await self._present(existing),
                        sync_result=SyncResult(
                            success=False,
                            sync_status=SyncStatus.CONFLICT,
                            error="Conflict detected with spreadsheet edits",
                            conflict=check.conflicts,
                        ),
                    )

        updated = await self._repository.update_fields(entity_id, clean)
        if updated is None:
            raise EntityNotFoundError(self._entity_type.value, entity_id)

        if not changed:
            return UpdateWithSyncResult(
                entity=await self._present(updated),
                sync_result=SyncResult(success=True, sync_status=SyncStatus.SYNCED),
            )

        if check_error is not None:
            await self._queue_changes(entity_key, changed, expected, 0, check_error)
            marked = await self._repository.mark_sync_status(
                entity_id, SyncStatus.PENDING, check_error
            )
            return UpdateWithSyncResult(
                entity=await self._present(marked or updated),
                sync_result=SyncResult(
                    success=False, sync_status=SyncStatus.PENDING, error=check_error
                ),
            )

        retry = await self._retry.execute_with_retry(
            lambda: self._write_fields(entity_key, changed)
        )
        settled, sync_result = await self._settle_write(
            entity_id, entity_key, changed, expected, retry
        )

        logger.info(
            "entity_sync.update_with_sync",
            entity_type=self._entity_type.value,
            entity_key=entity_key,
            sync_status=sync_result.sync_status.value,
            attempts=sync_result.attempts,
        )
        return UpdateWithSyncResult(
            entity=await self._present(settled or updated),
            sync_result=sync_result,
        )

    # ── Queued Path ─────────────────────────────────────────────────────

    def _dispatch(self, task: SyncTask) -> None:
        if self._queue is None:
            return
        try:
            self._queue.enqueue(task)
        except SyncQueueClosedError:
            # Shutting down: the outbox row is reclaimed by the next relay
            logger.warning(
                "entity_sync.enqueue_after_close",
                entity_type=task.entity_type.value,
                entity_id=task.entity_id,
                outbox_id=task.outbox_id,
            )

    async def update(
        self,
        entity_id: str,
        update_data: dict[str, Any],
        user_id: str | None = None,
        user_email: str | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        """Update the record and schedule the sheet write; returns once committed.

        Raises:
            EntityNotFoundError: If no row has this id.
        """
        existing = await self._repository.get(entity_id)
        if existing is None:
            raise EntityNotFoundError(self._entity_type.value, entity_id)

        clean = self._strip_protected(update_data)
        changed = self._sheet_changes(existing, clean)
        task = SyncTask(
            type=SyncTaskType.UPDATE,
            entity_type=self._entity_type,
            entity_id=entity_id,
            changed_fields=changed,
            expected_values=self._expected_values(existing, changed),
            force=force,
            user_id=user_id,
            user_email=user_email,
        )

        async with self._repository.transaction() as session:
            updated = await self._repository.update_fields(entity_id, clean, session=session)
            if updated is None:
                raise EntityNotFoundError(self._entity_type.value, entity_id)
            if changed and self._outbox is not None:
                task.outbox_id = await self._outbox.add(
                    session, task, claimed=self._queue is not None
                )

        if changed:
            self._dispatch(task)
        return await self._present(updated)

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a record with a database-allocated business key and schedule
        its row on the sheet."""
        async with self._repository.transaction() as session:
            created = await self._repository.create(data, session=session)
            task = SyncTask(
                type=SyncTaskType.CREATE,
                entity_type=self._entity_type,
                entity_id=created["id"],
            )
            if self._outbox is not None:
                task.outbox_id = await self._outbox.add(
                    session, task, claimed=self._queue is not None
                )

        self._dispatch(task)
        return await self._present(created)

    # ── Queue Processor ─────────────────────────────────────────────────

    async def process_task(self, task: SyncTask) -> SyncResult:
        """Run one queued sync task and settle its outbox row.

        A task whose outbox row is already done was delivered twice (the
        relay reclaimed it after the first run settled); it is skipped.
        Any other task runs, even when an identical one ran just before.
        """
        if task.outbox_id is not None and self._outbox is not None:
            if await self._outbox.is_done(task.outbox_id):
                logger.info(
                    "entity_sync.task_already_delivered",
                    entity_type=task.entity_type.value,
                    entity_id=task.entity_id,
                    outbox_id=task.outbox_id,
                )
                return SyncResult(success=True, sync_status=SyncStatus.SYNCED)

        try:
            async with self._entity_lock(task.entity_id):
                result = await self._process(task)
        except Exception as exc:
            if task.outbox_id is not None and self._outbox is not None:
                await self._outbox.mark_failed(task.outbox_id, str(exc))
            raise

        if task.outbox_id is not None and self._outbox is not None:
            await self._outbox.mark_done(task.outbox_id)
        return result

    async def _process(self, task: SyncTask) -> SyncResult:
        entity = await self._repository.get(task.entity_id)
        if entity is None:
            logger.warning(
                "entity_sync.task_entity_missing",
                entity_type=task.entity_type.value,
                entity_id=task.entity_id,
            )
            return SyncResult(
                success=False,
                sync_status=SyncStatus.FAILED,
                error=f"{task.entity_type.value} {task.entity_id} not found",
            )

        if task.type == SyncTaskType.CREATE:
            return await self._process_create(entity)
        return await self._process_update(task, entity)

    async def _process_create(self, entity: dict[str, Any]) -> SyncResult:
        retry = await self._retry.execute_with_retry(lambda: self._write_record(entity))
        if retry.success:
            await self._repository.mark_synced(entity["id"], self._snapshot_of(entity))
            return SyncResult(success=True, sync_status=SyncStatus.SYNCED, attempts=retry.attempts)

        # New rows have no per-field history; sync_all_unsynced() picks them up
        status = SyncStatus.FAILED if retry.terminal else SyncStatus.PENDING
        await self._repository.mark_sync_status(entity["id"], status, retry.error)
        return SyncResult(
            success=False, sync_status=status, error=retry.error, attempts=retry.attempts
        )

    async def _process_update(self, task: SyncTask, entity: dict[str, Any]) -> SyncResult:
        entity_key = entity[self._repository.key_field]
        snapshot = entity.get("sheet_snapshot") or {}

        # The task names the fields; the database holds their latest values.
        # A reclaimed task older than a later edit writes the later value.
        changed = {
            field_name: entity.get(field_name)
            for field_name in task.changed_fields
            if self._mapper.sheet_column_for(field_name) is not None
        }
        if not changed:
            return SyncResult(success=True, sync_status=SyncStatus.SYNCED)

        # Earlier tasks in this lane have already moved the snapshot on
        expected = {
            field_name: snapshot[field_name]
            if field_name in snapshot
            else task.expected_values.get(field_name)
            for field_name in changed
        }

        last_synced_at: datetime | None = entity.get("last_synced_at")
        if task.force:
            self._audit_force(entity_key, list(changed), task.user_id, task.user_email)
        elif last_synced_at is not None:
            try:
                check = await self._resolver.check_conflict(
                    entity_key, changed, expected, last_synced_at
                )
            except Exception as exc:
                error = f"Conflict check failed: {exc}"
                await self._queue_changes(entity_key, changed, expected, 0, error)
                await self._repository.mark_sync_status(entity["id"], SyncStatus.PENDING, error)
                return SyncResult(success=False, sync_status=SyncStatus.PENDING, error=error)

            if check.has_conflict:
                report = self._resolver.generate_conflict_report(check.conflicts)
                await self._repository.mark_sync_status(entity["id"], SyncStatus.CONFLICT, report)
                logger.warning(
                    "entity_sync.conflict_halted",
                    entity_type=self._entity_type.value,
                    entity_key=entity_key,
                    fields=[c.field_name for c in check.conflicts],
                )
                return SyncResult(
                    success=False,
                    sync_status=SyncStatus.CONFLICT,
                    error="Conflict detected with spreadsheet edits",
                    conflict=check.conflicts,
                )

        retry = await self._retry.execute_with_retry(
            lambda: self._write_fields(entity_key, changed)
        )
        _, result = await self._settle_write(entity["id"], entity_key, changed, expected, retry)
        return result

    # ── Reconciliation ──────────────────────────────────────────────────

    async def apply_failed_change(self, change: FailedChangeRead) -> bool:
        """Write one pending_sync_changes row to the sheet.

        Used by the reconciliation job and manual replay. The conflict check
        is not repeated; the change already won it when it was made.

        The row only says which field is behind. The value written is the
        field's current database value, which may be newer than
        change.new_value. When the snapshot shows a later write already put
        that value on the sheet, nothing is written and the row counts as
        done.
        """
        found = await self._repository.get_by_key(change.entity_key)
        if found is None:
            logger.warning(
                "entity_sync.failed_change_entity_missing",
                entity_type=self._entity_type.value,
                entity_key=change.entity_key,
                change_id=change.id,
            )
            return False

        field_name = change.field_name
        async with self._entity_lock(found["id"]):
            entity = await self._repository.get(found["id"])
            if entity is None:
                return False

            value = entity.get(field_name)
            current = self._mapper.format_value(field_name, value)
            snapshot = entity.get("sheet_snapshot") or {}
            if field_name in snapshot and normalize_cell(snapshot[field_name]) == normalize_cell(
                current
            ):
                logger.info(
                    "entity_sync.failed_change_superseded",
                    entity_type=self._entity_type.value,
                    entity_key=change.entity_key,
                    field_name=field_name,
                    change_id=change.id,
                )
                return True

            result = await self._writer.update_fields(change.entity_key, {field_name: value})
            if not result.success:
                return False

            await self._repository.mark_synced(entity["id"], {field_name: current})
            return True

    async def sync_all_unsynced(self, limit: int = 100) -> BatchSyncResult:
        """Upsert every record never synced or left unsynced, in one batch."""
        records = await self._repository.list_unsynced(limit)
        if not records:
            return BatchSyncResult(success=True)

        result = await self._writer.sync_batch(records)
        if any(e.get("entity_key") == "batch" for e in result.errors):
            return result

        failed_keys = {e.get("entity_key") for e in result.errors}
        key_field = self._repository.key_field
        for record in records:
            if str(record.get(key_field)) not in failed_keys:
                await self._repository.mark_synced(record["id"], self._snapshot_of(record))

        logger.info(
            "entity_sync.unsynced_synced",
            entity_type=self._entity_type.value,
            total=result.total_rows,
            succeeded=result.success_count,
            failed=result.failure_count,
        )
        return result


class SyncCoordinator:
    """Routes queue tasks and retry-queue rows to the owning service.

    Serves as the SyncQueue processor and the reconciliation processor.
    """

    def __init__(self) -> None:
        self._services: dict[EntityType, EntitySyncService] = {}

    def register(self, service: EntitySyncService) -> None:
        self._services[service.entity_type] = service

    def service_for(self, entity_type: EntityType) -> EntitySyncService:
        try:
            return self._services[entity_type]
        except KeyError:
            raise LookupError(f"No sync service registered for {entity_type.value}") from None

    @property
    def services(self) -> list[EntitySyncService]:
        return list(self._services.values())

    async def process_task(self, task: SyncTask) -> SyncResult:
        result = await self.service_for(task.entity_type).process_task(task)
        logger.info(
            "sync_coordinator.task_processed",
            entity_type=task.entity_type.value,
            entity_id=task.entity_id,
            task_type=task.type.value,
            sync_status=result.sync_status.value,
        )
        return result

    async def apply_failed_change(self, change: FailedChangeRead) -> bool:
        return await self.service_for(change.entity_type).apply_failed_change(change)

