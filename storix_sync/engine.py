"""Full sync, delta sync and optimistic writes against the entity store."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from .const import (
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_GET,
    ACTION_GET_SETTINGS,
    ACTION_SYNC_ALL,
    ACTION_SYNC_CHANGES,
    ACTION_UPDATE,
    META_KEY,
    NOW_KEY,
)
from .entity_store import EntityStore, Record
from .errors import RemoteLogicError, StorixSyncError, TransportError
from .log_utils import warn_once
from .pending import PendingMutation, PendingStore

_LOGGER = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, params: Mapping[str, Any]) -> Any: ...

    async def request(self, sheet: str | None, action: str, **params: Any) -> Any: ...


@dataclass(slots=True)
class TableChange:
    table: str
    rows: list[dict[str, Any]]
    full_refresh: bool


@dataclass(slots=True)
class SyncResult:
    """Summary of one applied full or delta sync."""

    kind: str
    now: str
    tables: dict[str, int] = field(default_factory=dict)
    full_refresh: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "now": self.now,
            "tables": dict(self.tables),
            "full_refresh": list(self.full_refresh),
        }


@dataclass(slots=True)
class FlushResult:
    sent: int = 0
    failed: int = 0
    remaining: int = 0


def remote_error(payload: Any) -> str | None:
    """Return the remote ``error`` message carried by ``payload``, if any."""

    if isinstance(payload, Mapping):
        error = payload.get("error")
        if error:
            return str(error)
    return None


class SyncEngine:
    """Keep an :class:`EntityStore` consistent with the remote spreadsheet.

    ``transport`` may be ``None`` while no endpoint is configured; every
    remote flow then logs and returns without touching the store, and local
    writes keep queueing.
    """

    def __init__(
        self,
        store: EntityStore,
        transport: Transport | None,
        pending: PendingStore | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.pending = pending or PendingStore()
        self.logger = logger or _LOGGER
        self.last_sync: str | None = None
        self.syncing = False
        self.watermarks: dict[str, str] = {}
        self.settings: dict[str, dict[str, Any]] = {}
        self.last_error: str | None = None
        self.last_success_at: datetime | None = None
        self._flush_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # remote -> local

    async def sync_all(self) -> SyncResult | None:
        """Replace every known table with a fresh snapshot from the remote."""

        if not self._begin_sync("full sync"):
            return None
        try:
            payload = await self._call(None, ACTION_SYNC_ALL)
            changes, meta, now = self._parse_snapshot(payload)
        finally:
            self.syncing = False
        result = SyncResult(kind="full", now=now)
        for change in changes:
            self.store.set_table(change.table, change.rows)
            result.tables[change.table] = len(change.rows)
        self.watermarks = {table: ts for table, ts in meta.items() if self.store.has_table(table)}
        self.last_sync = now
        self._record_success()
        self.logger.info("Full sync applied %d tables at %s", len(result.tables), now)
        return result

    async def sync_changes(self) -> SyncResult | None:
        """Fetch and merge tables whose remote watermark advanced."""

        if self.last_sync is None:
            self.logger.debug("Delta sync skipped: no full sync recorded yet")
            return None
        if not self._begin_sync("delta sync"):
            return None
        since = self.last_sync
        try:
            payload = await self._call(None, ACTION_SYNC_CHANGES, since=since)
            changes, now = self._parse_changes(payload)
        finally:
            self.syncing = False
        result = SyncResult(kind="delta", now=now)
        for change in changes:
            self.store.merge_changes(change.table, change.rows, change.full_refresh)
            self.watermarks[change.table] = now
            result.tables[change.table] = len(change.rows)
            if change.full_refresh:
                result.full_refresh.append(change.table)
        self.last_sync = now
        self._record_success()
        if result.tables:
            self.logger.info(
                "Delta sync since %s merged %s (full refresh: %s)",
                since,
                result.tables,
                result.full_refresh or "none",
            )
        return result

    async def sync_settings(self) -> dict[str, dict[str, Any]] | None:
        if not self._transport_ready("settings sync"):
            return None
        payload = await self._call(None, ACTION_GET_SETTINGS)
        settings = payload.get("settings") if isinstance(payload, Mapping) else None
        if not isinstance(settings, Mapping):
            raise RemoteLogicError("settings payload is missing 'settings'", payload=payload)
        self.settings = {
            str(key): dict(value) if isinstance(value, Mapping) else {"value": value}
            for key, value in settings.items()
        }
        return self.settings

    async def fetch(self, table: str, record_id: str | None = None, **filters: Any) -> list[Record]:
        """Read rows straight from the remote and upsert them locally."""

        self.store.table(table)
        if not self._transport_ready(f"{table} read"):
            return []
        payload = await self._call(table, ACTION_GET, id=record_id, **filters)
        if isinstance(payload, list):
            rows = [row for row in payload if isinstance(row, Mapping)]
        elif isinstance(payload, Mapping) and payload:
            rows = [payload]
        else:
            rows = []
        self.store.merge_changes(table, rows, full_refresh=False)
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # local -> remote

    def create_item(self, table: str, data: Mapping[str, Any]) -> PendingMutation:
        self.store.table(table)
        record = dict(data)
        if record.get("id") in (None, ""):
            record["id"] = uuid.uuid4().hex
        self.store.merge_changes(table, [record], full_refresh=False)
        return self._enqueue(PendingMutation(action=ACTION_CREATE, table=table, data=record))

    def update_item(self, table: str, data: Mapping[str, Any]) -> PendingMutation:
        if data.get("id") in (None, ""):
            raise ValueError(f"update on {table} requires an id")
        record = self.store.upsert_fields(table, data)
        return self._enqueue(PendingMutation(action=ACTION_UPDATE, table=table, data=dict(record)))

    def delete_item(self, table: str, record_id: str) -> PendingMutation:
        self.store.remove_record(table, record_id)
        return self._enqueue(PendingMutation(action=ACTION_DELETE, table=table, record_id=str(record_id)))

    async def process_pending(self, *, retry_failed: bool = True) -> FlushResult:
        """Replay queued mutations in FIFO order.

        Confirmed mutations leave the queue. A remote ``{error}`` keeps the
        mutation for the next flush and moves on; a transport failure keeps it
        and ends this flush.

        With ``retry_failed=False`` mutations that were already attempted are
        left for the next scheduled flush, together with any later mutation of
        the same record.
        """

        if not self._transport_ready("pending flush"):
            return FlushResult(remaining=self.pending.size())
        async with self._flush_lock:
            result = FlushResult()
            held: set[tuple[str, str | None]] = set()
            for mutation in self.pending.get_batch():
                key = (mutation.table, mutation.record_id)
                if not retry_failed and (mutation.attempts or key in held):
                    held.add(key)
                    continue
                try:
                    response = await self.transport.send(mutation.to_params())
                except TransportError as err:
                    self.pending.mark_attempt(mutation.mutation_id, str(err))
                    result.failed += 1
                    self.logger.warning("Pending flush interrupted at %s: %s", _describe(mutation), err)
                    break
                error = remote_error(response)
                if error is not None:
                    self.pending.mark_attempt(mutation.mutation_id, error)
                    result.failed += 1
                    held.add(key)
                    self.logger.warning("Remote rejected %s, retry later: %s", _describe(mutation), error)
                    continue
                self.pending.remove(mutation.mutation_id)
                result.sent += 1
            result.remaining = self.pending.size()
        if result.sent or result.failed:
            self.logger.debug("Pending flush: %s", result)
        return result

    def pending_mutations(self) -> list[PendingMutation]:
        return self.pending.get_batch()

    def discard_pending(self, mutation_id: str) -> bool:
        return self.pending.remove(mutation_id)

    def clear_pending(self) -> int:
        return self.pending.clear()

    async def wait_for_flush(self) -> None:
        """Wait for background flushes scheduled by local writes."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def async_close(self) -> None:
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with suppress(asyncio.CancelledError):
                await task
        self._background.clear()

    def status(self) -> dict[str, Any]:
        return {
            "last_sync": self.last_sync,
            "syncing": self.syncing,
            "pending": self.pending.size(),
            "watermarks": dict(self.watermarks),
            "tables": self.store.counts(),
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }

    # ------------------------------------------------------------------
    def _enqueue(self, mutation: PendingMutation) -> PendingMutation:
        self.pending.append(mutation)
        self._schedule_flush()
        return mutation

    def _schedule_flush(self) -> None:
        if self.transport is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # flushed on the next scheduler tick
            return
        task = loop.create_task(self._flush_in_background())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _flush_in_background(self) -> None:
        try:
            await self.process_pending(retry_failed=False)
        except StorixSyncError as err:
            self.logger.warning("Background flush failed: %s", err)

    def _transport_ready(self, what: str) -> bool:
        if self.transport is None:
            self.logger.warning("No script URL configured, skipping %s", what)
            return False
        return True

    def _begin_sync(self, what: str) -> bool:
        if not self._transport_ready(what):
            return False
        if self.syncing:
            self.logger.debug("Skipping %s: another sync is still running", what)
            return False
        self.syncing = True
        return True

    async def _call(self, sheet: str | None, action: str, **params: Any) -> Any:
        try:
            payload = await self.transport.request(sheet, action, **params)
            error = remote_error(payload)
            if error is not None:
                raise RemoteLogicError(f"{action} failed: {error}", payload=payload)
        except StorixSyncError as err:
            self.last_error = str(err)
            raise
        return payload

    def _record_success(self) -> None:
        self.last_error = None
        self.last_success_at = datetime.now(tz=UTC)

    def _known(self, table: str) -> bool:
        if self.store.has_table(table):
            return True
        warn_once(self.logger, f"unknown_table:{table}", "Ignoring rows for unknown table %s", table)
        return False

    def _parse_snapshot(self, payload: Any) -> tuple[list[TableChange], dict[str, str], str]:
        if not isinstance(payload, Mapping):
            raise self._malformed("syncAll payload is not an object", payload)
        now = payload.get(NOW_KEY)
        if not isinstance(now, str) or not now:
            raise self._malformed("syncAll payload has no 'now'", payload)
        meta_raw = payload.get(META_KEY) or {}
        meta = {str(k): str(v) for k, v in meta_raw.items() if v} if isinstance(meta_raw, Mapping) else {}
        changes: list[TableChange] = []
        for table, rows in payload.items():
            if table in (META_KEY, NOW_KEY) or not self._known(table):
                continue
            if not isinstance(rows, list):
                raise self._malformed(f"syncAll rows for {table} are not a list", payload)
            changes.append(TableChange(table=table, rows=rows, full_refresh=True))
        return changes, meta, now

    def _parse_changes(self, payload: Any) -> tuple[list[TableChange], str]:
        if not isinstance(payload, Mapping):
            raise self._malformed("syncChanges payload is not an object", payload)
        now = payload.get(NOW_KEY)
        if not isinstance(now, str) or not now:
            raise self._malformed("syncChanges payload has no 'now'", payload)
        raw_changes = payload.get("changes") or {}
        if not isinstance(raw_changes, Mapping):
            raise self._malformed("syncChanges 'changes' is not an object", payload)
        changes: list[TableChange] = []
        for table, change in raw_changes.items():
            if not self._known(table):
                continue
            if not isinstance(change, Mapping) or not isinstance(change.get("rows", []), list):
                raise self._malformed(f"syncChanges entry for {table} is malformed", payload)
            changes.append(
                TableChange(
                    table=table,
                    rows=list(change.get("rows") or []),
                    full_refresh=bool(change.get("fullRefresh", False)),
                )
            )
        return changes, now

    def _malformed(self, message: str, payload: Any) -> RemoteLogicError:
        self.last_error = message
        return RemoteLogicError(message, payload=payload)


def _describe(mutation: PendingMutation) -> str:
    target = f"{mutation.table}/{mutation.record_id}" if mutation.record_id else mutation.table
    return f"{mutation.action} {target}"


__all__ = ["FlushResult", "SyncEngine", "SyncResult", "TableChange", "remote_error"]
