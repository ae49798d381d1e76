"""Periodic driver for the sync engine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import UTC, datetime
from typing import Any

from .const import DEFAULT_SYNC_INTERVAL
from .engine import FlushResult, SyncEngine, SyncResult
from .errors import StorixSyncError

_LOGGER = logging.getLogger(__name__)


class SyncScheduler:
    """Run a full sync at startup, then delta sync and flush on an interval."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: float = DEFAULT_SYNC_INTERVAL,
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.logger = logger or _LOGGER
        self._task: asyncio.Task | None = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.last_tick_at: datetime | None = None
        self.last_tick_error: str | None = None
        self.startup_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def async_start(self) -> None:
        """Run the startup sync and start the periodic loop."""

        if self.running:
            return
        await self.async_startup_sync()
        self._task = asyncio.get_running_loop().create_task(self._run_forever())

    async def async_startup_sync(self) -> None:
        self.startup_error = None
        try:
            await self.engine.sync_all()
        except StorixSyncError as err:
            self.startup_error = str(err)
            self.logger.warning("Startup full sync failed, serving cached data: %s", err)
            return
        try:
            await self.engine.sync_settings()
        except StorixSyncError as err:
            self.startup_error = str(err)
            self.logger.warning("Settings fetch failed: %s", err)

    async def async_stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def async_tick(self) -> dict[str, Any]:
        """Run one delta sync followed by a pending-queue flush."""

        self.ticks += 1
        self.last_tick_at = datetime.now(tz=UTC)
        self.last_tick_error = None
        synced: SyncResult | None = None
        if self.engine.syncing:
            self.skipped_ticks += 1
            self.logger.debug("Previous sync still running, skipping delta sync")
        else:
            try:
                if self.engine.last_sync is None:
                    synced = await self.engine.sync_all()
                else:
                    synced = await self.engine.sync_changes()
            except StorixSyncError as err:
                self.last_tick_error = str(err)
                self.logger.warning("Sync failed: %s", err)
        flushed: FlushResult | None = None
        try:
            flushed = await self.engine.process_pending()
        except StorixSyncError as err:
            self.last_tick_error = str(err)
            self.logger.warning("Pending flush failed: %s", err)
        return {
            "sync": synced.to_dict() if synced else None,
            "flush": {"sent": flushed.sent, "failed": flushed.failed, "remaining": flushed.remaining}
            if flushed
            else None,
            "error": self.last_tick_error,
        }

    async def async_sync_now(self) -> SyncResult | None:
        """Manual resync; returns ``None`` when a sync is already running."""

        if self.engine.last_sync is None:
            return await self.engine.sync_all()
        return await self.engine.sync_changes()

    async def _run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.async_tick()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover
                self.last_tick_error = str(err)
                self.logger.exception("Unexpected sync error: %s", err)

    def status(self) -> dict[str, Any]:
        status = {
            "running": self.running,
            "interval": self.interval,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick_error": self.last_tick_error,
            "startup_error": self.startup_error,
        }
        status.update(self.engine.status())
        return status


__all__ = ["SyncScheduler"]
