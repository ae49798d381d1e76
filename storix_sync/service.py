"""Application-root object wiring the store, transport, engine and scheduler."""

from __future__ import annotations

import logging
from typing import Any

from aiohttp import ClientSession

from .config import SyncConfig
from .engine import SyncEngine
from .entity_store import EntityStore
from .pending import PendingStore
from .scheduler import SyncScheduler
from .transport import JsonpTransport

_LOGGER = logging.getLogger(__name__)


class SyncService:
    """Own every piece of sync state for the lifetime of the process.

    Construct once, pass by reference to whatever renders or mutates data.
    The service creates its own :class:`aiohttp.ClientSession` unless one is
    supplied, and closes only a session it created.
    """

    def __init__(self, config: SyncConfig, *, session: ClientSession | None = None) -> None:
        self.config = config
        self.store = EntityStore(config.tables)
        self.pending = PendingStore(config.pending_path)
        self._session = session
        self._owns_session = session is None
        self.transport: JsonpTransport | None = None
        self.engine = SyncEngine(self.store, None, self.pending)
        self.scheduler = SyncScheduler(self.engine, interval=config.interval)

    async def async_start(self) -> None:
        if self.config.ready and self.transport is None:
            if self._session is None:
                self._session = ClientSession()
                self._owns_session = True
            self.transport = JsonpTransport(
                self._session,
                self.config.script_url,
                callback_name=self.config.callback_name,
                timeout=self.config.request_timeout,
            )
            self.engine.transport = self.transport
        elif not self.config.ready:
            _LOGGER.warning("Sync endpoint not configured; running with local data only")
        await self.scheduler.async_start()

    async def async_stop(self) -> None:
        await self.scheduler.async_stop()
        await self.engine.async_close()
        if self.transport is not None:
            await self.transport.async_close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self.pending.close()

    async def __aenter__(self) -> SyncService:
        await self.async_start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.async_stop()

    def status(self) -> dict[str, Any]:
        status = self.scheduler.status()
        status["configured"] = self.config.ready
        status["transport"] = self.transport.status() if self.transport else None
        return status


__all__ = ["SyncService"]
