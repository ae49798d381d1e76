"""Normalized in-memory store of remote tables keyed by record id."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from .const import TABLES
from .errors import UnknownTableError

_LOGGER = logging.getLogger(__name__)

Record = Mapping[str, Any]
Table = Mapping[str, Record]


class EntityStore:
    """Per-table ``id -> record`` maps for a closed, known set of tables.

    Every mutation of a table installs a new read-only mapping for that table
    and leaves the mappings of all other tables untouched, so callers can use
    the identity of :meth:`table` results to detect change. Records are
    read-only too; copy one with ``dict(record)`` to edit it.
    """

    def __init__(self, tables: Iterable[str] = TABLES) -> None:
        self._tables: dict[str, Table] = {name: MappingProxyType({}) for name in tables}

    # ------------------------------------------------------------------
    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(self._tables)

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def table(self, table: str) -> Table:
        """Return the current read-only mapping for ``table``."""

        try:
            return self._tables[table]
        except KeyError:
            raise UnknownTableError(table) from None

    def get(self, table: str, record_id: str) -> Record | None:
        return self.table(table).get(str(record_id))

    def snapshot(self) -> dict[str, Table]:
        return dict(self._tables)

    # ------------------------------------------------------------------
    def set_table(self, table: str, rows: Iterable[Mapping[str, Any]]) -> None:
        """Replace the whole content of ``table`` with ``rows``."""

        self.table(table)
        self._tables[table] = MappingProxyType(_index_rows(table, rows))

    def merge_changes(self, table: str, rows: Iterable[Mapping[str, Any]], full_refresh: bool) -> None:
        """Apply a sync payload; a partial merge never removes absent records."""

        if full_refresh:
            self.set_table(table, rows)
            return
        current = self.table(table)
        incoming = _index_rows(table, rows)
        if not incoming:
            return
        merged = dict(current)
        merged.update(incoming)
        self._tables[table] = MappingProxyType(merged)

    def upsert_fields(self, table: str, row: Mapping[str, Any]) -> Record:
        """Merge the fields of ``row`` into the stored record with the same id."""

        current = self.table(table)
        incoming = _index_rows(table, [row])
        if not incoming:
            raise ValueError(f"{table} row is missing an id")
        record_id, record = next(iter(incoming.items()))
        existing = current.get(record_id)
        if existing is not None:
            record = MappingProxyType({**existing, **record})
        merged = dict(current)
        merged[record_id] = record
        self._tables[table] = MappingProxyType(merged)
        return record

    def remove_record(self, table: str, record_id: str) -> bool:
        """Delete one record; returns ``False`` when it was not present."""

        current = self.table(table)
        key = str(record_id)
        if key not in current:
            return False
        remaining = dict(current)
        del remaining[key]
        self._tables[table] = MappingProxyType(remaining)
        return True

    def counts(self) -> dict[str, int]:
        return {name: len(rows) for name, rows in self._tables.items()}


def _index_rows(table: str, rows: Iterable[Mapping[str, Any]]) -> dict[str, Record]:
    indexed: dict[str, Record] = {}
    skipped = 0
    for row in rows:
        if not isinstance(row, Mapping):
            skipped += 1
            continue
        record_id = row.get("id")
        if record_id is None or record_id == "":
            skipped += 1
            continue
        key = str(record_id)
        record = dict(row)
        record["id"] = key
        indexed[key] = MappingProxyType(record)
    if skipped:
        _LOGGER.warning("Skipped %d %s rows without an id", skipped, table)
    return indexed


__all__ = ["EntityStore", "Record", "Table"]
