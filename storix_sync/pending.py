"""Pending mutations awaiting replay against the remote."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote

from .const import ACTION_CREATE, ACTION_DELETE, ACTION_UPDATE, WRITE_ACTIONS


@dataclass(slots=True)
class PendingMutation:
    """A write already applied locally but not yet confirmed remotely."""

    action: str
    table: str
    data: dict[str, Any] | None = None
    record_id: str | None = None
    mutation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.action not in WRITE_ACTIONS:
            raise ValueError(f"unsupported pending action: {self.action}")
        if self.record_id is None and self.data and self.data.get("id") not in (None, ""):
            self.record_id = str(self.data["id"])
        if self.action in (ACTION_UPDATE, ACTION_DELETE) and not self.record_id:
            raise ValueError(f"{self.action} on {self.table} requires an id")
        if self.action == ACTION_CREATE and self.data is None:
            raise ValueError(f"create on {self.table} requires data")

    def to_params(self) -> dict[str, Any]:
        """Render the GET parameters of the remote write contract.

        The remote URI-decodes ``data`` before parsing it as JSON, so the JSON
        text is percent-encoded here on top of the query string encoding.
        """

        params: dict[str, Any] = {"sheet": self.table, "action": self.action}
        if self.record_id and self.action != ACTION_CREATE:
            params["id"] = self.record_id
        if self.data is not None and self.action != ACTION_DELETE:
            params["data"] = quote(json.dumps(self.data, separators=(",", ":"), default=str), safe="!*'()")
        return params

    def to_dict(self) -> dict[str, Any]:
        return {
            "mutation_id": self.mutation_id,
            "action": self.action,
            "table": self.table,
            "data": self.data,
            "record_id": self.record_id,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingMutation:
        last_attempt = payload.get("last_attempt_at")
        return cls(
            action=payload["action"],
            table=payload["table"],
            data=payload.get("data"),
            record_id=payload.get("record_id"),
            mutation_id=payload["mutation_id"],
            enqueued_at=_parse_ts(payload.get("enqueued_at")) or datetime.now(tz=UTC),
            attempts=int(payload.get("attempts") or 0),
            last_error=payload.get("last_error"),
            last_attempt_at=_parse_ts(last_attempt) if last_attempt else None,
        )


class PendingStore:
    """SQLite-backed FIFO of :class:`PendingMutation` records.

    ``":memory:"`` keeps the queue for the lifetime of the process only; a
    file path makes queued writes survive a restart.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._is_memory = str(path) == ":memory:"
        self.path = Path(path)
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS pending_mutations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    mutation_id TEXT NOT NULL UNIQUE,
                    payload TEXT NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    last_error TEXT,
                    last_attempt_ts TEXT
                );
                """
            )
            conn.commit()

    # ------------------------------------------------------------------
    def append(self, mutation: PendingMutation) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO pending_mutations(mutation_id, payload, attempts) VALUES(?, ?, ?)",
                (
                    mutation.mutation_id,
                    json.dumps(mutation.to_dict(), separators=(",", ":"), default=str),
                    mutation.attempts,
                ),
            )
            conn.commit()

    def get_batch(self, limit: int | None = None) -> list[PendingMutation]:
        query = "SELECT payload, attempts, last_error, last_attempt_ts FROM pending_mutations ORDER BY seq ASC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_mutation(row) for row in rows]

    def get(self, mutation_id: str) -> PendingMutation | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT payload, attempts, last_error, last_attempt_ts FROM pending_mutations WHERE mutation_id = ?",
                (mutation_id,),
            ).fetchone()
        return self._row_to_mutation(row) if row else None

    def mark_attempt(self, mutation_id: str, error: str | None) -> None:
        now = datetime.now(tz=UTC).isoformat()
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE pending_mutations
                   SET attempts = attempts + 1, last_error = ?, last_attempt_ts = ?
                 WHERE mutation_id = ?
                """,
                (error, now, mutation_id),
            )
            conn.commit()

    def remove(self, mutation_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM pending_mutations WHERE mutation_id = ?", (mutation_id,))
            conn.commit()
            return cursor.rowcount > 0

    def clear(self) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM pending_mutations")
            conn.commit()
            return cursor.rowcount

    def size(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) FROM pending_mutations").fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    @staticmethod
    def _row_to_mutation(row: sqlite3.Row) -> PendingMutation:
        mutation = PendingMutation.from_dict(json.loads(row["payload"]))
        mutation.attempts = int(row["attempts"] or 0)
        mutation.last_error = row["last_error"]
        mutation.last_attempt_at = _parse_ts(row["last_attempt_ts"]) if row["last_attempt_ts"] else None
        return mutation


def _parse_ts(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


__all__ = ["PendingMutation", "PendingStore"]
