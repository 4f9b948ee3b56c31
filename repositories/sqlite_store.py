"""Relational IST event storage backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Iterable, List, Optional

from db_pool import SQLiteConnectionPool
from errors import MalformedEventDataError, StorageError, StorageUnavailableError
from repositories.base import as_utc, require_upsert_key
from schemas import IstEvent, utcnow

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ist_events (
      id                TEXT PRIMARY KEY,
      course_id         TEXT,
      thread_id         TEXT,
      message_id        TEXT,
      uid               TEXT,
      intent            TEXT,
      trajectory_status TEXT,
      skills_json       TEXT,
      analysis_json     TEXT,
      created_at        TEXT NOT NULL,
      updated_at        TEXT,
      UNIQUE(thread_id, message_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ist_events_course ON ist_events(course_id, created_at)",
)

_COLUMNS = (
    "id",
    "course_id",
    "thread_id",
    "message_id",
    "uid",
    "intent",
    "trajectory_status",
    "skills_json",
    "analysis_json",
    "created_at",
    "updated_at",
)

_INSERT_SQL = f"INSERT INTO ist_events ({', '.join(_COLUMNS)}) VALUES ({', '.join('?' for _ in _COLUMNS)})"

# id and created_at of the first write are kept.
_UPDATE_BY_KEY_SQL = """
    UPDATE ist_events SET
      course_id = ?,
      uid = ?,
      intent = ?,
      trajectory_status = ?,
      skills_json = ?,
      analysis_json = ?,
      updated_at = ?
    WHERE thread_id = ? AND message_id = ?
"""


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # Fixed-width UTC strings keep lexicographic order equal to time order.
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(value: Optional[str], column: str, event_id: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise MalformedEventDataError(f"Column {column} of IST event {event_id} is not valid JSON.") from exc


class SqliteIstEventRepository:
    """SQL-backed :class:`repositories.base.IstEventRepository`."""

    def __init__(self, database: str, max_connections: int = 5, pool: Optional[SQLiteConnectionPool] = None):
        self.database = database
        try:
            self._pool = pool or SQLiteConnectionPool(database, max_connections=max_connections)
            self.init_schema()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailableError(f"Cannot open IST event database {database}: {exc}") from exc

    def __repr__(self) -> str:
        return f"SqliteIstEventRepository({self.database!r})"

    def init_schema(self) -> None:
        with self._pool.get_connection() as con:
            for statement in _SCHEMA:
                con.execute(statement)
            con.commit()

    def close(self) -> None:
        self._pool.close_all()

    def _execute(self, sql: str, params: Iterable[Any]) -> None:
        try:
            with self._pool.get_connection() as con:
                con.execute(sql, tuple(params))
                con.commit()
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"IST event violates a storage constraint: {exc}") from exc
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"IST event write failed: {exc}") from exc

    def _query(self, sql: str, params: Iterable[Any]) -> list[sqlite3.Row]:
        try:
            with self._pool.get_connection() as con:
                return con.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"IST event query failed: {exc}") from exc

    @staticmethod
    def _row_values(event: IstEvent) -> tuple[Any, ...]:
        return (
            event.id,
            event.course_id,
            event.thread_id,
            event.message_id,
            event.uid,
            event.intent,
            event.trajectory_status,
            _dumps(event.skills),
            _dumps(event.analysis),
            _format_ts(event.created_at),
            _format_ts(event.updated_at or utcnow()),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> IstEvent:
        event_id = row["id"]
        return IstEvent(
            id=event_id,
            course_id=row["course_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            skills=_loads(row["skills_json"], "skills_json", event_id),
            thread_id=row["thread_id"],
            message_id=row["message_id"],
            uid=row["uid"],
            intent=row["intent"],
            trajectory_status=row["trajectory_status"],
            analysis=_loads(row["analysis_json"], "analysis_json", event_id),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )

    def append_event(self, event: IstEvent) -> None:
        self._execute(_INSERT_SQL, self._row_values(event))

    def upsert_event(self, event: IstEvent) -> None:
        thread_id, message_id = require_upsert_key(event)
        values = self._row_values(event)
        try:
            with self._pool.get_connection() as con:
                # Take the write lock up front so concurrent upserts of one key serialize.
                con.execute("BEGIN IMMEDIATE")
                cur = con.execute(
                    _UPDATE_BY_KEY_SQL,
                    (
                        event.course_id,
                        event.uid,
                        event.intent,
                        event.trajectory_status,
                        _dumps(event.skills),
                        _dumps(event.analysis),
                        _format_ts(utcnow()),
                        thread_id,
                        message_id,
                    ),
                )
                if cur.rowcount == 0:
                    con.execute(_INSERT_SQL, values)
                con.commit()
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"IST event violates a storage constraint: {exc}") from exc
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"IST event upsert failed: {exc}") from exc

    def query_events(
        self,
        course_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[IstEvent]:
        clauses = ["course_id = ?"]
        params: list[Any] = [course_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_format_ts(since))
        if until is not None:
            clauses.append("created_at < ?")
            params.append(_format_ts(until))
        rows = self._query(
            f"SELECT * FROM ist_events WHERE {' AND '.join(clauses)} ORDER BY created_at, id",
            params,
        )
        return [self._from_row(row) for row in rows]

    def get_event(self, thread_id: str, message_id: str) -> Optional[IstEvent]:
        rows = self._query(
            "SELECT * FROM ist_events WHERE thread_id = ? AND message_id = ?",
            (thread_id, message_id),
        )
        return self._from_row(rows[0]) if rows else None

    def count_events(self) -> int:
        rows = self._query("SELECT COUNT(*) AS total FROM ist_events", ())
        return int(rows[0]["total"]) if rows else 0


__all__ = ["SqliteIstEventRepository"]
