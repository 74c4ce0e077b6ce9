from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, DefaultDict, Dict, Iterator, List, Optional, Sequence, Tuple

from tallypoint.config import Settings, is_memory_path
from tallypoint.errors import StorageError
from tallypoint.events import (
    ErrorEvent,
    ErrorIn,
    EventPayload,
    ReplacementEvent,
    ReplacementIn,
    UserActionEvent,
    UserActionIn,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventFilter:
    """Half-open time window [since, until) plus ordering by id and an optional row cap."""
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    newest_first: bool = False


@dataclass(frozen=True)
class ReplacementStats:
    """
    Counters for one group of replacement events (or all of them when key is None).
    Response-time sum and count cover non-null values only.
    """
    key: Optional[str]
    count: int
    unique_users: int
    success_count: int
    response_time_sum: int
    response_time_count: int
    last_seen: Optional[datetime] = None


# Group keys understood by summarize_replacements. "day" and "minute" are UTC
# buckets rendered as "YYYY-MM-DD" and "YYYY-MM-DDTHH:MM".
GROUP_KEYS = ("user_id", "target_app", "method", "day", "minute")


def _check_group(group_by: Optional[str]) -> None:
    if group_by is not None and group_by not in GROUP_KEYS:
        raise ValueError(f"group_by must be one of {GROUP_KEYS}, got {group_by!r}")


def _in_window(ts: datetime, flt: EventFilter) -> bool:
    if flt.since is not None and ts < flt.since:
        return False
    if flt.until is not None and ts >= flt.until:
        return False
    return True


def record_from_payload(event: EventPayload, event_id: int, ts: datetime):
    if isinstance(event, ReplacementIn):
        return ReplacementEvent(
            id=event_id,
            timestamp=ts,
            user_id=event.user_id,
            app_version=event.app_version,
            os=event.os,
            success=event.success,
            method=event.method,
            target_app=event.target_app,
            text_length=event.text_length,
            response_time_ms=event.response_time_ms,
            user_agent=event.user_agent,
            ip_address=event.ip_address,
        )
    if isinstance(event, ErrorIn):
        return ErrorEvent(
            id=event_id,
            timestamp=ts,
            user_id=event.user_id,
            app_version=event.app_version,
            os=event.os,
            error_type=event.error_type,
            error_message=event.error_message,
            target_app=event.target_app,
            stack_trace=event.stack_trace,
        )
    if isinstance(event, UserActionIn):
        return UserActionEvent(
            id=event_id,
            timestamp=ts,
            user_id=event.user_id,
            action_type=event.action_type,
            target_app=event.target_app,
            app_version=event.app_version,
            os=event.os,
        )
    raise TypeError(f"unsupported event type: {type(event).__name__}")


# ----------------------------
# Interface
# ----------------------------
class EventStore(ABC):
    """
    Append-only storage for the three event kinds.

    Implementations must make each append atomic and must raise StorageError
    (never a driver exception) when the medium is unreachable.
    """

    @abstractmethod
    def ensure_schema(self) -> None:
        ...

    @abstractmethod
    def append(self, event: EventPayload) -> int:
        ...

    @abstractmethod
    def query_replacements(self, flt: EventFilter = EventFilter()) -> List[ReplacementEvent]:
        ...

    @abstractmethod
    def query_errors(self, flt: EventFilter = EventFilter()) -> List[ErrorEvent]:
        ...

    @abstractmethod
    def query_user_actions(self, flt: EventFilter = EventFilter()) -> List[UserActionEvent]:
        ...

    @abstractmethod
    def summarize_replacements(
        self,
        group_by: Optional[str] = None,
        flt: EventFilter = EventFilter(),
        limit: Optional[int] = None,
    ) -> List[ReplacementStats]:
        """
        Counts replacement events inside flt's time window.

        group_by=None yields exactly one row, even for an empty store. Otherwise one
        row per observed key, ordered by count descending then key, cut to limit.
        """

    @abstractmethod
    def count_errors(self, flt: EventFilter = EventFilter()) -> int:
        ...

    def ping(self) -> None:
        """No-op for process-local stores."""

    def close(self) -> None:
        """No-op for process-local stores."""


# ----------------------------
# In-memory
# ----------------------------
class MemoryEventStore(EventStore):
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._rows: Dict[str, list] = {"replacement": [], "error": [], "user_action": []}
        self._next_id: Dict[str, int] = {"replacement": 1, "error": 1, "user_action": 1}

    def ensure_schema(self) -> None:
        pass

    def append(self, event: EventPayload) -> int:
        kind = event.kind
        with self._lock:
            event_id = self._next_id[kind]
            record = record_from_payload(event, event_id, self._clock())
            self._rows[kind].append(record)
            self._next_id[kind] = event_id + 1
        return event_id

    def _select(self, kind: str, flt: EventFilter) -> list:
        with self._lock:
            rows = list(self._rows[kind])
        out = [r for r in rows if _in_window(r.timestamp, flt)]
        if flt.newest_first:
            out.reverse()
        if flt.limit is not None:
            out = out[: max(flt.limit, 0)]
        return out

    def query_replacements(self, flt: EventFilter = EventFilter()) -> List[ReplacementEvent]:
        return self._select("replacement", flt)

    def query_errors(self, flt: EventFilter = EventFilter()) -> List[ErrorEvent]:
        return self._select("error", flt)

    def query_user_actions(self, flt: EventFilter = EventFilter()) -> List[UserActionEvent]:
        return self._select("user_action", flt)

    def summarize_replacements(
        self,
        group_by: Optional[str] = None,
        flt: EventFilter = EventFilter(),
        limit: Optional[int] = None,
    ) -> List[ReplacementStats]:
        _check_group(group_by)
        rows = self._select("replacement", EventFilter(since=flt.since, until=flt.until))
        key_of = _MEMORY_GROUP_KEYS[group_by] if group_by else (lambda e: None)

        groups: DefaultDict[Optional[str], List[ReplacementEvent]] = defaultdict(list)
        for e in rows:
            groups[key_of(e)].append(e)
        if group_by is None:
            return [_stats_of(None, groups.get(None, []))]

        out = [_stats_of(k, evs) for k, evs in groups.items()]
        out.sort(key=lambda s: (-s.count, s.key))
        if limit is not None:
            out = out[: max(limit, 0)]
        return out

    def count_errors(self, flt: EventFilter = EventFilter()) -> int:
        return len(self._select("error", EventFilter(since=flt.since, until=flt.until)))


def _utc(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc)


_MEMORY_GROUP_KEYS: Dict[str, Callable[[ReplacementEvent], str]] = {
    "user_id": lambda e: e.user_id,
    "target_app": lambda e: e.target_app,
    "method": lambda e: e.method,
    "day": lambda e: _utc(e.timestamp).strftime("%Y-%m-%d"),
    "minute": lambda e: _utc(e.timestamp).strftime("%Y-%m-%dT%H:%M"),
}


def _stats_of(key: Optional[str], events: List[ReplacementEvent]) -> ReplacementStats:
    times = [e.response_time_ms for e in events if e.response_time_ms is not None]
    return ReplacementStats(
        key=key,
        count=len(events),
        unique_users=len({e.user_id for e in events}),
        success_count=sum(1 for e in events if e.success),
        response_time_sum=sum(times),
        response_time_count=len(times),
        last_seen=max((e.timestamp for e in events), default=None),
    )


# ----------------------------
# SQLite
# ----------------------------
_SCHEMA: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS text_replacements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        app_version TEXT,
        os TEXT,
        success INTEGER NOT NULL,
        method TEXT NOT NULL,
        target_app TEXT NOT NULL,
        text_length INTEGER NOT NULL DEFAULT 0,
        response_time INTEGER,
        user_agent TEXT,
        ip_address TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_replacements_user_id ON text_replacements (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_replacements_timestamp ON text_replacements (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_replacements_target_app ON text_replacements (target_app)",
    "CREATE INDEX IF NOT EXISTS idx_replacements_method ON text_replacements (method)",
    """
    CREATE TABLE IF NOT EXISTS errors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        app_version TEXT,
        os TEXT,
        error_type TEXT NOT NULL,
        error_message TEXT NOT NULL,
        target_app TEXT,
        stack_trace TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_errors_user_id ON errors (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_errors_timestamp ON errors (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_errors_type ON errors (error_type)",
    """
    CREATE TABLE IF NOT EXISTS user_actions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        target_app TEXT,
        app_version TEXT,
        os TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_actions_user_id ON user_actions (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_actions_timestamp ON user_actions (timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_actions_type ON user_actions (action_type)",
)


def _format_ts(ts: datetime) -> str:
    # fixed width so text comparison in WHERE clauses follows time order
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


# Stored timestamps look like 2026-03-10T12:00:30.000000+00:00, so prefixes are UTC buckets.
_SQL_GROUP_KEYS: Dict[str, str] = {
    "user_id": "user_id",
    "target_app": "target_app",
    "method": "method",
    "day": "substr(timestamp, 1, 10)",
    "minute": "substr(timestamp, 1, 16)",
}


def _where(flt: EventFilter) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if flt.since is not None:
        clauses.append("timestamp >= ?")
        params.append(_format_ts(flt.since))
    if flt.until is not None:
        clauses.append("timestamp < ?")
        params.append(_format_ts(flt.until))
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _insert_for(event: EventPayload) -> Tuple[str, Sequence[str], List[Any]]:
    if isinstance(event, ReplacementIn):
        return "text_replacements", (
            "user_id", "app_version", "os", "success", "method", "target_app",
            "text_length", "response_time", "user_agent", "ip_address",
        ), [
            event.user_id, event.app_version, event.os, int(event.success), event.method,
            event.target_app, event.text_length, event.response_time_ms, event.user_agent,
            event.ip_address,
        ]
    if isinstance(event, ErrorIn):
        return "errors", (
            "user_id", "app_version", "os", "error_type", "error_message", "target_app", "stack_trace",
        ), [
            event.user_id, event.app_version, event.os, event.error_type, event.error_message,
            event.target_app, event.stack_trace,
        ]
    if isinstance(event, UserActionIn):
        return "user_actions", (
            "user_id", "action_type", "target_app", "app_version", "os",
        ), [
            event.user_id, event.action_type, event.target_app, event.app_version, event.os,
        ]
    raise TypeError(f"unsupported event type: {type(event).__name__}")


def _replacement_from_row(row: sqlite3.Row) -> ReplacementEvent:
    return ReplacementEvent(
        id=row["id"],
        timestamp=_parse_ts(row["timestamp"]),
        user_id=row["user_id"],
        app_version=row["app_version"],
        os=row["os"],
        success=bool(row["success"]),
        method=row["method"],
        target_app=row["target_app"],
        text_length=row["text_length"],
        response_time_ms=row["response_time"],
        user_agent=row["user_agent"],
        ip_address=row["ip_address"],
    )


def _error_from_row(row: sqlite3.Row) -> ErrorEvent:
    return ErrorEvent(
        id=row["id"],
        timestamp=_parse_ts(row["timestamp"]),
        user_id=row["user_id"],
        app_version=row["app_version"],
        os=row["os"],
        error_type=row["error_type"],
        error_message=row["error_message"],
        target_app=row["target_app"],
        stack_trace=row["stack_trace"],
    )


def _action_from_row(row: sqlite3.Row) -> UserActionEvent:
    return UserActionEvent(
        id=row["id"],
        timestamp=_parse_ts(row["timestamp"]),
        user_id=row["user_id"],
        action_type=row["action_type"],
        target_app=row["target_app"],
        app_version=row["app_version"],
        os=row["os"],
    )


class SqliteEventStore(EventStore):
    """
    One short-lived connection per operation, so request threads never share a handle.
    timeout_s bounds how long a writer waits on a locked database before StorageError.
    """

    def __init__(self, path: str, timeout_s: float = 5.0, clock: Optional[Clock] = None):
        # every connection to ":memory:" is a fresh empty database
        if is_memory_path(path):
            raise ValueError("SQLite in-memory databases are not supported; use the memory store instead")
        self.path = path
        self.timeout_s = timeout_s
        self._clock = clock or utcnow

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout_s)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"sqlite error: {exc}") from exc
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create directory for {self.path}: {exc}") from exc

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            with conn:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
        logger.info("event store ready at %s", self.path)

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def append(self, event: EventPayload) -> int:
        table, columns, values = _insert_for(event)
        placeholders = ", ".join("?" for _ in range(len(columns) + 1))
        sql = f"INSERT INTO {table} ({', '.join(columns)}, timestamp) VALUES ({placeholders})"

        with self._connect() as conn:
            with conn:
                cur = conn.execute(sql, [*values, _format_ts(self._clock())])
            return int(cur.lastrowid)

    def _select(self, table: str, flt: EventFilter, from_row: Callable[[sqlite3.Row], Any]) -> list:
        where, params = _where(flt)
        sql = f"SELECT * FROM {table}{where}"
        sql += " ORDER BY id DESC" if flt.newest_first else " ORDER BY id ASC"
        if flt.limit is not None:
            sql += " LIMIT ?"
            params.append(max(int(flt.limit), 0))

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [from_row(r) for r in rows]

    def query_replacements(self, flt: EventFilter = EventFilter()) -> List[ReplacementEvent]:
        return self._select("text_replacements", flt, _replacement_from_row)

    def query_errors(self, flt: EventFilter = EventFilter()) -> List[ErrorEvent]:
        return self._select("errors", flt, _error_from_row)

    def query_user_actions(self, flt: EventFilter = EventFilter()) -> List[UserActionEvent]:
        return self._select("user_actions", flt, _action_from_row)

    def summarize_replacements(
        self,
        group_by: Optional[str] = None,
        flt: EventFilter = EventFilter(),
        limit: Optional[int] = None,
    ) -> List[ReplacementStats]:
        _check_group(group_by)
        where, params = _where(flt)
        key_sql = _SQL_GROUP_KEYS[group_by] if group_by else "NULL"
        sql = (
            f"SELECT {key_sql} AS grp, COUNT(*) AS n, COUNT(DISTINCT user_id) AS users,"
            " COALESCE(SUM(success), 0) AS ok,"
            " COALESCE(SUM(response_time), 0) AS rt_sum, COUNT(response_time) AS rt_n,"
            f" MAX(timestamp) AS last_seen FROM text_replacements{where}"
        )
        if group_by:
            sql += " GROUP BY grp ORDER BY n DESC, grp ASC"
            if limit is not None:
                sql += " LIMIT ?"
                params.append(max(int(limit), 0))

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ReplacementStats(
                key=r["grp"],
                count=r["n"],
                unique_users=r["users"],
                success_count=r["ok"],
                response_time_sum=r["rt_sum"],
                response_time_count=r["rt_n"],
                last_seen=_parse_ts(r["last_seen"]) if r["last_seen"] else None,
            )
            for r in rows
        ]

    def count_errors(self, flt: EventFilter = EventFilter()) -> int:
        where, params = _where(flt)
        with self._connect() as conn:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM errors{where}", params).fetchone()
        return int(n)


def build_store(settings: Settings, clock: Optional[Clock] = None) -> EventStore:
    if settings.store == "memory":
        return MemoryEventStore(clock=clock)
    return SqliteEventStore(settings.db_path, timeout_s=settings.db_timeout_s, clock=clock)
