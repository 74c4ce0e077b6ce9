from __future__ import annotations

import math
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Dict, List, Optional

from tallypoint.store import Clock, EventFilter, EventStore, ReplacementStats, utcnow

DEFAULT_USAGE_DAYS = 30
DEFAULT_ERRORS_LIMIT = 10
DEFAULT_USERS_LIMIT = 10
DEFAULT_APPS_LIMIT = 20
DEFAULT_REALTIME_MINUTES = 60
MAX_REALTIME_BUCKETS = 60

MAX_LIST_LIMIT = 1000
MAX_USAGE_DAYS = 365
MAX_REALTIME_MINUTES = 1440


# ----------------------------
# Helpers
# ----------------------------
def coerce_positive_int(raw: Any, default: int, maximum: Optional[int] = None) -> int:
    """
    Query-string friendly int parsing: "5" -> 5, "abc"/"0"/"-3"/None -> default.
    Values above maximum are clamped.
    """
    if raw is None or isinstance(raw, bool):
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    if maximum is not None and value > maximum:
        return maximum
    return value


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _avg_response_ms(stats: ReplacementStats) -> int:
    if not stats.response_time_count:
        return 0
    return _round_half_up(stats.response_time_sum / stats.response_time_count)


def _success_pct(stats: ReplacementStats) -> float:
    if not stats.count:
        return 0.0
    return round(stats.success_count / stats.count * 100.0, 2)


def _minute_of(key: str) -> datetime:
    return datetime.strptime(key, "%Y-%m-%dT%H:%M").replace(tzinfo=timezone.utc)


# ----------------------------
# Engine
# ----------------------------
class MetricsEngine:
    """
    Read-only statistics recomputed from the event store on every call.

    Counting and grouping happen in the store; this layer rounds, orders and shapes rows.
    Buckets use UTC calendar days/minutes. Groups come only from observed values,
    so a breakdown never carries a zero-count row.
    """

    def __init__(self, store: EventStore, clock: Optional[Clock] = None):
        self.store = store
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    def overview(self) -> Dict[str, Any]:
        [totals] = self.store.summarize_replacements()
        return {
            "totalReplacements": totals.count,
            "uniqueUsers": totals.unique_users,
            "totalErrors": self.store.count_errors(),
            "avgResponseTimeMs": _avg_response_ms(totals),
            "successRate": _success_pct(totals),
        }

    def usage_by_day(self, window_days: int = DEFAULT_USAGE_DAYS) -> List[Dict[str, Any]]:
        window_days = max(int(window_days), 1)
        today = self._now().date()
        first_day = today - timedelta(days=window_days - 1)
        since = datetime.combine(first_day, dt_time.min, tzinfo=timezone.utc)

        days = self.store.summarize_replacements("day", EventFilter(since=since))
        rows = [
            {
                "date": s.key,
                "replacementCount": s.count,
                "uniqueUserCount": s.unique_users,
            }
            for s in days
            if first_day <= date.fromisoformat(s.key) <= today
        ]
        rows.sort(key=lambda r: r["date"], reverse=True)
        return rows

    def recent_errors(self, limit: int = DEFAULT_ERRORS_LIMIT) -> List[Dict[str, Any]]:
        errors = self.store.query_errors(EventFilter(limit=max(int(limit), 1), newest_first=True))
        return [e.summary() for e in errors]

    def top_users(self, limit: int = DEFAULT_USERS_LIMIT) -> List[Dict[str, Any]]:
        users = self.store.summarize_replacements("user_id", limit=limit)
        rows = [
            {
                "userId": s.key,
                "replacementCount": s.count,
                "avgResponseTimeMs": _avg_response_ms(s),
                "lastSeenAt": s.last_seen.isoformat(),
            }
            for s in users
        ]
        rows.sort(key=lambda r: (-r["replacementCount"], r["userId"]))
        return rows[:limit]

    def app_breakdown(self, limit: int = DEFAULT_APPS_LIMIT) -> List[Dict[str, Any]]:
        apps = self.store.summarize_replacements("target_app", limit=limit)
        rows = [
            {
                "targetApp": s.key,
                "usageCount": s.count,
                "uniqueUserCount": s.unique_users,
                "avgResponseTimeMs": _avg_response_ms(s),
                "successRatePct": _success_pct(s),
            }
            for s in apps
        ]
        rows.sort(key=lambda r: (-r["usageCount"], r["targetApp"]))
        return rows[:limit]

    def method_breakdown(self) -> List[Dict[str, Any]]:
        methods = self.store.summarize_replacements("method")
        rows = [
            {
                "method": s.key,
                "usageCount": s.count,
                "avgResponseTimeMs": _avg_response_ms(s),
                "successRatePct": _success_pct(s),
            }
            for s in methods
        ]
        rows.sort(key=lambda r: (-r["usageCount"], r["method"]))
        return rows

    def real_time_by_minute(self, window_minutes: int = DEFAULT_REALTIME_MINUTES) -> List[Dict[str, Any]]:
        window_minutes = max(int(window_minutes), 1)
        since = self._now() - timedelta(minutes=window_minutes)

        minutes = self.store.summarize_replacements("minute", EventFilter(since=since))
        ordered = sorted(minutes, key=lambda s: s.key, reverse=True)[:MAX_REALTIME_BUCKETS]
        return [
            {
                "minuteBucket": _minute_of(s.key).isoformat(),
                "replacementCount": s.count,
                "uniqueUserCount": s.unique_users,
            }
            for s in ordered
        ]
