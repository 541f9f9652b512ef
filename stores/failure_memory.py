"""Failure memory — remembered fixes for actions that failed on a given site.

Keyed by (site domain, action kind, selector). A fix is only offered while
it is fresh and reliable.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from pilot.common.protocol import utcnow
from stores.schemas import connect, init_db

log = logging.getLogger(__name__)

EXACT_MIN_SUCCESS = 50.0
SIMILAR_MIN_SUCCESS = 70.0
STALE_AFTER_DAYS = 30


@dataclass
class FailureEntry:
    site_domain: str
    action_kind: str
    selector: str
    last_error: str = ""
    original_method: str = ""
    solution_method: Optional[str] = None
    solution_selector: Optional[str] = None
    times_used: int = 0
    success_rate: float = 0.0
    last_seen_at: str = ""

    @property
    def has_fix(self) -> bool:
        return bool(self.solution_method or self.solution_selector)


def _row_to_entry(row: sqlite3.Row) -> FailureEntry:
    return FailureEntry(
        site_domain=row["site_domain"],
        action_kind=row["action_kind"],
        selector=row["selector"],
        last_error=row["last_error"] or "",
        original_method=row["original_method"] or "",
        solution_method=row["solution_method"],
        solution_selector=row["solution_selector"],
        times_used=row["times_used"] or 0,
        success_rate=row["success_rate"] or 0.0,
        last_seen_at=row["last_seen_at"],
    )


def _is_fresh(last_seen_at: str, now: datetime | None = None) -> bool:
    try:
        seen = datetime.fromisoformat(last_seen_at)
    except (TypeError, ValueError):
        return False
    if seen.tzinfo is None:
        seen = seen.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now - seen <= timedelta(days=STALE_AFTER_DAYS)


class FailureMemory:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def lookup(self, site_domain: str, action_kind: str, selector: str) -> Optional[FailureEntry]:
        """Known fix for this failure, if any.

        Exact selector matches need >50% success; matches on the same site
        and action with a different selector need >70%. Stale entries are ignored.
        """
        conn = self._conn()
        try:
            exact = conn.execute(
                "SELECT * FROM failure_memory WHERE site_domain = ? AND action_kind = ? AND selector = ? "
                "AND (solution_method IS NOT NULL OR solution_selector IS NOT NULL) AND success_rate > ?",
                (site_domain, action_kind, selector, EXACT_MIN_SUCCESS),
            ).fetchone()
            if exact and _is_fresh(exact["last_seen_at"]):
                return _row_to_entry(exact)

            similar = conn.execute(
                "SELECT * FROM failure_memory WHERE site_domain = ? AND action_kind = ? AND selector != ? "
                "AND (solution_method IS NOT NULL OR solution_selector IS NOT NULL) AND success_rate > ? "
                "ORDER BY success_rate DESC, times_used DESC",
                (site_domain, action_kind, selector, SIMILAR_MIN_SUCCESS),
            ).fetchall()
        finally:
            conn.close()
        for row in similar:
            if _is_fresh(row["last_seen_at"]):
                return _row_to_entry(row)
        return None

    def record_failure(self, site_domain: str, action_kind: str, selector: str,
                       error: str, method: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO failure_memory (site_domain, action_kind, selector, last_error, original_method, "
                "last_seen_at) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(site_domain, action_kind, selector) DO UPDATE SET "
                "last_error = excluded.last_error, original_method = excluded.original_method, "
                "last_seen_at = excluded.last_seen_at",
                (site_domain, action_kind, selector, error[:500], method, utcnow()),
            )
            conn.commit()
        finally:
            conn.close()

    def record_solution(self, site_domain: str, action_kind: str, selector: str,
                        solution_method: str, solution_selector: str | None = None) -> None:
        """Store a fix that worked after the original approach failed."""
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO failure_memory (site_domain, action_kind, selector, solution_method, "
                "solution_selector, times_used, times_worked, success_rate, last_seen_at) "
                "VALUES (?, ?, ?, ?, ?, 1, 1, 100.0, ?) "
                "ON CONFLICT(site_domain, action_kind, selector) DO UPDATE SET "
                "solution_method = excluded.solution_method, solution_selector = excluded.solution_selector, "
                "times_used = times_used + 1, times_worked = times_worked + 1, "
                "success_rate = 100.0 * (times_worked + 1) / (times_used + 1), "
                "last_seen_at = excluded.last_seen_at",
                (site_domain, action_kind, selector, solution_method, solution_selector, utcnow()),
            )
            conn.commit()
        finally:
            conn.close()
        log.info("Failure memory: learned %s fix for %s %s on %s",
                 solution_method, action_kind, selector, site_domain)

    def record_outcome(self, entry: FailureEntry, worked: bool) -> None:
        """Update a pre-applied fix's reliability."""
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE failure_memory SET times_used = times_used + 1, "
                "times_worked = times_worked + ?, "
                "success_rate = 100.0 * (times_worked + ?) / (times_used + 1), "
                "last_seen_at = ? "
                "WHERE site_domain = ? AND action_kind = ? AND selector = ?",
                (int(worked), int(worked), utcnow(), entry.site_domain, entry.action_kind, entry.selector),
            )
            conn.commit()
        finally:
            conn.close()

    def entries(self, site_domain: str) -> list[FailureEntry]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM failure_memory WHERE site_domain = ? ORDER BY last_seen_at DESC", (site_domain,)
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_entry(r) for r in rows]
