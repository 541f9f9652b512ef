"""Learned action sequences and verification correction hints."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from pilot.common.protocol import Action, ActionKind, utcnow
from stores.schemas import connect, init_db

log = logging.getLogger(__name__)

# A correction hint is pre-applied once it has helped often enough.
HINT_MIN_APPLICATIONS = 2
HINT_MIN_SUCCESS = 60.0


@dataclass
class Learning:
    service: str
    task_type: str
    actions: list[Action] = field(default_factory=list)
    successes: int = 0
    failures: int = 0
    verified_at: str = ""

    @property
    def success_rate(self) -> float:
        total = self.successes + self.failures
        return 100.0 * self.successes / total if total else 0.0

    def age(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        try:
            verified = datetime.fromisoformat(self.verified_at)
        except (TypeError, ValueError):
            return timedelta.max
        if verified.tzinfo is None:
            verified = verified.replace(tzinfo=timezone.utc)
        return now - verified


class LearningStore:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    # ─── Action sequences ─────────────────────────────────────────────

    def get(self, service: str, task_type: str) -> Optional[Learning]:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT * FROM learnings WHERE service = ? AND task_type = ?", (service, task_type)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return Learning(
            service=row["service"],
            task_type=row["task_type"],
            actions=[Action(ActionKind(a["kind"]), a.get("params", {})) for a in json.loads(row["actions"])],
            successes=row["successes"],
            failures=row["failures"],
            verified_at=row["verified_at"],
        )

    def record_sequence(self, service: str, task_type: str, actions: list[Action], success: bool) -> None:
        """Record a run. A successful run replaces the stored sequence and refreshes verified_at."""
        payload = json.dumps([a.to_dict() for a in actions], default=str)
        conn = self._conn()
        try:
            if success:
                conn.execute(
                    "INSERT INTO learnings (service, task_type, actions, successes, failures, verified_at) "
                    "VALUES (?, ?, ?, 1, 0, ?) "
                    "ON CONFLICT(service, task_type) DO UPDATE SET "
                    "actions = excluded.actions, successes = successes + 1, verified_at = excluded.verified_at",
                    (service, task_type, payload, utcnow()),
                )
            else:
                conn.execute(
                    "UPDATE learnings SET failures = failures + 1 WHERE service = ? AND task_type = ?",
                    (service, task_type),
                )
            conn.commit()
        finally:
            conn.close()

    # ─── Verification corrections ─────────────────────────────────────

    def record_hints(self, domain: str, task_type: str, hints: list[str], helped: bool) -> None:
        if not hints:
            return
        conn = self._conn()
        try:
            for hint in hints:
                conn.execute(
                    "INSERT INTO verification_learnings (domain, task_type, hint, times_applied, times_helped, "
                    "updated_at) VALUES (?, ?, ?, 1, ?, ?) "
                    "ON CONFLICT(domain, task_type, hint) DO UPDATE SET "
                    "times_applied = times_applied + 1, times_helped = times_helped + excluded.times_helped, "
                    "updated_at = excluded.updated_at",
                    (domain, task_type, hint[:500], int(helped), utcnow()),
                )
            conn.commit()
        finally:
            conn.close()
        log.info("Recorded %d correction hints for %s/%s (helped=%s)", len(hints), domain, task_type, helped)

    def proven_hints(self, domain: str, task_type: str, limit: int = 5) -> list[str]:
        """Hints worth applying up front on the first attempt."""
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT hint FROM verification_learnings WHERE domain = ? AND task_type = ? "
                "AND times_applied >= ? AND 100.0 * times_helped / times_applied >= ? "
                "ORDER BY times_helped DESC, updated_at DESC LIMIT ?",
                (domain, task_type, HINT_MIN_APPLICATIONS, HINT_MIN_SUCCESS, limit),
            ).fetchall()
        finally:
            conn.close()
        return [r["hint"] for r in rows]
