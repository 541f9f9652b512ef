"""Method and model performance tables.

Writes are single-statement increment upserts so concurrent workers never
lose an outcome. Reads return ``CandidateStats`` for the ranker.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from pilot.common.protocol import utcnow
from pilot.ranking.ranker import CandidateStats
from stores.schemas import connect, init_db

log = logging.getLogger(__name__)

# Domain-specific model data needs fewer samples before it overrides the owner-wide data.
DOMAIN_MODEL_MIN_SAMPLES = 3


class MethodPerformanceStore:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def record(self, domain: str, action_kind: str, method: str, success: bool, duration_ms: int = 0) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO method_performance "
                "(domain, action_kind, method, successes, failures, avg_duration_ms, last_attempt_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(domain, action_kind, method) DO UPDATE SET "
                "avg_duration_ms = (avg_duration_ms * (successes + failures) + excluded.avg_duration_ms) "
                "/ (successes + failures + 1), "
                "successes = successes + excluded.successes, "
                "failures = failures + excluded.failures, "
                "last_attempt_at = excluded.last_attempt_at",
                (domain, action_kind, method, int(success), int(not success), duration_ms, utcnow()),
            )
            conn.commit()
        finally:
            conn.close()

    def stats(self, domain: str, action_kind: str) -> dict[str, CandidateStats]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT method, successes, failures, avg_duration_ms FROM method_performance "
                "WHERE domain = ? AND action_kind = ?",
                (domain, action_kind),
            ).fetchall()
        finally:
            conn.close()
        return {
            r["method"]: CandidateStats(r["method"], r["successes"], r["failures"], r["avg_duration_ms"] or 0.0)
            for r in rows
        }

    def all_rows(self, domain: str | None = None) -> list[dict]:
        conn = self._conn()
        try:
            if domain:
                rows = conn.execute(
                    "SELECT * FROM method_performance WHERE domain = ? ORDER BY action_kind, method", (domain,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM method_performance ORDER BY domain, action_kind, method").fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]


class ModelPerformanceStore:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def record(self, owner_id: str, task_type: str, model: str, success: bool,
               cost: float = 0.0, latency_ms: int = 0, domain: str = "") -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO model_performance "
                "(owner_id, task_type, domain, model, successes, failures, avg_cost, avg_latency_ms) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(owner_id, task_type, domain, model) DO UPDATE SET "
                "avg_cost = (avg_cost * (successes + failures) + excluded.avg_cost) / (successes + failures + 1), "
                "avg_latency_ms = (avg_latency_ms * (successes + failures) + excluded.avg_latency_ms) "
                "/ (successes + failures + 1), "
                "successes = successes + excluded.successes, "
                "failures = failures + excluded.failures",
                (owner_id, task_type, domain, model, int(success), int(not success), cost, latency_ms),
            )
            conn.commit()
        finally:
            conn.close()

    def stats(self, owner_id: str, task_type: str, domain: str = "") -> dict[str, CandidateStats]:
        """Per-model stats; domain rows win over owner-wide totals once they have enough samples."""
        conn = self._conn()
        try:
            general_rows = conn.execute(
                "SELECT model, SUM(successes) AS successes, SUM(failures) AS failures, AVG(avg_cost) AS avg_cost "
                "FROM model_performance WHERE owner_id = ? AND task_type = ? GROUP BY model",
                (owner_id, task_type),
            ).fetchall()
            domain_rows = []
            if domain:
                domain_rows = conn.execute(
                    "SELECT model, successes, failures, avg_cost FROM model_performance "
                    "WHERE owner_id = ? AND task_type = ? AND domain = ?",
                    (owner_id, task_type, domain),
                ).fetchall()
        finally:
            conn.close()

        merged = {
            r["model"]: CandidateStats(r["model"], r["successes"] or 0, r["failures"] or 0, r["avg_cost"] or 0.0)
            for r in general_rows
        }
        for r in domain_rows:
            if r["successes"] + r["failures"] >= DOMAIN_MODEL_MIN_SAMPLES:
                merged[r["model"]] = CandidateStats(r["model"], r["successes"], r["failures"], r["avg_cost"] or 0.0)
        return merged
