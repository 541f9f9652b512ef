"""Task difficulty prediction from past outcomes per (domain, task type)."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from pilot.common.protocol import utcnow
from stores.schemas import connect, init_db

log = logging.getLogger(__name__)

MIN_SAMPLES = 3


@dataclass
class DifficultyPrediction:
    difficulty: str  # easy | medium | hard | nightmare | unknown
    predicted_success: float
    recommended_method: str
    strike_hint: int
    samples: int = 0


def band(success_pct: float) -> str:
    if success_pct >= 90:
        return "easy"
    if success_pct >= 70:
        return "medium"
    if success_pct >= 40:
        return "hard"
    return "nightmare"


def strikes_for(success_pct: float) -> int:
    if success_pct < 50:
        return 5
    if success_pct < 80:
        return 3
    return 2


class DifficultyStore:
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def record(self, domain: str, task_type: str, success: bool, duration_ms: int,
               cost: float, strikes: int) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO task_difficulty (domain, task_type, samples, successes, avg_duration_ms, avg_cost, "
                "avg_strikes, updated_at) VALUES (?, ?, 1, ?, ?, ?, ?, ?) "
                "ON CONFLICT(domain, task_type) DO UPDATE SET "
                "avg_duration_ms = (avg_duration_ms * samples + excluded.avg_duration_ms) / (samples + 1), "
                "avg_cost = (avg_cost * samples + excluded.avg_cost) / (samples + 1), "
                "avg_strikes = (avg_strikes * samples + excluded.avg_strikes) / (samples + 1), "
                "successes = successes + excluded.successes, "
                "samples = samples + 1, updated_at = excluded.updated_at",
                (domain, task_type, int(success), duration_ms, cost, strikes, utcnow()),
            )
            conn.commit()
        finally:
            conn.close()

    def predict(self, domain: str, task_type: str) -> DifficultyPrediction:
        conn = self._conn()
        try:
            row = conn.execute(
                "SELECT samples, successes, avg_strikes FROM task_difficulty WHERE domain = ? AND task_type = ?",
                (domain, task_type),
            ).fetchone()
        finally:
            conn.close()

        if not row or row["samples"] < MIN_SAMPLES:
            return DifficultyPrediction("unknown", 70.0, "browser", 3, row["samples"] if row else 0)

        success_pct = 100.0 * row["successes"] / row["samples"]
        difficulty = band(success_pct)
        if success_pct < 50:
            method = "email_fallback"
        elif difficulty == "easy":
            method = "browser_cached"
        else:
            method = "browser"
        return DifficultyPrediction(difficulty, success_pct, method, strikes_for(success_pct), row["samples"])
