"""Task persistence with state machine enforcement."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from pilot.common.errors import InvalidTransition
from pilot.common.protocol import (
    Action,
    ActionKind,
    ActionResult,
    ExecutionPlan,
    InputChannel,
    StructuredIntent,
    Task,
    TaskStatus,
    VerificationOutcome,
    check_transition,
    utcnow,
)
from stores.schemas import connect, init_db

log = logging.getLogger(__name__)


def _row_to_task(row: sqlite3.Row) -> Task:
    intent = json.loads(row["intent"]) if row["intent"] else {}
    verification = json.loads(row["verification"]) if row["verification"] else None
    return Task(
        id=row["id"],
        owner_id=row["owner_id"],
        origin=row["origin"],
        channel=InputChannel(row["channel"]),
        subject=row["subject"] or "",
        body=row["body"],
        task_type=row["task_type"] or "general",
        intent=StructuredIntent(**intent) if intent else StructuredIntent(),
        confidence=row["confidence"] or 0,
        status=TaskStatus(row["status"]),
        cost=row["cost"] or 0.0,
        verification=VerificationOutcome(**verification) if verification else None,
        cascade_tier=row["cascade_tier"],
        checkpoint=row["checkpoint"] if row["checkpoint"] is not None else -1,
        response=row["response"] or "",
        error=row["error"],
        results=[ActionResult.from_dict(r) for r in json.loads(row["results"] or "[]")],
        pending_actions=[
            Action(kind=ActionKind(a["kind"]), params=a.get("params", {}))
            for a in json.loads(row["pending_actions"] or "[]")
        ],
        facts=json.loads(row["facts"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class TaskStore:
    """SQLite-backed task table. Status changes go through the transition table."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        init_db(self.db_path).close()

    def _conn(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def create(self, task: Task) -> Task:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO tasks (id, owner_id, origin, channel, subject, body, task_type, intent, "
                "confidence, status, cost, checkpoint, results, pending_actions, facts, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task.id, task.owner_id, task.origin, task.channel.value, task.subject, task.body,
                    task.task_type, json.dumps(asdict(task.intent)), task.confidence, task.status.value,
                    task.cost, task.checkpoint, "[]", "[]", json.dumps(task.facts), task.created_at, task.updated_at,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        log.info("Task %s created for %s via %s", task.id, task.owner_id, task.channel.value)
        return task

    def get(self, task_id: str) -> Optional[Task]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_task(row) if row else None

    def find_by_status(self, owner_id: str, status: TaskStatus) -> list[Task]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE owner_id = ? AND status = ? ORDER BY created_at DESC",
                (owner_id, status.value),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_task(r) for r in rows]

    def transition(self, task: Task, target: TaskStatus, **fields) -> Task:
        """Move *task* to *target*, persisting any extra fields in the same write.

        Raises InvalidTransition if the move is not allowed or the stored
        status changed underneath us.
        """
        check_transition(task.status, target)
        previous = task.status
        task.status = target
        for name, value in fields.items():
            setattr(task, name, value)
        task.updated_at = utcnow()

        conn = self._conn()
        try:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, task_type = ?, intent = ?, confidence = ?, body = ?, "
                "cost = ?, verification = ?, cascade_tier = ?, checkpoint = ?, response = ?, error = ?, "
                "results = ?, pending_actions = ?, updated_at = ? WHERE id = ? AND status = ?",
                (*self._mutable_values(task), task.id, previous.value),
            )
            conn.commit()
        finally:
            conn.close()
        if cur.rowcount == 0:
            task.status = previous
            raise InvalidTransition(f"Task {task.id} is no longer {previous.value}")
        log.info("Task %s: %s → %s", task.id, previous.value, target.value)
        return task

    def save_progress(self, task: Task) -> None:
        """Persist results, checkpoint and cost without changing status.

        Terminal tasks are immutable here; use append_audit for notes.
        """
        if task.status.is_terminal:
            raise InvalidTransition(f"Task {task.id} is {task.status.value}; only audit notes may be added")
        task.updated_at = utcnow()
        conn = self._conn()
        try:
            conn.execute(
                "UPDATE tasks SET status = ?, task_type = ?, intent = ?, confidence = ?, body = ?, "
                "cost = ?, verification = ?, cascade_tier = ?, checkpoint = ?, response = ?, error = ?, "
                "results = ?, pending_actions = ?, updated_at = ? WHERE id = ?",
                (*self._mutable_values(task), task.id),
            )
            conn.commit()
        finally:
            conn.close()

    def append_audit(self, task_id: str, note: str) -> None:
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO task_audit (task_id, note, created_at) VALUES (?, ?, ?)",
                (task_id, note, utcnow()),
            )
            conn.commit()
        finally:
            conn.close()

    def audit_trail(self, task_id: str) -> list[dict]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT note, created_at FROM task_audit WHERE task_id = ? ORDER BY id", (task_id,)
            ).fetchall()
        finally:
            conn.close()
        return [{"at": r["created_at"], "note": r["note"]} for r in rows]

    def save_plan(self, plan: ExecutionPlan) -> None:
        """One plan per task; a new plan replaces the old one."""
        conn = self._conn()
        try:
            conn.execute(
                "INSERT INTO plans (task_id, plan, created_at) VALUES (?, ?, ?) "
                "ON CONFLICT(task_id) DO UPDATE SET plan = excluded.plan, created_at = excluded.created_at",
                (plan.task_id, plan.to_json(), utcnow()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_plan(self, task_id: str) -> Optional[dict]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT plan FROM plans WHERE task_id = ?", (task_id,)).fetchone()
        finally:
            conn.close()
        return json.loads(row["plan"]) if row else None

    @staticmethod
    def _mutable_values(task: Task) -> tuple:
        return (
            task.status.value,
            task.task_type,
            json.dumps(asdict(task.intent)),
            task.confidence,
            task.body,
            task.cost,
            json.dumps(asdict(task.verification)) if task.verification else None,
            task.cascade_tier,
            task.checkpoint,
            task.response,
            task.error,
            json.dumps([r.to_dict() for r in task.results], default=str),
            json.dumps([a.to_dict() for a in task.pending_actions], default=str),
            task.updated_at,
        )
