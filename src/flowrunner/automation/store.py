"""SQLite-backed storage for automations and their run history."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from .database import init_db
from .report import AutomationRunResult, ExecutionTrace, RunStatus
from .schema import Automation, AutomationRecord


class RunRecord(BaseModel):
    """One stored run of an automation."""

    id: str
    automation_id: str
    status: RunStatus
    inputs: dict[str, Any] = {}
    outputs: dict[str, Any] = {}
    errors: list[dict[str, Any]] = []
    steps: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    trace: Optional[ExecutionTrace] = None


class RunStats(BaseModel):
    """Execution, success and error counts for one automation."""

    automation_id: str
    executions: int = 0
    successes: int = 0
    errors: int = 0
    last_run_at: Optional[datetime] = None


class AutomationStore:
    """Stores automation records and run history in a single SQLite file."""

    def __init__(self, db_path: Path):
        self._conn = init_db(db_path)
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- automations ---------------------------------------------------------

    def save(self, automation: Automation) -> str:
        """Insert or replace an automation. Returns its ID."""
        record = automation.to_record()
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO automations
                   (id, project_id, name, description, enabled, operations,
                    input_parameters, output_parameters, on_failure, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.project_id,
                    record.name,
                    record.description,
                    int(record.enabled),
                    json.dumps(record.operations),
                    _dumps_optional(record.input_parameters),
                    _dumps_optional(record.output_parameters),
                    _dumps_optional(record.on_failure),
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
            self._conn.commit()
        return record.id

    def load(self, automation_id: str) -> Optional[Automation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM automations WHERE id = ?", (automation_id,)
            ).fetchone()
        if row is None:
            return None
        return Automation.from_record(_row_to_record(row))

    def list_automations(self, project_id: Optional[str] = None) -> list[Automation]:
        """List automations, optionally restricted to one project, by name."""
        with self._lock:
            if project_id is None:
                rows = self._conn.execute(
                    "SELECT * FROM automations ORDER BY name, id"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM automations WHERE project_id = ? ORDER BY name, id",
                    (project_id,),
                ).fetchall()
        return [Automation.from_record(_row_to_record(r)) for r in rows]

    def delete(self, automation_id: str) -> bool:
        """Delete an automation and its run history."""
        with self._lock:
            self._conn.execute("DELETE FROM automation_runs WHERE automation_id = ?", (automation_id,))
            cursor = self._conn.execute("DELETE FROM automations WHERE id = ?", (automation_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    # -- runs ----------------------------------------------------------------

    def save_run(self, result: AutomationRunResult, inputs: dict[str, Any] | None = None) -> str:
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO automation_runs
                   (id, automation_id, status, inputs, outputs, errors, trace, steps,
                    started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    result.run_id,
                    result.automation_id,
                    result.status.value,
                    json.dumps(inputs or {}, default=str),
                    json.dumps(result.outputs, default=str),
                    json.dumps(result.errors, default=str),
                    result.trace.model_dump_json(),
                    result.steps,
                    result.trace.started_at.isoformat(),
                    result.trace.completed_at.isoformat() if result.trace.completed_at else None,
                ),
            )
            self._conn.commit()
        return result.run_id

    def load_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM automation_runs WHERE id = ?", (run_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_run(row, with_trace=True)

    def list_runs(self, automation_id: str, limit: int = 50) -> list[RunRecord]:
        """Runs of one automation, most recent first. Traces are not loaded."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM automation_runs WHERE automation_id = ?
                   ORDER BY started_at DESC LIMIT ?""",
                (automation_id, limit),
            ).fetchall()
        return [_row_to_run(r) for r in rows]

    def run_stats(self, automation_id: str) -> RunStats:
        with self._lock:
            row = self._conn.execute(
                """SELECT COUNT(*) AS executions,
                          SUM(CASE WHEN status = 'succeeded' THEN 1 ELSE 0 END) AS successes,
                          SUM(CASE WHEN status IN ('failed', 'aborted') THEN 1 ELSE 0 END) AS errors,
                          MAX(started_at) AS last_run_at
                   FROM automation_runs WHERE automation_id = ?""",
                (automation_id,),
            ).fetchone()
        return RunStats(
            automation_id=automation_id,
            executions=row["executions"] or 0,
            successes=row["successes"] or 0,
            errors=row["errors"] or 0,
            last_run_at=datetime.fromisoformat(row["last_run_at"]) if row["last_run_at"] else None,
        )


def _dumps_optional(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads_optional(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _row_to_record(row: sqlite3.Row) -> AutomationRecord:
    return AutomationRecord(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        description=row["description"],
        enabled=bool(row["enabled"]),
        operations=json.loads(row["operations"]),
        input_parameters=_loads_optional(row["input_parameters"]),
        output_parameters=_loads_optional(row["output_parameters"]),
        on_failure=_loads_optional(row["on_failure"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_run(row: sqlite3.Row, with_trace: bool = False) -> RunRecord:
    return RunRecord(
        id=row["id"],
        automation_id=row["automation_id"],
        status=RunStatus(row["status"]),
        inputs=json.loads(row["inputs"]),
        outputs=json.loads(row["outputs"]),
        errors=json.loads(row["errors"]),
        steps=row["steps"],
        started_at=datetime.fromisoformat(row["started_at"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        trace=ExecutionTrace.model_validate_json(row["trace"]) if with_trace else None,
    )
