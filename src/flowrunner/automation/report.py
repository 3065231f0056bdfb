"""Run trace and run result models with markdown rendering."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class TraceStep(BaseModel):
    """A single step recorded while an automation runs."""

    operation_id: str
    operation_type: str
    status: str  # "success" | "failed" | "skipped" | "retrying" | "alert"
    attempt: int = 1
    iteration: Optional[int] = None
    inputs: dict[str, Any] = {}
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    routing: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ExecutionTrace(BaseModel):
    """Full trace of one automation run."""

    steps: list[TraceStep] = []
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def for_operation(self, operation_id: str) -> list[TraceStep]:
        return [step for step in self.steps if step.operation_id == operation_id]


class IntegrationHandoff(BaseModel):
    """Control handed to an external integration, ending this run."""

    integration_id: Optional[str] = None
    operation_id: Optional[str] = None
    reason: str = "routing"  # "routing" | "failure_policy"


class AutomationRunResult(BaseModel):
    """Outcome of one automation run: status, outputs, trace and error chain."""

    run_id: str
    automation_id: str
    automation_name: str
    status: RunStatus
    outputs: dict[str, Any] = {}
    trace: ExecutionTrace
    errors: list[dict[str, Any]] = []
    alerts: list[str] = []
    handoff: Optional[IntegrationHandoff] = None
    steps: int = 0
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def to_markdown(self) -> str:
        lines = [
            f"# Automation Run: {self.automation_name}",
            "",
            f"**Automation ID:** `{self.automation_id}`",
            f"**Run ID:** `{self.run_id}`",
            f"**Status:** {self.status.value}",
            f"**Steps:** {self.steps}",
            "",
        ]

        if self.outputs:
            lines.append("## Outputs")
            for name, value in self.outputs.items():
                lines.append(f"- `{name}`: {value}")
            lines.append("")

        if self.alerts:
            lines.append("## Alerts")
            for alert in self.alerts:
                lines.append(f"- {alert}")
            lines.append("")

        if self.errors:
            lines.append("## Errors")
            for err in self.errors:
                where = f" (operation `{err['operation_id']}`)" if err.get("operation_id") else ""
                lines.append(f"- **{err['error_type']}**{where}: {err['message']}")
            lines.append("")

        if self.handoff:
            lines.append(f"**Handed off to integration:** `{self.handoff.integration_id}`")
            lines.append("")

        lines.append("## Execution Trace")
        lines.append("")
        lines.append("| # | Operation | Type | Attempt | Status | Routing | Detail |")
        lines.append("|---|-----------|------|---------|--------|---------|--------|")

        for i, step in enumerate(self.trace.steps, 1):
            detail = ""
            if step.status == "success" and step.result:
                detail = ", ".join(f"{k}={v}" for k, v in step.result.items())
            elif step.error:
                detail = step.error

            status_icon = {
                "success": "OK",
                "failed": "FAIL",
                "skipped": "SKIP",
                "retrying": "RETRY",
                "alert": "ALERT",
            }.get(step.status, step.status)
            operation = f"`{step.operation_id}`"
            if step.iteration is not None:
                operation += f" [{step.iteration}]"
            lines.append(
                f"| {i} | {operation} | {step.operation_type} | {step.attempt} "
                f"| {status_icon} | {step.routing or ''} | {detail} |"
            )

        lines.append("")
        if self.trace.started_at and self.trace.completed_at:
            duration = (self.trace.completed_at - self.trace.started_at).total_seconds()
            lines.append(f"**Duration:** {duration:.2f}s")

        return "\n".join(lines)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")
