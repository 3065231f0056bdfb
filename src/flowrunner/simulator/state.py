"""Shared in-memory state for the simulated collaborators."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class CallRecord(BaseModel):
    """A single collaborator call recorded by the simulator."""

    service: str
    action: str
    parameters: dict[str, Any] = {}
    result: Optional[Any] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class SimulatorState(BaseModel):
    """Mutable state shared across all simulated collaborators."""

    # database -> table -> rows
    tables: dict[str, dict[str, list[dict[str, Any]]]] = {}
    # local path -> content
    files: dict[str, Any] = {}
    # remote location (url, s3://bucket/key, tcp://host:port/path) -> content
    remote_files: dict[str, Any] = {}
    # "METHOD url" or "url" -> {"status_code", "body", "headers"}
    http_routes: dict[str, dict[str, Any]] = {}
    outbox: list[dict[str, Any]] = []
    # operation id -> response of the human operator
    manual_responses: dict[str, dict[str, Any]] = {}
    calls: list[CallRecord] = []

    def calls_to(self, service: str, action: str | None = None) -> list[CallRecord]:
        return [
            c for c in self.calls if c.service == service and (action is None or c.action == action)
        ]
