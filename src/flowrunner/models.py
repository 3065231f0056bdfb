"""API models for FlowRunner."""

from typing import Any, Optional

from pydantic import Field

from .automation.schema import AutomationOperation, CamelModel
from .automation.validation import ValidationIssue
from .simulator.failures import FailureConfig


class RunAutomationRequest(CamelModel):
    """Request to run a stored automation."""

    inputs: dict[str, Any] = Field(
        default_factory=dict, description="Values for the automation's input parameters"
    )
    environment: dict[str, Any] = Field(
        default_factory=dict, description="Integration environment values (integration_env sources)"
    )
    timeout: Optional[float] = Field(
        None, gt=0, description="Abort the run after this many seconds"
    )


class OperationTestRequest(CamelModel):
    """Request to execute a single operation against the simulator."""

    inputs: dict[str, Any] = Field(default_factory=dict)
    operation_outputs: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Outputs of earlier operations, keyed by operation id",
    )
    environment: dict[str, Any] = Field(default_factory=dict)
    failure_config: Optional[FailureConfig] = None


class OperationTestResponse(CamelModel):
    valid: bool
    message: str
    outputs: Optional[dict[str, Any]] = None
    errors: list[dict[str, Any]] = []
    operation: AutomationOperation


class ValidationResponse(CamelModel):
    valid: bool
    issues: list[ValidationIssue] = []


class HealthResponse(CamelModel):
    """Health check response."""

    status: str
    service: str = "FlowRunner Backend"
