"""Configuration checks for operations and automations, and live operation tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlparse

from pydantic import BaseModel

from ..simulator.failures import FailureConfig
from .conditions import COMPARISON_OPERATORS
from .context import ExecutionContext
from .errors import AutomationError, error_chain
from .executor import OperationExecutor
from .operators import LOGIC_OPERATORS, MATH_OPERATORS
from .report import ExecutionTrace
from .scheduler import previous_operation_refs
from .schema import Automation, AutomationOperation

KNOWN_OPERATORS = set(MATH_OPERATORS) | set(LOGIC_OPERATORS) | set(COMPARISON_OPERATORS)


class OperationValidation(BaseModel):
    operation_id: str
    valid: bool
    message: str


class ValidationIssue(BaseModel):
    code: str
    message: str
    operation_id: str | None = None


@dataclass
class OperationTestResult:
    operation: AutomationOperation
    valid: bool
    message: str
    outputs: dict[str, Any] | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    trace: ExecutionTrace | None = None


def validate_operation(op: AutomationOperation) -> OperationValidation:
    """Check that an operation carries everything its type needs to run."""
    valid, message = _check_config(op)
    return OperationValidation(operation_id=op.id, valid=valid, message=message)


def _check_config(op: AutomationOperation) -> tuple[bool, str]:
    config = op.config

    if op.type == "crud_operation":
        if not config.database or not config.table or not config.operation:
            return False, "Missing required fields: database, table, or operation type"
        return True, f"CRUD operation validated: {config.operation} on {config.database}.{config.table}"

    if op.type == "file_operation":
        if not config.file_operation:
            return False, "Missing file operation type"
        if config.file_operation == "download" and not config.download_protocol:
            return False, "Missing download protocol for file download operation"
        if config.file_operation == "upload" and not config.upload_protocol:
            return False, "Missing upload protocol for file upload operation"
        if config.file_operation in ("open",) and not config.source_path:
            return False, "Missing source path for file open operation"
        if config.file_operation == "write" and not config.target_path:
            return False, "Missing target path for file write operation"
        return True, f"File operation validated: {config.file_operation}"

    if op.type == "http_request":
        if not config.http_request_url or not config.http_request_method:
            return False, "Missing required fields: URL or HTTP method"
        parsed = urlparse(config.http_request_url)
        templated = "{{" in config.http_request_url
        if not templated and (parsed.scheme not in ("http", "https") or not parsed.netloc):
            return False, "Invalid URL format"
        return True, f"HTTP request validated: {config.http_request_method} {config.http_request_url}"

    if op.type == "run_script":
        if not config.script_language or not config.script_content:
            return False, "Missing script language or content"
        return True, (
            f"Script validated: {config.script_language} script with "
            f"{len(config.script_content)} characters"
        )

    if op.type == "delay":
        if not config.delay_duration or not config.delay_unit:
            return False, "Missing delay duration or unit"
        return True, f"Delay operation validated: {config.delay_duration} {config.delay_unit}"

    if op.type == "messaging":
        if not config.messaging_type:
            return False, "Missing messaging type"
        if config.messaging_type == "webhook" and not config.webhook_url:
            return False, "Missing webhook URL"
        if config.messaging_type != "webhook" and not config.recipient:
            return False, f"Missing recipient for {config.messaging_type} message"
        return True, f"Messaging operation validated: {config.messaging_type}"

    if op.type == "logic_conditions":
        if not config.operations:
            return False, "Logic operation has no sub-operations"
        seen: set[str] = set()
        for sub in config.operations:
            if sub.operator not in KNOWN_OPERATORS:
                return False, f"Unknown operator {sub.operator!r}"
            if sub.output_name in seen:
                return False, f"Duplicate output name {sub.output_name!r}"
            if sub.operator == "NOT" and len(sub.operands) != 1:
                return False, f"NOT takes exactly one operand ({sub.output_name})"
            for operand in sub.operands:
                if operand.source == "current_operation" and operand.value not in seen:
                    return False, (
                        f"{sub.output_name} reads {operand.value!r} before it is computed"
                    )
            seen.add(sub.output_name)
        return True, f"Logic operation validated: {len(config.operations)} sub-operations"

    if op.type == "manual_operation":
        return True, "Manual operation - requires human intervention"

    return False, f'Operation type "{op.type}" cannot be executed'


def validate_automation(automation: Automation) -> list[ValidationIssue]:
    """Structural problems that would make a run fail or misroute."""
    issues: list[ValidationIssue] = []
    ops = automation.operations

    orders = [op.order for op in ops]
    if orders != list(range(1, len(ops) + 1)):
        issues.append(
            ValidationIssue(code="order", message=f"Operation order is not contiguous 1..{len(ops)}: {orders}")
        )

    ids = [op.id for op in ops]
    for op_id in {i for i in ids if ids.count(i) > 1}:
        issues.append(ValidationIssue(code="duplicate_id", message=f"Duplicate operation id {op_id}", operation_id=op_id))

    known = set(ids)
    order_of = {op.id: op.order for op in ops}
    for op in ops:
        for where, source_id in previous_operation_refs(op):
            if source_id not in known:
                issues.append(
                    ValidationIssue(
                        code="unknown_reference",
                        message=f"{where} references unknown operation {source_id!r}",
                        operation_id=op.id,
                    )
                )
            elif order_of[source_id] >= op.order:
                issues.append(
                    ValidationIssue(
                        code="forward_reference",
                        message=f"{where} references operation {source_id!r} that does not run earlier",
                        operation_id=op.id,
                    )
                )

        for label, routing in (("onSuccess", op.on_success), ("onFailure", op.on_failure)):
            if routing is None:
                continue
            if routing.action == "goto" and routing.target_operation_id not in known:
                issues.append(
                    ValidationIssue(
                        code="unknown_target",
                        message=f"{label} goto targets unknown operation {routing.target_operation_id!r}",
                        operation_id=op.id,
                    )
                )
            if routing.action == "compensate":
                if label == "onSuccess":
                    issues.append(ValidationIssue(code="invalid_routing", message="compensate is only valid onFailure", operation_id=op.id))
                elif routing.compensating_operation_id not in known:
                    issues.append(
                        ValidationIssue(
                            code="unknown_target",
                            message=f"compensating operation {routing.compensating_operation_id!r} does not exist",
                            operation_id=op.id,
                        )
                    )
                elif routing.compensating_operation_id == op.id:
                    issues.append(ValidationIssue(code="invalid_routing", message="operation compensates itself", operation_id=op.id))
            if routing.action == "retry" and label == "onSuccess":
                issues.append(ValidationIssue(code="invalid_routing", message="retry is only valid onFailure", operation_id=op.id))

        check = validate_operation(op)
        if not check.valid:
            issues.append(ValidationIssue(code="config", message=check.message, operation_id=op.id))

    policy = automation.on_failure
    if policy and policy.action == "goto_operation" and policy.operation_id not in known:
        issues.append(
            ValidationIssue(code="unknown_target", message=f"Failure policy targets unknown operation {policy.operation_id!r}")
        )

    for out in automation.output_parameters:
        if out.source == "operation_output" and out.source_operation_id not in known:
            issues.append(
                ValidationIssue(code="unknown_reference", message=f"Output {out.name} reads unknown operation {out.source_operation_id!r}")
            )
    return issues


async def test_operation(
    op: AutomationOperation,
    services: Mapping[str, Any],
    inputs: Mapping[str, Any] | None = None,
    operation_outputs: Mapping[str, Mapping[str, Any]] | None = None,
    environment: Mapping[str, Any] | None = None,
    failure_config: FailureConfig | None = None,
) -> OperationTestResult:
    """Validate ``op`` and execute it once against ``services``.

    Routing is not followed: only the operation's own outcome counts. The
    returned operation is a copy with ``validationStatus`` set accordingly.
    """
    check = validate_operation(op)
    if not check.valid:
        return OperationTestResult(
            operation=op.model_copy(update={"validation_status": "invalid"}),
            valid=False,
            message=check.message,
        )

    trace = ExecutionTrace()
    executor = OperationExecutor(
        services,
        trace,
        operations={op.id: op},
        failure_config=failure_config,
        sleep=_no_wait,
    )
    ctx = ExecutionContext(
        automation_inputs=inputs or {},
        operation_outputs=operation_outputs or {},
        environment=environment or {},
    )
    isolated = op.model_copy(update={"on_success": None, "on_failure": None})

    try:
        result = await executor.execute(isolated, ctx)
    except AutomationError as e:
        return OperationTestResult(
            operation=op.model_copy(update={"validation_status": "invalid"}),
            valid=False,
            message=str(e),
            errors=error_chain(e),
            trace=trace,
        )

    if result.status == "skipped":
        message = "Run condition is false: operation would be skipped"
        valid = True
    elif result.error is not None:
        message = str(result.error)
        valid = False
    else:
        message = check.message
        valid = True

    return OperationTestResult(
        operation=op.model_copy(update={"validation_status": "valid" if valid else "invalid"}),
        valid=valid,
        message=message,
        outputs=result.outputs,
        errors=[rec for err in result.errors for rec in error_chain(err)],
        trace=trace,
    )


async def _no_wait(seconds: float) -> None:
    return None
