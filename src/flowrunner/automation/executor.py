"""Operation executor: runs one automation operation against its collaborators."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from ..simulator.failures import FailureConfig
from .conditions import evaluate
from .context import ExecutionContext
from .errors import (
    ActionError,
    AutomationError,
    CycleDetectedError,
    InvalidRoutingError,
    ResolutionError,
    RetriesExhaustedError,
    RunAborted,
    TypeMismatchError,
)
from .operators import run_sub_operations
from .report import ExecutionTrace, TraceStep
from .resolver import coerce, lookup_path, render_template, resolve
from .schema import AutomationOperation, RoutingAction

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

DELAY_UNIT_SECONDS = {
    "milliseconds": 0.001,
    "seconds": 1.0,
    "minutes": 60.0,
    "hours": 3600.0,
}


@dataclass
class Routing:
    """Where control goes after an operation."""

    kind: str  # "continue" | "goto" | "end" | "escalate" | "handoff"
    target_id: str | None = None
    error: AutomationError | None = None
    integration_id: str | None = None

    def describe(self) -> str:
        if self.kind == "goto":
            return f"goto {self.target_id}"
        if self.kind == "handoff":
            return f"goto_integration {self.integration_id}"
        return self.kind


@dataclass
class OperationResult:
    operation_id: str
    status: str  # "success" | "failed" | "skipped" | "compensated"
    context: ExecutionContext
    routing: Routing
    outputs: dict[str, Any] | None = None
    errors: list[AutomationError] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)

    @property
    def error(self) -> AutomationError | None:
        return self.errors[0] if self.errors else None


def capture_outputs(op: AutomationOperation, result: dict[str, Any]) -> dict[str, Any]:
    """Select the declared output parameters from an action result."""
    if not op.output_parameters:
        return dict(result)
    outputs: dict[str, Any] = {}
    for param in op.output_parameters:
        value = lookup_path(result, param.path or param.name)
        outputs[param.name] = coerce(value, param.type)
    return outputs


class OperationExecutor:
    """Executes single operations: gating, iteration, mapping, dispatch and routing.

    Collaborators are looked up in ``services`` by kind (``crud``, ``file``,
    ``http``, ``script``, ``messaging``, ``manual``). Their methods may be sync
    or async; the executor awaits whatever comes back awaitable.
    """

    def __init__(
        self,
        services: Mapping[str, Any],
        trace: ExecutionTrace,
        operations: Mapping[str, AutomationOperation] | None = None,
        failure_config: FailureConfig | None = None,
        sleep: SleepFn | None = None,
        cancel_event: asyncio.Event | None = None,
        max_compensation_depth: int = 8,
        http_timeout: float = 30.0,
        script_timeout: float = 30.0,
    ):
        self.services = services
        self.trace = trace
        self.operations = dict(operations or {})
        self.failure_config = failure_config
        self._sleep = sleep or asyncio.sleep
        self.cancel_event = cancel_event
        self.max_compensation_depth = max_compensation_depth
        self.http_timeout = http_timeout
        self.script_timeout = script_timeout

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        _compensating: tuple[str, ...] = (),
    ) -> OperationResult:
        ctx = ctx.for_operation()

        try:
            should_run = self._check_run_condition(op, ctx)
        except AutomationError as e:
            if e.operation_id is None:
                e.operation_id = op.id
            self._trace(op, "failed", error=f"runCondition: {e}")
            return await self._on_failure(op, ctx, e, _compensating)

        if not should_run:
            logger.debug("Skipping operation %s: run condition is false", op.label)
            self._trace(op, "skipped", routing="continue")
            return OperationResult(op.id, "skipped", ctx, Routing("continue"))

        try:
            outputs = await self._run_body(op, ctx)
        except AutomationError as e:
            return await self._on_failure(op, ctx, e, _compensating)

        ctx = ctx.with_operation_output(op.id, outputs)
        return self._on_success(op, ctx, outputs)

    async def delay(self, seconds: float) -> None:
        """Suspend the current run only. Cancellation interrupts the wait."""
        if seconds <= 0:
            return
        if self.cancel_event is None:
            await self._sleep(seconds)
            return
        if self.cancel_event.is_set():
            raise RunAborted()

        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
        if waiter in done:
            raise RunAborted()

    # ------------------------------------------------------------------
    # Gating and iteration
    # ------------------------------------------------------------------

    def _check_run_condition(self, op: AutomationOperation, ctx: ExecutionContext) -> bool:
        cond = op.run_condition
        if cond is None or not cond.enabled:
            return True
        if cond.operator == "exists":
            try:
                field_value = resolve(cond.as_ref(), ctx)
            except ResolutionError:
                return False
            return evaluate(field_value, "exists")
        field_value = resolve(cond.as_ref(), ctx)
        comparand = render_template(cond.value, ctx.template_scope())
        return evaluate(field_value, cond.operator, comparand)

    async def _run_body(self, op: AutomationOperation, ctx: ExecutionContext) -> dict[str, Any]:
        iteration = op.iteration
        if iteration is None or not iteration.enabled:
            return await self._attempt_with_retry(op, ctx)

        items = resolve(iteration.as_ref(), ctx, "array" if iteration.source == "manual" else None)
        if isinstance(items, tuple):
            items = list(items)
        if not isinstance(items, list):
            raise TypeMismatchError(
                f"Iteration source for {op.label} resolved to {type(items).__name__}, not an array",
                op.id,
            )

        per_item: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            item_ctx = ctx.with_item(iteration.item_variable, item)
            # First failing element aborts the loop; partial results are dropped.
            per_item.append(await self._attempt_with_retry(op, item_ctx, iteration=index))

        outputs: dict[str, Any] = {"results": per_item, "count": len(per_item)}
        for param in op.output_parameters:
            outputs[param.name] = [out.get(param.name) for out in per_item]
        return outputs

    async def _attempt_with_retry(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        iteration: int | None = None,
    ) -> dict[str, Any]:
        policy = op.on_failure
        retrying = policy is not None and policy.action == "retry"
        retries = policy.retry_count if retrying else 0

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(op, ctx, attempt, iteration, retries - attempt + 1)
            except AutomationError as e:
                if attempt > retries:
                    if retrying:
                        raise RetriesExhaustedError(
                            f"Operation {op.label} failed after {attempt} attempts: {e}",
                            attempts=attempt,
                            operation_id=op.id,
                        ) from e
                    raise
                wait = policy.retry_delay * (policy.backoff_multiplier ** (attempt - 1))
                logger.info(
                    "Retrying operation %s (retry %d of %d) in %.2fs: %s",
                    op.label,
                    attempt,
                    retries,
                    wait,
                    e,
                )
                await self.delay(wait)

    async def _attempt(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        attempt: int,
        iteration: int | None,
        retries_left: int,
    ) -> dict[str, Any]:
        inputs: dict[str, Any] = {}
        status = "retrying" if retries_left > 0 else "failed"
        try:
            inputs = self._bind_inputs(op, ctx)
            result = await self._dispatch(op, ctx, inputs)
            outputs = capture_outputs(op, result)
        except AutomationError as e:
            if e.operation_id is None:
                e.operation_id = op.id
            self._trace(op, status, attempt=attempt, iteration=iteration, inputs=inputs, error=str(e))
            raise
        except RunAborted:
            raise
        except Exception as e:
            error = ActionError(f"{op.type} failed: {e}", "unexpected_error", op.id)
            self._trace(op, status, attempt=attempt, iteration=iteration, inputs=inputs, error=str(error))
            raise error from e

        self._trace(op, "success", attempt=attempt, iteration=iteration, inputs=inputs, result=outputs)
        return outputs

    def _bind_inputs(self, op: AutomationOperation, ctx: ExecutionContext) -> dict[str, Any]:
        bound: dict[str, Any] = dict(ctx.item_bindings)
        for mapping in op.input_mappings:
            value = resolve(mapping.as_ref(), ctx, mapping.type)
            if mapping.source != "manual":
                value = coerce(value, mapping.type)
            bound[mapping.parameter_name] = value
        return bound

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self, op: AutomationOperation, ctx: ExecutionContext, inputs: dict[str, Any]
    ) -> dict[str, Any]:
        config = op.config

        if op.type == "logic_conditions":
            outputs, _ = run_sub_operations(config.operations, ctx)
            return outputs

        if op.type == "delay":
            _require(op, config.delay_duration, "delay duration")
            seconds = config.delay_duration * DELAY_UNIT_SECONDS[config.delay_unit or "seconds"]
            await self.delay(seconds)
            return {"delayed_seconds": seconds}

        scope = ctx.template_scope(inputs)
        kind, action, method_name, kwargs = self._build_call(op, ctx, inputs, scope)

        if self.failure_config:
            rule = self.failure_config.should_fail(kind, action)
            if rule:
                raise ActionError(f"[{rule.error_type}] {rule.message}", rule.error_type, op.id)

        service = self.services.get(kind)
        if service is None:
            raise ActionError(f"No collaborator configured for {kind}", "unknown_service", op.id)
        method = getattr(service, method_name, None)
        if method is None:
            raise ActionError(f"Collaborator {kind} cannot {method_name}", "unknown_action", op.id)

        result = method(**kwargs)
        if inspect.isawaitable(result):
            result = await result

        if op.type == "crud_operation":
            rows = list(result or [])
            return {"rows": rows, "count": len(rows), "row": rows[0] if rows else None}
        if isinstance(result, dict):
            return result
        return {"result": result}

    def _build_call(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        inputs: dict[str, Any],
        scope: dict[str, Any],
    ) -> tuple[str, str, str, dict[str, Any]]:
        config = op.config

        if op.type == "crud_operation":
            _require(op, config.database, "database")
            _require(op, config.table, "table")
            _require(op, config.operation, "CRUD operation")
            conditions = [
                {
                    "field": c.field,
                    "operator": c.operator,
                    "value": render_template(resolve(c, ctx), scope),
                }
                for c in config.conditions
            ]
            data = render_template(config.data, scope) if config.data else {
                k: v for k, v in inputs.items() if k not in ctx.item_bindings
            }
            return "crud", config.operation, "execute", {
                "database": render_template(config.database, scope),
                "table": render_template(config.table, scope),
                "operation": config.operation,
                "conditions": conditions,
                "columns": list(config.columns),
                "data": data,
            }

        if op.type == "file_operation":
            _require(op, config.file_operation, "file operation")
            if config.file_operation == "download":
                protocol = config.download_protocol
            elif config.file_operation == "upload":
                protocol = config.upload_protocol
            else:
                protocol = config.download_protocol or config.upload_protocol
            content = config.content if config.content is not None else inputs.get("content")
            return "file", config.file_operation, "execute", {
                "operation": config.file_operation,
                "protocol": protocol,
                "url": render_template(config.url, scope),
                "source_path": render_template(config.source_path, scope),
                "target_path": render_template(config.target_path, scope),
                "bucket": render_template(config.bucket, scope),
                "content": render_template(content, scope),
            }

        if op.type == "http_request":
            _require(op, config.http_request_url, "URL")
            method = config.http_request_method or "GET"
            if config.body_fields:
                body = {f.key: render_template(resolve(f, ctx), scope) for f in config.body_fields}
            elif method in ("POST", "PUT", "PATCH"):
                body = {k: v for k, v in inputs.items() if k not in ctx.item_bindings}
            else:
                body = None
            return "http", "request", "request", {
                "method": method,
                "url": render_template(config.http_request_url, scope),
                "headers": render_template(dict(config.http_request_headers), scope),
                "body": body,
                "timeout": config.http_request_timeout or self.http_timeout,
            }

        if op.type == "run_script":
            _require(op, config.script_language, "script language")
            _require(op, config.script_content, "script content")
            return "script", "run", "run", {
                "language": config.script_language,
                "content": config.script_content,
                "inputs": inputs,
                "timeout": config.script_timeout or self.script_timeout,
            }

        if op.type == "messaging":
            _require(op, config.messaging_type, "messaging type")
            return "messaging", config.messaging_type, "send", {
                "channel": config.messaging_type,
                "recipient": render_template(config.recipient, scope),
                "subject": render_template(config.subject, scope),
                "message": render_template(config.message, scope),
                "webhook_url": render_template(config.webhook_url, scope),
            }

        if op.type == "manual_operation":
            return "manual", "request", "request", {
                "operation_id": op.id,
                "instructions": render_template(config.instructions, scope),
                "assignee": config.assignee,
                "inputs": inputs,
            }

        raise ActionError(
            f"Operation type {op.type} cannot be executed", "unsupported_operation", op.id
        )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _on_success(
        self, op: AutomationOperation, ctx: ExecutionContext, outputs: dict[str, Any]
    ) -> OperationResult:
        action = op.on_success or RoutingAction()
        alerts: list[str] = []

        if action.action == "goto":
            routing = self._goto(op, action)
        elif action.action == "end":
            routing = Routing("end")
        elif action.action == "alert":
            alerts.append(self._alert(op, action, ctx))
            routing = Routing("continue")
        elif action.action == "goto_integration":
            routing = Routing("handoff", integration_id=action.integration_id)
        else:
            routing = Routing("continue")

        self._mark_routing(op, routing)
        errors = [routing.error] if routing.error else []
        return OperationResult(op.id, "success", ctx, routing, outputs=outputs, errors=errors, alerts=alerts)

    async def _on_failure(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        error: AutomationError,
        compensating: tuple[str, ...],
    ) -> OperationResult:
        action = op.on_failure
        logger.info("Operation %s failed: %s", op.label, error)
        alerts: list[str] = []

        if action is None or action.action == "retry":
            routing = Routing("escalate", error=error)
        elif action.action == "compensate":
            return await self._compensate(op, ctx, error, action, compensating)
        elif action.action == "goto":
            routing = self._goto(op, action, cause=error)
        elif action.action == "end":
            routing = Routing("end")
        elif action.action == "alert":
            alerts.append(self._alert(op, action, ctx, error))
            routing = Routing("continue")
        elif action.action == "goto_integration":
            routing = Routing("handoff", integration_id=action.integration_id)
        else:
            routing = Routing("continue")

        self._mark_routing(op, routing)
        errors = [error]
        if routing.error is not None and routing.error is not error:
            errors.append(routing.error)
        return OperationResult(op.id, "failed", ctx, routing, errors=errors, alerts=alerts)

    async def _compensate(
        self,
        op: AutomationOperation,
        ctx: ExecutionContext,
        error: AutomationError,
        action: RoutingAction,
        compensating: tuple[str, ...],
    ) -> OperationResult:
        target = self.operations.get(action.compensating_operation_id or "")
        if target is None:
            problem: AutomationError = InvalidRoutingError(
                f"Compensating operation {action.compensating_operation_id!r} does not exist",
                op.id,
            )
        elif target.id == op.id or target.id in compensating:
            problem = CycleDetectedError(
                f"Compensation cycle: {' -> '.join(compensating + (op.id, target.id))}", op.id
            )
        elif len(compensating) >= self.max_compensation_depth:
            problem = CycleDetectedError(
                f"Compensation nested deeper than {self.max_compensation_depth}", op.id
            )
        else:
            problem = None

        if problem is not None:
            problem.__cause__ = error
            routing = Routing("escalate", error=problem)
            self._mark_routing(op, routing)
            return OperationResult(op.id, "failed", ctx, routing, errors=[error, problem])

        logger.info("Compensating failed operation %s with %s", op.label, target.label)
        self._mark_routing(op, Routing("goto", target_id=target.id))
        result = await self.execute(target, ctx, compensating + (op.id,))
        return OperationResult(
            op.id,
            "compensated",
            result.context,
            result.routing,
            outputs=result.outputs,
            errors=[error, *result.errors],
            alerts=result.alerts,
        )

    def _goto(
        self,
        op: AutomationOperation,
        action: RoutingAction,
        cause: AutomationError | None = None,
    ) -> Routing:
        target_id = action.target_operation_id
        if not target_id or target_id not in self.operations:
            problem = InvalidRoutingError(f"goto target {target_id!r} does not exist", op.id)
            problem.__cause__ = cause
            return Routing("escalate", error=problem)
        return Routing("goto", target_id=target_id)

    def _alert(
        self,
        op: AutomationOperation,
        action: RoutingAction,
        ctx: ExecutionContext,
        error: AutomationError | None = None,
    ) -> str:
        if action.alert_message:
            scope = ctx.template_scope({"error": str(error) if error else None})
            message = str(render_template(action.alert_message, scope))
        elif error is not None:
            message = f"Operation {op.label} failed: {error}"
        else:
            message = f"Operation {op.label} completed"
        logger.warning("Automation alert from %s: %s", op.label, message)
        self._trace(op, "alert", error=message if error else None, result={"message": message})
        return message

    # ------------------------------------------------------------------
    # Trace helpers
    # ------------------------------------------------------------------

    def _trace(
        self,
        op: AutomationOperation,
        status: str,
        attempt: int = 1,
        iteration: int | None = None,
        inputs: dict[str, Any] | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        routing: str | None = None,
    ) -> None:
        self.trace.steps.append(
            TraceStep(
                operation_id=op.id,
                operation_type=op.type,
                status=status,
                attempt=attempt,
                iteration=iteration,
                inputs=dict(inputs or {}),
                result=result,
                error=error,
                routing=routing,
            )
        )

    def _mark_routing(self, op: AutomationOperation, routing: Routing) -> None:
        steps = self.trace.for_operation(op.id)
        if steps:
            steps[-1].routing = routing.describe()


def _require(op: AutomationOperation, value: Any, what: str) -> None:
    if value in (None, ""):
        raise ActionError(f"Operation {op.label} is missing its {what}", "invalid_config", op.id)
