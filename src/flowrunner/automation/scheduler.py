"""Automation scheduler: walks the operation list and applies routing and failure policy."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

from ..simulator.failures import FailureConfig
from .context import ExecutionContext
from .errors import (
    AutomationDisabledError,
    AutomationError,
    InvalidRoutingError,
    OperationNotYetExecutedError,
    RetriesExhaustedError,
    RunAborted,
    StepLimitExceededError,
    UnknownParameterError,
    error_chain,
)
from .executor import OperationExecutor, SleepFn
from .report import AutomationRunResult, ExecutionTrace, IntegrationHandoff, RunStatus
from .resolver import coerce, lookup_path
from .schema import Automation, AutomationOperation, AutomationParameter, ValueRef

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 1000


def bind_automation_inputs(
    parameters: list[AutomationParameter], inputs: Mapping[str, Any]
) -> dict[str, Any]:
    """Apply defaults and type coercion.

    Missing required inputs raise ``UnknownParameterError``; omitted optional ones bind to None.
    """
    bound = dict(inputs)
    for param in parameters:
        if param.name in bound and bound[param.name] is not None:
            bound[param.name] = coerce(bound[param.name], param.type)
        elif param.default_value is not None:
            bound[param.name] = coerce(param.default_value, param.type)
        elif param.required:
            raise UnknownParameterError(f"Missing required input parameter: {param.name}")
        else:
            bound.setdefault(param.name, None)
    return bound


def previous_operation_refs(op: AutomationOperation) -> list[tuple[str, str | None]]:
    """(where, source operation id) for every reference to an earlier operation's output."""
    refs: list[tuple[str, str | None]] = []

    def _add(where: str, ref: ValueRef | Any) -> None:
        if getattr(ref, "source", None) in ("previous_operation", "operation_output"):
            refs.append((where, ref.source_operation_id))

    for mapping in op.input_mappings:
        if mapping.source in ("previous_operation", "operation_output"):
            refs.append((f"input mapping {mapping.parameter_name}", mapping.source_operation_id))
    if op.run_condition and op.run_condition.enabled:
        _add("run condition", op.run_condition)
    if op.iteration and op.iteration.enabled:
        _add("iteration source", op.iteration)

    config = op.config
    if op.type == "logic_conditions":
        for sub in config.operations:
            for operand in sub.operands:
                _add(f"operand of {sub.output_name}", operand)
    elif op.type == "crud_operation":
        for cond in config.conditions:
            _add(f"condition on {cond.field}", cond)
    elif op.type == "http_request":
        for body_field in config.body_fields:
            _add(f"body field {body_field.key}", body_field)
    return refs


def check_references(automation: Automation) -> None:
    """Reject references to operations that do not precede their owner.

    ``previous_operation`` data may only flow from strictly smaller ``order``;
    a forward or self reference could never have a recorded output.
    """
    orders = {op.id: op.order for op in automation.operations}
    for op in automation.operations:
        for where, source_id in previous_operation_refs(op):
            source_order = orders.get(source_id or "")
            if source_order is None:
                raise OperationNotYetExecutedError(
                    f"{op.label}: {where} references unknown operation {source_id!r}", op.id
                )
            if source_order >= op.order:
                raise OperationNotYetExecutedError(
                    f"{op.label} (order {op.order}): {where} references operation "
                    f"{source_id!r} with order {source_order}",
                    op.id,
                )


class _Walk:
    """Outcome of walking the operation list until a terminal routing decision."""

    def __init__(
        self,
        kind: str,
        ctx: ExecutionContext,
        error: AutomationError | None = None,
        handoff: IntegrationHandoff | None = None,
    ):
        self.kind = kind  # "end" | "escalate" | "handoff" | "step_limit" | "aborted"
        self.ctx = ctx
        self.error = error
        self.handoff = handoff


class AutomationScheduler:
    """Runs automations: ``pending -> running -> succeeded | failed | aborted``.

    One run executes its operations sequentially in a single task; ``delay``
    and retry pauses only suspend that task, so distinct runs may proceed
    concurrently on the same event loop.
    """

    def __init__(
        self,
        services: Mapping[str, Any],
        failure_config: FailureConfig | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_compensation_depth: int = 8,
        sleep: SleepFn | None = None,
        http_timeout: float = 30.0,
        script_timeout: float = 30.0,
    ):
        self.services = services
        self.failure_config = failure_config
        self.max_steps = max_steps
        self.max_compensation_depth = max_compensation_depth
        self._sleep = sleep or asyncio.sleep
        self.http_timeout = http_timeout
        self.script_timeout = script_timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, services: Mapping[str, Any], **kwargs: Any
    ) -> AutomationScheduler:
        return cls(
            services,
            max_steps=settings.max_steps,
            max_compensation_depth=settings.max_compensation_depth,
            http_timeout=settings.http_timeout,
            script_timeout=settings.script_timeout,
            **kwargs,
        )

    async def run(
        self,
        automation: Automation,
        inputs: Mapping[str, Any] | None = None,
        environment: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> AutomationRunResult:
        """Run ``automation`` with ``inputs``. Disabled automations raise immediately."""
        if not automation.enabled:
            raise AutomationDisabledError(f"Automation {automation.id} is disabled")

        run_id = uuid.uuid4().hex
        trace = ExecutionTrace()
        state = _RunState(run_id, automation, trace)
        logger.info("Starting run %s of automation %s (%s)", run_id, automation.name, automation.id)

        try:
            check_references(automation)
            bound_inputs = bind_automation_inputs(automation.input_parameters, inputs or {})
        except AutomationError as e:
            logger.error("Run %s rejected before start: %s", run_id, e)
            state.errors.extend(error_chain(e))
            return state.finish(RunStatus.FAILED, ExecutionContext(environment=environment))

        ctx = ExecutionContext(automation_inputs=bound_inputs, environment=environment)
        cancel_event = cancel_event or asyncio.Event()
        state.status = RunStatus.RUNNING

        try:
            if timeout is None:
                return await self._run(state, ctx, cancel_event)
            return await asyncio.wait_for(self._run(state, ctx, cancel_event), timeout)
        except asyncio.TimeoutError:
            logger.warning("Run %s timed out after %.1fs", run_id, timeout)
            state.errors.append(
                {"error_type": "Timeout", "message": f"Run exceeded {timeout}s", "operation_id": None}
            )
            return state.finish(RunStatus.ABORTED, state.last_ctx or ctx)

    async def _run(
        self, state: "_RunState", ctx: ExecutionContext, cancel_event: asyncio.Event
    ) -> AutomationRunResult:
        automation = state.automation
        policy = automation.on_failure
        executor = OperationExecutor(
            self.services,
            state.trace,
            operations={op.id: op for op in automation.operations},
            failure_config=self.failure_config,
            sleep=self._sleep,
            cancel_event=cancel_event,
            max_compensation_depth=self.max_compensation_depth,
            http_timeout=self.http_timeout,
            script_timeout=self.script_timeout,
        )
        initial_ctx = ctx
        start_index = 0

        while True:
            walk = await self._walk(state, executor, ctx, start_index, cancel_event)

            if walk.kind == "end":
                return state.finish(RunStatus.SUCCEEDED, walk.ctx)
            if walk.kind == "aborted":
                return state.finish(RunStatus.ABORTED, walk.ctx)
            if walk.kind == "step_limit":
                state.errors.extend(error_chain(walk.error))
                return state.finish(RunStatus.FAILED, walk.ctx)
            if walk.kind == "handoff" and walk.error is None:
                state.handoff = walk.handoff
                return state.finish(RunStatus.SUCCEEDED, walk.ctx)
            if walk.kind == "handoff":
                state.handoff = walk.handoff
                return state.finish(RunStatus.FAILED, walk.ctx)

            # Escalated: operation-level recovery failed or was absent.
            error = walk.error
            if policy is None or policy.action == "fail":
                return self._fail(state, walk.ctx, error)

            if policy.action == "retry":
                if state.attempts > policy.retry_count:
                    exhausted = RetriesExhaustedError(
                        f"Automation {automation.name} failed after {state.attempts} attempts",
                        attempts=state.attempts,
                    )
                    exhausted.__cause__ = error
                    return self._fail(state, walk.ctx, exhausted)
                state.errors.extend(error_chain(error))
                state.attempts += 1
                logger.info(
                    "Retrying automation %s (attempt %d of %d)",
                    automation.name,
                    state.attempts,
                    policy.retry_count + 1,
                )
                try:
                    await executor.delay(policy.retry_delay)
                except RunAborted:
                    return state.finish(RunStatus.ABORTED, walk.ctx)
                ctx, start_index = initial_ctx, 0
                continue

            if policy.action == "goto_operation":
                target = automation.get_operation(policy.operation_id or "")
                if target is None:
                    problem = InvalidRoutingError(
                        f"Failure policy targets unknown operation {policy.operation_id!r}"
                    )
                    problem.__cause__ = error
                    return self._fail(state, walk.ctx, problem)
                state.errors.extend(error_chain(error))
                logger.info("Failure policy of %s jumps to %s", automation.name, target.label)
                ctx, start_index = walk.ctx, automation.operations.index(target)
                continue

            # goto_integration
            state.handoff = IntegrationHandoff(
                integration_id=policy.integration_id,
                operation_id=error.operation_id if error else None,
                reason="failure_policy",
            )
            return self._fail(state, walk.ctx, error)

    async def _walk(
        self,
        state: "_RunState",
        executor: OperationExecutor,
        ctx: ExecutionContext,
        index: int,
        cancel_event: asyncio.Event,
    ) -> _Walk:
        operations = state.automation.operations
        index_of = {op.id: i for i, op in enumerate(operations)}

        while index < len(operations):
            if cancel_event.is_set():
                return _Walk("aborted", ctx)
            if state.steps >= self.max_steps:
                return _Walk(
                    "step_limit",
                    ctx,
                    StepLimitExceededError(
                        f"Run exceeded {self.max_steps} operation steps; "
                        f"possible goto cycle at {operations[index].label}",
                        operations[index].id,
                    ),
                )

            op = operations[index]
            state.steps += 1
            try:
                result = await executor.execute(op, ctx)
            except RunAborted:
                return _Walk("aborted", ctx)

            ctx = result.context
            state.last_ctx = ctx
            state.alerts.extend(result.alerts)
            routing = result.routing

            # Errors a routing action recovered from still belong to the run record;
            # an escalated error is recorded by the failure policy with its chain.
            chained = _chain_ids(routing.error)
            for err in result.errors:
                if id(err) not in chained:
                    state.errors.extend(error_chain(err))

            if routing.kind == "escalate":
                return _Walk("escalate", ctx, routing.error)

            if routing.kind == "end":
                return _Walk("end", ctx)
            if routing.kind == "handoff":
                handoff = IntegrationHandoff(
                    integration_id=routing.integration_id, operation_id=op.id
                )
                if result.status == "success":
                    return _Walk("handoff", ctx, handoff=handoff)
                return _Walk("handoff", ctx, error=result.error, handoff=handoff)
            if routing.kind == "goto":
                logger.debug("Operation %s jumps to %s", op.label, routing.target_id)
                index = index_of[routing.target_id]
                continue
            index += 1

        return _Walk("end", ctx)

    def _fail(
        self, state: "_RunState", ctx: ExecutionContext, error: AutomationError | None
    ) -> AutomationRunResult:
        if error is not None:
            state.errors.extend(error_chain(error))
            logger.error("Automation %s failed: %s", state.automation.name, error)
        return state.finish(RunStatus.FAILED, ctx)


class _RunState:
    """Mutable bookkeeping of one run (never shared between runs)."""

    def __init__(self, run_id: str, automation: Automation, trace: ExecutionTrace):
        self.run_id = run_id
        self.automation = automation
        self.trace = trace
        self.status = RunStatus.PENDING
        self.steps = 0
        self.attempts = 1
        self.errors: list[dict[str, Any]] = []
        self.alerts: list[str] = []
        self.handoff: IntegrationHandoff | None = None
        self.last_ctx: ExecutionContext | None = None

    def finish(self, status: RunStatus, ctx: ExecutionContext) -> AutomationRunResult:
        self.status = status
        self.trace.completed_at = datetime.now()
        logger.info(
            "Run %s of automation %s finished: %s after %d steps",
            self.run_id,
            self.automation.name,
            status.value,
            self.steps,
        )
        return AutomationRunResult(
            run_id=self.run_id,
            automation_id=self.automation.id,
            automation_name=self.automation.name,
            status=status,
            outputs=resolve_automation_outputs(self.automation, ctx),
            trace=self.trace,
            errors=self.errors,
            alerts=self.alerts,
            handoff=self.handoff,
            steps=self.steps,
            attempts=self.attempts,
        )


def _chain_ids(error: BaseException | None) -> set[int]:
    ids: set[int] = set()
    while error is not None and id(error) not in ids:
        ids.add(id(error))
        error = error.__cause__
    return ids


def resolve_automation_outputs(automation: Automation, ctx: ExecutionContext) -> dict[str, Any]:
    """Resolve the automation's declared outputs; unexecuted sources yield ``None``."""
    outputs: dict[str, Any] = {}
    for out in automation.output_parameters:
        if out.source == "constant":
            value = out.value
            if isinstance(value, str) and value.strip().lower() in ("true", "false"):
                value = value.strip().lower() == "true"
            outputs[out.name] = value
        elif out.source == "operation_output":
            recorded = ctx.operation_outputs.get(out.source_operation_id or "")
            if recorded is None:
                outputs[out.name] = None
            elif out.source_parameter:
                outputs[out.name] = lookup_path(recorded, out.source_parameter)
            else:
                outputs[out.name] = dict(recorded)
        else:
            key = out.source_parameter or out.value
            outputs[out.name] = ctx.environment.get(str(key)) if key is not None else None
    return outputs
