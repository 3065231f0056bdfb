"""Immutable execution context threaded through every engine call."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping


def _frozen(data: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class ExecutionContext:
    """Everything an operation may read while it runs.

    ``operation_outputs`` only ever holds operations that already executed in
    this run. ``current_operation_outputs`` holds the named sub-operation
    results of the operation being executed and is cleared between operations.
    Updates return a new context; nothing is mutated in place.
    """

    automation_inputs: Mapping[str, Any] = field(default_factory=dict)
    operation_outputs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    environment: Mapping[str, Any] = field(default_factory=dict)
    current_operation_outputs: Mapping[str, Any] = field(default_factory=dict)
    item_bindings: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in (
            "automation_inputs",
            "operation_outputs",
            "environment",
            "current_operation_outputs",
            "item_bindings",
        ):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    def with_operation_output(
        self, operation_id: str, outputs: Mapping[str, Any]
    ) -> ExecutionContext:
        merged = dict(self.operation_outputs)
        merged[operation_id] = MappingProxyType(dict(outputs))
        return replace(self, operation_outputs=merged)

    def with_current_output(self, name: str, value: Any) -> ExecutionContext:
        merged = dict(self.current_operation_outputs)
        merged[name] = value
        return replace(self, current_operation_outputs=merged)

    def with_item(self, name: str, value: Any) -> ExecutionContext:
        merged = dict(self.item_bindings)
        merged[name] = value
        return replace(self, item_bindings=merged)

    def for_operation(self) -> ExecutionContext:
        """Context seen by a new operation: no leftover sub-operation outputs."""
        return replace(self, current_operation_outputs={})

    def has_output(self, operation_id: str) -> bool:
        return operation_id in self.operation_outputs

    def template_scope(self, extra: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Names visible to ``{{placeholder}}`` substitution in config strings."""
        scope: dict[str, Any] = {}
        scope.update(self.environment)
        scope.update(self.automation_inputs)
        scope.update({op_id: dict(out) for op_id, out in self.operation_outputs.items()})
        scope.update(self.current_operation_outputs)
        scope.update(self.item_bindings)
        if extra:
            scope.update(extra)
        return scope
