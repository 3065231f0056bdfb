"""Variable resolution: symbolic references to concrete runtime values."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from .context import ExecutionContext
from .errors import (
    OperationNotYetExecutedError,
    TypeMismatchError,
    UnknownOutputNameError,
    UnknownParameterError,
)
from .schema import ValueRef

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_MISSING = object()


def lookup_path(data: Any, path: str, default: Any = None) -> Any:
    """Walk a dotted path (``a.b.0.c``) through nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return default
        else:
            return default
    return current


def coerce(value: Any, slot_type: str | None) -> Any:
    """Coerce a literal to the declared type of the slot consuming it."""
    if slot_type is None or value is None:
        return value

    if slot_type == "string":
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    if slot_type == "number":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(str(value).strip())
        except ValueError as e:
            raise TypeMismatchError(f"Cannot coerce {value!r} to number") from e
        return int(number) if number.is_integer() and "." not in str(value) else number

    if slot_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off", ""):
            return False
        raise TypeMismatchError(f"Cannot coerce {value!r} to boolean")

    if slot_type in ("object", "array"):
        expected = dict if slot_type == "object" else list
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise TypeMismatchError(f"Cannot parse {value!r} as {slot_type}") from e
        if not isinstance(value, expected):
            raise TypeMismatchError(f"Expected {slot_type}, got {type(value).__name__}")
        return value

    return value


def resolve(ref: ValueRef, ctx: ExecutionContext, slot_type: str | None = None) -> Any:
    """Resolve ``ref`` against ``ctx``. Never mutates the context."""
    source = ref.source
    value = ref.value

    if source == "manual":
        return coerce(value, slot_type)

    if source == "automation_input":
        name = str(value)
        if name in ctx.item_bindings:
            return ctx.item_bindings[name]
        found = lookup_path(ctx.automation_inputs, name, _MISSING)
        if found is _MISSING:
            raise UnknownParameterError(f"Unknown automation input: {name}")
        return found

    if source in ("previous_operation", "operation_output"):
        op_id = ref.source_operation_id
        if not op_id or not ctx.has_output(op_id):
            raise OperationNotYetExecutedError(
                f"Operation {op_id!r} has no recorded output in this run"
            )
        outputs = ctx.operation_outputs[op_id]
        if value in (None, ""):
            return dict(outputs)
        found = lookup_path(outputs, str(value), _MISSING)
        if found is _MISSING:
            raise UnknownOutputNameError(
                f"Operation {op_id!r} has no output named {value!r}"
            )
        return found

    if source == "current_operation":
        name = str(value)
        if name not in ctx.current_operation_outputs:
            raise UnknownOutputNameError(
                f"No earlier sub-operation in this operation produced {name!r}"
            )
        return ctx.current_operation_outputs[name]

    if source == "integration_env":
        name = str(value)
        if name not in ctx.environment:
            raise UnknownParameterError(f"Unknown integration environment variable: {name}")
        return ctx.environment[name]

    raise UnknownParameterError(f"Unknown value source: {source}")


def render_template(value: Any, scope: Mapping[str, Any]) -> Any:
    """Substitute ``{{name}}`` placeholders in strings, recursing into dicts and lists.

    A string that is exactly one placeholder yields the raw value, so numbers,
    lists and objects keep their type. Unknown placeholders are left as-is.
    """
    if isinstance(value, dict):
        return {k: render_template(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [render_template(v, scope) for v in value]
    if not isinstance(value, str) or "{{" not in value:
        return value

    whole = _PLACEHOLDER.fullmatch(value.strip())
    if whole:
        found = lookup_path(scope, whole.group(1), _MISSING)
        return value if found is _MISSING else found

    def _sub(match: re.Match[str]) -> str:
        found = lookup_path(scope, match.group(1), _MISSING)
        if found is _MISSING:
            return match.group(0)
        if isinstance(found, (dict, list)):
            return json.dumps(found)
        return str(found)

    return _PLACEHOLDER.sub(_sub, value)
