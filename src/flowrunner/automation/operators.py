"""Mathematical and logical operators used by ``logic_conditions`` sub-operations."""

from __future__ import annotations

import json
from functools import reduce
from typing import Any, Iterable

from . import conditions
from .context import ExecutionContext
from .errors import (
    ArityError,
    DivisionByZeroError,
    EvaluationError,
    NotANumberError,
    TypeMismatchError,
)
from .resolver import resolve
from .schema import SubOperation

MATH_OPERATORS = ("+", "-", "*", "/", "%", "^", "concat", "merge")
LOGIC_OPERATORS = ("AND", "OR", "NOT", "XOR")


def _number(value: Any) -> int | float:
    number = conditions.as_number(value)
    if number is None:
        if isinstance(value, bool):
            return int(value)
        raise NotANumberError(f"Operand {value!r} is not a number")
    return number


def _boolean(value: Any) -> bool:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1", "yes"):
            return True
        if text in ("false", "0", "no", ""):
            return False
        raise TypeMismatchError(f"Operand {value!r} is not a boolean")
    return bool(value)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _object(value: Any) -> dict:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise TypeMismatchError(f"Operand {value!r} is not a JSON object") from e
    if not isinstance(value, dict):
        raise TypeMismatchError(f"merge expects objects, got {type(value).__name__}")
    return value


def _divide(a: int | float, b: int | float) -> int | float:
    if b == 0:
        raise DivisionByZeroError(f"Division of {a} by zero")
    result = a / b
    if isinstance(a, int) and isinstance(b, int) and result.is_integer():
        return int(result)
    return result


def _modulo(a: int | float, b: int | float) -> int | float:
    if b == 0:
        raise DivisionByZeroError(f"Modulo of {a} by zero")
    return a % b


_ARITHMETIC = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": _divide,
    "%": _modulo,
    "^": lambda a, b: a**b,
}


def apply(operator: str, operands: Iterable[Any]) -> Any:
    """Apply ``operator`` left-associatively over ``operands``."""
    values = list(operands)

    if operator in _ARITHMETIC:
        if not values:
            raise ArityError(f"{operator!r} needs at least one operand")
        numbers = [_number(v) for v in values]
        try:
            result = reduce(_ARITHMETIC[operator], numbers)
        except ZeroDivisionError as e:
            # 0 raised to a negative power
            raise DivisionByZeroError(str(e)) from e
        except OverflowError as e:
            raise NotANumberError(f"{operator!r} overflowed: {e}") from e
        if isinstance(result, complex):
            # negative base with a fractional exponent
            raise NotANumberError(f"{operator!r} produced a complex result")
        return result

    if operator == "concat":
        return "".join(_text(v) for v in values)

    if operator == "merge":
        merged: dict = {}
        for value in values:
            merged.update(_object(value))
        return merged

    if operator == "NOT":
        if len(values) != 1:
            raise ArityError(f"NOT takes exactly one operand, got {len(values)}")
        return not _boolean(values[0])

    if operator in ("AND", "OR", "XOR"):
        if not values:
            raise ArityError(f"{operator} needs at least one operand")
        flags = [_boolean(v) for v in values]
        if operator == "AND":
            return all(flags)
        if operator == "OR":
            return any(flags)
        return reduce(lambda a, b: a != b, flags)

    if operator in conditions.COMPARISON_OPERATORS:
        if operator == "exists":
            if len(values) != 1:
                raise ArityError(f"exists takes exactly one operand, got {len(values)}")
            return conditions.evaluate(values[0], "exists")
        if len(values) != 2:
            raise ArityError(f"{operator!r} takes exactly two operands, got {len(values)}")
        return conditions.evaluate(values[0], operator, values[1])

    raise EvaluationError(f"Unknown operator: {operator}")


def run_sub_operations(
    sub_operations: list[SubOperation], ctx: ExecutionContext
) -> tuple[dict[str, Any], ExecutionContext]:
    """Evaluate sub-operations in order, exposing each result to the ones after it.

    Returns the named outputs and the context holding them as
    ``current_operation_outputs``.
    """
    outputs: dict[str, Any] = {}
    for sub in sub_operations:
        if sub.output_name in outputs:
            raise EvaluationError(f"Duplicate sub-operation output name: {sub.output_name}")
        operands = [resolve(operand, ctx) for operand in sub.operands]
        result = apply(sub.operator, operands)
        outputs[sub.output_name] = result
        ctx = ctx.with_current_output(sub.output_name, result)
    return outputs, ctx
