"""Condition evaluation for run conditions, CRUD filters and comparison sub-operations."""

from __future__ import annotations

from typing import Any

from .errors import EvaluationError, TypeMismatchError

COMPARISON_OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "contains", "exists")
_ORDERING = (">", "<", ">=", "<=")


def as_number(value: Any) -> float | int | None:
    """Return ``value`` as a number if it is one or parses as one, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def evaluate(field: Any, operator: str, comparand: Any = None) -> bool:
    """Compare a resolved ``field`` against ``comparand``.

    Equality and ordering compare numerically when both sides parse as
    numbers and lexicographically otherwise. Ordering two values where only
    one side is numeric, or either side is null, raises ``TypeMismatchError``.
    """
    if operator == "exists":
        return field is not None

    if operator == "contains":
        if field is None:
            return False
        if isinstance(field, dict):
            return comparand in field
        if isinstance(field, (list, tuple, set)):
            if comparand in field:
                return True
            number = as_number(comparand)
            return number is not None and any(as_number(item) == number for item in field)
        return _as_text(comparand) in _as_text(field)

    if operator not in ("==", "!=") + _ORDERING:
        raise EvaluationError(f"Unknown comparison operator: {operator}")

    left, right = as_number(field), as_number(comparand)
    numeric = left is not None and right is not None

    if operator in ("==", "!="):
        if numeric:
            equal = left == right
        elif field is None or comparand is None:
            equal = field is None and comparand is None
        elif isinstance(field, bool) or isinstance(comparand, bool):
            equal = _as_text(field).lower() == _as_text(comparand).lower()
        elif isinstance(field, (dict, list)) or isinstance(comparand, (dict, list)):
            equal = field == comparand
        else:
            equal = _as_text(field) == _as_text(comparand)
        return equal if operator == "==" else not equal

    if numeric:
        a, b = left, right
    else:
        if field is None or comparand is None:
            raise TypeMismatchError(f"Cannot order null value with {operator!r}")
        if (left is None) != (right is None):
            raise TypeMismatchError(
                f"Cannot order {field!r} {operator} {comparand!r}: mixed numeric and text operands"
            )
        if not isinstance(field, str) or not isinstance(comparand, str):
            raise TypeMismatchError(
                f"Cannot order {type(field).__name__} {operator} {type(comparand).__name__}"
            )
        a, b = field, comparand

    if operator == ">":
        return a > b
    if operator == "<":
        return a < b
    if operator == ">=":
        return a >= b
    return a <= b
