"""Error taxonomy for automation resolution, evaluation and execution."""

from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    """Base class for every error raised by the automation engine."""

    error_type = "AutomationError"

    def __init__(self, message: str, operation_id: str | None = None):
        self.message = message
        self.operation_id = operation_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "operation_id": self.operation_id,
        }


# --- Resolution -------------------------------------------------------------


class ResolutionError(AutomationError):
    error_type = "ResolutionError"


class UnknownParameterError(ResolutionError):
    error_type = "UnknownParameter"


class OperationNotYetExecutedError(ResolutionError):
    error_type = "OperationNotYetExecuted"


class UnknownOutputNameError(ResolutionError):
    error_type = "UnknownOutputName"


# --- Evaluation -------------------------------------------------------------


class EvaluationError(AutomationError):
    error_type = "EvaluationError"


class TypeMismatchError(EvaluationError):
    error_type = "TypeMismatch"


class OperatorError(EvaluationError):
    error_type = "OperatorError"


class NotANumberError(OperatorError):
    error_type = "NotANumber"


class DivisionByZeroError(OperatorError):
    error_type = "DivisionByZero"


class ArityError(OperatorError):
    error_type = "ArityError"


# --- Execution --------------------------------------------------------------


class ActionError(AutomationError):
    """Raised when a collaborator reports that an action failed."""

    error_type = "ActionFailure"

    def __init__(
        self,
        message: str,
        reason: str = "action_failed",
        operation_id: str | None = None,
    ):
        self.reason = reason
        super().__init__(message, operation_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class RetriesExhaustedError(AutomationError):
    error_type = "RetriesExhausted"

    def __init__(self, message: str, attempts: int, operation_id: str | None = None):
        self.attempts = attempts
        super().__init__(message, operation_id)


class CycleDetectedError(AutomationError):
    error_type = "CycleDetected"


class StepLimitExceededError(AutomationError):
    error_type = "StepLimitExceeded"


class InvalidRoutingError(AutomationError):
    """A goto, compensate or failure policy names an operation that does not exist."""

    error_type = "InvalidRouting"


class AutomationDisabledError(AutomationError):
    error_type = "AutomationDisabled"


class AutomationNotFoundError(AutomationError):
    error_type = "AutomationNotFound"


class RunAborted(Exception):
    """Raised inside a run when it is cancelled from outside. Never routed."""


def error_chain(exc: BaseException) -> list[dict[str, Any]]:
    """Flatten an exception and its ``__cause__`` links, outermost first."""
    chain: list[dict[str, Any]] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, AutomationError):
            chain.append(current.to_dict())
        else:
            chain.append(
                {
                    "error_type": type(current).__name__,
                    "message": str(current),
                    "operation_id": None,
                }
            )
        current = current.__cause__
    return chain
