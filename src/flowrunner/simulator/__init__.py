"""Simulated collaborators for automation execution."""

from .failures import FailureConfig, FailureRule
from .services import (
    CrudService,
    FileService,
    HttpService,
    ManualService,
    MessagingService,
    ScriptService,
)
from .state import SimulatorState


def create_simulator(
    failure_config: FailureConfig | None = None,
) -> tuple[SimulatorState, dict, FailureConfig | None]:
    """Create a fresh simulator with all collaborators wired to one state."""
    state = SimulatorState()

    services = {
        "crud": CrudService(state),
        "file": FileService(state),
        "http": HttpService(state),
        "script": ScriptService(state),
        "messaging": MessagingService(state),
        "manual": ManualService(state),
    }

    return state, services, failure_config
