"""Run a stored automation by id and record the run."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from ..config import Settings, get_settings
from ..simulator.failures import FailureConfig
from .errors import AutomationNotFoundError
from .report import AutomationRunResult
from .scheduler import AutomationScheduler
from .store import AutomationStore

logger = logging.getLogger(__name__)


async def run_automation(
    store: AutomationStore,
    services: Mapping[str, Any],
    automation_id: str,
    inputs: Optional[Mapping[str, Any]] = None,
    environment: Optional[Mapping[str, Any]] = None,
    settings: Optional[Settings] = None,
    failure_config: Optional[FailureConfig] = None,
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> AutomationRunResult:
    """Load ``automation_id`` from ``store``, run it and persist the outcome.

    Raises ``AutomationNotFoundError`` for unknown ids and
    ``AutomationDisabledError`` for disabled automations; neither is recorded
    as a run.
    """
    automation = store.load(automation_id)
    if automation is None:
        raise AutomationNotFoundError(f"Automation {automation_id} not found")

    scheduler = AutomationScheduler.from_settings(
        settings or get_settings(), services, failure_config=failure_config
    )
    result = await scheduler.run(
        automation,
        inputs=inputs,
        environment=environment,
        cancel_event=cancel_event,
        timeout=timeout,
    )
    store.save_run(result, dict(inputs or {}))
    logger.debug("Recorded run %s for automation %s", result.run_id, automation_id)
    return result
