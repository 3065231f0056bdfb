"""Real collaborators for automation runs, with the simulator standing in for unconfigured kinds.

    state, services, failure_config = create_service_layer(settings)
    try:
        result = await scheduler.run(...)
    finally:
        await close_service_layer(services)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterator

import httpx

from ..simulator import create_simulator
from ..simulator.failures import FailureConfig
from ..simulator.state import SimulatorState
from .base import BaseConnector
from .registry import ConnectorRegistry

if TYPE_CHECKING:
    from ..config import Settings

# Importing the connector modules registers them
from . import crud, files, http, messaging, script  # noqa: E402, F401

logger = logging.getLogger(__name__)

_CLIENT_KEY = "_http_client"


def _choose(
    kind: str, registry: ConnectorRegistry, simulated: dict[str, Any], settings: Settings
) -> Any:
    connector = registry.get(kind)
    fallback = simulated.get(kind)
    if connector is None:
        return fallback
    if fallback is None or connector.is_configured(settings):
        return connector
    logger.debug("No configuration for %s connector; using the simulator", kind)
    return fallback


def create_service_layer(
    settings: Settings,
    failure_config: FailureConfig | None = None,
) -> tuple[SimulatorState, dict[str, Any], FailureConfig | None]:
    """Build the ``kind -> collaborator`` map an automation run dispatches to.

    ``settings.connector_mode == "simulator"`` gives the in-memory simulator
    only. ``"hybrid"`` and ``"real"`` pick the real connector for every kind
    whose settings are present and keep the simulator for the rest. Manual
    operations always go to the simulator's manual service.
    """
    state, simulated, _ = create_simulator()
    if settings.connector_mode == "simulator":
        return state, simulated, failure_config

    client = httpx.AsyncClient(timeout=settings.http_timeout)
    registry = ConnectorRegistry(settings, client)
    kinds = sorted(set(simulated).union(registry.list_available()))
    services: dict[str, Any] = {kind: _choose(kind, registry, simulated, settings) for kind in kinds}

    real = [kind for kind, svc in services.items() if isinstance(svc, BaseConnector)]
    logger.info("Service layer (%s): real connectors for %s", settings.connector_mode, real or "none")

    # Closed by close_service_layer even if no real connector was chosen
    services[_CLIENT_KEY] = client
    return state, services, failure_config


def _clients(services: dict[str, Any]) -> Iterator[httpx.AsyncClient]:
    stashed = services.pop(_CLIENT_KEY, None)
    if isinstance(stashed, httpx.AsyncClient):
        yield stashed
    for service in services.values():
        if isinstance(service, BaseConnector) and isinstance(service.http, httpx.AsyncClient):
            yield service.http


async def close_service_layer(services: dict[str, Any]) -> None:
    """Close the HTTP clients behind a map built by ``create_service_layer``."""
    closed: set[int] = set()
    for client in list(_clients(services)):
        if id(client) not in closed:
            closed.add(id(client))
            await client.aclose()
