"""Which connector class serves which collaborator kind."""

from __future__ import annotations

from typing import TYPE_CHECKING, Type

import httpx

from .base import BaseConnector

if TYPE_CHECKING:
    from ..config import Settings


_CONNECTOR_CLASSES: dict[str, Type[BaseConnector]] = {}


def register(cls: Type[BaseConnector]) -> Type[BaseConnector]:
    """Class decorator: make ``cls`` the connector for ``cls.kind``."""
    if not cls.kind:
        raise ValueError(f"{cls.__name__} does not declare a kind")
    _CONNECTOR_CLASSES[cls.kind] = cls
    return cls


class ConnectorRegistry:
    """Lazily builds one connector per kind, sharing a single HTTP client."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._instances: dict[str, BaseConnector] = {}

    def get(self, kind: str) -> BaseConnector | None:
        if kind not in self._instances:
            cls = _CONNECTOR_CLASSES.get(kind)
            if cls is None:
                return None
            self._instances[kind] = cls.from_settings(self._settings, self._http)
        return self._instances[kind]

    def list_available(self) -> list[str]:
        return sorted(_CONNECTOR_CLASSES)
