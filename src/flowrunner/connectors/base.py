"""Base interface for all real collaborators."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, NoReturn

import httpx

from ..automation.errors import ActionError

if TYPE_CHECKING:
    from ..config import Settings


class BaseConnector(ABC):
    """Abstract base for all real collaborators.

    A connector serves one collaborator kind (``crud``, ``file``, ``http``,
    ``script``, ``messaging``) with the same method signature as the matching
    simulator service, so the executor can call either. Methods may be sync or
    async.
    """

    kind: str = ""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.http = http_client

    def _fail(self, message: str, reason: str = "connector_error") -> NoReturn:
        """Raise an ActionError tagged with a collaborator-specific reason."""
        raise ActionError(message, reason)

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> BaseConnector:
        """Construct this connector from application Settings."""
        return cls(settings, http_client)

    @classmethod
    @abstractmethod
    def is_configured(cls, settings: Settings) -> bool:
        """Return True if everything this connector needs is present in settings."""
        ...
