"""HTTP request connector backed by httpx."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from ..automation.errors import ActionError
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


def decode_body(resp: httpx.Response) -> Any:
    """JSON when the response says so (or parses as JSON), text otherwise."""
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


@register
class HttpConnector(BaseConnector):
    """Sends the request described by an ``http_request`` operation."""

    kind = "http"

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return True

    async def request(
        self,
        method: str,
        url: str,
        headers: dict | None = None,
        body: Any = None,
        timeout: float | None = None,
    ) -> dict:
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        try:
            resp = await self.http.request(
                method,
                url,
                timeout=timeout or self.settings.http_timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ActionError(f"HTTP {method} {url} timed out", "timeout") from e
        except httpx.HTTPError as e:
            raise ActionError(f"HTTP {method} {url} failed: {e}", "network_error") from e

        logger.debug("HTTP %s %s -> %d", method, url, resp.status_code)
        result = {
            "status_code": resp.status_code,
            "headers": dict(resp.headers),
            "body": decode_body(resp),
        }
        if resp.status_code >= 400:
            self._fail(f"HTTP {method} {url} returned {resp.status_code}", "http_error")
        return result
