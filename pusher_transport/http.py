"""HTTP client for the Pusher Channels REST API."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import aiohttp

from .auth import PusherAuth
from .config import PusherConfig
from .errors import (
    PusherApiError,
    PusherConnectionError,
    PusherTimeout,
)

_LOGGER = logging.getLogger(__name__)

_JSON_HEADERS = {"Content-Type": "application/json"}


@dataclass(frozen=True, slots=True)
class BatchEvent:
    """One entry of a batch trigger."""

    channel: str
    event: str
    data: str


class PusherHttpClient:
    """Signed REST publisher for one application."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: PusherConfig,
        auth: PusherAuth,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._config = config
        self._auth = auth
        self._timeout = timeout

    def _path(self, endpoint: str) -> str:
        return f"/apps/{self._config.app_id}/{endpoint}"

    async def trigger(self, channel: str, event: str, data: str) -> None:
        """Publish one event to /apps/{app_id}/events."""
        body = {"name": event, "channel": channel, "data": data}
        await self._post(self._path("events"), body, "Failed to trigger event")

    async def trigger_batch(self, events: Iterable[BatchEvent]) -> None:
        """Publish several events in one call to /apps/{app_id}/batch_events."""
        batch = [
            {"channel": item.channel, "name": item.event, "data": item.data}
            for item in events
        ]
        await self._post(
            self._path("batch_events"),
            {"batch": batch},
            "Failed to trigger batch events",
        )

    async def _post(self, path: str, body: dict[str, Any], failure: str) -> None:
        """POST ``body`` with authentication parameters.

        The serialized body is signed and sent byte-for-byte.

        Raises:
            PusherApiError: If the response status is not 2xx
            PusherTimeout: If the request times out
            PusherConnectionError: If the network request fails
        """
        payload = json.dumps(body)
        params = self._auth.authenticate_request("POST", path, payload)
        url = self._config.api_url(path)
        try:
            async with self._session.post(
                url,
                data=payload.encode("utf-8"),
                params=params,
                headers=_JSON_HEADERS,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if not 200 <= resp.status < 300:
                    error_body = await resp.text()
                    raise PusherApiError(
                        resp.status, error_body, f"{failure}: {resp.status} - {error_body}"
                    )
                _LOGGER.debug("POST %s -> %d", path, resp.status)
        except TimeoutError as err:
            raise PusherTimeout(f"{failure}: request timed out") from err
        except aiohttp.ClientError as err:
            raise PusherConnectionError(f"{failure}: request failed") from err
