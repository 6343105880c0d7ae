"""HTTP routing-service client."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp
import pydantic

from pyfleettrack._constants import USER_AGENT
from pyfleettrack.exceptions import TrackingConnectionError, TrackingTimeoutError
from pyfleettrack.geo import Coordinate
from pyfleettrack.services import RouteLeg

_logger = logging.getLogger(__name__)


class HttpRoutingService:
    """:class:`~pyfleettrack.services.RoutingService` backed by a JSON HTTP API.

    ``POST {base_url}/route`` with
    ``{"origin": {"latitude", "longitude"}, "destination": {...}}`` and
    expects ``{"distanceKm": float, "durationMin": float}`` back.
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        api_key: str | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/route"
        self._http = http_session
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    async def route_distance(self, origin: Coordinate, destination: Coordinate) -> RouteLeg:
        body: dict[str, Any] = {
            "origin": {"latitude": origin[0], "longitude": origin[1]},
            "destination": {"latitude": destination[0], "longitude": destination[1]},
        }
        _logger.debug("POST %s", self._url)

        try:
            async with self._http.post(
                self._url,
                data=json.dumps(body),
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise TrackingConnectionError(
                        f"HTTP {resp.status} from routing service: {text[:200]}",
                        endpoint=self._url,
                    )
        except TimeoutError as exc:
            raise TrackingTimeoutError(
                "Routing request timed out",
                operation="route_distance",
                timeout=self._timeout.total,
            ) from exc
        except aiohttp.ClientError as exc:
            raise TrackingConnectionError(f"Routing request failed: {exc}", endpoint=self._url) from exc

        try:
            return RouteLeg.model_validate_json(text)
        except pydantic.ValidationError as exc:
            raise TrackingConnectionError(
                f"Invalid routing response: {text[:200]}",
                endpoint=self._url,
            ) from exc
