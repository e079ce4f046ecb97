"""
Route optimizer client.

Talks to a Google Directions compatible endpoint with waypoint
optimisation enabled and normalises the answer into OptimizerResponse.
The client never raises: transport errors, timeouts, non-OK answers and
an open circuit all come back as an ERROR response.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import httpx

from tripmerge.app.core.config import settings
from tripmerge.app.core.exceptions import ExternalServiceError
from tripmerge.app.core.reliability import CircuitBreaker, CircuitOpenError
from tripmerge.app.services.geo import LatLng

logger = logging.getLogger("tripmerge.optimizer")

SERVICE_NAME = "route-optimizer"

STATUS_OK = "OK"
STATUS_ERROR = "ERROR"


@dataclass
class OptimizerResponse:
    """
    Normalised optimizer answer.

    permutation indexes the intermediate points that were sent, in the
    order the optimizer wants them visited. Legs are in meters/seconds.
    """
    status: str
    permutation: List[int] = field(default_factory=list)
    leg_distances_m: List[float] = field(default_factory=list)
    leg_durations_s: List[float] = field(default_factory=list)
    polyline: str = ""
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def error(cls, message: str) -> "OptimizerResponse":
        return cls(status=STATUS_ERROR, error_message=message)


def _format_point(point: LatLng) -> str:
    return f"{point[0]},{point[1]}"


class RouteOptimizerClient:
    """
    Route optimizer adapter.

    Usage:
        client = RouteOptimizerClient()
        response = await client.optimize(origin, intermediates, destination)
        ...
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: Optional[str] = None,
        timeout: float = None,
        breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url or settings.route_optimizer_url
        self.api_key = api_key if api_key is not None else settings.route_optimizer_api_key
        self.timeout = timeout or settings.route_optimizer_timeout_seconds
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.optimizer_failure_threshold,
            reset_timeout=settings.optimizer_reset_timeout_seconds
        )
        self.client = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def aclose(self):
        await self.client.aclose()

    async def optimize(
        self,
        origin: LatLng,
        intermediates: Sequence[LatLng],
        destination: LatLng
    ) -> OptimizerResponse:
        """
        Ask for the visiting order of `intermediates` that minimises travel
        from `origin` to `destination`.
        """
        if not self.api_key:
            logger.warning("Route optimizer API key not configured")
            return OptimizerResponse.error("API key not configured")

        try:
            return await self.breaker.call(self._request, origin, list(intermediates), destination)
        except CircuitOpenError:
            logger.warning("Route optimizer circuit is open, skipping call")
            return OptimizerResponse.error("circuit open")
        except ExternalServiceError as e:
            logger.warning("Route optimizer failed: %s", e.message)
            return OptimizerResponse.error(e.message)

    async def _request(
        self,
        origin: LatLng,
        intermediates: List[LatLng],
        destination: LatLng
    ) -> OptimizerResponse:
        params = {
            "origin": _format_point(origin),
            "destination": _format_point(destination),
            "key": self.api_key,
        }
        if intermediates:
            params["waypoints"] = "optimize:true|" + "|".join(_format_point(p) for p in intermediates)

        try:
            response = await self.client.get(self.base_url, params=params, timeout=self.timeout)
        except httpx.TimeoutException:
            raise ExternalServiceError(SERVICE_NAME, f"timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"unreachable: {e}")

        if response.status_code != 200:
            raise ExternalServiceError(SERVICE_NAME, f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise ExternalServiceError(SERVICE_NAME, "invalid JSON response")

        if not isinstance(data, dict):
            raise ExternalServiceError(SERVICE_NAME, "malformed response: expected a JSON object")

        if data.get("status") != STATUS_OK:
            raise ExternalServiceError(
                SERVICE_NAME,
                f"{data.get('status')} - {data.get('error_message', 'Unknown error')}"
            )

        routes = data.get("routes") or []
        if not routes:
            raise ExternalServiceError(SERVICE_NAME, "no routes returned")
        if not isinstance(routes, list) or not isinstance(routes[0], dict):
            raise ExternalServiceError(SERVICE_NAME, "malformed response: route is not an object")

        route = routes[0]
        try:
            legs = route.get("legs") or []
            return OptimizerResponse(
                status=STATUS_OK,
                permutation=[int(index) for index in route.get("waypoint_order") or []],
                leg_distances_m=[float(leg["distance"]["value"]) for leg in legs],
                leg_durations_s=[float(leg["duration"]["value"]) for leg in legs],
                polyline=(route.get("overview_polyline") or {}).get("points", ""),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ExternalServiceError(SERVICE_NAME, f"malformed route: {e}")
