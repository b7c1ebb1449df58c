"""
Distance oracle used by the mileage cache on a miss.

The cache only depends on the DistanceResolver protocol. The Google Maps
implementation asks the Directions API for alternative driving routes and
keeps the shortest one, since billing is by distance rather than time.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from backend.core.config import DistanceConfig
from .exceptions import DistanceResolverError

logger = structlog.get_logger(__name__)

METERS_PER_MILE = 1609.344


class DistanceResolver(Protocol):
    async def get_distance_miles(self, origin: str, destination: str) -> float:
        """Driving distance in miles; raises DistanceResolverError on failure"""
        ...


@dataclass
class RouteDistance:
    """Route calculation result"""
    distance_miles: float
    distance_text: str
    origin: str
    destination: str


def meters_to_miles(meters: float) -> float:
    return round(meters / METERS_PER_MILE, 2)


def _route_meters(route: Dict[str, Any]) -> float:
    return sum(leg.get("distance", {}).get("value", 0) for leg in route.get("legs", []))


class UnavailableDistanceResolver:
    """Resolver used when no API key is configured; every lookup falls back to source miles"""

    def __init__(self, reason: str = "no distance API key configured"):
        self.reason = reason

    async def get_distance_miles(self, origin: str, destination: str) -> float:
        raise DistanceResolverError(self.reason)


class GoogleMapsDistanceResolver:
    """
    Distance resolver backed by the Google Maps Directions API.

    Args:
        api_key: Google Maps API key
        base_url: Directions endpoint
        timeout: Request timeout in seconds
        client: Optional shared httpx.AsyncClient (owned by the caller)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://maps.googleapis.com/maps/api/directions/json",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("A Google Maps API key is required")
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client = client
        self._logger = logger.bind(component="google_maps_resolver")

    @classmethod
    def from_config(cls, config: DistanceConfig) -> "GoogleMapsDistanceResolver":
        return cls(
            api_key=config.google_maps_api_key or "",
            base_url=config.google_maps_base_url,
            timeout=config.google_maps_timeout_seconds,
        )

    async def get_distance_miles(self, origin: str, destination: str) -> float:
        route = await self.get_shortest_route(origin, destination)
        return route.distance_miles

    async def get_shortest_route(self, origin: str, destination: str) -> RouteDistance:
        """Request alternative driving routes and return the shortest by distance"""
        params = {
            "origin": origin,
            "destination": destination,
            "mode": "driving",
            "alternatives": "true",
            "key": self.api_key,
        }

        self._logger.info("distance_request", origin=origin, destination=destination)
        try:
            if self._client is not None:
                response = await self._client.get(self.base_url, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.base_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise DistanceResolverError(f"Directions request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise DistanceResolverError(f"Directions request failed: {e}") from e
        except ValueError as e:
            raise DistanceResolverError(f"Directions response was not JSON: {e}") from e

        status = payload.get("status")
        routes: List[Dict[str, Any]] = payload.get("routes") or []
        if status != "OK" or not routes:
            raise DistanceResolverError(
                f"No routes found between {origin!r} and {destination!r} (status={status})"
            )

        shortest = min(routes, key=_route_meters)
        miles = meters_to_miles(_route_meters(shortest))
        legs = shortest.get("legs") or [{}]

        result = RouteDistance(
            distance_miles=miles,
            distance_text=f"{miles:.1f} mi",
            origin=legs[0].get("start_address", origin),
            destination=legs[-1].get("end_address", destination),
        )
        self._logger.info(
            "distance_resolved",
            origin=origin,
            destination=destination,
            miles=miles,
            alternatives=len(routes),
        )
        return result
