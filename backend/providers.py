"""External collaborators: routing, weather and the track catalog.

Google Maps (googlemaps) provides directions with live traffic; current
weather comes from OpenWeather over httpx. Each adapter turns provider
responses into the engine's models and raises the engine's own errors.
"""

import asyncio
import logging
import os
import re
from typing import Any, Protocol

import googlemaps
import httpx

from errors import ConditionsUnavailable, RouteUnavailable
from models import (
    Coordinate,
    ManeuverStep,
    RouteInfo,
    TrackCandidate,
    WeatherCondition,
    WeatherReport,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

# Ratio of in-traffic to free-flow duration at which a leg counts as
# moderate / heavy / severe congestion.
CONGESTION_MODERATE_RATIO: float = 1.10
CONGESTION_HEAVY_RATIO: float = 1.30
CONGESTION_SEVERE_RATIO: float = 1.60

_TAG_RE = re.compile(r"<[^>]+>")


class RoutingProvider(Protocol):
    async def get_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteInfo:
        ...


def _clean_instruction(html: str) -> str:
    text = html.replace("<div", " <div")
    return " ".join(_TAG_RE.sub("", text).split())


def _split_maneuver(maneuver: str) -> tuple[str, str | None]:
    """Splits a Google maneuver ("turn-slight-left") into type and modifier."""
    if not maneuver:
        return "continue", "straight"
    head, _, tail = maneuver.partition("-")
    return head, (tail.replace("-", " ") or None)


def congestion_label(duration_s: float, duration_in_traffic_s: float) -> str:
    """Classifies a leg by how much traffic stretches its duration."""
    if duration_s <= 0:
        return "unknown"
    ratio = duration_in_traffic_s / duration_s
    if ratio >= CONGESTION_SEVERE_RATIO:
        return "severe"
    if ratio >= CONGESTION_HEAVY_RATIO:
        return "heavy"
    if ratio >= CONGESTION_MODERATE_RATIO:
        return "moderate"
    return "low"


def parse_directions(route: dict[str, Any]) -> RouteInfo:
    """Converts one Directions API route into a ``RouteInfo``."""
    steps: list[ManeuverStep] = []
    congestion: list[str] = []
    distance_m = 0.0
    duration_s = 0.0

    for leg in route["legs"]:
        leg_duration = leg["duration"]["value"]
        distance_m += leg["distance"]["value"]
        duration_s += leg_duration
        in_traffic = leg.get("duration_in_traffic", {}).get("value")
        if in_traffic is not None:
            congestion.append(congestion_label(leg_duration, in_traffic))

        for step in leg["steps"]:
            maneuver_type, modifier = _split_maneuver(step.get("maneuver", ""))
            if not steps:
                maneuver_type, modifier = "depart", None
            start = step["start_location"]
            steps.append(
                ManeuverStep(
                    distance_m=step["distance"]["value"],
                    duration_s=step.get("duration", {}).get("value", 0),
                    instruction=_clean_instruction(
                        step.get("html_instructions", "")
                    ),
                    maneuver_type=maneuver_type,
                    maneuver_modifier=modifier,
                    location=Coordinate(lat=start["lat"], lng=start["lng"]),
                )
            )

    if route["legs"]:
        end = route["legs"][-1]["end_location"]
        steps.append(
            ManeuverStep(
                distance_m=0,
                instruction="Arrive at your destination",
                maneuver_type="arrive",
                location=Coordinate(lat=end["lat"], lng=end["lng"]),
            )
        )

    return RouteInfo(
        distance_m=distance_m,
        duration_s=duration_s,
        polyline=route.get("overview_polyline", {}).get("points", ""),
        congestion=congestion,
        steps=steps,
    )


class GoogleDirectionsRouter:
    """Driving directions with live traffic from the Google Directions API."""

    def __init__(self, maps_client: googlemaps.Client | None = None) -> None:
        self._maps = maps_client

    @property
    def maps(self) -> googlemaps.Client:
        # Built on first use; the client rejects a missing key at construction.
        if self._maps is None:
            self._maps = googlemaps.Client(
                key=os.environ.get("GOOGLE_MAPS_API_KEY", "")
            )
        return self._maps

    async def get_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteInfo:
        """Fetches a route from [origin] to [destination].

        Raises:
            RouteUnavailable: If the API call fails or returns no route.
        """
        logger.info(
            "Fetching route %f,%f -> %f,%f",
            origin.lat,
            origin.lng,
            destination.lat,
            destination.lng,
        )
        try:
            result = await asyncio.to_thread(
                self.maps.directions,
                origin=(origin.lat, origin.lng),
                destination=(destination.lat, destination.lng),
                mode="driving",
                departure_time="now",
                alternatives=False,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Directions API error: %s", exc)
            raise RouteUnavailable(f"Directions API error: {exc}") from exc

        if not result:
            raise RouteUnavailable("Directions API returned no routes.")
        try:
            route = parse_directions(result[0])
        except (KeyError, TypeError, ValueError) as exc:
            raise RouteUnavailable(f"Unexpected directions payload: {exc}") from exc
        if not route.steps:
            raise RouteUnavailable("Route has no maneuver steps.")

        logger.info(
            "Route found: %.1fkm, %dmin, %d steps",
            route.distance_m / 1000,
            round(route.duration_s / 60),
            len(route.steps),
        )
        return route

    async def geocode(self, address: str) -> tuple[Coordinate, str] | None:
        """Resolves [address] to a coordinate and Google's formatted address.

        Returns None when Google has no match. Client errors propagate.
        """
        result = await asyncio.to_thread(self.maps.geocode, address)
        if not result:
            return None
        location = result[0]["geometry"]["location"]
        position = Coordinate(lat=float(location["lat"]), lng=float(location["lng"]))
        return position, result[0].get("formatted_address", address)


# ---------------------------------------------------------------------------
# Weather
# ---------------------------------------------------------------------------

OPENWEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"


class ConditionsProvider(Protocol):
    async def get_weather(self, position: Coordinate) -> WeatherReport:
        ...


class OpenWeatherConditions:
    """Current weather from the OpenWeather API, in metric units."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        api_key: str | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._api_key = api_key or os.environ.get("OPENWEATHER_API_KEY", "")

    async def get_weather(self, position: Coordinate) -> WeatherReport:
        """Fetches the weather at [position].

        Raises:
            ConditionsUnavailable: On any HTTP or payload error.
        """
        try:
            response = await self._client.get(
                OPENWEATHER_URL,
                params={
                    "lat": position.lat,
                    "lon": position.lng,
                    "appid": self._api_key,
                    "units": "metric",
                },
            )
            response.raise_for_status()
            data = response.json()
            weather = data["weather"][0]
            return WeatherReport(
                temperature_c=round(data["main"]["temp"]),
                condition=WeatherCondition(weather.get("main", "unknown")),
                description=weather.get("description", ""),
            )
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Weather fetch failed: %s", exc)
            raise ConditionsUnavailable(str(exc)) from exc


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

SAMPLE_TRACKS: tuple[TrackCandidate, ...] = tuple(
    TrackCandidate(id=track_id, name=name, artist=artist, source="sample")
    for track_id, name, artist in (
        ("1", "Blinding Lights", "The Weeknd"),
        ("2", "Levitating", "Dua Lipa"),
        ("3", "Good 4 U", "Olivia Rodrigo"),
        ("4", "Heat Waves", "Glass Animals"),
        ("5", "Stay", "The Kid LAROI"),
        ("6", "Industry Baby", "Lil Nas X"),
        ("7", "Circles", "Post Malone"),
        ("8", "Sunflower", "Post Malone"),
        ("9", "Someone You Loved", "Lewis Capaldi"),
        ("10", "Perfect", "Ed Sheeran"),
        ("11", "Anti-Hero", "Taylor Swift"),
        ("12", "As It Was", "Harry Styles"),
    )
)


def resolve_pool(tracks: list[TrackCandidate]) -> list[TrackCandidate]:
    """Returns the rider's tracks de-duplicated by id, or the sample library."""
    pool: list[TrackCandidate] = []
    seen: set[str] = set()
    for track in tracks:
        if track.id in seen:
            continue
        seen.add(track.id)
        pool.append(track)
    if not pool:
        logger.info("No library tracks supplied; using the sample library")
        return list(SAMPLE_TRACKS)
    return pool
