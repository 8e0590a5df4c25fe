"""Scripted demo trip: West Towne Mall to Union South, Madison WI.

The simulator replays a fixed waypoint script on a timer, feeding the
same session pipeline a live trip uses. Conditions change along the way
(sun, building traffic, a rain band, clearing skies) so every rule in the
engine gets exercised without GPS or live providers.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel

from config import DEMO_STEP_EVERY_TICKS, DEMO_TICK_SECONDS
from models import (
    ConditionsSnapshot,
    Coordinate,
    ManeuverStep,
    TrafficLevel,
    WeatherCondition,
)

if TYPE_CHECKING:
    from trip_session import TripSession

logger = logging.getLogger(__name__)


class DemoWaypoint(BaseModel):
    """One scripted point on the demo route with its conditions."""

    position: Coordinate
    traffic: TrafficLevel
    weather: WeatherCondition
    description: str
    temperature_c: float

    def conditions(self) -> ConditionsSnapshot:
        return ConditionsSnapshot(
            temperature_c=self.temperature_c,
            weather_condition=self.weather,
            weather_description=self.description,
            traffic_level=self.traffic,
        )


def _wp(lat, lng, traffic, weather, description, temperature):
    return DemoWaypoint(
        position=Coordinate(lat=lat, lng=lng),
        traffic=TrafficLevel(traffic),
        weather=WeatherCondition(weather),
        description=description,
        temperature_c=temperature,
    )


DEMO_ROUTE: tuple[DemoWaypoint, ...] = (
    _wp(43.0592, -89.5040, "light", "Clear", "sunny", 23),  # West Towne Mall
    _wp(43.0608, -89.4976, "light", "Clear", "sunny", 23),  # Gammon & Mineral Point
    _wp(43.0614, -89.4929, "moderate", "Clouds", "partly cloudy", 22),
    _wp(43.0620, -89.4871, "moderate", "Clouds", "partly cloudy", 22),
    _wp(43.0627, -89.4813, "heavy", "Clouds", "cloudy", 21),  # near Whitney Way
    _wp(43.0652, -89.4748, "heavy", "Rain", "light rain", 20),
    _wp(43.0667, -89.4695, "heavy", "Rain", "light rain", 19),
    _wp(43.0679, -89.4643, "severe", "Rain", "moderate rain", 18),  # Whitney & Odana
    _wp(43.0685, -89.4599, "severe", "Rain", "heavy rain", 18),
    _wp(43.0689, -89.4520, "moderate", "Rain", "heavy rain", 19),
    _wp(43.0687, -89.4435, "moderate", "Rain", "heavy rain", 20),  # Westmorland
    _wp(43.0700, -89.4350, "moderate", "Clouds", "clouds clearing", 20),
    _wp(43.0707, -89.4241, "heavy", "Clouds", "overcast", 20),  # Camp Randall
    _wp(43.0709, -89.4190, "moderate", "Clouds", "cloudy", 21),
    _wp(43.0711, -89.4147, "light", "Clouds", "clouds breaking", 22),
    _wp(43.0715, -89.4075, "smooth", "Clear", "sunny", 23),  # Union South
)


def _step(distance, text, maneuver_type, modifier, lat, lng):
    return ManeuverStep(
        distance_m=distance,
        instruction=text,
        maneuver_type=maneuver_type,
        maneuver_modifier=modifier,
        location=Coordinate(lat=lat, lng=lng),
    )


DEMO_STEPS: tuple[ManeuverStep, ...] = (
    _step(500, "Head west on Mineral Point Rd", "depart", "straight", 43.0592, -89.5040),
    _step(800, "Continue on Mineral Point Rd", "continue", "straight", 43.0605, -89.4932),
    _step(300, "Turn right onto Whitney Way", "turn", "right", 43.0624, -89.4811),
    _step(600, "Turn left onto University Ave", "turn", "left", 43.0660, -89.4687),
    _step(400, "Continue onto Regent St", "new name", "straight", 43.0692, -89.4588),
    _step(
        200, "Turn slight right to stay on Regent St", "turn", "slight right",
        43.0708, -89.4237,
    ),
    _step(100, "Arrive at Union South", "arrive", "straight", 43.0715, -89.4075),
)


class DemoSimulator:
    """Ticks through a waypoint script, driving a demo ``TripSession``.

    The first waypoint is applied when the trip starts; every tick after
    that moves the cursor one waypoint on until the script ends. The
    simulator never wraps around.
    """

    def __init__(
        self,
        session: "TripSession",
        script: tuple[DemoWaypoint, ...] = DEMO_ROUTE,
        *,
        interval_s: float = DEMO_TICK_SECONDS,
        step_every: int = DEMO_STEP_EVERY_TICKS,
    ) -> None:
        if not script:
            raise ValueError("Demo script must contain at least one waypoint.")
        self.session = session
        self.script = script
        self.interval_s = interval_s
        self.step_every = step_every
        self.cursor = -1
        self.snapshots_emitted = 0
        self._task: asyncio.Task | None = None

    @property
    def finished(self) -> bool:
        return self.cursor >= len(self.script) - 1

    @property
    def current(self) -> DemoWaypoint | None:
        return self.script[self.cursor] if self.cursor >= 0 else None

    def apply_first(self) -> DemoWaypoint:
        """Moves onto the first waypoint without requesting a playlist."""
        self.cursor = 0
        waypoint = self.script[0]
        self.session.apply_waypoint(waypoint, advance_step=False)
        self.snapshots_emitted += 1
        return waypoint

    async def tick(self) -> bool:
        """Advances one waypoint. Returns False once the script is exhausted."""
        if self.finished:
            return False
        self.cursor += 1
        waypoint = self.script[self.cursor]
        advance_step = self.cursor % self.step_every == 0
        self.session.apply_waypoint(waypoint, advance_step=advance_step)
        self.snapshots_emitted += 1
        logger.info(
            "Demo tick %d/%d: traffic=%s, weather=%s",
            self.cursor,
            len(self.script) - 1,
            waypoint.traffic.value,
            waypoint.weather.value,
        )
        await self.session.refresh_playlist()
        return not self.finished

    async def run(self) -> None:
        """Ticks on a fixed interval until the script ends."""
        if self.cursor < 0:
            self.apply_first()
        logger.info("Starting demo simulation loop")
        while not self.finished:
            await asyncio.sleep(self.interval_s)
            await self.tick()
        logger.info("Demo route finished")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
