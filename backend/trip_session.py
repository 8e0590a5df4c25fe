"""Per-trip state and the wiring between the engine's components.

A ``TripSession`` owns everything that changes during one trip: the step
index, the conditions, the vibe, the playlist and the playback position.
Sessions share nothing with each other. All writes happen on the event
loop between awaits, and every playlist request carries a sequence number
so that a late answer to a superseded request is dropped instead of
overwriting newer state.
"""

import asyncio
import logging
import uuid
from typing import AsyncIterator

from config import DEMO_TRIP_DISTANCE_M, DEMO_TRIP_DURATION_S, EngineConfig
from demo import DEMO_ROUTE, DEMO_STEPS, DemoSimulator, DemoWaypoint
from errors import (
    ConditionsUnavailable,
    FeedbackWriteError,
    GeolocationUnavailable,
    RecommendationError,
    TripNotFound,
)
from geo import StepProgress, advance, format_distance, format_duration
from models import (
    ConditionsSnapshot,
    Coordinate,
    FeedbackAction,
    ManeuverStep,
    PlaylistRequest,
    PlaylistResult,
    Rating,
    TrackAction,
    TrackCandidate,
    TripMode,
    TripRating,
    TripState,
    Vibe,
    WeatherReport,
)
from playlist import PlaylistOrchestrator
from preferences import PreferenceLearner
from providers import (
    SAMPLE_TRACKS,
    ConditionsProvider,
    RoutingProvider,
    resolve_pool,
)
from vibes import analyze_traffic, select_vibe, weather_mood

logger = logging.getLogger(__name__)


class TripSession:
    """State and behaviour of one active trip, live or demo."""

    def __init__(
        self,
        *,
        user_id: str,
        mood: Vibe,
        mode: TripMode,
        steps: list[ManeuverStep],
        conditions: ConditionsSnapshot,
        pool: list[TrackCandidate],
        trip_duration_s: float,
        orchestrator: PlaylistOrchestrator,
        learner: PreferenceLearner,
        config: EngineConfig | None = None,
        trip_id: str | None = None,
        trip_distance_m: float = 0.0,
    ) -> None:
        self.trip_id = trip_id or uuid.uuid4().hex
        self.user_id = user_id
        self.mood = mood
        self.mode = mode
        self.steps: tuple[ManeuverStep, ...] = tuple(steps)
        self.conditions = conditions
        self.vibe = select_vibe(mood, conditions)
        self.pool = pool
        self.trip_duration_s = trip_duration_s
        self.trip_distance_m = trip_distance_m
        self.orchestrator = orchestrator
        self.learner = learner
        self.config = config or orchestrator.config

        self.position: Coordinate | None = None
        self.current_step_index = 0
        self.distance_to_next_maneuver: float | None = None
        self.playlist: list[TrackCandidate] = []
        self.rationale = ""
        self.current_track_index = 0
        self.songs_played = 0
        self.active = True

        self.simulator: DemoSimulator | None = None
        self._request_seq = 0
        self._position_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Trip start
    # ------------------------------------------------------------------

    @classmethod
    async def start_live(
        cls,
        *,
        user_id: str,
        mood: Vibe,
        origin: Coordinate | None,
        destination: Coordinate,
        tracks: list[TrackCandidate],
        router: RoutingProvider,
        conditions_provider: ConditionsProvider,
        orchestrator: PlaylistOrchestrator,
        learner: PreferenceLearner,
        config: EngineConfig | None = None,
    ) -> "TripSession":
        """Starts a GPS-driven trip.

        Weather is fetched once for the destination and traffic is derived
        once from the route; neither is polled again.

        Raises:
            GeolocationUnavailable: If there is no position fix.
            RouteUnavailable: If no route can be built.
        """
        if origin is None:
            raise GeolocationUnavailable("Location is required for a live trip.")

        route = await router.get_route(origin, destination)
        try:
            weather = await conditions_provider.get_weather(destination)
        except ConditionsUnavailable:
            logger.warning("Conditions unavailable; continuing with unknown weather")
            weather = WeatherReport()
        traffic = analyze_traffic(route.congestion)

        conditions = ConditionsSnapshot(
            temperature_c=weather.temperature_c,
            weather_condition=weather.condition,
            weather_description=weather.description,
            traffic_level=traffic.level,
        )
        session = cls(
            user_id=user_id,
            mood=mood,
            mode=TripMode.LIVE,
            steps=route.steps,
            conditions=conditions,
            pool=resolve_pool(tracks),
            trip_duration_s=route.duration_s,
            orchestrator=orchestrator,
            learner=learner,
            config=config,
            trip_distance_m=route.distance_m,
        )
        session.position = origin
        logger.info(
            "Live trip %s started: %d steps, vibe=%s (mood=%s)",
            session.trip_id,
            len(session.steps),
            session.vibe.value,
            mood.value,
        )
        await session.refresh_playlist()
        return session

    @classmethod
    async def start_demo(
        cls,
        *,
        user_id: str,
        mood: Vibe,
        tracks: list[TrackCandidate],
        orchestrator: PlaylistOrchestrator,
        learner: PreferenceLearner,
        config: EngineConfig | None = None,
        script: tuple[DemoWaypoint, ...] = DEMO_ROUTE,
    ) -> "TripSession":
        """Starts a scripted trip. Call ``start_simulation`` to begin ticking."""
        config = config or orchestrator.config
        session = cls(
            user_id=user_id,
            mood=mood,
            mode=TripMode.DEMO,
            steps=list(DEMO_STEPS),
            conditions=script[0].conditions(),
            pool=resolve_pool(tracks),
            trip_duration_s=DEMO_TRIP_DURATION_S,
            orchestrator=orchestrator,
            learner=learner,
            config=config,
            trip_distance_m=DEMO_TRIP_DISTANCE_M,
        )
        session.simulator = DemoSimulator(
            session, script, interval_s=config.demo_tick_seconds
        )
        session.simulator.apply_first()
        logger.info(
            "Demo trip %s started: vibe=%s (mood=%s)",
            session.trip_id,
            session.vibe.value,
            mood.value,
        )
        await session.refresh_playlist()
        return session

    def start_simulation(self) -> asyncio.Task:
        if self.simulator is None:
            raise ValueError("Only demo trips have a simulator.")
        return self.simulator.start()

    # ------------------------------------------------------------------
    # Position and conditions
    # ------------------------------------------------------------------

    def update_position(self, position: Coordinate) -> StepProgress:
        """Applies a live position fix and advances the maneuver step.

        Raises:
            ValueError: On a malformed position (state is left untouched) or
                when called on a demo trip.
        """
        if self.mode is not TripMode.LIVE:
            raise ValueError("Position updates are only accepted on live trips.")
        progress = advance(
            position,
            list(self.steps),
            self.current_step_index,
            proximity_m=self.config.step_proximity_m,
        )
        self.position = position
        self.distance_to_next_maneuver = progress.distance_to_next_maneuver
        self.current_step_index = max(self.current_step_index, progress.next_index)
        return progress

    async def follow_positions(self, feed: AsyncIterator[Coordinate]) -> None:
        """Consumes a position feed until it ends or the trip stops."""
        async for position in feed:
            if not self.active:
                break
            try:
                self.update_position(position)
            except ValueError as exc:
                logger.warning("Ignoring position update: %s", exc)

    def subscribe_positions(self, feed: AsyncIterator[Coordinate]) -> asyncio.Task:
        self._position_task = asyncio.create_task(self.follow_positions(feed))
        return self._position_task

    def apply_waypoint(self, waypoint: DemoWaypoint, *, advance_step: bool) -> None:
        """Moves a demo trip onto [waypoint]. The vibe is left as it is."""
        self.position = waypoint.position
        self.conditions = waypoint.conditions()
        if advance_step and self.steps:
            self.current_step_index = min(
                self.current_step_index + 1, len(self.steps) - 1
            )
        if self.steps:
            step = self.steps[self.current_step_index]
            self.distance_to_next_maneuver = step.distance_m

    def reset_vibe(self) -> Vibe:
        """Re-derives the vibe from the current conditions."""
        self.vibe = select_vibe(self.mood, self.conditions)
        return self.vibe

    # ------------------------------------------------------------------
    # Playlist
    # ------------------------------------------------------------------

    async def refresh_playlist(self) -> bool:
        """Requests a playlist for the current context.

        Returns True when the new playlist was applied. Recommendation
        failures keep the previous playlist; a trip with no playlist yet
        gets a fallback selection instead. Answers to superseded requests,
        or arriving after the trip ended, are dropped.
        """
        if not self.active:
            return False
        self._request_seq += 1
        seq = self._request_seq

        summary = await self.learner.summarize(self.user_id)
        request = PlaylistRequest(
            vibe=self.vibe,
            conditions=self.conditions,
            trip_duration_s=self.trip_duration_s,
            candidate_pool=self.pool,
            learned_preferences=summary.text,
            sequence_position=self.songs_played,
        )
        try:
            result = await self.orchestrator.request_playlist(request)
        except RecommendationError as exc:
            logger.warning(
                "Playlist request %d failed (%s); keeping current playlist",
                seq,
                exc.reason,
            )
            if self.playlist or not self._is_current(seq):
                return False
            result = self._fallback()

        if not self._is_current(seq):
            logger.info("Discarding stale playlist response %d", seq)
            return False
        if not result.ordered_tracks:
            result = self._fallback()

        self.playlist = list(result.ordered_tracks)
        self.rationale = result.rationale
        self.current_track_index = 0
        logger.info(
            "Playlist %d applied: %d tracks%s",
            seq,
            len(self.playlist),
            " (padded)" if result.padded else "",
        )
        return True

    def _is_current(self, seq: int) -> bool:
        return self.active and seq == self._request_seq

    def _fallback(self) -> PlaylistResult:
        result = self.orchestrator.fallback_playlist(self.pool, self.vibe)
        if not result.ordered_tracks:
            result = self.orchestrator.fallback_playlist(
                list(SAMPLE_TRACKS), self.vibe
            )
        return result

    @property
    def current_track(self) -> TrackCandidate | None:
        if 0 <= self.current_track_index < len(self.playlist):
            return self.playlist[self.current_track_index]
        return None

    async def next_track(self) -> TrackCandidate | None:
        """Skips the current track, logging the skip as feedback.

        Past the end of the playlist a fresh one is requested for the new
        sequence position.
        """
        await self.record_track_feedback(FeedbackAction.SKIPPED)
        self.songs_played += 1
        if self.current_track_index < len(self.playlist) - 1:
            self.current_track_index += 1
        else:
            await self.refresh_playlist()
        return self.current_track

    def previous_track(self) -> TrackCandidate | None:
        if self.current_track_index > 0:
            self.current_track_index -= 1
        return self.current_track

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    async def record_track_feedback(self, action: FeedbackAction) -> bool:
        """Logs [action] against the current track; never fails the trip."""
        track = self.current_track
        if track is None:
            return False
        event = TrackAction(
            track_id=track.id,
            action=action,
            vibe=self.vibe,
            weather_condition=self.conditions.weather_condition,
            traffic_level=self.conditions.traffic_level,
            track_name=track.name,
            artist=track.artist,
            mood=self.mood,
        )
        return await self._record(event)

    async def _record(self, event: TrackAction | TripRating) -> bool:
        try:
            await self.learner.record_feedback(self.user_id, event)
        except FeedbackWriteError as exc:
            logger.warning("Feedback lost: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Trip end
    # ------------------------------------------------------------------

    async def end(self, rating: Rating | None = None) -> None:
        """Stops timers and subscriptions, recording [rating] if given."""
        if rating is not None and self.active:
            await self._record(
                TripRating(
                    rating=rating,
                    vibe=self.vibe,
                    weather_condition=self.conditions.weather_condition,
                    traffic_level=self.conditions.traffic_level,
                    mood=self.mood,
                )
            )
        self.active = False
        if self.simulator is not None:
            self.simulator.stop()
        if self._position_task is not None and not self._position_task.done():
            self._position_task.cancel()
        self._position_task = None
        logger.info("Trip %s ended", self.trip_id)

    def state(self) -> TripState:
        step = (
            self.steps[self.current_step_index]
            if 0 <= self.current_step_index < len(self.steps)
            else None
        )
        return TripState(
            trip_id=self.trip_id,
            mode=self.mode,
            vibe=self.vibe,
            conditions=self.conditions,
            weather_mood=weather_mood(self.conditions.weather_condition),
            trip_distance_m=self.trip_distance_m,
            trip_duration_s=self.trip_duration_s,
            trip_distance_text=format_distance(self.trip_distance_m),
            trip_duration_text=format_duration(self.trip_duration_s),
            current_step_index=self.current_step_index,
            current_step=step,
            distance_to_next_maneuver=self.distance_to_next_maneuver,
            distance_to_next_maneuver_text=(
                format_distance(self.distance_to_next_maneuver)
                if self.distance_to_next_maneuver is not None
                else None
            ),
            current_track_index=self.current_track_index,
            current_track=self.current_track,
            playlist=self.playlist,
            rationale=self.rationale,
            songs_played=self.songs_played,
            active=self.active,
        )


class TripRegistry:
    """Active trips by id."""

    def __init__(self) -> None:
        self._sessions: dict[str, TripSession] = {}

    def add(self, session: TripSession) -> None:
        self._sessions[session.trip_id] = session

    def get(self, trip_id: str) -> TripSession:
        try:
            return self._sessions[trip_id]
        except KeyError:
            raise TripNotFound(f"No active trip {trip_id!r}") from None

    async def end(self, trip_id: str, rating: Rating | None = None) -> TripSession:
        session = self._sessions.pop(trip_id, None)
        if session is None:
            raise TripNotFound(f"No active trip {trip_id!r}")
        await session.end(rating)
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    async def end_all(self) -> None:
        for trip_id in list(self._sessions):
            await self.end(trip_id)
