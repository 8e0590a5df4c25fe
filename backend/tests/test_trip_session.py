"""Tests for trip_session.py.

Routing, weather and the recommender are replaced by in-process fakes; no
network access occurs during these tests.
"""

import asyncio
import json
import math
import random

import pytest

from config import EARTH_RADIUS_M, EngineConfig
from errors import (
    ConditionsUnavailable,
    GeolocationUnavailable,
    RecommendationError,
    RouteUnavailable,
    TripNotFound,
)
from models import (
    ConditionsSnapshot,
    Coordinate,
    FeedbackAction,
    ManeuverStep,
    Rating,
    RouteInfo,
    TrackAction,
    TrackCandidate,
    TrafficLevel,
    TripMode,
    TripRating,
    Vibe,
    WeatherCondition,
    WeatherReport,
)
from playlist import PlaylistOrchestrator
from preferences import InMemoryFeedbackStore, PreferenceLearner
from trip_session import TripRegistry, TripSession

# ---------------------------------------------------------------------------
# Fakes and helpers
# ---------------------------------------------------------------------------

_ORIGIN = Coordinate(lat=43.0592, lng=-89.5040)
_DESTINATION = Coordinate(lat=43.0715, lng=-89.4075)


def _answer(indices):
    return json.dumps({"selectedTracks": indices, "reasoning": "Good for the drive."})


class _StubRecommender:
    def __init__(self, response=None, error=None):
        self.response = response or _answer(list(range(1, 11)))
        self.error = error
        self.prompts = []

    async def recommend(self, system_prompt, user_prompt):
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.response


class _GatedRecommender:
    """Holds each call until the test releases it; call N answers [answers[N]]."""

    def __init__(self, answers):
        self.answers = answers
        self.gates = []

    async def recommend(self, system_prompt, user_prompt):
        call = len(self.gates)
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return self.answers[call]


class _FakeRouter:
    def __init__(self, route=None, error=None):
        self.route = route
        self.error = error

    async def get_route(self, origin, destination):
        if self.error is not None:
            raise self.error
        return self.route


class _FakeConditions:
    def __init__(self, report=None, error=None):
        self.report = report or WeatherReport(
            temperature_c=18, condition=WeatherCondition.CLEAR, description="clear sky"
        )
        self.error = error

    async def get_weather(self, position):
        if self.error is not None:
            raise self.error
        return self.report


class _FailingStore(InMemoryFeedbackStore):
    async def append(self, user_id, event):
        raise OSError("read-only filesystem")


def _steps():
    points = [(43.0592, -89.5040), (43.0624, -89.4811), (43.0715, -89.4075)]
    return [
        ManeuverStep(
            distance_m=500,
            instruction=f"Step {i}",
            maneuver_type="turn",
            location=Coordinate(lat=lat, lng=lng),
        )
        for i, (lat, lng) in enumerate(points)
    ]


def _route(congestion=None):
    return RouteInfo(
        distance_m=8000,
        duration_s=1500,
        congestion=congestion if congestion is not None else ["low"] * 10,
        steps=_steps(),
    )


def _pool(n=30):
    return [
        TrackCandidate(id=f"t{i}", name=f"Song {i}", artist="Artist")
        for i in range(1, n + 1)
    ]


def _orchestrator(recommender):
    return PlaylistOrchestrator(recommender, EngineConfig(), rng=random.Random(3))


def _session(recommender, learner=None, mode=TripMode.LIVE):
    return TripSession(
        user_id="rider-1",
        mood=Vibe.CHILL,
        mode=mode,
        steps=_steps(),
        conditions=ConditionsSnapshot(
            weather_condition=WeatherCondition.CLOUDS,
            traffic_level=TrafficLevel.MODERATE,
        ),
        pool=_pool(),
        trip_duration_s=1500,
        orchestrator=_orchestrator(recommender),
        learner=learner or PreferenceLearner(),
    )


async def _start_live(recommender=None, router=None, conditions=None, learner=None, **kwargs):
    return await TripSession.start_live(
        user_id="rider-1",
        mood=kwargs.pop("mood", Vibe.HAPPY),
        origin=kwargs.pop("origin", _ORIGIN),
        destination=_DESTINATION,
        tracks=kwargs.pop("tracks", _pool()),
        router=router or _FakeRouter(_route()),
        conditions_provider=conditions or _FakeConditions(),
        orchestrator=_orchestrator(recommender or _StubRecommender()),
        learner=learner or PreferenceLearner(),
    )


async def _wait_for_calls(recommender, n):
    while len(recommender.gates) < n:
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# start_live
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_live_builds_state_and_playlist():
    session = await _start_live()
    assert session.mode is TripMode.LIVE
    assert session.current_step_index == 0
    assert session.conditions.weather_condition is WeatherCondition.CLEAR
    assert session.conditions.traffic_level is TrafficLevel.LIGHT
    assert session.vibe is Vibe.HYPE
    assert [t.id for t in session.playlist] == [f"t{i}" for i in range(1, 11)]
    assert session.rationale == "Good for the drive."
    assert session.current_track.id == "t1"


@pytest.mark.asyncio
async def test_start_live_heavy_traffic_gives_focus():
    session = await _start_live(router=_FakeRouter(_route(["heavy"] * 6 + ["low"] * 4)))
    assert session.conditions.traffic_level is TrafficLevel.HEAVY
    assert session.vibe is Vibe.FOCUS


@pytest.mark.asyncio
async def test_start_live_requires_origin():
    with pytest.raises(GeolocationUnavailable):
        await _start_live(origin=None)


@pytest.mark.asyncio
async def test_start_live_route_failure_propagates():
    router = _FakeRouter(error=RouteUnavailable("no route"))
    with pytest.raises(RouteUnavailable):
        await _start_live(router=router)


@pytest.mark.asyncio
async def test_start_live_conditions_failure_degrades_to_unknown():
    session = await _start_live(
        conditions=_FakeConditions(error=ConditionsUnavailable("timeout")),
        mood=Vibe.SAD,
    )
    assert session.conditions.weather_condition is WeatherCondition.UNKNOWN
    assert session.vibe is Vibe.SAD
    assert session.active


@pytest.mark.asyncio
async def test_start_live_recommender_failure_uses_fallback():
    error = RecommendationError(RecommendationError.RECOMMENDER_FAILED, "down")
    session = await _start_live(recommender=_StubRecommender(error=error))
    assert len(session.playlist) == 10
    assert "Fallback" in session.rationale


@pytest.mark.asyncio
async def test_start_live_without_tracks_uses_sample_library():
    session = await _start_live(tracks=[])
    assert all(t.source == "sample" for t in session.pool)
    assert len(session.pool) == 12


# ---------------------------------------------------------------------------
# Position updates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_position_advances_step():
    session = await _start_live()
    near_first = Coordinate(
        lat=_ORIGIN.lat + math.degrees(10 / EARTH_RADIUS_M), lng=_ORIGIN.lng
    )
    progress = session.update_position(near_first)
    assert progress.next_index == 1
    assert session.current_step_index == 1
    assert abs(session.distance_to_next_maneuver - 10) < 0.01


@pytest.mark.asyncio
async def test_malformed_position_leaves_state_unchanged():
    session = await _start_live()
    before = (session.current_step_index, session.position, session.distance_to_next_maneuver)
    with pytest.raises(ValueError):
        session.update_position(Coordinate(lat=float("nan"), lng=float("nan")))
    after = (session.current_step_index, session.position, session.distance_to_next_maneuver)
    assert after == before


@pytest.mark.asyncio
async def test_demo_trip_rejects_position_updates():
    session = _session(_StubRecommender(), mode=TripMode.DEMO)
    with pytest.raises(ValueError, match="live trips"):
        session.update_position(_ORIGIN)


@pytest.mark.asyncio
async def test_follow_positions_skips_bad_fixes():
    session = await _start_live()

    async def feed():
        yield Coordinate(lat=float("nan"), lng=0)
        yield _ORIGIN
        yield Coordinate(lat=43.0624, lng=-89.4811)

    await session.follow_positions(feed())
    assert session.current_step_index == 2


# ---------------------------------------------------------------------------
# Playlist requests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stale_response_is_discarded():
    recommender = _GatedRecommender(
        [_answer(list(range(1, 11))), _answer(list(range(11, 21)))]
    )
    session = _session(recommender)

    first = asyncio.create_task(session.refresh_playlist())
    await _wait_for_calls(recommender, 1)
    second = asyncio.create_task(session.refresh_playlist())
    await _wait_for_calls(recommender, 2)

    recommender.gates[1].set()
    assert await second is True
    recommender.gates[0].set()
    assert await first is False

    assert [t.id for t in session.playlist] == [f"t{i}" for i in range(11, 21)]


@pytest.mark.asyncio
async def test_response_after_end_is_dropped():
    recommender = _GatedRecommender([_answer(list(range(1, 11)))])
    session = _session(recommender)

    pending = asyncio.create_task(session.refresh_playlist())
    await _wait_for_calls(recommender, 1)
    await session.end()
    recommender.gates[0].set()

    assert await pending is False
    assert session.playlist == []
    assert session.active is False


@pytest.mark.asyncio
async def test_failed_refresh_keeps_existing_playlist():
    recommender = _StubRecommender()
    session = _session(recommender)
    await session.refresh_playlist()
    before = list(session.playlist)

    recommender.error = RecommendationError(RecommendationError.MALFORMED_RESPONSE)
    assert await session.refresh_playlist() is False
    assert session.playlist == before


@pytest.mark.asyncio
async def test_learned_preferences_reach_the_prompt():
    learner = PreferenceLearner()
    for i in range(3):
        await learner.record_feedback(
            "rider-1",
            TrackAction(
                track_id=f"t{i}",
                action=FeedbackAction.SKIPPED,
                weather_condition=WeatherCondition.RAIN,
            ),
        )
    recommender = _StubRecommender()
    session = _session(recommender, learner=learner)
    await session.refresh_playlist()
    assert "avoid overly mellow or sleepy rain music" in recommender.prompts[0]


# ---------------------------------------------------------------------------
# Playback and feedback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_next_track_records_skip_and_advances():
    learner = PreferenceLearner()
    session = await _start_live(learner=learner)

    track = await session.next_track()
    assert track.id == "t2"
    assert session.songs_played == 1
    events = await learner.store.load("rider-1")
    assert len(events) == 1
    assert events[0].action is FeedbackAction.SKIPPED
    assert events[0].track_id == "t1"
    assert events[0].track_name == "Song 1"


@pytest.mark.asyncio
async def test_next_track_past_end_requests_new_playlist():
    recommender = _StubRecommender()
    session = await _start_live(recommender=recommender)
    session.current_track_index = len(session.playlist) - 1
    session.songs_played = 4

    await session.next_track()
    assert len(recommender.prompts) == 2
    assert "song #6" in recommender.prompts[-1]
    assert session.current_track_index == 0


@pytest.mark.asyncio
async def test_previous_track_stops_at_first():
    session = await _start_live()
    await session.next_track()
    assert session.previous_track().id == "t1"
    assert session.previous_track().id == "t1"


@pytest.mark.asyncio
async def test_feedback_write_failure_is_swallowed():
    session = await _start_live(learner=PreferenceLearner(_FailingStore()))
    assert await session.record_track_feedback(FeedbackAction.LOVED) is False
    assert (await session.next_track()).id == "t2"
    await session.end(Rating.GREAT)
    assert session.active is False


@pytest.mark.asyncio
async def test_end_records_trip_rating_once():
    learner = PreferenceLearner()
    session = await _start_live(learner=learner)
    await session.end(Rating.MEH)
    await session.end(Rating.MEH)

    events = await learner.store.load("rider-1")
    assert len(events) == 1
    assert isinstance(events[0], TripRating)
    assert events[0].rating is Rating.MEH


@pytest.mark.asyncio
async def test_end_cancels_position_subscription():
    session = await _start_live()
    never = asyncio.Event()

    async def feed():
        await never.wait()
        yield _ORIGIN

    task = session.subscribe_positions(feed())
    await asyncio.sleep(0)
    await session.end()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_state_snapshot():
    session = await _start_live()
    state = session.state()
    assert state.trip_id == session.trip_id
    assert state.current_step.instruction == "Step 0"
    assert state.current_track.id == "t1"
    assert len(state.playlist) == 10
    assert state.trip_distance_m == 8000
    assert state.trip_duration_s == 1500
    assert state.trip_distance_text == "8.0km"
    assert state.trip_duration_text == "25 min"
    assert state.weather_mood == "upbeat"
    assert state.distance_to_next_maneuver_text is None

    session.update_position(_ORIGIN)
    assert session.state().distance_to_next_maneuver_text == "0m"


# ---------------------------------------------------------------------------
# TripRegistry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_registry_lookup_and_end():
    registry = TripRegistry()
    session = await _start_live()
    registry.add(session)
    assert registry.get(session.trip_id) is session
    assert len(registry) == 1

    await registry.end(session.trip_id, Rating.GREAT)
    assert len(registry) == 0
    with pytest.raises(TripNotFound):
        registry.get(session.trip_id)
    with pytest.raises(TripNotFound):
        await registry.end(session.trip_id)


@pytest.mark.asyncio
async def test_registry_end_all():
    registry = TripRegistry()
    sessions = [await _start_live(), await _start_live()]
    for session in sessions:
        registry.add(session)
    await registry.end_all()
    assert len(registry) == 0
    assert not any(s.active for s in sessions)
