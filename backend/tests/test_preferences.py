"""Tests for preferences.py: summary rules, stores and the learner."""

import asyncio

import pytest

import preferences
from errors import FeedbackWriteError
from models import (
    FeedbackAction,
    Rating,
    TrackAction,
    TrafficLevel,
    TripRating,
    Vibe,
    WeatherCondition,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _action(
    action,
    weather=WeatherCondition.CLEAR,
    traffic=TrafficLevel.LIGHT,
    vibe=Vibe.CHILL,
    track_id="t1",
):
    return TrackAction(
        track_id=track_id,
        action=action,
        vibe=vibe,
        weather_condition=weather,
        traffic_level=traffic,
    )


def _rating(rating):
    return TripRating(rating=rating, vibe=Vibe.CHILL)


class _FailingStore:
    async def append(self, user_id, event):
        raise OSError("disk full")

    async def load(self, user_id):
        raise OSError("disk gone")


# ---------------------------------------------------------------------------
# summarize_events
# ---------------------------------------------------------------------------


def test_empty_history_has_no_feedback_line():
    summary = preferences.summarize_events([])
    assert summary.lines == (preferences.NO_FEEDBACK,)


def test_rain_skips_outweighing_loves_produce_only_rain_line():
    events = [
        _action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN, track_id=f"t{i}")
        for i in range(4)
    ]
    events.append(_action(FeedbackAction.LOVED, weather=WeatherCondition.RAIN))
    summary = preferences.summarize_events(events)
    assert summary.lines == (preferences.RAIN_DISLIKED,)
    assert "avoid overly mellow or sleepy rain music" in summary.text


def test_rain_loves_lean_into_rain_vibes():
    events = [
        _action(FeedbackAction.LOVED, weather=WeatherCondition.DRIZZLE),
        _action(FeedbackAction.LOVED, weather=WeatherCondition.THUNDERSTORM),
        _action(FeedbackAction.LOVED, weather=WeatherCondition.RAIN),
    ]
    assert preferences.summarize_events(events).lines == (preferences.RAIN_LIKED,)


def test_rain_below_minimum_evidence_is_silent():
    events = [_action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN)] * 2
    assert preferences.summarize_events(events).lines == (preferences.NO_PATTERN,)


def test_rain_tie_emits_nothing():
    events = [
        _action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN),
        _action(FeedbackAction.BAD_FIT, weather=WeatherCondition.RAIN),
        _action(FeedbackAction.LOVED, weather=WeatherCondition.RAIN),
        _action(FeedbackAction.LOVED, weather=WeatherCondition.RAIN),
    ]
    assert preferences.summarize_events(events).lines == (preferences.NO_PATTERN,)


@pytest.mark.parametrize(
    "action, expected",
    [
        (FeedbackAction.SKIPPED, preferences.HEAVY_FOCUS_DISLIKED),
        (FeedbackAction.LOVED, preferences.HEAVY_FOCUS_LIKED),
    ],
)
def test_heavy_traffic_focus_bucket(action, expected):
    events = [
        _action(action, traffic=TrafficLevel.SEVERE, vibe=Vibe.FOCUS)
        for _ in range(3)
    ]
    assert preferences.summarize_events(events).lines == (expected,)


def test_clear_hype_loves():
    events = [
        _action(FeedbackAction.LOVED, vibe=Vibe.HYPE),
        _action(FeedbackAction.LOVED, weather=WeatherCondition.CLOUDS, vibe=Vibe.ENERGETIC),
    ]
    assert preferences.summarize_events(events).lines == (preferences.CLEAR_HYPE_LOVED,)


@pytest.mark.parametrize(
    "ratings, expected",
    [
        ([Rating.GREAT] * 3, preferences.TRIPS_GREAT),
        ([Rating.BAD, Rating.BAD, Rating.GREAT], preferences.TRIPS_BAD),
        ([Rating.MEH] * 3, preferences.TRIPS_MEH),
    ],
)
def test_trip_rating_lines(ratings, expected):
    events = [_rating(r) for r in ratings]
    assert preferences.summarize_events(events).lines == (expected,)


def test_too_few_ratings_is_silent():
    events = [_rating(Rating.BAD), _rating(Rating.BAD)]
    assert preferences.summarize_events(events).lines == (preferences.NO_PATTERN,)


def test_summary_is_deterministic():
    events = [
        _action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN),
        _action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN),
        _action(FeedbackAction.BAD_FIT, weather=WeatherCondition.RAIN),
        _rating(Rating.GREAT),
    ]
    assert preferences.summarize_events(events) == preferences.summarize_events(events)


# ---------------------------------------------------------------------------
# JsonFileFeedbackStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_json_store_persists_both_event_kinds(tmp_path):
    store = preferences.JsonFileFeedbackStore(tmp_path / "feedback")
    await store.append("rider/1", _action(FeedbackAction.LOVED))
    await store.append("rider/1", _rating(Rating.GREAT))

    assert (tmp_path / "feedback" / "feedback_rider_1.json").exists()
    reloaded = await preferences.JsonFileFeedbackStore(tmp_path / "feedback").load(
        "rider/1"
    )
    assert isinstance(reloaded[0], TrackAction)
    assert reloaded[0].action is FeedbackAction.LOVED
    assert isinstance(reloaded[1], TripRating)
    assert reloaded[1].rating is Rating.GREAT


@pytest.mark.asyncio
async def test_json_store_missing_file_is_empty(tmp_path):
    store = preferences.JsonFileFeedbackStore(tmp_path)
    assert await store.load("nobody") == []


@pytest.mark.asyncio
async def test_json_store_concurrent_appends_keep_every_event(tmp_path):
    store = preferences.JsonFileFeedbackStore(tmp_path)
    appends = [
        store.append("u", _action(FeedbackAction.SKIPPED, track_id=f"t{i}"))
        for i in range(40)
    ]
    reads = [store.load("u") for _ in range(10)]
    results = await asyncio.gather(*appends, *reads)

    for partial in results[40:]:
        assert all(isinstance(event, TrackAction) for event in partial)
    events = await store.load("u")
    assert sorted(e.track_id for e in events) == sorted(f"t{i}" for i in range(40))
    assert [p.name for p in tmp_path.iterdir()] == ["feedback_u.json"]


# ---------------------------------------------------------------------------
# PreferenceLearner
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_learner_round_trip():
    learner = preferences.PreferenceLearner()
    for i in range(5):
        await learner.record_feedback(
            "u1",
            _action(FeedbackAction.SKIPPED, weather=WeatherCondition.RAIN, track_id=f"t{i}"),
        )
    summary = await learner.summarize("u1")
    assert summary.lines == (preferences.RAIN_DISLIKED,)
    assert (await learner.summarize("u2")).lines == (preferences.NO_FEEDBACK,)


@pytest.mark.asyncio
async def test_learner_summary_is_idempotent(tmp_path):
    learner = preferences.PreferenceLearner(
        preferences.JsonFileFeedbackStore(tmp_path)
    )
    await learner.record_feedback("u1", _rating(Rating.MEH))
    first = await learner.summarize("u1")
    assert await learner.summarize("u1") == first


@pytest.mark.asyncio
async def test_learner_ignores_empty_user_id():
    learner = preferences.PreferenceLearner()
    await learner.record_feedback("", _action(FeedbackAction.LOVED))
    assert await learner.store.load("") == []


@pytest.mark.asyncio
async def test_learner_write_failure_raises_feedback_write_error():
    learner = preferences.PreferenceLearner(_FailingStore())
    with pytest.raises(FeedbackWriteError, match="disk full"):
        await learner.record_feedback("u1", _action(FeedbackAction.LOVED))


@pytest.mark.asyncio
async def test_learner_file_store_write_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")
    learner = preferences.PreferenceLearner(
        preferences.JsonFileFeedbackStore(blocker)
    )
    with pytest.raises(FeedbackWriteError):
        await learner.record_feedback("u1", _action(FeedbackAction.SKIPPED))


@pytest.mark.asyncio
async def test_learner_unreadable_history_is_empty(tmp_path):
    (tmp_path / "feedback_u1.json").write_text("{not json")
    learner = preferences.PreferenceLearner(
        preferences.JsonFileFeedbackStore(tmp_path)
    )
    assert (await learner.summarize("u1")).lines == (preferences.NO_FEEDBACK,)

    failing = preferences.PreferenceLearner(_FailingStore())
    assert (await failing.summarize("u1")).lines == (preferences.NO_FEEDBACK,)
