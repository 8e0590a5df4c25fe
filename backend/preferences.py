"""Listener feedback: storage and preference summaries.

Feedback is an append-only log per user. The summary handed to the
recommender is recomputed from the whole log on every call; nothing about
it is cached.
"""

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter

from errors import FeedbackWriteError
from models import (
    FeedbackAction,
    FeedbackEvent,
    PreferenceSummary,
    Rating,
    TrackAction,
    TrafficLevel,
    TripRating,
    Vibe,
    WeatherCondition,
)

logger = logging.getLogger(__name__)

_EVENTS_ADAPTER = TypeAdapter(list[FeedbackEvent])

# ---------------------------------------------------------------------------
# Summary rules
# ---------------------------------------------------------------------------

RAIN_FAMILY: frozenset = frozenset(
    {WeatherCondition.RAIN, WeatherCondition.DRIZZLE, WeatherCondition.THUNDERSTORM}
)
CLEARISH: frozenset = frozenset({WeatherCondition.CLEAR, WeatherCondition.CLOUDS})
HEAVY_TRAFFIC: frozenset = frozenset({TrafficLevel.HEAVY, TrafficLevel.SEVERE})
HIGH_ENERGY_VIBES: frozenset = frozenset({Vibe.HYPE, Vibe.ENERGETIC})
NEGATIVE_ACTIONS: frozenset = frozenset(
    {FeedbackAction.SKIPPED, FeedbackAction.BAD_FIT}
)

# Minimum evidence before a bucket speaks.
MIN_BUCKET_EVENTS: int = 3
MIN_CLEAR_HYPE_LOVES: int = 2
MIN_TRIP_RATINGS: int = 3

RAIN_DISLIKED = (
    "- In rainy conditions, user often skips or marks tracks as bad fit; "
    "avoid overly mellow or sleepy rain music."
)
RAIN_LIKED = (
    "- In rainy conditions, user enjoys cozy / mellow tracks; leaning into "
    "chill rain vibes is okay."
)
HEAVY_FOCUS_DISLIKED = (
    "- In heavy traffic with focus vibe, user often dislikes the music; try "
    "slightly more uplifting but still non-stressful tracks."
)
HEAVY_FOCUS_LIKED = (
    "- In heavy traffic with focus vibe, current calm / focus style works "
    "well; keep similar low-distraction tracks."
)
CLEAR_HYPE_LOVED = (
    "- In clear weather with hype/energetic vibe, user tends to love "
    "energetic tracks; high-energy songs are a good choice here."
)
TRIPS_GREAT = (
    "- Overall, trips are often rated great; current strategy is mostly "
    "good, so only minor adjustments are needed."
)
TRIPS_BAD = (
    "- User often rates trips as bad; be conservative, avoid extreme genre "
    "shifts, and stay closer to safe, widely-liked tracks."
)
TRIPS_MEH = (
    "- Many trips are rated as meh; increase variety within the chosen vibe "
    "so playlists feel less repetitive."
)
NO_PATTERN = (
    "- No strong patterns detected yet; use general good-driving-music "
    "defaults and balanced choices."
)
NO_FEEDBACK = (
    "No explicit feedback yet. Use general good-driving-music defaults."
)


def _directional(
    negatives: int, positives: int, disliked: str, liked: str
) -> str | None:
    if negatives + positives < MIN_BUCKET_EVENTS:
        return None
    if negatives > positives:
        return disliked
    if positives > negatives:
        return liked
    return None


def summarize_events(events: list[TrackAction | TripRating]) -> PreferenceSummary:
    """Compresses a feedback history into heuristic statements."""
    if not events:
        return PreferenceSummary(lines=(NO_FEEDBACK,))

    rain_neg = rain_pos = 0
    heavy_focus_neg = heavy_focus_pos = 0
    clear_hype_loves = 0
    ratings = {Rating.GREAT: 0, Rating.MEH: 0, Rating.BAD: 0}

    for event in events:
        if isinstance(event, TripRating):
            ratings[event.rating] += 1
            continue

        negative = event.action in NEGATIVE_ACTIONS
        loved = event.action is FeedbackAction.LOVED

        if event.weather_condition in RAIN_FAMILY:
            rain_neg += negative
            rain_pos += loved
        if event.traffic_level in HEAVY_TRAFFIC and event.vibe is Vibe.FOCUS:
            heavy_focus_neg += negative
            heavy_focus_pos += loved
        if event.weather_condition in CLEARISH and event.vibe in HIGH_ENERGY_VIBES:
            clear_hype_loves += loved

    lines = []
    for line in (
        _directional(rain_neg, rain_pos, RAIN_DISLIKED, RAIN_LIKED),
        _directional(
            heavy_focus_neg, heavy_focus_pos, HEAVY_FOCUS_DISLIKED, HEAVY_FOCUS_LIKED
        ),
    ):
        if line:
            lines.append(line)
    if clear_hype_loves >= MIN_CLEAR_HYPE_LOVES:
        lines.append(CLEAR_HYPE_LOVED)

    great, meh, bad = ratings[Rating.GREAT], ratings[Rating.MEH], ratings[Rating.BAD]
    if great + meh + bad >= MIN_TRIP_RATINGS:
        if great >= bad + 2:
            lines.append(TRIPS_GREAT)
        elif bad >= great + 1:
            lines.append(TRIPS_BAD)
        elif meh > great and meh > bad:
            lines.append(TRIPS_MEH)

    return PreferenceSummary(lines=tuple(lines) or (NO_PATTERN,))


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class FeedbackStore(Protocol):
    async def append(self, user_id: str, event: TrackAction | TripRating) -> None:
        ...

    async def load(self, user_id: str) -> list[TrackAction | TripRating]:
        ...


class InMemoryFeedbackStore:
    def __init__(self) -> None:
        self._logs: dict[str, list[TrackAction | TripRating]] = {}

    async def append(self, user_id: str, event: TrackAction | TripRating) -> None:
        self._logs.setdefault(user_id, []).append(event)

    async def load(self, user_id: str) -> list[TrackAction | TripRating]:
        return list(self._logs.get(user_id, []))


class JsonFileFeedbackStore:
    """Keeps each user's log as a JSON array in ``<directory>/feedback_<user>.json``.

    Appends for one user are serialised, and each rewrite lands through a
    temporary file and ``os.replace`` so readers never see a partial log.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path(self, user_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
        return self.directory / f"feedback_{safe}.json"

    def _read(self, path: Path) -> list[TrackAction | TripRating]:
        if not path.exists():
            return []
        return _EVENTS_ADAPTER.validate_json(path.read_bytes())

    def _append_sync(self, user_id: str, event: TrackAction | TripRating) -> None:
        path = self._path(user_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        events = self._read(path)
        events.append(event)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.directory, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(_EVENTS_ADAPTER.dump_json(events, indent=2))
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def append(self, user_id: str, event: TrackAction | TripRating) -> None:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            await asyncio.to_thread(self._append_sync, user_id, event)

    async def load(self, user_id: str) -> list[TrackAction | TripRating]:
        return await asyncio.to_thread(self._read, self._path(user_id))


# ---------------------------------------------------------------------------
# Learner
# ---------------------------------------------------------------------------


class PreferenceLearner:
    """Records feedback per user and summarises it on demand."""

    def __init__(self, store: FeedbackStore | None = None) -> None:
        self.store = store or InMemoryFeedbackStore()

    async def record_feedback(
        self, user_id: str, event: TrackAction | TripRating
    ) -> None:
        """Appends [event] to the user's log.

        Raises:
            FeedbackWriteError: If the store rejects the write.
        """
        if not user_id:
            logger.warning("Feedback without a user id, skipping")
            return
        try:
            await self.store.append(user_id, event)
        except (OSError, ValueError) as exc:
            raise FeedbackWriteError(
                f"Could not store feedback for {user_id!r}: {exc}"
            ) from exc
        logger.info("Recorded %s for user %s", event.kind, user_id)

    async def summarize(self, user_id: str) -> PreferenceSummary:
        """Recomputes the preference summary from the user's full history.

        An unreadable history is treated as empty.
        """
        if not user_id:
            return summarize_events([])
        try:
            events = await self.store.load(user_id)
        except (OSError, ValueError) as exc:
            logger.error("Error reading feedback for %s: %s", user_id, exc)
            events = []
        return summarize_events(events)
