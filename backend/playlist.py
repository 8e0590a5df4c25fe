"""Playlist orchestration: prompt building, recommendation and repair.

One request produces one ordered playlist:
  1.  Truncate the candidate pool to the configured cap (order preserved).
  2.  Build the recommender prompt. The opening songs of a trip follow the
      vibe alone; from MOOD_ONLY_SONGS onwards weather and traffic apply.
  3.  Ask the recommender for 1-based indices into the offered pool.
  4.  Validate: the answer must carry an index list. Out-of-range indices
      and repeats are dropped, the result is capped at the maximum length.
  5.  Pad from the rest of the pool when too few tracks survive.
"""

import json
import logging
import math
import random
import re
from typing import Any

from config import MINUTES_PER_SONG, EngineConfig
from errors import RecommendationError
from models import (
    ConditionsSnapshot,
    PlaylistRequest,
    PlaylistResult,
    TrackCandidate,
    TrafficLevel,
    Vibe,
    WeatherCondition,
)
from recommenders import Recommender
from vibes import CONGESTED_TRAFFIC, WET_CONDITIONS

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a professional music curator who ONLY responds with valid JSON. "
    "You prioritize the rider's vibe for the opening songs of a trip, then "
    "adjust for driving conditions."
)

_NO_PREFERENCES = (
    "- No explicit feedback yet. Use general good-driving defaults."
)

_PLAYLIST_PROMPT = """\
You are an expert music curator for driving experiences.

LEARNED USER PREFERENCES:
{preferences}

{priority_note}

CURRENT DRIVING CONTEXT:
{context}
{context_rules}
USER'S AVAILABLE SONGS ({pool_size} total):
{track_list}

TASK: Select exactly {songs_needed} songs that match the context.

SELECTION RULES:
{selection_rules}

OUTPUT FORMAT (JSON only):
{{
  "selectedTracks": [song indices from 1-{pool_size}],
  "reasoning": "One sentence explaining the selection"
}}

Respond with ONLY valid JSON.
"""

# ---------------------------------------------------------------------------
# Rule hints
# ---------------------------------------------------------------------------

_MOOD_RULES: dict[Vibe, str] = {
    Vibe.SAD: "- For SAD mood: valence < 0.45, tempo 60-115 BPM",
    Vibe.MELANCHOLY: "- For SAD mood: valence < 0.45, tempo 60-115 BPM",
    Vibe.ENERGETIC: (
        "- For ENERGETIC mood: valence > 0.5, energy > 0.7, tempo > 115 BPM"
    ),
    Vibe.HYPE: (
        "- For ENERGETIC mood: valence > 0.5, energy > 0.7, tempo > 115 BPM"
    ),
    Vibe.FOCUS: "- For FOCUS/CHILL: energy < 0.65, prefer instrumental",
    Vibe.CHILL: "- For FOCUS/CHILL: energy < 0.65, prefer instrumental",
}

HEAVY_TRAFFIC_RULE = (
    "- HEAVY TRAFFIC: avoid aggressive songs, prefer calm (energy < 0.7)"
)
RAIN_RULE = "- RAIN: favor cozy, introspective tracks"


def target_length(duration_s: float, config: EngineConfig) -> int:
    """Songs to ask for: one per MINUTES_PER_SONG of driving, clamped."""
    minutes = round(duration_s / 60)
    return max(
        config.target_length_min,
        min(config.target_length_max, math.ceil(minutes / MINUTES_PER_SONG)),
    )


def conditions_apply(sequence_position: int, config: EngineConfig) -> bool:
    return sequence_position >= config.mood_only_songs


def mood_rules(vibe: Vibe) -> list[str]:
    rule = _MOOD_RULES.get(vibe)
    return [rule] if rule else []


def condition_rules(conditions: ConditionsSnapshot) -> list[str]:
    rules = []
    if conditions.traffic_level in CONGESTED_TRAFFIC:
        rules.append(HEAVY_TRAFFIC_RULE)
    if conditions.weather_condition in WET_CONDITIONS:
        rules.append(RAIN_RULE)
    return rules


def context_rules(conditions: ConditionsSnapshot) -> list[str]:
    """Describes what the current weather and traffic call for."""
    parts = []
    weather = conditions.weather_condition
    if weather in WET_CONDITIONS:
        parts.append("RAINY: Cozy, mellow music preferred")
    elif (
        weather is WeatherCondition.CLEAR
        and conditions.temperature_c is not None
        and conditions.temperature_c > 20
    ):
        parts.append("SUNNY: Upbeat, feel-good music works well")

    if conditions.traffic_level in CONGESTED_TRAFFIC:
        parts.append("HEAVY TRAFFIC CONTEXT: Calm, steady music for safety")
    elif conditions.traffic_level is TrafficLevel.LIGHT:
        parts.append("LIGHT TRAFFIC: More energetic tracks are safe")
    return parts


def _feature(value: float | None, digits: int = 2) -> str:
    return "unknown" if value is None else f"{round(value, digits)}"


def format_track_list(pool: list[TrackCandidate]) -> str:
    lines = []
    for idx, track in enumerate(pool, start=1):
        f = track.audio_features
        tempo = (
            f"{round(f.tempo)} BPM" if f is not None and f.tempo else "unknown"
        )
        lines.append(
            f'{idx}. "{track.name}" by {track.artist} '
            f"(valence: {_feature(f.valence if f else None)}, "
            f"energy: {_feature(f.energy if f else None)}, "
            f"danceability: {_feature(f.danceability if f else None)}, "
            f"tempo: {tempo}, "
            f"acousticness: {_feature(f.acousticness if f else None)}, "
            f"instrumentalness: {_feature(f.instrumentalness if f else None)})"
        )
    return "\n".join(lines)


def build_prompt(
    request: PlaylistRequest,
    pool: list[TrackCandidate],
    config: EngineConfig,
) -> str:
    """Renders the user prompt for one recommendation call.

    Until conditions apply, the prompt carries the vibe-priority instruction
    and no weather or traffic guidance at all.
    """
    song_number = request.sequence_position + 1
    vibe = request.vibe.value
    conditions = request.conditions
    context = [f"- Vibe: {vibe}"]

    if conditions_apply(request.sequence_position, config):
        weather = conditions.weather_condition.value
        traffic = conditions.traffic_level.value
        priority_note = (
            f"NOTE: This is song #{song_number}. You can now adjust for "
            f"weather ({weather}) and traffic ({traffic}) while still "
            f"respecting the vibe."
        )
        temperature = (
            f", {round(conditions.temperature_c)}°C"
            if conditions.temperature_c is not None
            else ""
        )
        context.append(
            f"- Weather: {weather} ({conditions.weather_description})"
            f"{temperature}"
        )
        context.append(f"- Traffic: {traffic}")
        extra_rules = context_rules(conditions)
        selection = mood_rules(request.vibe) + condition_rules(conditions)
    else:
        priority_note = (
            f"CRITICAL: This is song #{song_number} of the trip. For the "
            f"opening songs, PRIORITIZE THE CHOSEN VIBE ({vibe}) ABOVE ALL "
            f"ELSE and select for the vibe alone."
        )
        extra_rules = []
        selection = [
            f"- TOP PRIORITY FOR SONGS 1-{config.mood_only_songs}: Match the "
            f"vibe ({vibe}) perfectly."
        ] + mood_rules(request.vibe)

    context.append(f"- Duration: {round(request.trip_duration_s / 60)} minutes")

    return _PLAYLIST_PROMPT.format(
        preferences=request.learned_preferences.strip() or _NO_PREFERENCES,
        priority_note=priority_note,
        context="\n".join(context),
        context_rules=(
            "\n" + "\n".join(extra_rules) + "\n" if extra_rules else ""
        ),
        pool_size=len(pool),
        track_list=format_track_list(pool),
        songs_needed=target_length(request.trip_duration_s, config),
        selection_rules="\n".join(selection),
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _extract_json_object(text: str) -> dict[str, Any] | None:
    """Extracts a JSON object from text that may contain fences or commentary."""
    text = text.strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group())
            if isinstance(parsed, dict):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass

    return None


def parse_selection(raw: str) -> tuple[list[int], str]:
    """Returns (1-based indices, rationale) from a recommender answer.

    Non-integer entries are dropped here; range checks happen later.

    Raises:
        RecommendationError: If there is no JSON object with an index list.
    """
    parsed = _extract_json_object(raw)
    if parsed is None or not isinstance(parsed.get("selectedTracks"), list):
        logger.warning("Malformed recommender response: %s", raw[:300])
        raise RecommendationError(
            RecommendationError.MALFORMED_RESPONSE,
            "Recommender response has no selectedTracks list.",
        )
    indices = [
        i
        for i in parsed["selectedTracks"]
        if isinstance(i, int) and not isinstance(i, bool)
    ]
    rationale = parsed.get("reasoning") or ""
    return indices, str(rationale)


# ---------------------------------------------------------------------------
# Padding
# ---------------------------------------------------------------------------


def fits_vibe_loosely(track: TrackCandidate, vibe: Vibe) -> bool | None:
    """Relaxed version of the mood rules, for choosing padding tracks.

    Returns None when the track has no audio features to judge by.
    """
    f = track.audio_features
    if f is None:
        return None
    if vibe in (Vibe.SAD, Vibe.MELANCHOLY):
        return f.valence is None or f.valence < 0.55
    if vibe in (Vibe.ENERGETIC, Vibe.HYPE):
        return f.energy is None or f.energy > 0.6
    if vibe in (Vibe.FOCUS, Vibe.CHILL, Vibe.CALM):
        return f.energy is None or f.energy < 0.75
    return True


class PlaylistOrchestrator:
    """Turns a ``PlaylistRequest`` into a validated ``PlaylistResult``."""

    def __init__(
        self,
        recommender: Recommender,
        config: EngineConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.recommender = recommender
        self.config = config or EngineConfig()
        self._rng = rng or random.Random()

    def offered_pool(self, request: PlaylistRequest) -> list[TrackCandidate]:
        return request.candidate_pool[: self.config.candidate_pool_cap]

    async def request_playlist(self, request: PlaylistRequest) -> PlaylistResult:
        """Asks the recommender for a playlist and repairs the answer.

        Raises:
            RecommendationError: If the recommender call fails or its answer
                carries no index list. Under-selection is padded, not raised.
        """
        pool = self.offered_pool(request)
        prompt = build_prompt(request, pool, self.config)

        logger.info(
            "Requesting playlist: song #%d, vibe=%s, weather=%s, traffic=%s, "
            "pool=%d",
            request.sequence_position + 1,
            request.vibe.value,
            request.conditions.weather_condition.value,
            request.conditions.traffic_level.value,
            len(pool),
        )
        raw = await self.recommender.recommend(_SYSTEM_PROMPT, prompt)
        logger.info("Recommender response: %s", raw[:300])

        indices, rationale = parse_selection(raw)
        selected = self._map_indices(indices, pool)
        logger.info("Recommender selected %d usable tracks", len(selected))

        padded = False
        if len(selected) < self.config.pad_floor:
            selected = self._pad(selected, pool, request.vibe)
            padded = True

        return PlaylistResult(
            ordered_tracks=selected, rationale=rationale, padded=padded
        )

    def fallback_playlist(
        self, pool: list[TrackCandidate], vibe: Vibe
    ) -> PlaylistResult:
        """Builds a playlist without the recommender, by padding alone."""
        tracks = self._pad([], pool[: self.config.candidate_pool_cap], vibe)
        return PlaylistResult(
            ordered_tracks=tracks,
            rationale="Fallback selection while recommendations are unavailable.",
            padded=True,
        )

    def _map_indices(
        self, indices: list[int], pool: list[TrackCandidate]
    ) -> list[TrackCandidate]:
        selected: list[TrackCandidate] = []
        seen: set[str] = set()
        for idx in indices:
            if not 1 <= idx <= len(pool):
                continue
            track = pool[idx - 1]
            if track.id in seen:
                continue
            seen.add(track.id)
            selected.append(track)
            if len(selected) >= self.config.max_tracks:
                break
        return selected

    def _pad(
        self,
        selected: list[TrackCandidate],
        pool: list[TrackCandidate],
        vibe: Vibe,
    ) -> list[TrackCandidate]:
        """Tops [selected] up to PAD_TARGET from the rest of [pool].

        Tracks that loosely fit the vibe go first; each group is shuffled.
        """
        seen = {t.id for t in selected}
        fitting: list[TrackCandidate] = []
        others: list[TrackCandidate] = []
        for track in pool:
            if track.id in seen:
                continue
            seen.add(track.id)
            if fits_vibe_loosely(track, vibe):
                fitting.append(track)
            else:
                others.append(track)
        self._rng.shuffle(fitting)
        self._rng.shuffle(others)

        needed = max(0, self.config.pad_target - len(selected))
        padding = (fitting + others)[:needed]
        logger.warning(
            "Padding playlist with %d tracks (%d selected)",
            len(padding),
            len(selected),
        )
        return selected + padding
