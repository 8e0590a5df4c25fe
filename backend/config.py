"""Tunable constants for the trip engine, plus an environment-aware config.

Every rule the engine applies is named here so it can be tuned in one
place. ``EngineConfig`` carries the values that differ per deployment;
its defaults are the constants below.
"""

import os

from pydantic import BaseModel, Field, model_validator

# ---------------------------------------------------------------------------
# Navigation progress
# ---------------------------------------------------------------------------

# A maneuver counts as reached once the rider is closer than this.
STEP_PROXIMITY_M: float = 20.0
EARTH_RADIUS_M: float = 6_371_000.0

# ---------------------------------------------------------------------------
# Playlist generation
# ---------------------------------------------------------------------------

# Candidate pool offered to the recommender (truncated, order preserved).
CANDIDATE_POOL_CAP: int = 100
# Target length = clamp(ceil(minutes / MINUTES_PER_SONG), MIN, MAX).
MINUTES_PER_SONG: int = 3
TARGET_LENGTH_MIN: int = 12
TARGET_LENGTH_MAX: int = 20
# Songs before this ordinal follow the declared vibe only.
MOOD_ONLY_SONGS: int = 3
# Pad when fewer than PAD_FLOOR tracks survive validation, up to PAD_TARGET.
PAD_FLOOR: int = 8
PAD_TARGET: int = 10

# -- Recommender models ----------------------------------------------------
CLAUDE_MODEL: str = "claude-sonnet-4-6"
OPENAI_MODEL: str = "gpt-4o-mini"
RECOMMENDER_MAX_TOKENS: int = 800
RECOMMENDER_TEMPERATURE: float = 0.4

# ---------------------------------------------------------------------------
# Demo mode
# ---------------------------------------------------------------------------

DEMO_TICK_SECONDS: float = 10.0
DEMO_TRIP_DURATION_S: int = 1200
DEMO_TRIP_DISTANCE_M: int = 8000
# The maneuver index moves on every Nth tick.
DEMO_STEP_EVERY_TICKS: int = 2


class EngineConfig(BaseModel):
    """Per-deployment settings for a trip session."""

    step_proximity_m: float = Field(default=STEP_PROXIMITY_M, gt=0)
    demo_tick_seconds: float = Field(default=DEMO_TICK_SECONDS, ge=0)
    candidate_pool_cap: int = Field(default=CANDIDATE_POOL_CAP, gt=0)
    target_length_min: int = TARGET_LENGTH_MIN
    target_length_max: int = TARGET_LENGTH_MAX
    mood_only_songs: int = MOOD_ONLY_SONGS
    pad_floor: int = PAD_FLOOR
    pad_target: int = PAD_TARGET
    recommender: str = "claude"
    """Which recommender backs playlist requests: claude | openai."""
    feedback_dir: str | None = None
    """Directory for the JSON feedback log; in-memory when unset."""

    @model_validator(mode="after")
    def _check_length_bounds(self) -> "EngineConfig":
        if self.target_length_min > self.target_length_max:
            raise ValueError("target_length_min must not exceed target_length_max")
        if self.pad_floor > self.pad_target:
            raise ValueError("pad_floor must not exceed pad_target")
        if self.pad_floor > self.target_length_max:
            raise ValueError("pad_floor must not exceed target_length_max")
        return self

    @property
    def min_tracks(self) -> int:
        """Smallest playlist the orchestrator hands back (pool permitting)."""
        return self.pad_floor

    @property
    def max_tracks(self) -> int:
        return self.target_length_max

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Builds a config from ``VIBENAV_*`` environment variables."""
        overrides: dict[str, object] = {}
        env_map = {
            "VIBENAV_STEP_PROXIMITY_M": "step_proximity_m",
            "VIBENAV_DEMO_TICK_SECONDS": "demo_tick_seconds",
            "VIBENAV_CANDIDATE_POOL_CAP": "candidate_pool_cap",
            "VIBENAV_RECOMMENDER": "recommender",
            "VIBENAV_FEEDBACK_DIR": "feedback_dir",
        }
        for env_name, field_name in env_map.items():
            value = os.environ.get(env_name)
            if value:
                overrides[field_name] = value
        return cls(**overrides)
