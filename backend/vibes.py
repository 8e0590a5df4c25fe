"""Vibe selection and traffic derivation.

Both functions are pure: they read a context and return a value, so they
are re-run whenever conditions change rather than cached.
"""

import logging

from models import (
    ConditionsSnapshot,
    TrafficLevel,
    TrafficSummary,
    Vibe,
    WeatherCondition,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Condition families
# ---------------------------------------------------------------------------

WET_CONDITIONS: frozenset = frozenset(
    {WeatherCondition.RAIN, WeatherCondition.DRIZZLE}
)
CONGESTED_TRAFFIC: frozenset = frozenset(
    {TrafficLevel.HEAVY, TrafficLevel.SEVERE}
)
FREE_FLOWING_TRAFFIC: frozenset = frozenset(
    {TrafficLevel.LIGHT, TrafficLevel.SMOOTH}
)

# Descriptive mood of each weather group, for display next to the forecast.
WEATHER_MOODS: dict[WeatherCondition, str] = {
    WeatherCondition.CLEAR: "upbeat",
    WeatherCondition.CLOUDS: "calm",
    WeatherCondition.RAIN: "melancholic",
    WeatherCondition.DRIZZLE: "cozy",
    WeatherCondition.THUNDERSTORM: "intense",
    WeatherCondition.SNOW: "peaceful",
    WeatherCondition.MIST: "dreamy",
    WeatherCondition.FOG: "dreamy",
    WeatherCondition.UNKNOWN: "neutral",
}

# -- Congestion thresholds (fractions of all samples) ------------------------
SEVERE_FRACTION: float = 0.30
HEAVY_FRACTION: float = 0.40
MODERATE_FRACTION: float = 0.30
MODERATE_HEAVY_FRACTION: float = 0.20
LIGHT_FRACTION: float = 0.70


def select_vibe(declared_mood: Vibe, conditions: ConditionsSnapshot) -> Vibe:
    """Maps the rider's mood and current conditions to an effective vibe.

    Rules, first match wins:
      1. Rain or drizzle -> calm.
      2. Heavy or severe traffic -> focus.
      3. Light or smooth traffic under a clear sky -> hype.
      4. Otherwise the declared mood stands.
    """
    weather = conditions.weather_condition
    traffic = conditions.traffic_level
    if weather in WET_CONDITIONS:
        return Vibe.CALM
    if traffic in CONGESTED_TRAFFIC:
        return Vibe.FOCUS
    if traffic in FREE_FLOWING_TRAFFIC and weather is WeatherCondition.CLEAR:
        return Vibe.HYPE
    return declared_mood


def weather_mood(condition: WeatherCondition) -> str:
    return WEATHER_MOODS[condition]


def analyze_traffic(congestion: list[str]) -> TrafficSummary:
    """Derives a traffic level from per-segment congestion labels.

    Any label other than moderate, heavy or severe counts as a low sample.
    """
    if not congestion:
        return TrafficSummary(level=TrafficLevel.UNKNOWN)

    total = len(congestion)
    severe = sum(1 for c in congestion if c == "severe")
    heavy = sum(1 for c in congestion if c == "heavy")
    moderate = sum(1 for c in congestion if c == "moderate")
    low = total - severe - heavy - moderate

    heavy_fraction = (heavy + severe) / total
    moderate_fraction = moderate / total

    if severe / total > SEVERE_FRACTION:
        level, description = TrafficLevel.SEVERE, "Severe traffic congestion"
    elif heavy_fraction > HEAVY_FRACTION:
        level, description = TrafficLevel.HEAVY, "Heavy traffic expected"
    elif (
        moderate_fraction > MODERATE_FRACTION
        or heavy_fraction > MODERATE_HEAVY_FRACTION
    ):
        level, description = TrafficLevel.MODERATE, "Moderate traffic"
    elif low / total > LIGHT_FRACTION:
        level, description = TrafficLevel.LIGHT, "Light traffic"
    else:
        level, description = TrafficLevel.SMOOTH, "Traffic is smooth"

    logger.info(
        "Traffic analysis: %s (%.0f%% heavy, %.0f%% moderate)",
        level.value,
        heavy_fraction * 100,
        moderate_fraction * 100,
    )
    return TrafficSummary(
        level=level,
        heavy_pct=heavy_fraction * 100,
        moderate_pct=moderate_fraction * 100,
        low_pct=low / total * 100,
        description=description,
    )
