"""Pydantic models for the trip engine and the Vibenav backend API."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerated context values
# ---------------------------------------------------------------------------


class WeatherCondition(str, Enum):
    """Main weather group as reported by the conditions provider."""

    CLEAR = "Clear"
    CLOUDS = "Clouds"
    RAIN = "Rain"
    DRIZZLE = "Drizzle"
    THUNDERSTORM = "Thunderstorm"
    SNOW = "Snow"
    MIST = "Mist"
    FOG = "Fog"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class TrafficLevel(str, Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    SEVERE = "severe"
    SMOOTH = "smooth"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class Vibe(str, Enum):
    """A listening mood, either declared by the rider or chosen by the engine."""

    ENERGETIC = "energetic"
    CHILL = "chill"
    HAPPY = "happy"
    FOCUS = "focus"
    SAD = "sad"
    MELANCHOLY = "melancholy"
    CALM = "calm"
    HYPE = "hype"


class FeedbackAction(str, Enum):
    SKIPPED = "skipped"
    LOVED = "loved"
    BAD_FIT = "bad_fit"


class Rating(str, Enum):
    GREAT = "great"
    MEH = "meh"
    BAD = "bad"


class TripMode(str, Enum):
    LIVE = "live"
    DEMO = "demo"


# ---------------------------------------------------------------------------
# Geography and routing
# ---------------------------------------------------------------------------


class Coordinate(BaseModel):
    """A WGS84 position in degrees."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class ManeuverStep(BaseModel):
    """One turn-by-turn instruction, located at its maneuver point."""

    model_config = ConfigDict(frozen=True)

    distance_m: float
    duration_s: float = 0.0
    instruction: str
    maneuver_type: str
    maneuver_modifier: str | None = None
    location: Coordinate


class RouteInfo(BaseModel):
    """What the routing provider returns for an origin/destination pair."""

    distance_m: float
    duration_s: float
    polyline: str = ""
    congestion: list[str] = Field(default_factory=list)
    """Per-segment congestion labels: low | moderate | heavy | severe | unknown."""
    steps: list[ManeuverStep] = Field(default_factory=list)


class TrafficSummary(BaseModel):
    """Traffic level derived from a route's congestion samples."""

    level: TrafficLevel
    heavy_pct: float = 0.0
    moderate_pct: float = 0.0
    low_pct: float = 0.0
    description: str = "Traffic data unavailable"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class WeatherReport(BaseModel):
    """Current weather at a coordinate, as returned by the conditions provider."""

    temperature_c: float | None = None
    condition: WeatherCondition = WeatherCondition.UNKNOWN
    description: str = ""


class ConditionsSnapshot(BaseModel):
    """Point-in-time weather plus traffic state."""

    model_config = ConfigDict(frozen=True)

    temperature_c: float | None = None
    weather_condition: WeatherCondition = WeatherCondition.UNKNOWN
    weather_description: str = ""
    traffic_level: TrafficLevel = TrafficLevel.UNKNOWN
    captured_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Tracks and playlists
# ---------------------------------------------------------------------------


class AudioFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    valence: float | None = None
    energy: float | None = None
    danceability: float | None = None
    tempo: float | None = None
    acousticness: float | None = None
    instrumentalness: float | None = None


class TrackCandidate(BaseModel):
    """A track the recommender may choose. Never mutated by the engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    artist: str
    audio_features: AudioFeatures | None = None
    source: str = "library"


class PlaylistRequest(BaseModel):
    """Everything one recommendation call needs."""

    vibe: Vibe
    conditions: ConditionsSnapshot
    trip_duration_s: float
    candidate_pool: list[TrackCandidate]
    learned_preferences: str = ""
    sequence_position: int = Field(default=0, ge=0)
    """0-based ordinal of the song being chosen within the trip."""


class PlaylistResult(BaseModel):
    ordered_tracks: list[TrackCandidate]
    rationale: str = ""
    padded: bool = False
    """True when tracks beyond the recommender's choice were added."""


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class TrackAction(BaseModel):
    """Listener reaction to a single track, with the context it happened in."""

    kind: Literal["track_action"] = "track_action"
    track_id: str
    action: FeedbackAction
    vibe: Vibe | None = None
    weather_condition: WeatherCondition = WeatherCondition.UNKNOWN
    traffic_level: TrafficLevel = TrafficLevel.UNKNOWN
    track_name: str | None = None
    artist: str | None = None
    mood: Vibe | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class TripRating(BaseModel):
    """Overall rating given when a trip ends."""

    kind: Literal["trip_rating"] = "trip_rating"
    rating: Rating
    vibe: Vibe | None = None
    weather_condition: WeatherCondition = WeatherCondition.UNKNOWN
    traffic_level: TrafficLevel = TrafficLevel.UNKNOWN
    mood: Vibe | None = None
    created_at: datetime = Field(default_factory=_utcnow)


FeedbackEvent = Annotated[
    Union[TrackAction, TripRating], Field(discriminator="kind")
]


class PreferenceSummary(BaseModel):
    """Heuristic statements derived from a user's feedback history."""

    model_config = ConfigDict(frozen=True)

    lines: tuple[str, ...]

    @property
    def text(self) -> str:
        """The summary as free text, one statement per line."""
        return "\n".join(self.lines)


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------


class StartTripRequest(BaseModel):
    """Request body for the POST /trips endpoint."""

    user_id: str
    mood: Vibe
    mode: TripMode = TripMode.LIVE
    origin: Coordinate | None = None
    """Current position fix; required in live mode."""
    destination: Coordinate | None = None
    tracks: list[TrackCandidate] = Field(default_factory=list)
    """The rider's library. The sample library is used when empty."""


class TrackFeedbackRequest(BaseModel):
    action: FeedbackAction


class EndTripRequest(BaseModel):
    rating: Rating | None = None


class TripState(BaseModel):
    """Snapshot of a trip as shown to the presentation layer."""

    trip_id: str
    mode: TripMode
    vibe: Vibe
    conditions: ConditionsSnapshot
    weather_mood: str = "neutral"
    """Display descriptor for the current weather, e.g. "cozy" for drizzle."""
    trip_distance_m: float = 0.0
    trip_duration_s: float = 0.0
    trip_distance_text: str = ""
    trip_duration_text: str = ""
    current_step_index: int
    current_step: ManeuverStep | None = None
    distance_to_next_maneuver: float | None = None
    distance_to_next_maneuver_text: str | None = None
    current_track_index: int
    current_track: TrackCandidate | None = None
    playlist: list[TrackCandidate] = Field(default_factory=list)
    rationale: str = ""
    songs_played: int = 0
    active: bool = True


class GeocodeRequest(BaseModel):
    """Request body for the /geocode-address endpoint."""

    address: str


class GeocodeResponse(BaseModel):
    lat: float
    lng: float
    formatted_address: str


class PreferencesResponse(BaseModel):
    user_id: str
    lines: list[str]
