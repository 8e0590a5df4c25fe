"""Vibenav backend service.

Exposes endpoints for starting live or demo trips, reporting positions,
controlling playback, collecting listener feedback, address geocoding and
reading a user's learned preferences.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException

from config import EngineConfig
from errors import GeolocationUnavailable, RouteUnavailable, TripNotFound
from models import (
    Coordinate,
    EndTripRequest,
    GeocodeRequest,
    GeocodeResponse,
    PreferencesResponse,
    StartTripRequest,
    TrackFeedbackRequest,
    TripMode,
    TripState,
)
from playlist import PlaylistOrchestrator
from preferences import (
    InMemoryFeedbackStore,
    JsonFileFeedbackStore,
    PreferenceLearner,
)
from providers import (
    ConditionsProvider,
    GoogleDirectionsRouter,
    OpenWeatherConditions,
    RoutingProvider,
)
from recommenders import build_recommender
from trip_session import TripRegistry, TripSession

logging.basicConfig(level=logging.INFO)

# ---------------------------------------------------------------------------
# Collaborators (overridable through app.dependency_overrides)
# ---------------------------------------------------------------------------


@lru_cache
def get_config() -> EngineConfig:
    return EngineConfig.from_env()


@lru_cache
def get_registry() -> TripRegistry:
    return TripRegistry()


@lru_cache
def get_learner() -> PreferenceLearner:
    config = get_config()
    store = (
        JsonFileFeedbackStore(config.feedback_dir)
        if config.feedback_dir
        else InMemoryFeedbackStore()
    )
    return PreferenceLearner(store)


@lru_cache
def get_orchestrator() -> PlaylistOrchestrator:
    config = get_config()
    return PlaylistOrchestrator(build_recommender(config.recommender), config)


@lru_cache
def get_router() -> GoogleDirectionsRouter:
    return GoogleDirectionsRouter()


@lru_cache
def get_geocoder() -> GoogleDirectionsRouter:
    """Geocoding goes through the directions router and its Maps client."""
    return get_router()


@lru_cache
def get_conditions_provider() -> ConditionsProvider:
    return OpenWeatherConditions()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    registry = app.dependency_overrides.get(get_registry, get_registry)()
    await registry.end_all()


app = FastAPI(
    title="Vibenav Backend",
    description="Context-aware driving playlists with turn-by-turn progress.",
    version="0.4.0",
    lifespan=lifespan,
)


def _session(registry: TripRegistry, trip_id: str) -> TripSession:
    try:
        return registry.get(trip_id)
    except TripNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


@app.post("/trips", response_model=TripState)
async def start_trip(
    request: StartTripRequest,
    registry: TripRegistry = Depends(get_registry),
    orchestrator: PlaylistOrchestrator = Depends(get_orchestrator),
    learner: PreferenceLearner = Depends(get_learner),
    router: RoutingProvider = Depends(get_router),
    conditions_provider: ConditionsProvider = Depends(get_conditions_provider),
) -> TripState:
    """Starts a trip and builds its opening playlist.

    Live trips resolve a route from ``origin`` to ``destination``, fetch the
    destination weather once and derive traffic from the route. Demo trips
    replay the scripted Madison route on a timer.

    Raises:
        HTTPException 400: If a live trip has no origin or no destination.
        HTTPException 502: If no route can be built or an upstream call fails.
    """
    if not request.user_id.strip():
        raise HTTPException(status_code=400, detail="user_id must not be empty.")
    try:
        if request.mode is TripMode.DEMO:
            session = await TripSession.start_demo(
                user_id=request.user_id,
                mood=request.mood,
                tracks=request.tracks,
                orchestrator=orchestrator,
                learner=learner,
            )
            session.start_simulation()
        else:
            if request.destination is None:
                raise HTTPException(
                    status_code=400,
                    detail="destination is required for a live trip.",
                )
            session = await TripSession.start_live(
                user_id=request.user_id,
                mood=request.mood,
                origin=request.origin,
                destination=request.destination,
                tracks=request.tracks,
                router=router,
                conditions_provider=conditions_provider,
                orchestrator=orchestrator,
                learner=learner,
            )
    except HTTPException:
        raise
    except GeolocationUnavailable as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RouteUnavailable as exc:
        logging.warning("Trip start failed: %s", exc)
        raise HTTPException(
            status_code=502,
            detail="Could not find a route to that destination.",
        ) from exc
    except Exception as exc:  # noqa: BLE001
        logging.exception("start_trip failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to start the trip. Please try again.",
        ) from exc

    registry.add(session)
    return session.state()


@app.get("/trips/{trip_id}", response_model=TripState)
async def get_trip(
    trip_id: str, registry: TripRegistry = Depends(get_registry)
) -> TripState:
    return _session(registry, trip_id).state()


@app.post("/trips/{trip_id}/position", response_model=TripState)
async def update_position(
    trip_id: str,
    position: Coordinate,
    registry: TripRegistry = Depends(get_registry),
) -> TripState:
    """Reports a live position fix; advances the maneuver step when close.

    Raises:
        HTTPException 400: On a malformed position or a demo trip.
        HTTPException 404: If the trip is not active.
    """
    session = _session(registry, trip_id)
    try:
        session.update_position(position)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session.state()


@app.post("/trips/{trip_id}/tracks/next", response_model=TripState)
async def next_track(
    trip_id: str, registry: TripRegistry = Depends(get_registry)
) -> TripState:
    """Skips to the next track, recording the skip as feedback."""
    session = _session(registry, trip_id)
    await session.next_track()
    return session.state()


@app.post("/trips/{trip_id}/tracks/previous", response_model=TripState)
async def previous_track(
    trip_id: str, registry: TripRegistry = Depends(get_registry)
) -> TripState:
    session = _session(registry, trip_id)
    session.previous_track()
    return session.state()


@app.post("/trips/{trip_id}/tracks/feedback", response_model=TripState)
async def track_feedback(
    trip_id: str,
    request: TrackFeedbackRequest,
    registry: TripRegistry = Depends(get_registry),
) -> TripState:
    """Records loved / bad_fit / skipped against the current track."""
    session = _session(registry, trip_id)
    await session.record_track_feedback(request.action)
    return session.state()


@app.post("/trips/{trip_id}/end", response_model=TripState)
async def end_trip(
    trip_id: str,
    request: EndTripRequest | None = None,
    registry: TripRegistry = Depends(get_registry),
) -> TripState:
    """Ends the trip, recording the rider's rating when one is given."""
    rating = request.rating if request is not None else None
    try:
        session = await registry.end(trip_id, rating)
    except TripNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return session.state()


@app.get("/users/{user_id}/preferences", response_model=PreferencesResponse)
async def user_preferences(
    user_id: str, learner: PreferenceLearner = Depends(get_learner)
) -> PreferencesResponse:
    """Returns the preference summary the next playlist request will use."""
    summary = await learner.summarize(user_id)
    return PreferencesResponse(user_id=user_id, lines=list(summary.lines))


@app.post("/geocode-address", response_model=GeocodeResponse)
async def geocode_address(
    request: GeocodeRequest,
    geocoder: GoogleDirectionsRouter = Depends(get_geocoder),
) -> GeocodeResponse:
    """Geocodes a human-readable address to lat/lng coordinates.

    Raises:
        HTTPException 400: If address is empty.
        HTTPException 404: If the address could not be geocoded.
        HTTPException 502: If the upstream Google Maps API call fails.
    """
    if not request.address.strip():
        raise HTTPException(
            status_code=400,
            detail="address must not be empty.",
        )
    try:
        match = await geocoder.geocode(request.address)
    except Exception as exc:  # noqa: BLE001
        logging.exception("geocode_address failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to geocode the address. Please try again.",
        ) from exc
    if match is None:
        raise HTTPException(
            status_code=404,
            detail=f"Could not geocode address: {request.address!r}",
        )
    position, formatted = match
    return GeocodeResponse(
        lat=position.lat, lng=position.lng, formatted_address=formatted
    )
