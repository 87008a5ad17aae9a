"""
FastAPI application for the Sia Qualifier Agent.

This module provides REST API endpoints for:
- Streaming chat turns (Server-Sent Events)
- Location selection, edit, delete, regenerate and stop
- Session state (usage, cost, validated location, qualification)
- Canned scenarios
- Google Places proxy for the address picker
- Health checks and the model catalogue
"""

import asyncio
import json
import logging
import time
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from sia_qualifier.agents.controller import MessageNotFoundError, SessionBusyError, SessionController
from sia_qualifier.agents.gateway import ModelConfigurationError
from sia_qualifier.agents.orchestrator import build_orchestrator
from sia_qualifier.agents.scenarios import SCENARIOS, get_scenario
from sia_qualifier.agents.session_state import estimate_cost
from sia_qualifier.config import AVAILABLE_MODELS, MODEL_PRICING, settings
from sia_qualifier.models.messages import Finish, Role, TurnError, TurnEvent
from sia_qualifier.models.schemas import (
    ChatRequest,
    EditMessageRequest,
    LocationRequest,
    PlaceDetails,
    PlacesSuggestRequest,
    PlacesSuggestResponse,
    RegenerateRequest,
    TurnSettings,
)
from sia_qualifier.services.places import PlacesClient, PlacesConfigurationError, PlacesError
from sia_qualifier.services.sessions import ConversationNotFoundError, SessionStore
from sia_qualifier.services.tracking import TurnTracker

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

session_store = SessionStore(build_orchestrator(settings))
places_client = PlacesClient(settings.google_places_api_key, timeout=settings.places_timeout_seconds)
turn_tracker = TurnTracker(
    enabled=settings.mlflow_enabled,
    tracking_uri=settings.mlflow_tracking_uri,
    experiment_name=settings.mlflow_experiment_name,
)


def get_store() -> SessionStore:
    return session_store


def get_places_client() -> PlacesClient:
    return places_client


def get_tracker() -> TurnTracker:
    return turn_tracker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info("Starting Sia Qualifier API...")
    logger.info(f"Default model: {settings.default_model}")
    turn_tracker.setup()

    yield

    logger.info("Shutting down Sia Qualifier API...")


app = FastAPI(
    title="Sia Qualifier Agent API",
    description="Conversational land-lead qualification agent with tool-enforced guardrails",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# ERROR MAPPING
# -----------------------------
@app.exception_handler(SessionBusyError)
async def session_busy_handler(request: Request, exc: SessionBusyError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(MessageNotFoundError)
async def message_not_found_handler(request: Request, exc: MessageNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConversationNotFoundError)
async def conversation_not_found_handler(request: Request, exc: ConversationNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Conversation not found"})


@app.exception_handler(ModelConfigurationError)
async def model_configuration_handler(request: Request, exc: ModelConfigurationError):
    logger.error(f"Model configuration error: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(PlacesConfigurationError)
async def places_configuration_handler(request: Request, exc: PlacesConfigurationError):
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(PlacesError)
async def places_error_handler(request: Request, exc: PlacesError):
    return JSONResponse(status_code=502, content={"error": str(exc)})


# -----------------------------
# HELPERS
# -----------------------------
def sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def session_view(session: SessionController, model: Optional[str] = None) -> Dict[str, Any]:
    """Messages plus every aggregate derived from them."""
    snapshot = session.snapshot()
    model = model or settings.default_model
    pending = session.pending_location_request()
    return {
        "conversation_id": session.conversation_id,
        "is_streaming": session.is_streaming,
        "messages": [m.model_dump(mode="json") for m in session.history],
        "usage": snapshot.usage.model_dump(),
        "cost": estimate_cost(snapshot.usage, MODEL_PRICING.get(model)).model_dump(),
        "model": model,
        "location": snapshot.location,
        "qualification": snapshot.qualification,
        "pending_location_request": pending.model_dump(mode="json") if pending else None,
    }


def turn_stream(
    session: SessionController,
    events: AsyncIterator[TurnEvent],
    turn_settings: TurnSettings,
    tracker: TurnTracker,
) -> StreamingResponse:
    """Serve a turn as Server-Sent Events, then record it in MLflow."""

    async def generate():
        started = time.perf_counter()
        finish: Optional[Finish] = None
        error: Optional[str] = None

        # Entered before the first yield so a client leaving early still releases the session
        async with aclosing(events) as stream:
            yield sse("session", {"conversation_id": session.conversation_id})
            async for event in stream:
                if isinstance(event, Finish):
                    finish = event
                elif isinstance(event, TurnError):
                    error = event.message
                yield sse(event.type, event.model_dump(mode="json"))

        yield sse("state", session_view(session, turn_settings.model))

        latency = time.perf_counter() - started
        logger.info(f"Turn for {session.conversation_id} served in {latency:.2f}s")
        await asyncio.to_thread(
            tracker.record_turn,
            session.conversation_id,
            turn_settings,
            latency,
            finish,
            error,
        )

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def resolve_settings(store: SessionStore, requested: Optional[TurnSettings]) -> TurnSettings:
    """Default the turn settings and fail fast on a model without credentials."""
    turn_settings = requested or TurnSettings()
    store.orchestrator.gateway.check_credentials(turn_settings.model)
    return turn_settings


# -----------------------------
# ENDPOINTS
# -----------------------------
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Sia Qualifier Agent API",
        "version": "1.0.0",
        "status": "running",
        "default_model": settings.default_model,
        "endpoints": {
            "chat": "/api/chat",
            "conversations": "/api/conversations/{conversation_id}",
            "scenarios": "/api/scenarios",
            "places": "/api/places/suggest",
            "health": "/health",
            "docs": "/docs",
        },
    }


@app.get("/health")
async def health_check(store: SessionStore = Depends(get_store)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "default_model": settings.default_model,
        "active_conversations": len(store),
    }


@app.get("/api/models")
async def list_models():
    """Models offered by the playground, with their pricing."""
    return {
        "default_model": settings.default_model,
        "models": [
            {**model, "pricing": MODEL_PRICING.get(model["id"])} for model in AVAILABLE_MODELS
        ],
    }


@app.post("/api/chat")
async def chat(
    request: ChatRequest,
    store: SessionStore = Depends(get_store),
    tracker: TurnTracker = Depends(get_tracker),
):
    """
    Send a user message and stream the assistant's turn.

    Args:
        request: Message, optional conversation id and turn settings

    Returns:
        text/event-stream: "session", then the turn events, then "state"

    Raises:
        409 if the conversation is already streaming
    """
    turn_settings = resolve_settings(store, request.settings)
    session = store.get_or_create(request.conversation_id)
    logger.info(f"Chat request ({session.conversation_id}): {request.message[:50]}...")
    events = session.append(request.message, turn_settings)
    return turn_stream(session, events, turn_settings, tracker)


@app.post("/api/conversations/{conversation_id}/location")
async def send_location(
    conversation_id: str,
    request: LocationRequest,
    store: SessionStore = Depends(get_store),
    tracker: TurnTracker = Depends(get_tracker),
):
    """Send the address picked in the assisted search."""
    session = store.get(conversation_id)
    turn_settings = resolve_settings(store, request.settings)
    events = session.send_location(request.selection, turn_settings)
    return turn_stream(session, events, turn_settings, tracker)


@app.post("/api/conversations/{conversation_id}/regenerate")
async def regenerate(
    conversation_id: str,
    request: Optional[RegenerateRequest] = None,
    store: SessionStore = Depends(get_store),
    tracker: TurnTracker = Depends(get_tracker),
):
    """Answer the last user message again."""
    session = store.get(conversation_id)
    turn_settings = resolve_settings(store, request.settings if request else None)
    events = session.regenerate(turn_settings)
    return turn_stream(session, events, turn_settings, tracker)


@app.put("/api/conversations/{conversation_id}/messages/{message_id}")
async def edit_message(
    conversation_id: str,
    message_id: str,
    request: EditMessageRequest,
    store: SessionStore = Depends(get_store),
    tracker: TurnTracker = Depends(get_tracker),
):
    """
    Edit a message.

    User messages are truncated after and regenerated (streamed);
    assistant messages are edited in place and the session is returned.
    """
    session = store.get(conversation_id)
    message = session.get_message(message_id)

    if message.role == Role.USER:
        turn_settings = resolve_settings(store, request.settings)
        events = session.edit_and_regenerate(message_id, request.text, turn_settings)
        return turn_stream(session, events, turn_settings, tracker)

    session.edit_and_regenerate(message_id, request.text)
    return session_view(session)


@app.delete("/api/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: str,
    message_id: str,
    store: SessionStore = Depends(get_store),
):
    session = store.get(conversation_id)
    session.delete(message_id)
    return session_view(session)


@app.post("/api/conversations/{conversation_id}/stop")
async def stop(conversation_id: str, store: SessionStore = Depends(get_store)):
    """Stop the running turn; partial output stays in history."""
    session = store.get(conversation_id)
    return {"conversation_id": conversation_id, "stopped": session.stop()}


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    model: Optional[str] = Query(None, description="Model used to price the usage"),
    store: SessionStore = Depends(get_store),
):
    """
    Retrieve a conversation with its derived state.

    Raises:
        HTTPException: If conversation not found
    """
    return session_view(store.get(conversation_id), model)


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, store: SessionStore = Depends(get_store)):
    """Reset and drop a conversation."""
    store.drop(conversation_id)
    return {"message": "Conversation deleted", "conversation_id": conversation_id}


@app.get("/api/scenarios")
async def list_scenarios():
    return {
        "scenarios": [
            {"id": s.id, "title": s.title, "description": s.description, "badge": s.badge}
            for s in SCENARIOS.values()
        ]
    }


@app.post("/api/conversations/{conversation_id}/scenarios/{scenario_id}")
async def load_scenario(
    conversation_id: str,
    scenario_id: str,
    store: SessionStore = Depends(get_store),
):
    """Replace a conversation's history with a canned scenario."""
    scenario = get_scenario(scenario_id)
    if scenario is None:
        raise HTTPException(status_code=404, detail="Scenario not found")

    session = store.get_or_create(conversation_id)
    session.load(scenario.build_messages(session.orchestrator.registry))
    logger.info(f"Scenario {scenario_id} loaded into {session.conversation_id}")
    return session_view(session)


@app.post("/api/places/suggest", response_model=PlacesSuggestResponse)
async def places_suggest(
    request: PlacesSuggestRequest,
    places: PlacesClient = Depends(get_places_client),
):
    """Address autocomplete for the picker (biased to Florianópolis)."""
    return PlacesSuggestResponse(suggestions=await places.suggest(request.query))


@app.get("/api/places/details", response_model=PlaceDetails)
async def places_details(
    place_id: str = Query("", description="Google place id"),
    places: PlacesClient = Depends(get_places_client),
):
    """Structured address (neighborhood, city, state) of a suggestion."""
    if not place_id:
        return JSONResponse(status_code=400, content={"error": "place_id é obrigatório"})
    return await places.details(place_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sia_qualifier.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
