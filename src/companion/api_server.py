"""
FastAPI service layer for the companion turn pipeline.

Exposes session creation, turns, history, listing, review and metrics.
The caller's identity arrives in the X-Owner-Id header.

Run with:
    uvicorn companion.api_server:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .config import LLM_MAX_WORKERS, MAX_UTTERANCE_CHARS
from .errors import AuthorizationError, CompanionError, NotFoundError, ValidationError
from .metrics import MetricsCollector
from .observability import get_logger
from .service import ConversationService, build_service

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    session_id: str | None = Field(default=None, max_length=128, description="Optional caller-chosen id")


class CreateSessionResponse(BaseModel):
    session_id: str


class TurnRequest(BaseModel):
    utterance: str = Field(..., min_length=1, max_length=MAX_UTTERANCE_CHARS, description="User message")


class TurnResponse(BaseModel):
    reply: str
    assessment: dict[str, Any]
    memory_summary: dict[str, Any]
    conversation_complete: bool
    status: str
    reply_source: str


class HistoryResponse(BaseModel):
    session_id: str
    status: str
    messages: list[dict[str, Any]]
    memory_summary: dict[str, Any]
    progress_summary: dict[str, Any] | None = None


class ReviewResponse(BaseModel):
    themes: list[str]
    emotional_summary: str
    areas_of_concern: list[str]
    recommendations: list[str]
    progress_indicators: list[str]
    generated: bool


# ---------------------------------------------------------------------------
# Application state populated at startup
# ---------------------------------------------------------------------------

_state: dict[str, Any] = {}

# Thread pool for running synchronous pipeline calls off the event loop.
_executor = ThreadPoolExecutor(max_workers=LLM_MAX_WORKERS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Builds the service once at startup unless one was injected; closes it on shutdown."""
    owned = "service" not in _state
    if owned:
        metrics = MetricsCollector()
        _state["metrics"] = metrics
        _state["service"] = build_service(metrics=metrics)
        logger.info("api_started")

    yield

    if owned:
        service: ConversationService = _state["service"]
        service.close()
        _state.clear()


app = FastAPI(
    title="Companion API",
    description="Session memory and turn processing for a supportive conversation assistant",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _service() -> ConversationService:
    service = _state.get("service")
    if service is None:
        raise HTTPException(status_code=503, detail="Service is not initialized.")
    return service


def _owner(x_owner_id: str | None) -> str:
    owner = (x_owner_id or "").strip()
    if not owner:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header.")
    return owner


def _status_for(exc: CompanionError) -> int:
    if isinstance(exc, AuthorizationError):
        return 403
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    # PersistenceError and anything unexpected.
    return 500


async def _call(fn, *args):
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(_executor, partial(fn, *args))
    except CompanionError as exc:
        status = _status_for(exc)
        if status >= 500:
            logger.error("request_failed", error_type=type(exc).__name__, error=str(exc))
            raise HTTPException(status_code=status, detail="Internal error while handling the request.") from exc
        raise HTTPException(status_code=status, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/sessions", response_model=CreateSessionResponse, status_code=201)
async def create_session_endpoint(
    request: CreateSessionRequest | None = None,
    x_owner_id: str | None = Header(default=None),
):
    owner = _owner(x_owner_id)
    session_id = request.session_id if request else None
    sid = await _call(_service().create_session, owner, session_id)
    return CreateSessionResponse(session_id=sid)


@app.post("/sessions/{session_id}/messages", response_model=TurnResponse)
async def send_turn_endpoint(
    session_id: str,
    request: TurnRequest,
    x_owner_id: str | None = Header(default=None),
):
    owner = _owner(x_owner_id)
    result = await _call(_service().send_turn, session_id, owner, request.utterance)
    return TurnResponse(**result.to_dict())


@app.get("/sessions/{session_id}/history", response_model=HistoryResponse)
async def history_endpoint(session_id: str, x_owner_id: str | None = Header(default=None)):
    owner = _owner(x_owner_id)
    return HistoryResponse(**await _call(_service().get_history, session_id, owner))


@app.get("/sessions")
async def list_sessions_endpoint(x_owner_id: str | None = Header(default=None)):
    owner = _owner(x_owner_id)
    return {"sessions": await _call(_service().list_sessions, owner)}


@app.get("/sessions/{session_id}/review", response_model=ReviewResponse)
async def review_endpoint(session_id: str, x_owner_id: str | None = Header(default=None)):
    owner = _owner(x_owner_id)
    review = await _call(_service().review_session, session_id, owner)
    return ReviewResponse(**review.to_dict())


@app.get("/metrics")
async def metrics_endpoint():
    """Return aggregated turn metrics."""
    metrics = _state.get("metrics")
    if metrics is None:
        raise HTTPException(status_code=503, detail="Metrics are not enabled.")
    return metrics.get_summary()
