"""
FastAPI server exposing the turn and session APIs.

Usage:
    python main.py serve
    # or
    uvicorn tutor_scheduler.api.server:create_app --factory --port 8000
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from tutor_scheduler import __version__
from tutor_scheduler.config import AppConfig, settings
from tutor_scheduler.conversation.controller import ConversationController
from tutor_scheduler.errors import DependencyUnavailableError, StaleTurnError
from tutor_scheduler.matching.reasoner import MatchReasoner
from tutor_scheduler.matching.retriever import CandidateRetriever
from tutor_scheduler.session.store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    SessionStore,
)
from tutor_scheduler.tools.booking import InMemoryBookingFinalizer
from tutor_scheduler.tools.catalog import InMemoryCatalog
from tutor_scheduler.tools.model_client import OpenAIModelClient
from tutor_scheduler.tools.similarity_index import InMemorySimilarityIndex

logger = logging.getLogger(__name__)


class TurnRequest(BaseModel):
    text: str = Field(min_length=1)


class TurnResponse(BaseModel):
    reply: str
    done: bool = True
    rule: str


class HealthResponse(BaseModel):
    status: str
    version: str
    semantic_search: bool


def build_default_controller(config: Optional[AppConfig] = None) -> ConversationController:
    """Wire the controller with the seed catalog, OpenAI services, and configured storage."""
    config = config or settings
    catalog = InMemoryCatalog()
    model_client = OpenAIModelClient(config.model)
    kv: KeyValueStore = (
        FileKeyValueStore(config.session.store_path)
        if config.session.store_path
        else InMemoryKeyValueStore()
    )
    return ConversationController(
        store=SessionStore(kv, config.session.flush_delay_sec),
        catalog=catalog,
        retriever=CandidateRetriever(catalog, model_client, InMemorySimilarityIndex(), config),
        reasoner=MatchReasoner(model_client, config),
        finalizer=InMemoryBookingFinalizer(),
        reply_streamer=model_client if config.model.stream_replies else None,
        config=config,
    )


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def create_app(
    controller: Optional[ConversationController] = None,
    index_on_startup: Optional[bool] = None,
) -> FastAPI:
    """Build the API around a controller (the default wiring when omitted)."""
    controller = controller or build_default_controller()
    if index_on_startup is None:
        index_on_startup = bool(settings.model.api_key)
    semantic = {"enabled": False}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if index_on_startup:
            try:
                await controller.retriever.index_catalog()
                semantic["enabled"] = True
            except DependencyUnavailableError as exc:
                logger.warning("Catalog indexing failed, keyword matching only: %s", exc)
        yield
        await controller.store.close()
        logger.info("Session store flushed on shutdown")

    app = FastAPI(
        title="Tutor Scheduler API",
        description="Conversational tutor matching and booking",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Something went wrong. Please try again.",
                "statusCode": 500,
            },
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__, semantic_search=semantic["enabled"])

    @app.post("/session/{session_id}/turn")
    async def post_turn(session_id: str, request: TurnRequest, stream: bool = False):
        if stream:
            async def events() -> AsyncIterator[str]:
                try:
                    async for delta in controller.stream_turn(session_id, request.text):
                        yield _sse({"contentDelta": delta})
                except StaleTurnError:
                    yield _sse({"error": "stale_turn"})
                except Exception:
                    logger.exception("Streaming turn failed for session '%s'", session_id)
                    yield _sse({"error": "internal_error"})
                yield _sse({"done": True})

            return StreamingResponse(events(), media_type="text/event-stream")

        try:
            result = await controller.handle_turn(session_id, request.text)
        except StaleTurnError as exc:
            raise HTTPException(status_code=409, detail="Turn superseded by a newer turn") from exc
        return TurnResponse(reply=result.reply, done=result.done, rule=result.rule)

    @app.get("/session/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        session = await controller.get_session(session_id)
        return session.to_snapshot()

    @app.put("/session/{session_id}")
    async def put_session(session_id: str, partial: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            session = await controller.update_session(session_id, partial)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return session.to_snapshot()

    @app.post("/session/{session_id}/reset")
    async def reset_session(session_id: str) -> dict[str, Any]:
        session = await controller.reset_session(session_id)
        return session.to_snapshot()

    return app
