"""FastAPI application factory exposing chatflow sessions over HTTP."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from chatflow.engine import FAILURE_NOTICE, ConversationFailed, InvalidSelection, TransitionEngine
from chatflow.session_store import JsonSessionStore
from chatflow.steps import SchemaError, StepGraph, build_graph
from chatflow.strategies import StrategyRegistry
from chatflow.validation import builtin_registry

from .config import Settings, ensure_data_directory, get_settings
from .schemas import ChooseRequest, SessionCreate, SessionRead, SubmitRequest

logger = logging.getLogger("chatflow.api")


def load_steps(path: Path) -> List[Dict[str, Any]]:
    """Read a JSON list of raw steps."""

    data = json.loads(path.read_text("utf-8"))
    if not isinstance(data, list):
        raise SchemaError(f"{path} must contain a JSON list of steps")
    return data


def create_app(
    steps: Optional[Sequence[Mapping[str, Any]]] = None,
    *,
    registry: Optional[StrategyRegistry] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    ensure_data_directory(settings.data_path)

    store = JsonSessionStore(settings.data_path)
    base_config = settings.engine_config()
    registry = registry or builtin_registry()

    if steps is None and settings.graph_path is not None:
        steps = load_steps(settings.graph_path)
    # Schema errors are fatal: refuse to build the app with a broken graph.
    graph: Optional[StepGraph] = build_graph(steps, base_config, registry=registry) if steps else None
    if graph is None and not base_config.next_step_url:
        logger.warning("Neither a step graph nor NEXT_STEP_URL is configured; sessions cannot start")

    app = FastAPI(title="Chatflow API", version="0.1.0", docs_url="/docs")
    app.state.settings = settings
    app.state.store = store
    app.state.graph = graph
    app.state.registry = registry
    app.state.sessions = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", summary="Simple health check")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "mode": "local" if app.state.graph is not None else "remote",
            "sessions": len(app.state.sessions),
            "environment": app.state.settings.environment,
        }

    def release_if_done(engine: TransitionEngine) -> None:
        if engine.ended or engine.failed:
            if app.state.sessions.pop(engine.session_id, None) is not None:
                logger.info("Released session %s (ended=%s)", engine.session_id, engine.ended)

    def get_engine(session_id: str, request: Request) -> TransitionEngine:
        engine = request.app.state.sessions.get(session_id)
        if engine is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return engine

    @app.post(
        "/sessions",
        response_model=SessionRead,
        status_code=status.HTTP_201_CREATED,
        summary="Start (or resume) a conversation",
    )
    async def create_session(payload: Optional[SessionCreate] = None) -> SessionRead:
        cache_key = payload.cache_key if payload is not None else None
        config = settings.engine_config(cache_key)
        try:
            engine = TransitionEngine(
                config,
                graph=app.state.graph,
                store=app.state.store,
                registry=app.state.registry,
            )
        except ValueError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

        try:
            snapshot = await engine.start()
        except ConversationFailed:
            raise HTTPException(status_code=500, detail=FAILURE_NOTICE)
        logger.info("Started session %s (cache=%s)", engine.session_id, cache_key)
        if not engine.ended:
            app.state.sessions[engine.session_id] = engine
        return SessionRead.from_engine(engine, snapshot)

    @app.get("/sessions/{session_id}", response_model=SessionRead, summary="Current session state")
    async def read_session(engine: TransitionEngine = Depends(get_engine)) -> SessionRead:
        return SessionRead.from_engine(engine)

    @app.post("/sessions/{session_id}/submit", response_model=SessionRead, summary="Submit free text")
    async def submit(payload: SubmitRequest, engine: TransitionEngine = Depends(get_engine)) -> SessionRead:
        try:
            snapshot = await engine.submit_user_message(payload.text)
        except ConversationFailed:
            raise HTTPException(status_code=500, detail=FAILURE_NOTICE)
        finally:
            release_if_done(engine)
        return SessionRead.from_engine(engine, snapshot)

    @app.post("/sessions/{session_id}/choose", response_model=SessionRead, summary="Pick options or choices")
    async def choose(payload: ChooseRequest, engine: TransitionEngine = Depends(get_engine)) -> SessionRead:
        try:
            snapshot = await engine.choose(payload.selection)
        except InvalidSelection as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except ConversationFailed:
            raise HTTPException(status_code=500, detail=FAILURE_NOTICE)
        finally:
            release_if_done(engine)
        return SessionRead.from_engine(engine, snapshot)

    @app.post("/sessions/{session_id}/advance", response_model=SessionRead, summary="Retry after a failed fetch")
    async def advance(engine: TransitionEngine = Depends(get_engine)) -> SessionRead:
        try:
            snapshot = await engine.advance()
        except ConversationFailed:
            raise HTTPException(status_code=500, detail=FAILURE_NOTICE)
        finally:
            release_if_done(engine)
        return SessionRead.from_engine(engine, snapshot)

    return app
