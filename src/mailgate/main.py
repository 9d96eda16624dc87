import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .agent import TurnEngine, build_context
from .agent.context import AgentContext
from .errors import (
    PROTOCOL_ERRORS,
    MailgateError,
    ModelUnavailable,
    SchemaError,
    StoreUnavailable,
)
from .models import decision_from_dict
from .services.session_store import message_to_dict, suspension_to_dict
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("mailgate")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


LOGGER = setup_server_logging()
settings = get_settings()


class SubmitRequest(BaseModel):
    text: str = Field(min_length=1)


class ResumeRequest(BaseModel):
    type: str
    target_id: str
    arguments: Dict[str, Any] | None = None


def create_app(context: AgentContext | None = None) -> FastAPI:
    """Build the API. A prepared context (e.g. with test doubles) skips startup wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context
        if ctx is None:
            LOGGER.info("Building agent context...")
            ctx = await build_context(settings)
        app.state.context = ctx
        app.state.engine = TurnEngine(ctx)

        yield

        LOGGER.info("Shutting down...")
        await ctx.store.close()

    app = FastAPI(
        title="mailgate",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    @app.exception_handler(MailgateError)
    async def mailgate_error_handler(request: Request, exc: MailgateError) -> JSONResponse:
        if isinstance(exc, PROTOCOL_ERRORS):
            status = 409
        elif isinstance(exc, SchemaError):
            status = 422
        elif isinstance(exc, (ModelUnavailable, StoreUnavailable)):
            status = 503
        else:
            status = 500
        LOGGER.warning("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc)
        body: Dict[str, Any] = {"error": exc.kind, "detail": str(exc)}
        if isinstance(exc, SchemaError):
            body["field"] = exc.field
        return JSONResponse(status_code=status, content=body)

    async def _run_turn(request: Request, coro) -> JSONResponse:
        timeout = request.app.state.context.settings.turn_timeout_seconds
        try:
            result = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.error("Turn timed out after %.1fs", timeout)
            return JSONResponse(
                status_code=504,
                content={
                    "error": "turn_timeout",
                    "detail": "Turn timed out; re-fetch the session state before retrying",
                },
            )
        return JSONResponse(content=result.to_dict())

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, request: Request) -> dict[str, Any]:
        """Return the session's messages and pending suspension (if any)."""
        session = await request.app.state.engine.state(session_id)
        pending = session.pending_suspension
        return {
            "session_id": session.session_id,
            "state": "suspended" if pending else "idle",
            "messages": [message_to_dict(m) for m in session.messages],
            "pending_suspension": suspension_to_dict(pending) if pending else None,
            "tool_calls_count": session.tool_calls_count,
        }

    @app.post("/sessions/{session_id}/messages")
    async def submit(session_id: str, payload: SubmitRequest, request: Request) -> JSONResponse:
        """Start a turn with a user message. Returns a reply or a suspension."""
        LOGGER.info("submit session_id=%s", session_id)
        return await _run_turn(request, request.app.state.engine.submit(session_id, payload.text))

    @app.post("/sessions/{session_id}/resume")
    async def resume(session_id: str, payload: ResumeRequest, request: Request) -> JSONResponse:
        """Resolve the pending suspension with approve, reject or edit."""
        try:
            decision = decision_from_dict(payload.model_dump())
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": "bad_decision", "detail": str(e)})
        LOGGER.info("resume session_id=%s decision=%s", session_id, decision.type)
        return await _run_turn(request, request.app.state.engine.resume(session_id, decision))

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using host/port from settings."""
    uvicorn.run("mailgate.main:app", host=settings.host, port=settings.port)
