"""Harness Server: FastAPI front end for the SessionOrchestrator.

Startup:
1. Build the orchestrator (registry, router, tokenizer, sandbox engine)
2. Start the audit chain
3. Start FastAPI (uvicorn)

Shutdown:
1. Stop accepting requests
2. Purge expired sessions

The bridge is never served here; it only exists as per-run Unix sockets.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from harness.config import HarnessConfig
from harness.errors import HarnessError
from harness.models import ExecutionResult, TaskResult
from harness.orchestrator import LanguageModel, SessionOrchestrator
from harness.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class TaskRequest(BaseModel):
    user_id: str = Field(min_length=1)
    task: str


class ExecuteRequest(BaseModel):
    user_id: str = Field(min_length=1)
    code: str


# ── FastAPI App ──────────────────────────────────────────────────────────────

_orchestrator: SessionOrchestrator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _orchestrator.start()
    yield
    await _orchestrator.stop()


def create_app(
    config: HarnessConfig | None = None,
    registry: CapabilityRegistry | None = None,
    language_model: LanguageModel | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    global _orchestrator
    _orchestrator = SessionOrchestrator(config, registry, language_model=language_model)

    app = FastAPI(
        title="mcp-harness",
        version="0.1.0",
        description="Sandboxed code execution for agents with tokenized capability access",
        lifespan=lifespan,
    )

    @app.exception_handler(HarnessError)
    async def harness_error(request: Request, exc: HarnessError):
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.kind)
        return JSONResponse(status_code=400, content={"detail": exc.describe()})

    @app.post("/task", response_model=TaskResult)
    async def run_task(body: TaskRequest):
        """Let the language model take one step on a task."""
        if _orchestrator.language_model is None:
            raise HTTPException(status_code=503, detail="No language model configured")
        return await _orchestrator.run_task(body.user_id, body.task)

    @app.post("/execute", response_model=ExecutionResult)
    async def execute(body: ExecuteRequest):
        """Run agent code directly in a fresh session."""
        return await _orchestrator.execute_code(body.user_id, body.code)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_sessions": _orchestrator.sessions.active_count(),
            "capabilities": len(_orchestrator.registry),
        }

    @app.get("/stats")
    async def stats():
        """Router and sandbox statistics."""
        return _orchestrator.get_stats()

    return app


def get_orchestrator() -> SessionOrchestrator | None:
    return _orchestrator
