"""
server.py — SafeWalk Voice · FastAPI Control Plane
==================================================
Local control plane for one voice-companion session.  The host app (map,
routing, contacts) talks to the running orchestrator through it.

Endpoints
---------
  GET  /health                 Liveness + recognition health
  GET  /status                 Full diagnostics snapshot
  POST /context                Partial context update (route, score, contacts…)
  POST /announce               Queue a navigation announcement
  POST /listening/start        Start continuous listening
  POST /listening/stop         Stop listening
  POST /recognition/restart    Manual recovery: force a recognizer restart

Everything runs on the same event loop as the orchestrator, so handlers call
it directly; no locking.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .errors import QueueCleared, SynthesisError
from .orchestrator import ConversationOrchestrator, VoiceStatus

log = logging.getLogger("safewalk_voice.server")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class AnnounceRequest(BaseModel):
    """Navigation announcement.  `wait` blocks until it has been spoken."""
    message: str = Field(min_length=1, max_length=1000)
    wait: bool = False


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(orchestrator: ConversationOrchestrator, *, dispose_on_shutdown: bool = True) -> FastAPI:
    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start")
        yield
        if dispose_on_shutdown:
            log.info("event=server_shutdown disposing_session=true")
            await orchestrator.dispose()
        log.info("event=server_stopped")

    app = FastAPI(
        title="SafeWalk Voice",
        version="1.0.0",
        description="Voice companion control plane",
        lifespan=_lifespan,
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe.  503 once recognition hit a terminal error."""
        snapshot = orchestrator.status()
        healthy = orchestrator.recognition.is_healthy()
        body = {
            "status": "ok" if snapshot.fatal_error is None else "fatal",
            "recognition_healthy": healthy,
            "degraded": snapshot.degraded,
            "fatal_error": snapshot.fatal_error,
        }
        code = status.HTTP_200_OK if snapshot.fatal_error is None else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=body)

    @app.get("/status", response_model=VoiceStatus)
    async def get_status() -> VoiceStatus:
        return orchestrator.status()

    @app.post("/context")
    async def update_context(partial: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            orchestrator.update_context(partial)
        except ValidationError as exc:
            log.warning("event=context_rejected errors=%d", exc.error_count())
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=exc.errors(include_url=False),
            ) from exc
        log.info("event=context_updated keys=%s", ",".join(sorted(partial)))
        return JSONResponse({"status": "updated", "context": orchestrator.context.model_dump(mode="json")})

    @app.post("/announce", status_code=status.HTTP_202_ACCEPTED)
    async def announce(body: AnnounceRequest) -> JSONResponse:
        future = orchestrator.announce_navigation(body.message)
        if not body.wait:
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"status": "queued"})
        try:
            await future
        except QueueCleared:
            return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"status": "cleared"})
        except SynthesisError as exc:
            log.error("event=announce_failed error=%s", exc)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Speech failed: {exc}") from exc
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "spoken"})

    @app.post("/listening/start")
    async def start_listening() -> JSONResponse:
        orchestrator.start_listening()
        return JSONResponse({"status": "listening", "phase": orchestrator.recognition.phase.value})

    @app.post("/listening/stop")
    async def stop_listening() -> JSONResponse:
        orchestrator.stop_listening()
        return JSONResponse({"status": "stopped", "phase": orchestrator.recognition.phase.value})

    @app.post("/recognition/restart", status_code=status.HTTP_202_ACCEPTED)
    async def restart_recognition() -> JSONResponse:
        if not orchestrator.recognition.is_listening:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Not listening; start listening first.",
            )
        orchestrator.force_restart()
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"status": "restarting"})

    return app
