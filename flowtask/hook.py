"""Local HTTP side-channel for reminders raised by outside tools.

``POST /hook`` with ``{"title": "...", "message": "..."}`` shows a reminder
through the engine's notifier without touching any task or timer.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowtask.models import HookPayload
from flowtask.timer import TimerEngine

log = logging.getLogger(__name__)


def create_hook_app(engine: TimerEngine) -> FastAPI:
    app = FastAPI(title="flowtask hook")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.post("/hook")
    def hook(payload: HookPayload) -> JSONResponse:
        if not payload.title or not payload.title.strip():
            return JSONResponse(status_code=400, content={"error": "Title is required"})
        engine.trigger_external_notification(payload.title, payload.message)
        return JSONResponse(content={"success": True})

    return app


def run_hook_server(engine: TimerEngine, host: str, port: int) -> None:
    """Serve the hook until interrupted (blocks)."""
    import uvicorn

    log.info("External hook listening on %s:%s", host, port)
    uvicorn.run(create_hook_app(engine), host=host, port=port, log_config=None)
