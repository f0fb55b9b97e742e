"""Local control API: status, stop and a live event stream for the running worker.

Served on 127.0.0.1 only. The CLI's ``status`` and ``stop`` commands (and any
menu-bar shell) talk to the worker through these endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import uvicorn
from fastapi import FastAPI, HTTPException
from sse_starlette.sse import EventSourceResponse

from buildfleet.dispatch import Worker

logger = logging.getLogger(__name__)

_worker: Worker | None = None
_stop_task: asyncio.Task | None = None


def bind(worker: Worker) -> None:
    global _worker, _stop_task
    _worker = worker
    _stop_task = None


def _get_worker() -> Worker:
    if _worker is None:
        raise HTTPException(status_code=503, detail="Worker not running")
    return _worker


app = FastAPI(title="buildfleet worker")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/status")
async def status():
    return _get_worker().status()


@app.post("/stop", status_code=202)
async def stop():
    """Begin draining. Returns immediately; follow /events for completion."""
    global _stop_task
    worker = _get_worker()
    if _stop_task is None:
        _stop_task = asyncio.create_task(worker.stop())
    return {"status": "stopping"}


@app.get("/events")
async def events():
    """SSE stream of worker events, starting with the most recent ones."""
    worker = _get_worker()
    replay_from = max(worker.events.cursor - 20, 0)
    return EventSourceResponse(worker.events.stream_sse(replay_from))


# ── Server entry point ──


class ControlServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def create_server(port: int, host: str = "127.0.0.1") -> ControlServer:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    return ControlServer(config)
