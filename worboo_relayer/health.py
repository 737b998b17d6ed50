"""
HTTP health endpoint for the relayer.

Serves a read-only view of the relayer counters and store metadata:

- Health checks (GET /health)
"""

import asyncio
from collections.abc import Callable
from typing import Any, Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .metrics import RelayerMetrics
from .store import ProcessedEventStore

logger = structlog.get_logger()

HealthProvider = Callable[[], dict[str, Any]]


class StoreInfo(BaseModel):
    """Processed-event store metadata."""

    path: str = Field(..., description="Path of the processed-event log")
    size: int = Field(..., description="Number of processed events held")
    max_entries: Optional[int] = Field(None, description="Retention limit, if any")


class HealthResponse(BaseModel):
    """Relayer health snapshot."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Relayer version")
    started_at: str = Field(..., description="Process start time (ISO 8601)")
    victories_seen: int = Field(0, description="Victories received")
    mints_succeeded: int = Field(0, description="Rewards minted and recorded")
    mints_failed: int = Field(0, description="Rewards abandoned after all retries")
    attempt_failures: int = Field(0, description="Individual mint attempts that failed")
    commit_failures: int = Field(0, description="Mints that could not be recorded")
    last_victory_at: Optional[str] = None
    last_mint_at: Optional[str] = None
    last_error_at: Optional[str] = None
    last_error: Optional[str] = None
    store: StoreInfo


def build_health_snapshot(
    metrics: RelayerMetrics, store: ProcessedEventStore
) -> dict[str, Any]:
    """Combine the metrics counters with store metadata."""
    return {
        **metrics.snapshot(),
        "store": {
            "path": str(store.path),
            "size": store.size,
            "max_entries": store.max_entries,
        },
    }


def create_health_app(
    provider: HealthProvider, cors_origin: Optional[str] = None
) -> FastAPI:
    """Create the FastAPI app serving ``provider``'s data."""
    app = FastAPI(
        title="Worboo Relayer Health",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )

    if cors_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[cors_origin],
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__, **provider())

    return app


class HealthServer:
    """Runs the health app with uvicorn inside the current event loop."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8787):
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
        )
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                # Surface bind errors and the like.
                await self._task
                raise RuntimeError("Health server exited during startup")
            await asyncio.sleep(0.05)
        logger.info("health_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        logger.info("health_server_stopped")
