"""
Process-wide relayer counters for health reporting.
"""

import asyncio
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

import structlog

logger = structlog.get_logger()

DEFAULT_HEALTH_PATH = Path(".cache") / "relayer-health.json"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of the relayer counters."""

    started_at: str
    victories_seen: int = 0
    mints_succeeded: int = 0
    mints_failed: int = 0
    attempt_failures: int = 0
    commit_failures: int = 0
    last_victory_at: Optional[str] = None
    last_mint_at: Optional[str] = None
    last_error_at: Optional[str] = None
    last_error: Optional[str] = None


class RelayerMetrics:
    """
    Counters updated by the event handler.

    If ``health_path`` is set, the snapshot is written there as JSON after
    every update so it can be polled without the HTTP server. Inside an event
    loop the write runs in a worker thread and bursts of updates share one
    write; ``flush`` waits for it.
    """

    def __init__(self, health_path: Optional[Union[str, Path]] = None):
        self.health_path = Path(health_path) if health_path else None
        self._state = MetricsSnapshot(started_at=_now_iso())
        self._dirty = False
        self._flush_task: Optional[asyncio.Task[None]] = None
        self._persist()

    @staticmethod
    def resolve_default_path(path: Optional[Union[str, Path]] = None) -> Path:
        return Path(path) if path else DEFAULT_HEALTH_PATH.resolve()

    def record_game_victory(self) -> None:
        self._state.victories_seen += 1
        self._state.last_victory_at = _now_iso()
        self._persist()

    def record_mint_success(self) -> None:
        self._state.mints_succeeded += 1
        self._state.last_mint_at = _now_iso()
        self._persist()

    def record_attempt_failure(self, error: Optional[BaseException] = None) -> None:
        self._state.attempt_failures += 1
        self._record_error(error)

    def record_mint_failure(self, error: Optional[BaseException] = None) -> None:
        self._state.mints_failed += 1
        self._record_error(error)

    def record_commit_failure(self, error: Optional[BaseException] = None) -> None:
        self._state.commit_failures += 1
        self._record_error(error)

    def snapshot(self) -> dict[str, Any]:
        return asdict(self._state)

    def _record_error(self, error: Optional[BaseException]) -> None:
        self._state.last_error_at = _now_iso()
        if error is not None:
            self._state.last_error = str(error) or type(error).__name__
        self._persist()

    async def flush(self) -> None:
        """Wait until the health file reflects the latest snapshot."""
        if self._flush_task is not None:
            await self._flush_task

    def _persist(self) -> None:
        if self.health_path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_health_file(self.snapshot())
            return

        # Updates made while a write is running are folded into one more write.
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self._flush_pending())

    async def _flush_pending(self) -> None:
        while self._dirty:
            self._dirty = False
            await asyncio.to_thread(self._write_health_file, self.snapshot())

    def _write_health_file(self, snapshot: dict[str, Any]) -> None:
        path = self.health_path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning(
                "health_file_write_failed",
                path=str(path),
                error=str(e),
            )
