"""
Append-only store of processed GameRecorded events.

Each processed event is one JSON line in the log file:

    {"key": "0xabc...:1", "txHash": "0xmint...", "mintedAt": 1700000000000}

The whole log is loaded into memory on open. New records are appended by a
single write worker so concurrent callers never interleave on disk. When a
capacity is configured, the oldest records (by insertion order) are evicted
and the file is rewritten.
"""

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger()

DEFAULT_STORE_PATH = Path(".cache") / "processed-events.jsonl"

WriteTask = Callable[[], Awaitable[None]]


class CorruptStoreError(Exception):
    """Raised when the log file contains a line that is not a valid record."""

    def __init__(self, path: Path, line_number: int, line: str, reason: str):
        self.path = path
        self.line_number = line_number
        self.line = line
        super().__init__(
            f"Failed to parse processed event entry at {path}:{line_number}: {reason}"
        )


class StoreClosedError(RuntimeError):
    """Raised when writing to a store that has been closed."""


class ProcessedEventRecord(BaseModel):
    """Record of a rewarded event."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: str = Field(..., min_length=1)
    tx_hash: str = Field(..., alias="txHash")
    minted_at: int = Field(..., alias="mintedAt")

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True) + "\n"


def now_ms() -> int:
    return int(time.time() * 1000)


class _WriteQueue:
    """Runs write tasks one at a time, in submission order."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[WriteTask, asyncio.Future[None]]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._closed = False

    def submit(self, task: WriteTask) -> asyncio.Future[None]:
        if self._closed:
            raise StoreClosedError("store is closed")
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        future: asyncio.Future[None] = loop.create_future()
        self._queue.put_nowait((task, future))
        return future

    async def _drain(self) -> None:
        while True:
            task, future = await self._queue.get()
            try:
                await task()
            except Exception as e:
                # The failure belongs to the caller that submitted the task;
                # later tasks still run.
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(None)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        self._closed = True
        await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None


class ProcessedEventStore:
    """
    Durable set of processed event keys.

    Use ``await ProcessedEventStore.open(...)`` to create an instance.
    """

    def __init__(self, path: Path, max_entries: Optional[int] = None):
        self._path = path
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._order: list[str] = []
        self._records: dict[str, ProcessedEventRecord] = {}
        # Keys whose append has been queued but not yet written.
        self._unflushed: set[str] = set()
        self._writes = _WriteQueue()

    @classmethod
    async def open(
        cls,
        path: Optional[Union[str, Path]] = None,
        max_entries: Optional[int] = None,
    ) -> "ProcessedEventStore":
        """
        Load the store from disk, creating the file if needed.

        Raises:
            CorruptStoreError: If any non-blank line is not a valid record.
        """
        store = cls(Path(path) if path else DEFAULT_STORE_PATH.resolve(), max_entries)
        await asyncio.to_thread(store._load)
        if store._should_trim():
            evicted = store._evict_oldest()
            await asyncio.to_thread(store._rewrite_all)
            logger.info(
                "store_trimmed_on_load",
                path=str(store.path),
                evicted=evicted,
                size=store.size,
            )
        logger.info(
            "store_opened",
            path=str(store.path),
            size=store.size,
            max_entries=store.max_entries,
        )
        return store

    @property
    def path(self) -> Path:
        return self._path

    @property
    def size(self) -> int:
        return len(self._order)

    @property
    def max_entries(self) -> Optional[int]:
        return self._max_entries

    def has_processed(self, key: str) -> bool:
        return key in self._records

    def records(self) -> list[ProcessedEventRecord]:
        """Surviving records, oldest first."""
        return [self._records[key] for key in self._order]

    async def mark_processed(
        self,
        key: str,
        tx_hash: str,
        minted_at: Optional[int] = None,
    ) -> None:
        """
        Record ``key`` as processed.

        Marking a known key is a no-op. The in-memory index is updated before
        the durable write is awaited; a failed write raises here.
        """
        if key in self._records:
            return

        record = ProcessedEventRecord(
            key=key,
            tx_hash=tx_hash,
            minted_at=minted_at if minted_at is not None else now_ms(),
        )
        self._records[key] = record
        self._order.append(key)
        self._unflushed.add(key)

        async def write() -> None:
            if key not in self._records:
                # Evicted before its turn came.
                self._unflushed.discard(key)
                return
            try:
                await asyncio.to_thread(self._append_line, record.to_line())
            finally:
                self._unflushed.discard(key)
            if self._should_trim():
                evicted = self._evict_oldest()
                await asyncio.to_thread(self._rewrite_all)
                logger.debug("store_trimmed", evicted=evicted, size=self.size)

        await self._writes.submit(write)

    async def close(self) -> None:
        """Wait for queued writes and stop accepting new ones."""
        await self._writes.close()
        logger.info("store_closed", path=str(self.path), size=self.size)

    def _load(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            self._path.write_text("", encoding="utf-8")
            return

        with self._path.open("r", encoding="utf-8") as f:
            for line_number, raw in enumerate(f, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    record = ProcessedEventRecord.model_validate_json(line)
                except ValidationError as e:
                    raise CorruptStoreError(
                        self._path, line_number, line, str(e.errors()[0]["msg"])
                    ) from e
                if record.key in self._records:
                    continue
                self._records[record.key] = record
                self._order.append(record.key)

    def _should_trim(self) -> bool:
        return self._max_entries is not None and len(self._order) > self._max_entries

    def _evict_oldest(self) -> int:
        if self._max_entries is None:
            return 0
        excess = len(self._order) - self._max_entries
        if excess <= 0:
            return 0
        for key in self._order[:excess]:
            del self._records[key]
            self._unflushed.discard(key)
        del self._order[:excess]
        return excess

    def _append_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())

    def _rewrite_all(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            self._records[key].to_line()
            for key in self._order
            if key not in self._unflushed
        ]
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            f.writelines(lines)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)
