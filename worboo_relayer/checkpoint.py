"""
Durable block checkpoint for the GameRecorded listener.

The saved block is the highest block at or below which every delivered event
has been settled. An event whose reward failed, or that was still being
handled at shutdown, holds the checkpoint below its block so the listener
reads that block again after a restart. Replayed events that were already
rewarded are skipped by the processed-event store.

File format::

    {"block": 12345}
"""

import asyncio
import json
import os
from collections import Counter
from pathlib import Path
from typing import Optional, Union

import structlog

logger = structlog.get_logger()


class CorruptCheckpointError(Exception):
    """Raised when the checkpoint file does not hold a block number."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"Invalid block checkpoint at {path}: {reason}")


def default_checkpoint_path(store_path: Path) -> Path:
    """Checkpoint file kept next to the processed-event log."""
    return store_path.with_name(store_path.stem + ".checkpoint.json")


class BlockCheckpoint:
    """
    Tracks which scanned blocks still have unsettled events.

    Without a path the checkpoint lives in memory only.
    """

    def __init__(self, path: Optional[Path] = None, saved_block: Optional[int] = None):
        self.path = path
        self.saved_block = saved_block
        self._scanned_block: Optional[int] = None
        self._pending: Counter[int] = Counter()
        self._held: set[int] = set()
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Union[str, Path]) -> "BlockCheckpoint":
        """
        Load the checkpoint, if one was saved.

        Raises:
            CorruptCheckpointError: If the file exists but is not valid.
        """
        path = Path(path)
        saved_block = await asyncio.to_thread(_read_block, path)
        logger.info("checkpoint_opened", path=str(path), block=saved_block)
        return cls(path, saved_block)

    @property
    def safe_block(self) -> Optional[int]:
        """Highest block that is fully settled, or None if nothing is known."""
        if self._scanned_block is None:
            return self.saved_block
        open_blocks = [block for block, count in self._pending.items() if count > 0]
        open_blocks.extend(self._held)
        if open_blocks:
            return min(open_blocks) - 1
        return self._scanned_block

    def track(self, block: Optional[int]) -> None:
        """Note that an event from ``block`` was handed to the relayer."""
        if block is not None:
            self._pending[block] += 1

    def settle(self, block: Optional[int], succeeded: bool) -> None:
        """
        Note that an event from ``block`` finished handling.

        A failed event keeps its block held for the rest of the process.
        """
        if block is None:
            return
        self._pending[block] -= 1
        if self._pending[block] <= 0:
            del self._pending[block]
        if not succeeded:
            self._held.add(block)

    def advance(self, block: int) -> None:
        """Record that every block up to ``block`` has been scanned."""
        self._scanned_block = block

    async def save(self) -> None:
        """Persist the current safe block if it changed."""
        async with self._lock:
            block = self.safe_block
            if block is None or block == self.saved_block:
                return
            if self.path is not None:
                await asyncio.to_thread(_write_block, self.path, block)
            self.saved_block = block
            logger.debug("checkpoint_saved", block=block, held=sorted(self._held))


def _read_block(path: Path) -> Optional[int]:
    if not path.exists():
        return None
    text = path.read_text(encoding="utf-8")
    try:
        block = json.loads(text)["block"]
    except (ValueError, KeyError, TypeError) as e:
        raise CorruptCheckpointError(path, str(e)) from e
    if not isinstance(block, int) or isinstance(block, bool) or block < 0:
        raise CorruptCheckpointError(path, f"block must be a non-negative integer, got {block!r}")
    return block


def _write_block(path: Path, block: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump({"block": block}, f)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
