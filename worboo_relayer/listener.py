"""
Polling listener for GameRecorded events.

Delivery is at-least-once: if a poll fails, the block range is read again on
the next poll, and after a restart polling resumes from the saved block
checkpoint, so consumers must deduplicate.
"""

import asyncio
from collections.abc import Mapping
from typing import Any, Optional

import structlog
from web3 import AsyncWeb3, Web3

from .checkpoint import BlockCheckpoint
from .evm import REGISTRY_ABI
from .handler import GameRecordedEvent

logger = structlog.get_logger()


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def parse_game_recorded(log: Mapping[str, Any]) -> GameRecordedEvent:
    """Convert decoded GameRecorded event data into a GameRecordedEvent."""
    args = log["args"]
    block_number = log.get("blockNumber")
    return GameRecordedEvent(
        player=Web3.to_checksum_address(args["player"]),
        day_id=int(args["dayId"]),
        word_hash=_to_hex(args["wordHash"]),
        guesses=int(args["guesses"]),
        victory=bool(args["victory"]),
        streak=int(args["streak"]),
        total_games=int(args["totalGames"]),
        total_wins=int(args["totalWins"]),
        transaction_hash=_to_hex(log["transactionHash"]),
        log_index=int(log["logIndex"]),
        block_number=int(block_number) if block_number is not None else None,
    )


class GameRecordedListener:
    """
    Polls the registry for GameRecorded logs and queues them in order.

    The first poll starts after the checkpoint's saved block when there is
    one, otherwise ``lookback_blocks`` behind the chain head.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        registry_address: str,
        poll_interval: float = 5.0,
        lookback_blocks: int = 0,
        contract: Optional[Any] = None,
        checkpoint: Optional[BlockCheckpoint] = None,
    ):
        self.w3 = w3
        self.registry_address = Web3.to_checksum_address(registry_address)
        self.poll_interval = poll_interval
        self.lookback_blocks = lookback_blocks
        self.contract = contract or w3.eth.contract(
            address=self.registry_address, abi=REGISTRY_ABI
        )
        self.checkpoint = checkpoint or BlockCheckpoint()
        self.last_processed_block: Optional[int] = None
        self.is_running = False
        self._stopped = asyncio.Event()

    async def poll_once(self, queue: "asyncio.Queue[GameRecordedEvent]") -> int:
        """
        Queue events from blocks not yet seen.

        Returns:
            Number of events queued.
        """
        current_block = await self.w3.eth.block_number

        last_block = self.last_processed_block
        if last_block is None:
            last_block = self.checkpoint.saved_block

        if last_block is None:
            from_block = max(0, current_block - self.lookback_blocks)
        elif current_block <= last_block:
            return 0
        else:
            from_block = last_block + 1

        logs = await self.contract.events.GameRecorded.get_logs(
            from_block=from_block, to_block=current_block
        )

        events = [parse_game_recorded(log) for log in logs]
        for event in events:
            self.checkpoint.track(event.block_number)
            queue.put_nowait(event)

        if events:
            logger.info(
                "game_recorded_logs_found",
                count=len(events),
                from_block=from_block,
                to_block=current_block,
            )

        self.last_processed_block = current_block
        self.checkpoint.advance(current_block)
        await self.checkpoint.save()
        return len(events)

    async def run(self, queue: "asyncio.Queue[GameRecordedEvent]") -> None:
        """Poll until ``stop`` is called."""
        self.is_running = True
        self._stopped.clear()
        logger.info(
            "listener_started",
            registry=self.registry_address,
            poll_interval=self.poll_interval,
            lookback_blocks=self.lookback_blocks,
            resume_after_block=self.checkpoint.saved_block,
        )

        while self.is_running:
            try:
                await self.poll_once(queue)
            except Exception as e:
                # Cursor is not advanced; the same range is retried next poll.
                logger.error(
                    "listener_poll_error",
                    from_block=self.last_processed_block,
                    error=str(e),
                )

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("listener_stopped", last_block=self.last_processed_block)

    def stop(self) -> None:
        self.is_running = False
        self._stopped.set()

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_processed_block": self.last_processed_block,
            "checkpoint_block": self.checkpoint.saved_block,
            "registry": self.registry_address,
        }
