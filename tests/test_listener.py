"""
Tests for the GameRecorded polling listener.
"""

import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from worboo_relayer.checkpoint import BlockCheckpoint
from worboo_relayer.handler import GameRecordedEvent, event_key
from worboo_relayer.listener import GameRecordedListener, parse_game_recorded

REGISTRY = "0x1111111111111111111111111111111111111111"
PLAYER = "0x" + "cd" * 20


def make_log(
    tx_byte: int = 0xAB, log_index: int = 0, victory: bool = True, block_number: int = 100
) -> dict[str, Any]:
    return {
        "args": {
            "player": PLAYER,
            "dayId": 19700,
            "wordHash": bytes(32),
            "guesses": 4,
            "victory": victory,
            "streak": 3,
            "totalGames": 10,
            "totalWins": 7,
        },
        "transactionHash": bytes([tx_byte]) * 32,
        "logIndex": log_index,
        "blockNumber": block_number,
    }


class FakeEth:
    """Stands in for ``AsyncWeb3.eth`` with a scripted chain head."""

    def __init__(self, heads: list[int]) -> None:
        self.heads = heads

    @property
    def block_number(self):
        async def _head() -> int:
            if len(self.heads) > 1:
                return self.heads.pop(0)
            return self.heads[0]

        return _head()


def make_listener(
    heads: list[int],
    logs: Any = None,
    lookback_blocks: int = 0,
    checkpoint: Optional[BlockCheckpoint] = None,
):
    get_logs = AsyncMock(return_value=logs if logs is not None else [])
    contract = SimpleNamespace(
        events=SimpleNamespace(GameRecorded=SimpleNamespace(get_logs=get_logs))
    )
    w3 = SimpleNamespace(eth=FakeEth(heads))
    listener = GameRecordedListener(
        w3,  # type: ignore[arg-type]
        REGISTRY,
        poll_interval=0.01,
        lookback_blocks=lookback_blocks,
        contract=contract,
        checkpoint=checkpoint,
    )
    return listener, get_logs


class TestParseGameRecorded:
    """Tests for parse_game_recorded."""

    def test_parses_decoded_log(self) -> None:
        event = parse_game_recorded(make_log(log_index=5))

        assert event.player.lower() == PLAYER
        assert event.day_id == 19700
        assert event.word_hash == "0x" + "00" * 32
        assert event.guesses == 4
        assert event.victory is True
        assert event.streak == 3
        assert event.total_games == 10
        assert event.total_wins == 7
        assert event.transaction_hash == "0x" + "ab" * 32
        assert event.log_index == 5
        assert event.block_number == 100
        assert event_key(event.transaction_hash, event.log_index) == "0x" + "ab" * 32 + ":5"

    def test_accepts_hex_strings(self) -> None:
        log = make_log()
        log["transactionHash"] = "ab" * 32

        assert parse_game_recorded(log).transaction_hash == "0x" + "ab" * 32


class TestPollOnce:
    """Tests for GameRecordedListener.poll_once."""

    @pytest.mark.asyncio
    async def test_first_poll_starts_at_lookback(self) -> None:
        listener, get_logs = make_listener([100], logs=[make_log()], lookback_blocks=10)
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        count = await listener.poll_once(queue)

        assert count == 1
        get_logs.assert_awaited_once_with(from_block=90, to_block=100)
        assert listener.last_processed_block == 100
        assert queue.get_nowait().log_index == 0

    @pytest.mark.asyncio
    async def test_lookback_clamped_at_genesis(self) -> None:
        listener, get_logs = make_listener([3], lookback_blocks=10)

        await listener.poll_once(asyncio.Queue())

        get_logs.assert_awaited_once_with(from_block=0, to_block=3)

    @pytest.mark.asyncio
    async def test_no_new_blocks_skips_query(self) -> None:
        listener, get_logs = make_listener([100, 100])
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        await listener.poll_once(queue)
        count = await listener.poll_once(queue)

        assert count == 0
        assert get_logs.await_count == 1

    @pytest.mark.asyncio
    async def test_cursor_advances_past_seen_blocks(self) -> None:
        listener, get_logs = make_listener([100, 105])

        await listener.poll_once(asyncio.Queue())
        await listener.poll_once(asyncio.Queue())

        assert get_logs.await_args_list[1].kwargs == {"from_block": 101, "to_block": 105}
        assert listener.last_processed_block == 105

    @pytest.mark.asyncio
    async def test_events_queued_in_log_order(self) -> None:
        logs = [make_log(0x01, 0), make_log(0x01, 1), make_log(0x02, 0, victory=False)]
        listener, _ = make_listener([50], logs=logs)
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        await listener.poll_once(queue)

        queued = [queue.get_nowait() for _ in range(queue.qsize())]
        keys = [event_key(e.transaction_hash, e.log_index) for e in queued]
        assert keys == [
            "0x" + "01" * 32 + ":0",
            "0x" + "01" * 32 + ":1",
            "0x" + "02" * 32 + ":0",
        ]

    @pytest.mark.asyncio
    async def test_failed_query_does_not_advance_cursor(self) -> None:
        listener, get_logs = make_listener([100, 105])
        await listener.poll_once(asyncio.Queue())
        get_logs.side_effect = ConnectionError("rpc down")

        with pytest.raises(ConnectionError):
            await listener.poll_once(asyncio.Queue())

        assert listener.last_processed_block == 100

    @pytest.mark.asyncio
    async def test_malformed_log_queues_nothing(self) -> None:
        bad = make_log(0x02, 1)
        del bad["args"]["streak"]
        listener, _ = make_listener([10], logs=[make_log(0x01, 0), bad])
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        with pytest.raises(KeyError):
            await listener.poll_once(queue)

        assert queue.empty()
        assert listener.last_processed_block is None


class TestRun:
    """Tests for the polling loop."""

    @pytest.mark.asyncio
    async def test_run_survives_poll_errors_and_stops(self) -> None:
        listener, get_logs = make_listener([10, 11, 12], logs=[make_log()])
        get_logs.side_effect = [ConnectionError("rpc down"), [make_log()]]
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        task = asyncio.create_task(listener.run(queue))
        event = await asyncio.wait_for(queue.get(), timeout=2)
        listener.stop()
        await asyncio.wait_for(task, timeout=2)

        assert event.log_index == 0
        assert listener.is_running is False
        assert listener.get_status()["last_processed_block"] is not None


class TestCheckpointResume:
    """Polling resumes after the saved checkpoint."""

    @pytest.mark.asyncio
    async def test_resumes_after_saved_block_instead_of_head(self) -> None:
        checkpoint = BlockCheckpoint(saved_block=99)
        listener, get_logs = make_listener(
            [105], logs=[make_log(block_number=100)], checkpoint=checkpoint
        )
        queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()

        await listener.poll_once(queue)

        get_logs.assert_awaited_once_with(from_block=100, to_block=105)
        assert queue.get_nowait().block_number == 100

    @pytest.mark.asyncio
    async def test_saved_block_at_head_waits_for_new_blocks(self) -> None:
        checkpoint = BlockCheckpoint(saved_block=105)
        listener, get_logs = make_listener([105], checkpoint=checkpoint)

        assert await listener.poll_once(asyncio.Queue()) == 0
        get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_queued_events_hold_the_checkpoint(self, tmp_path: Path) -> None:
        path = tmp_path / "checkpoint.json"
        checkpoint = BlockCheckpoint(path)
        logs = [make_log(0x01, 0, block_number=98), make_log(0x02, 0, block_number=101)]
        listener, _ = make_listener([105], logs=logs, lookback_blocks=10, checkpoint=checkpoint)

        await listener.poll_once(asyncio.Queue())

        assert checkpoint.saved_block == 97
        assert path.exists()

        checkpoint.settle(98, succeeded=True)
        checkpoint.settle(101, succeeded=True)
        await checkpoint.save()
        assert checkpoint.saved_block == 105
        assert listener.get_status()["checkpoint_block"] == 105

    @pytest.mark.asyncio
    async def test_failed_poll_leaves_checkpoint_alone(self) -> None:
        checkpoint = BlockCheckpoint(saved_block=99)
        listener, get_logs = make_listener([105], checkpoint=checkpoint)
        get_logs.side_effect = ConnectionError("rpc down")

        with pytest.raises(ConnectionError):
            await listener.poll_once(asyncio.Queue())

        assert checkpoint.saved_block == 99
        assert listener.last_processed_block is None
