"""
Tests for GameRecorded handling.
"""

import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Optional

import pytest

from worboo_relayer.handler import (
    GameRecordedEvent,
    GameRecordedHandler,
    HandleOutcome,
    HandlerAction,
    event_key,
    plan_event,
)
from worboo_relayer.metrics import RelayerMetrics
from worboo_relayer.store import ProcessedEventStore

PLAYER = "0x1111111111111111111111111111111111111111"
REWARD = 10 * 10**18


def make_event(
    tx_hash: str = "0xabc", log_index: int = 1, victory: bool = True
) -> GameRecordedEvent:
    return GameRecordedEvent(
        player=PLAYER,
        day_id=19700,
        word_hash="0x" + "00" * 32,
        guesses=3,
        victory=victory,
        streak=2,
        total_games=5,
        total_wins=4,
        transaction_hash=tx_hash,
        log_index=log_index,
    )


class FakeMint:
    """Mint action that fails a set number of times before succeeding."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, int]] = []

    async def __call__(self, recipient: str, amount: int) -> str:
        self.calls.append((recipient, amount))
        if len(self.calls) <= self.failures:
            raise ConnectionError("rpc timeout")
        return f"0xmint{len(self.calls)}"


class FailingStore:
    """Store whose durable write always fails."""

    def __init__(self) -> None:
        self.keys: set[str] = set()

    def has_processed(self, key: str) -> bool:
        return key in self.keys

    async def mark_processed(
        self, key: str, tx_hash: str, minted_at: Optional[int] = None
    ) -> None:
        self.keys.add(key)
        raise OSError("no space left on device")


def make_handler(store, mint, metrics=None, max_retries: int = 3) -> GameRecordedHandler:
    return GameRecordedHandler(
        store=store,
        mint=mint,
        reward_per_win=REWARD,
        metrics=metrics or RelayerMetrics(),
        max_retries=max_retries,
        backoff_ms=0,
    )


class TestPlanEvent:
    """Tests for the pure decision function."""

    def test_event_key(self) -> None:
        assert event_key("0xabc", 1) == "0xabc:1"

    def test_non_victory_is_ignored(self) -> None:
        assert plan_event(make_event(victory=False), lambda key: False) is HandlerAction.IGNORE

    def test_known_key_is_skipped(self) -> None:
        assert plan_event(make_event(), lambda key: key == "0xabc:1") is HandlerAction.SKIP

    def test_new_victory_is_minted(self) -> None:
        assert plan_event(make_event(), lambda key: False) is HandlerAction.MINT


class TestGameRecordedHandler:
    """Tests for GameRecordedHandler.handle."""

    @pytest.mark.asyncio
    async def test_mints_and_records_victory(self, tmp_path: Path) -> None:
        store = await ProcessedEventStore.open(tmp_path / "events.jsonl")
        mint = FakeMint()
        metrics = RelayerMetrics()

        result = await make_handler(store, mint, metrics).handle(make_event())

        assert result.outcome is HandleOutcome.DONE
        assert result.key == "0xabc:1"
        assert result.tx_hash == "0xmint1"
        assert mint.calls == [(PLAYER, REWARD)]
        assert store.has_processed("0xabc:1")
        snapshot = metrics.snapshot()
        assert snapshot["victories_seen"] == 1
        assert snapshot["mints_succeeded"] == 1
        assert snapshot["mints_failed"] == 0
        await store.close()

        [line] = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(line)["txHash"] == "0xmint1"

    @pytest.mark.asyncio
    async def test_non_victory_does_nothing(self, tmp_path: Path) -> None:
        store = await ProcessedEventStore.open(tmp_path / "events.jsonl")
        mint = FakeMint()
        metrics = RelayerMetrics()

        result = await make_handler(store, mint, metrics).handle(make_event(victory=False))

        assert result.outcome is HandleOutcome.IGNORED
        assert mint.calls == []
        assert store.size == 0
        assert metrics.snapshot()["victories_seen"] == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        store = await ProcessedEventStore.open(path)
        mint = FakeMint()
        handler = make_handler(store, mint)
        event = make_event()

        first = await handler.handle(event)
        lines_after_first = path.read_text(encoding="utf-8")
        second = await handler.handle(replace(event))

        assert first.outcome is HandleOutcome.DONE
        assert second.outcome is HandleOutcome.SKIPPED
        assert len(mint.calls) == 1
        assert path.read_text(encoding="utf-8") == lines_after_first
        await store.close()

    @pytest.mark.asyncio
    async def test_skipped_after_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        store = await ProcessedEventStore.open(path)
        await make_handler(store, FakeMint()).handle(make_event())
        await store.close()

        reopened = await ProcessedEventStore.open(path)
        mint = FakeMint()
        result = await make_handler(reopened, mint).handle(make_event())

        assert result.outcome is HandleOutcome.SKIPPED
        assert mint.calls == []
        await reopened.close()

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, tmp_path: Path) -> None:
        store = await ProcessedEventStore.open(tmp_path / "events.jsonl")
        mint = FakeMint(failures=2)
        metrics = RelayerMetrics()

        result = await make_handler(store, mint, metrics).handle(make_event())

        assert result.outcome is HandleOutcome.DONE
        assert result.tx_hash == "0xmint3"
        assert len(mint.calls) == 3
        assert metrics.snapshot()["attempt_failures"] == 2
        assert metrics.snapshot()["mints_succeeded"] == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_event_unprocessed(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        store = await ProcessedEventStore.open(path)
        mint = FakeMint(failures=100)
        metrics = RelayerMetrics()

        result = await make_handler(store, mint, metrics, max_retries=3).handle(make_event())

        assert result.outcome is HandleOutcome.FAILED
        assert result.error == "rpc timeout"
        assert len(mint.calls) == 4
        assert store.has_processed("0xabc:1") is False
        snapshot = metrics.snapshot()
        assert snapshot["mints_failed"] == 1
        assert snapshot["attempt_failures"] == 4
        assert snapshot["mints_succeeded"] == 0
        assert snapshot["last_error"] == "rpc timeout"
        await store.close()
        assert path.read_text(encoding="utf-8") == ""

    @pytest.mark.asyncio
    async def test_failed_event_is_retried_on_redelivery(self, tmp_path: Path) -> None:
        store = await ProcessedEventStore.open(tmp_path / "events.jsonl")
        mint = FakeMint(failures=2)
        handler = make_handler(store, mint, max_retries=1)

        first = await handler.handle(make_event())
        second = await handler.handle(make_event())

        assert first.outcome is HandleOutcome.FAILED
        assert second.outcome is HandleOutcome.DONE
        assert len(mint.calls) == 3
        await store.close()

    @pytest.mark.asyncio
    async def test_commit_failure_is_reported(self) -> None:
        mint = FakeMint()
        metrics = RelayerMetrics()

        result = await make_handler(FailingStore(), mint, metrics).handle(make_event())

        assert result.outcome is HandleOutcome.COMMIT_FAILED
        assert result.tx_hash == "0xmint1"
        assert "no space left" in (result.error or "")
        snapshot = metrics.snapshot()
        assert snapshot["commit_failures"] == 1
        assert snapshot["mints_succeeded"] == 0

    @pytest.mark.asyncio
    async def test_handles_distinct_events_concurrently(self, tmp_path: Path) -> None:
        store = await ProcessedEventStore.open(tmp_path / "events.jsonl")
        mint = FakeMint()
        handler = make_handler(store, mint)
        events = [make_event(tx_hash=f"0x{i:02x}", log_index=i) for i in range(8)]

        results = await asyncio.gather(*(handler.handle(e) for e in events))

        assert all(r.outcome is HandleOutcome.DONE for r in results)
        assert store.size == 8
        assert len(mint.calls) == 8
        await store.close()

    @pytest.mark.asyncio
    async def test_same_key_race_records_once(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        store = await ProcessedEventStore.open(path)
        handler = make_handler(store, FakeMint())

        await asyncio.gather(handler.handle(make_event()), handler.handle(make_event()))
        await store.close()

        assert len(path.read_text(encoding="utf-8").splitlines()) == 1
