"""
GameRecorded handling: dedup, mint with retries, commit.

For every victory delivered by the listener:

1. Derive the dedup key from the event's transaction hash and log index
2. Skip it if the store already holds the key
3. Mint the reward through the retry executor
4. Record the key in the store once the mint is confirmed
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import structlog

from .retry import RetryExhaustedError, run_with_retry

logger = structlog.get_logger()

# (recipient, amount in wei) -> mint transaction hash
MintAction = Callable[[str, int], Awaitable[str]]


@dataclass(frozen=True)
class GameRecordedEvent:
    """A GameRecorded log emitted by the Worboo registry."""

    player: str
    day_id: int
    word_hash: str
    guesses: int
    victory: bool
    streak: int
    total_games: int
    total_wins: int
    transaction_hash: str
    log_index: int
    block_number: Optional[int] = None


def event_key(transaction_hash: str, log_index: int) -> str:
    """Dedup key for one log occurrence."""
    return f"{transaction_hash}:{log_index}"


class HandlerAction(Enum):
    IGNORE = "ignore"
    SKIP = "skip"
    MINT = "mint"


class HandleOutcome(Enum):
    IGNORED = "ignored"
    SKIPPED = "skipped"
    DONE = "done"
    COMMIT_FAILED = "commit_failed"
    FAILED = "failed"


@dataclass
class HandleResult:
    """Terminal state of one handling cycle."""

    outcome: HandleOutcome
    key: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None


class EventStore(Protocol):
    def has_processed(self, key: str) -> bool: ...

    async def mark_processed(
        self, key: str, tx_hash: str, minted_at: Optional[int] = None
    ) -> None: ...


class HandlerMetrics(Protocol):
    def record_game_victory(self) -> None: ...

    def record_mint_success(self) -> None: ...

    def record_attempt_failure(self, error: Optional[BaseException] = None) -> None: ...

    def record_mint_failure(self, error: Optional[BaseException] = None) -> None: ...

    def record_commit_failure(self, error: Optional[BaseException] = None) -> None: ...


def plan_event(
    event: GameRecordedEvent, has_processed: Callable[[str], bool]
) -> HandlerAction:
    """Decide what to do with an event given the current store contents."""
    if not event.victory:
        return HandlerAction.IGNORE
    if has_processed(event_key(event.transaction_hash, event.log_index)):
        return HandlerAction.SKIP
    return HandlerAction.MINT


class GameRecordedHandler:
    """
    Rewards victories exactly once per stored key.

    Failures never escape ``handle``; they are reported through the metrics
    object and the returned ``HandleResult``.
    """

    def __init__(
        self,
        store: EventStore,
        mint: MintAction,
        reward_per_win: int,
        metrics: HandlerMetrics,
        max_retries: int = 3,
        backoff_ms: int = 1000,
    ):
        self.store = store
        self.mint = mint
        self.reward_per_win = reward_per_win
        self.metrics = metrics
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms

    async def handle(self, event: GameRecordedEvent) -> HandleResult:
        key = event_key(event.transaction_hash, event.log_index)
        action = plan_event(event, self.store.has_processed)

        if action is HandlerAction.IGNORE:
            logger.debug("game_recorded_not_victory", key=key, player=event.player)
            return HandleResult(outcome=HandleOutcome.IGNORED, key=key)

        self.metrics.record_game_victory()

        if action is HandlerAction.SKIP:
            logger.debug("game_recorded_already_processed", key=key, player=event.player)
            return HandleResult(outcome=HandleOutcome.SKIPPED, key=key)

        def on_failure(attempt: int, error: Exception) -> None:
            self.metrics.record_attempt_failure(error)
            logger.warning(
                "mint_attempt_failed",
                key=key,
                player=event.player,
                attempt=attempt,
                max_attempts=self.max_retries + 1,
                error=str(error),
            )

        try:
            tx_hash = await run_with_retry(
                lambda: self.mint(event.player, self.reward_per_win),
                max_retries=self.max_retries,
                backoff_ms=self.backoff_ms,
                on_failure=on_failure,
            )
        except RetryExhaustedError as e:
            self.metrics.record_mint_failure(e.last_error)
            logger.error(
                "mint_failed",
                key=key,
                player=event.player,
                day_id=event.day_id,
                attempts=e.attempts,
                error=str(e.last_error),
            )
            return HandleResult(
                outcome=HandleOutcome.FAILED, key=key, error=str(e.last_error)
            )

        try:
            await self.store.mark_processed(key, tx_hash)
        except Exception as e:
            self.metrics.record_commit_failure(e)
            logger.error(
                "mint_commit_failed",
                key=key,
                player=event.player,
                day_id=event.day_id,
                mint_tx_hash=tx_hash,
                error=str(e),
            )
            return HandleResult(
                outcome=HandleOutcome.COMMIT_FAILED, key=key, tx_hash=tx_hash, error=str(e)
            )

        self.metrics.record_mint_success()
        logger.info(
            "reward_minted",
            key=key,
            player=event.player,
            day_id=event.day_id,
            streak=event.streak,
            amount=self.reward_per_win,
            tx_hash=tx_hash,
        )
        return HandleResult(outcome=HandleOutcome.DONE, key=key, tx_hash=tx_hash)
