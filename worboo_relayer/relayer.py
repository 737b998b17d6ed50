"""
Main relayer logic - watches GameRecorded events and mints rewards.
"""

import asyncio
import signal
from typing import Optional

import structlog

from .checkpoint import BlockCheckpoint, default_checkpoint_path
from .config import Settings
from .evm import RewardTokenClient, create_web3
from .handler import GameRecordedEvent, GameRecordedHandler, HandleOutcome, HandleResult
from .health import HealthServer, build_health_snapshot, create_health_app
from .listener import GameRecordedListener
from .metrics import RelayerMetrics
from .store import ProcessedEventStore

logger = structlog.get_logger()


class RewardRelayer:
    """
    Wires the listener, handler, store and health server together.

    1. Polls the registry for GameRecorded events
    2. Hands each event to the handler in its own task
    3. On stop, drains pending store writes before returning
    """

    def __init__(
        self,
        settings: Settings,
        store: ProcessedEventStore,
        handler: GameRecordedHandler,
        listener: GameRecordedListener,
        metrics: RelayerMetrics,
        health_server: Optional[HealthServer] = None,
        checkpoint: Optional[BlockCheckpoint] = None,
    ):
        self.settings = settings
        self.store = store
        self.handler = handler
        self.listener = listener
        self.metrics = metrics
        self.health_server = health_server
        self.checkpoint = checkpoint or BlockCheckpoint()
        self.queue: asyncio.Queue[GameRecordedEvent] = asyncio.Queue()
        self._in_flight: set[asyncio.Task[HandleResult]] = set()
        self._shutdown = asyncio.Event()

    @classmethod
    async def from_settings(cls, settings: Settings) -> "RewardRelayer":
        """
        Build a relayer from settings.

        Raises:
            CorruptStoreError: If the processed-event log cannot be trusted.
            CorruptCheckpointError: If the block checkpoint cannot be read.
        """
        store = await ProcessedEventStore.open(
            settings.cache_path, max_entries=settings.cache_max_entries
        )
        checkpoint = await BlockCheckpoint.open(
            settings.checkpoint_path or default_checkpoint_path(store.path)
        )
        metrics = RelayerMetrics(RelayerMetrics.resolve_default_path(settings.health_path))

        w3 = create_web3(settings.rpc_url)
        token = RewardTokenClient(
            w3,
            token_address=settings.token_address,
            private_key=settings.private_key,
            chain_id=settings.chain_id,
            receipt_timeout=settings.receipt_timeout_seconds,
        )
        handler = GameRecordedHandler(
            store=store,
            mint=token.mint,
            reward_per_win=settings.reward_per_win_wei,
            metrics=metrics,
            max_retries=settings.max_retries,
            backoff_ms=settings.backoff_ms,
        )
        listener = GameRecordedListener(
            w3,
            registry_address=settings.registry_address,
            poll_interval=settings.poll_interval_seconds,
            lookback_blocks=settings.lookback_blocks,
            checkpoint=checkpoint,
        )
        health_app = create_health_app(
            lambda: build_health_snapshot(metrics, store),
            cors_origin=settings.health_cors_origin,
        )
        health_server = HealthServer(
            health_app, host=settings.health_host, port=settings.health_port
        )

        logger.info(
            "relayer_initialized",
            operator=token.operator_address,
            reward_wei=settings.reward_per_win_wei,
            cache=str(store.path),
            checkpoint=str(checkpoint.path),
            resume_after_block=checkpoint.saved_block,
            health_file=str(metrics.health_path),
            **settings.describe(),
        )
        return cls(settings, store, handler, listener, metrics, health_server, checkpoint)

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows event loops; KeyboardInterrupt still reaches run().
                pass

    async def run(self) -> None:
        """Run until ``stop`` is called."""
        logger.info("relayer_starting")

        if self.health_server is not None:
            await self.health_server.start()

        listener_task = asyncio.create_task(self.listener.run(self.queue))
        try:
            while not self._shutdown.is_set():
                get_event = asyncio.create_task(self.queue.get())
                shutdown_wait = asyncio.create_task(self._shutdown.wait())
                done, _ = await asyncio.wait(
                    {get_event, shutdown_wait, listener_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                shutdown_wait.cancel()

                if get_event in done:
                    self._dispatch(get_event.result())
                else:
                    get_event.cancel()

                if listener_task in done:
                    # Surface unexpected listener crashes.
                    listener_task.result()
                    break
        finally:
            await self._shutdown_components(listener_task)

    def stop(self) -> None:
        """Request a graceful shutdown."""
        if not self._shutdown.is_set():
            logger.info("relayer_stopping")
        self._shutdown.set()

    def _dispatch(self, event: GameRecordedEvent) -> None:
        logger.info(
            "game_recorded_received",
            player=event.player,
            victory=event.victory,
            streak=event.streak,
            total_wins=event.total_wins,
            tx_hash=event.transaction_hash,
            log_index=event.log_index,
        )
        task = asyncio.create_task(self._handle(event))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _handle(self, event: GameRecordedEvent) -> HandleResult:
        result = await self.handler.handle(event)
        # A mint that went through must not be replayed, even if recording it failed.
        self.checkpoint.settle(
            event.block_number, succeeded=result.outcome is not HandleOutcome.FAILED
        )
        try:
            await self.checkpoint.save()
        except OSError as e:
            logger.error("checkpoint_save_failed", block=event.block_number, error=str(e))
        return result

    async def _shutdown_components(self, listener_task: "asyncio.Task[None]") -> None:
        self.listener.stop()
        try:
            await listener_task
        except Exception as e:
            logger.error("listener_task_failed", error=str(e))

        # Unfinished mints are abandoned; their events are not marked
        # processed and will be redelivered after restart.
        in_flight = list(self._in_flight)
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
            logger.info("in_flight_events_abandoned", count=len(in_flight))

        await self.store.close()

        # Abandoned events are still pending, so this stays below their blocks.
        try:
            await self.checkpoint.save()
        except OSError as e:
            logger.error("checkpoint_save_failed", error=str(e))
        await self.metrics.flush()

        if self.health_server is not None:
            await self.health_server.stop()

        logger.info("relayer_stopped", processed=self.store.size)
