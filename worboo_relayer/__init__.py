"""
Worboo Reward Relayer

Watches the WorbooRegistry for GameRecorded events and mints WorbooToken
rewards to winning players, at most once per event.

Usage:
    # Run the relayer
    worboo-relayer run --env-file .env

    # Inspect the processed-event store
    worboo-relayer store-info .cache/processed-events.jsonl
"""

__version__ = "0.1.0"

from .config import ConfigurationError, Settings, load_settings
from .handler import GameRecordedEvent, GameRecordedHandler, HandleOutcome, HandleResult
from .metrics import RelayerMetrics
from .retry import RetryExhaustedError, RetryPolicy, run_with_retry
from .store import CorruptStoreError, ProcessedEventRecord, ProcessedEventStore

__all__ = [
    "__version__",
    "ConfigurationError",
    "Settings",
    "load_settings",
    "GameRecordedEvent",
    "GameRecordedHandler",
    "HandleOutcome",
    "HandleResult",
    "RelayerMetrics",
    "RetryExhaustedError",
    "RetryPolicy",
    "run_with_retry",
    "CorruptStoreError",
    "ProcessedEventRecord",
    "ProcessedEventStore",
]
