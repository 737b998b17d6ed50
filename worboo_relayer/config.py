"""
Configuration management for the Worboo reward relayer.

Values come from, in order of precedence:
1. ``RELAYER_*`` environment variables
2. A ``.env`` file
3. A JSON file named by ``RELAYER_CONFIG_PATH`` (camelCase or snake_case keys)
"""

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic.alias_generators import to_snake
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from web3 import Web3

CONFIG_PATH_ENV = "RELAYER_CONFIG_PATH"

_DISABLED_VALUES = {"", "disable", "disabled", "off", "none", "false"}

# Checked in this order so the first missing one is reported.
_REQUIRED_FIELDS = (
    ("rpc_url", "RELAYER_RPC_URL", "RPC endpoint of the Worboo chain"),
    ("private_key", "RELAYER_PRIVATE_KEY", "key of the account allowed to mint rewards"),
    ("registry_address", "RELAYER_REGISTRY_ADDRESS", "WorbooRegistry contract address"),
    ("token_address", "RELAYER_TOKEN_ADDRESS", "WorbooToken contract address"),
)


# File keys whose snake_case form differs from the field name.
_FILE_KEY_RENAMES = {"log_file_path": "log_file"}


class ConfigurationError(ValueError):
    """Raised when the relayer cannot start with the given configuration."""


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValueError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a JSON object")

    values: dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake(key)
        values[_FILE_KEY_RENAMES.get(name, name)] = value
    return values


class ConfigFileSettingsSource(InitSettingsSource):
    """
    Values from the JSON file named by ``RELAYER_CONFIG_PATH``.

    Keys may be camelCase (``rpcUrl``, ``cacheMaxEntries``, ``logFilePath``)
    or snake_case field names.
    """

    def __init__(self, settings_cls: type[BaseSettings], json_file: Path):
        self.json_file = json_file
        super().__init__(settings_cls, _read_config_file(json_file))

    def __repr__(self) -> str:
        return f"ConfigFileSettingsSource(json_file={self.json_file!r})"


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    # EVM network
    rpc_url: str = ""
    private_key: str = ""
    chain_id: Optional[int] = None

    # Contract addresses
    registry_address: str = ""
    token_address: str = ""

    # Rewards, in whole tokens (18 decimals on-chain)
    reward_per_win: Decimal = Field(default=Decimal("10"), ge=0)

    # Mint retries
    max_retries: int = Field(default=3, ge=0)
    backoff_ms: int = Field(default=1000, ge=0)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)

    # Event polling
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    lookback_blocks: int = Field(default=0, ge=0)

    # Processed-event store
    cache_path: Optional[Path] = None
    cache_max_entries: Optional[int] = Field(default=None, ge=0)
    checkpoint_path: Optional[Path] = None

    # Health reporting
    health_path: Optional[Path] = None
    health_host: str = "0.0.0.0"
    health_port: int = Field(default=8787, ge=0, le=65535)
    health_cors_origin: Optional[str] = "*"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    log_backup_count: int = Field(
        default=5,
        ge=0,
        validation_alias=AliasChoices("RELAYER_LOG_BACKUPS", "log_backup_count"),
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources = [init_settings, env_settings, dotenv_settings]
        config_path = os.environ.get(CONFIG_PATH_ENV)
        if config_path:
            sources.append(ConfigFileSettingsSource(settings_cls, Path(config_path)))
        sources.append(file_secret_settings)
        return tuple(sources)

    @field_validator("registry_address", "token_address")
    @classmethod
    def _checksum_address(cls, value: str) -> str:
        if not value:
            return value
        if not Web3.is_address(value):
            raise ValueError(f"invalid address: {value}")
        return Web3.to_checksum_address(value)

    @field_validator("health_cors_origin", mode="before")
    @classmethod
    def _normalise_cors_origin(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        if text.lower() in _DISABLED_VALUES:
            return None
        return text

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def reward_per_win_wei(self) -> int:
        """Reward amount in the token's smallest unit."""
        return int(Web3.to_wei(self.reward_per_win, "ether"))

    def require_complete(self) -> None:
        """Raise ConfigurationError naming the first missing required value."""
        for field_name, env_name, description in _REQUIRED_FIELDS:
            if not getattr(self, field_name):
                raise ConfigurationError(
                    f"{env_name} is required ({description})"
                )

    def describe(self) -> dict[str, Any]:
        """Settings safe to log (no signing key)."""
        return {
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "registry": self.registry_address,
            "token": self.token_address,
            "reward_per_win": str(self.reward_per_win),
            "max_retries": self.max_retries,
            "backoff_ms": self.backoff_ms,
            "cache_path": str(self.cache_path) if self.cache_path else None,
            "cache_max_entries": self.cache_max_entries,
            "checkpoint_path": str(self.checkpoint_path) if self.checkpoint_path else None,
            "lookback_blocks": self.lookback_blocks,
            "health_path": str(self.health_path) if self.health_path else None,
            "health_host": self.health_host,
            "health_port": self.health_port,
            "health_cors_origin": self.health_cors_origin or "disabled",
            "private_key": "[SET]" if self.private_key else "[NOT SET]",
        }


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Load and validate the relayer settings.

    Raises:
        ConfigurationError: If a value is invalid or a required one is missing.
    """
    try:
        settings = Settings(_env_file=env_file) if env_file else Settings()
    except ValueError as e:
        raise ConfigurationError(f"Invalid relayer configuration: {e}") from e

    settings.require_complete()
    return settings
