"""Configuration with 4-layer resolution: defaults -> YAML -> env -> CLI.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``CALL_INDEXER_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from call_indexer.retry import RetryPolicy, default_is_retryable

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class ChainSettings(BaseModel):
    """Chain RPC and registry contract configuration."""

    rpc_url: str | None = None
    registry_address: str | None = None
    start_block: int = Field(default=0, ge=0)
    batch_size: int = Field(
        default=10_000, gt=0, description="Blocks per historical query window."
    )
    poll_interval_seconds: float = Field(
        default=4.0, gt=0.0, description="Live subscription block polling interval."
    )
    request_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Per-request RPC timeout in seconds."
    )

    @property
    def configured(self) -> bool:
        return bool(self.rpc_url and self.registry_address)


class RetrySettings(BaseModel):
    """Default backoff policy and the historical query budget."""

    max_attempts: int = Field(default=4, ge=1)
    base_delay_ms: int = Field(default=1_000, gt=0)
    growth_factor: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30_000, gt=0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    query_attempts: int = Field(
        default=5, ge=1, description="Attempts for historical event queries."
    )
    query_base_delay_ms: int = Field(default=1_000, gt=0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetrySettings:
        if self.max_delay_ms < self.base_delay_ms:
            msg = "max_delay_ms must be >= base_delay_ms"
            raise ValueError(msg)
        return self

    def default_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            growth_factor=self.growth_factor,
            max_delay_ms=self.max_delay_ms,
            jitter=self.jitter,
            is_retryable=default_is_retryable,
        )

    def query_policy(self) -> RetryPolicy:
        return self.default_policy().with_overrides(
            max_attempts=self.query_attempts,
            base_delay_ms=self.query_base_delay_ms,
            max_delay_ms=max(self.max_delay_ms, self.query_base_delay_ms),
        )


class GatewaySettings(BaseModel):
    """Content gateway fallback configuration."""

    templates: list[str] = Field(
        default_factory=lambda: [
            "http://127.0.0.1:8080/ipfs/{cid}",
            "https://ipfs.io/ipfs/{cid}",
            "https://cloudflare-ipfs.com/ipfs/{cid}",
            "https://gateway.pinata.cloud/ipfs/{cid}",
        ],
        min_length=1,
    )
    timeout_seconds: float = Field(
        default=6.0, gt=0.0, description="Per-attempt request timeout in seconds."
    )
    attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=500, gt=0)
    max_delay_ms: int = Field(default=5_000, gt=0)
    sentinel_cid: str = Field(
        default="dev-sample",
        description="Content address answered with a canned payload, no network.",
    )


class ListenerSettings(BaseModel):
    """Live listener reconnect configuration."""

    max_reconnects: int = Field(default=10, ge=0, le=100)
    base_delay_ms: int = Field(default=1_000, gt=0)
    cap_delay_ms: int = Field(default=300_000, gt=0)


class StoreSettings(BaseModel):
    """Call record persistence configuration."""

    backend: Literal["memory", "json"] = "json"
    path: Path = Path("./data/calls.json")


class AuthSettings(BaseModel):
    """Originating-address validation configuration."""

    blocked_addresses: list[str] = Field(default_factory=list)


class NotificationSettings(BaseModel):
    """Notification emission configuration."""

    enabled: bool = True
    directory: Path | None = None
    buffer_size: int = Field(default=200, ge=1, le=10_000)


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``config.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``CALL_INDEXER_``)
        4. CLI overrides (applied programmatically after loading)
    """

    model_config = SettingsConfigDict(
        env_prefix="CALL_INDEXER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    chain: ChainSettings = Field(default_factory=ChainSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings (CLI) > env_settings > dotenv (.env) > yaml > defaults
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "config.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and CLI overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value CLI overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message."""
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
