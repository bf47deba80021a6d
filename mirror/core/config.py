"""mirror.core.config

Config surfaces:
1) ``config/default.yaml`` (chains, registries, tuning)
2) Environment variables, ``MIRROR_`` prefix (secrets and overrides; they win)

An untracked ``config/local.yaml`` next to the defaults is merged on top.

Everything else is derived.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from mirror.core.events import DEFAULT_RECORD_KEYS, Chain
from mirror.core.exceptions import ConfigError

ProviderName = Literal["evm", "zilliqa"]


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file is not valid YAML: {path}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return raw


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ClientSettings(BaseModel):
    rate_limit_rps: float = 5.0
    rate_limit_burst: int = 1
    max_retries: int = 2
    timeout_s: float = 20.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_s: float = 30.0


class SchedulerConfig(BaseModel):
    poll_interval_s: float = 15.0
    batch_size: int = 500
    max_retries: int = 5
    backoff_base_s: float = 1.0
    backoff_max_s: float = 60.0
    fetch_timeout_s: float = 60.0

    @field_validator("batch_size", "max_retries")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class RegistryConfig(BaseModel):
    address: str
    kind: Literal["uns", "cns"] = "uns"

    @field_validator("address")
    @classmethod
    def lowercase_hex(cls, v: str) -> str:
        v = v.strip().lower()
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError(f"registry address must be 0x-prefixed 20-byte hex, got {v}")
        return v


class ChainConfig(BaseModel):
    """One mirrored (chain, network) pair. Each gets its own loop and checkpoint."""

    chain: Chain
    network_id: int
    provider: ProviderName
    enabled: bool = True
    rpc_url: str = ""
    batch_size: int | None = None

    # Height-cursor chains
    registries: list[RegistryConfig] = Field(default_factory=list)
    start_block: int = 0
    confirmation_blocks: int = 3
    max_reorg_depth: int = 50
    # CNS resolver keys loaded on `Resolve`
    record_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_RECORD_KEYS))

    # Sequence-cursor chains
    viewblock_url: str = "https://api.viewblock.io/v1/zilliqa"
    viewblock_api_key: str = ""
    network: str = "mainnet"
    registry_address: str = ""
    start_atxuid: int = 0

    @property
    def key(self) -> str:
        return f"{self.chain}:{self.network_id}"

    @model_validator(mode="after")
    def provider_matches_chain(self) -> ChainConfig:
        if self.provider == "zilliqa" and self.chain != Chain.ZIL:
            raise ValueError(f"zilliqa provider cannot mirror {self.chain}")
        if self.provider == "evm" and self.chain == Chain.ZIL:
            raise ValueError("evm provider cannot mirror ZIL")
        return self

    def api_key(self) -> str:
        return self.viewblock_api_key or os.getenv("MIRROR_VIEWBLOCK_API_KEY", "")


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    data_dir: Path = Path("data")
    db_filename: str = "mirror.db"

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    client: ClientSettings = Field(default_factory=ClientSettings)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    chains: list[ChainConfig] = Field(default_factory=list)

    model_config = {"env_prefix": "MIRROR_", "env_nested_delimiter": "__"}

    @field_validator("chains")
    @classmethod
    def unique_chain_networks(cls, v: list[ChainConfig]) -> list[ChainConfig]:
        seen: set[str] = set()
        for c in v:
            if c.key in seen:
                raise ValueError(f"duplicate chain/network: {c.key}")
            seen.add(c.key)
        return v

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    def enabled_chains(self) -> list[ChainConfig]:
        return [c for c in self.chains if c.enabled]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats YAML.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        """Load ``path``, overlaid with ``local.yaml`` from the same directory if present."""

        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        raw = _read_yaml(path)
        local = path.parent / "local.yaml"
        if local.exists() and local != path:
            raw = _deep_merge(raw, _read_yaml(local))

        try:
            return cls(**raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid config {path}: {e}") from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")
