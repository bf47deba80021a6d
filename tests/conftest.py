from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mirror.core.config import ChainConfig, Config, SchedulerConfig  # noqa: E402
from mirror.core.database import Database  # noqa: E402
from mirror.core.metrics import MetricsRegistry  # noqa: E402

ETH_REGISTRY = "0x049aba7510f45ba5b64ea9e658e342f904db358d"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    # The package runs on asyncio only (asyncio.Lock/sleep/gather/wait_for).
    return "asyncio"


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def db(temp_dir: Path):
    d = Database(temp_dir / "mirror.db")
    try:
        yield d
    finally:
        d.close()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def logger() -> logging.Logger:
    return logging.getLogger("mirror.test")


@pytest.fixture()
def eth_chain() -> ChainConfig:
    return ChainConfig(
        chain="ETH",
        network_id=1,
        provider="evm",
        rpc_url="https://rpc.example.test",
        registries=[{"address": ETH_REGISTRY, "kind": "uns"}],
        confirmation_blocks=0,
        max_reorg_depth=10,
    )


@pytest.fixture()
def zil_chain() -> ChainConfig:
    return ChainConfig(
        chain="ZIL",
        network_id=1,
        provider="zilliqa",
        rpc_url="https://zil.example.test",
        viewblock_url="https://viewblock.example.test/v1/zilliqa",
        viewblock_api_key="test-key",
        registry_address="0x9611c53be6d1b32058b2747bdececed7e1216793",
    )


@pytest.fixture()
def fast_scheduler() -> SchedulerConfig:
    return SchedulerConfig(
        poll_interval_s=0.01,
        batch_size=10,
        max_retries=2,
        backoff_base_s=0.0,
        backoff_max_s=0.0,
        fetch_timeout_s=5.0,
    )


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Repo defaults with data_dir pointed at a temp directory."""

    c = Config.from_yaml(REPO_ROOT / "config" / "default.yaml")
    return c.model_copy(update={"data_dir": temp_dir / "data"})
