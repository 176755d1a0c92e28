"""pytest 配置和共享 fixtures。pytest configuration and shared fixtures."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from portrelay.config import GatewayConfig
from portrelay.tools.reconciler import Reconciler
from portrelay.tools.remote_executor import RemoteExecutor
from portrelay.tools.rule_store import RuleStore

from test_utils import FakeExecutor, FakeGateway, session_factory


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """临时目录 fixture。Temporary directory fixture."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def gateway_config() -> GatewayConfig:
    """双栈网关配置。Dual-stack gateway config with no settle delay."""
    return GatewayConfig(
        host="vps.example.net",
        ssh_port=9001,
        username="root",
        password="secret",
        homelab_ipv4="10.0.0.2",
        homelab_ipv6="fd42:42:42::2",
        settle_seconds=0,
        reconnect_backoff_seconds=1,
    )


@pytest.fixture
def gateway_config_v4(gateway_config: GatewayConfig) -> GatewayConfig:
    """仅 IPv4 的网关配置。IPv4-only gateway config."""
    return gateway_config.with_overrides(homelab_ipv6=None)


@pytest.fixture
def rule_store(temp_dir: Path) -> RuleStore:
    """持久化到临时目录的规则存储。Rule store persisted under the temp dir."""
    return RuleStore(temp_dir / "forwarded-ports.json")


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def remote_executor(gateway_config: GatewayConfig, fake_gateway: FakeGateway) -> RemoteExecutor:
    """连接到内存网关的执行器。Executor wired to the in-memory gateway."""
    executor = RemoteExecutor(gateway_config, session_factory=session_factory(fake_gateway))
    executor.connect()
    return executor


@pytest.fixture
def sleeps() -> list[float]:
    """记录 sleep 调用。Collects the delays passed to the injected sleep."""
    return []


@pytest.fixture
def make_reconciler(rule_store: RuleStore, sleeps: list[float]):
    """构造带假执行器的协调器。Build a reconciler around a FakeExecutor."""

    def factory(config: GatewayConfig, executor=None):
        executor = executor or FakeExecutor(config)
        reconciler = Reconciler(config, rule_store, executor, sleep=sleeps.append)
        return reconciler, executor

    return factory
