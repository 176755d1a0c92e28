"""网关配置测试。Tests for GatewayConfig and YAML/environment loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from portrelay.config import (
    DEFAULT_GATEWAY_SSH_PORT,
    DEFAULT_HOMELAB_WG_IPV4,
    DEFAULT_HOMELAB_WG_IPV6,
    GatewayConfig,
    load_gateway_config,
)
from portrelay.errors import ConfigError


def _write(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestGatewayConfig:
    """配置校验测试。GatewayConfig validation tests."""

    def test_defaults(self):
        config = GatewayConfig(host="vps.example.net", password="secret")
        assert config.ssh_port == DEFAULT_GATEWAY_SSH_PORT
        assert config.identity == f"root@vps.example.net:{DEFAULT_GATEWAY_SSH_PORT}"
        assert config.targets() == {"ipv4": DEFAULT_HOMELAB_WG_IPV4, "ipv6": DEFAULT_HOMELAB_WG_IPV6}

    def test_ipv4_only_targets(self):
        config = GatewayConfig(host="vps", key_path="~/.ssh/id_ed25519", homelab_ipv6=None)
        assert config.targets() == {"ipv4": DEFAULT_HOMELAB_WG_IPV4}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"host": ""},
            {"ssh_port": 0},
            {"ssh_port": 70000},
            {"password": None},
            {"homelab_ipv4": "fd42::2"},
            {"homelab_ipv4": "10.0.0.300"},
            {"homelab_ipv6": "10.0.0.2"},
            {"settle_seconds": -1},
            {"verify_reconnect_attempts": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        values = {"host": "vps", "password": "secret"}
        values.update(overrides)
        with pytest.raises(ConfigError):
            GatewayConfig(**values)

    def test_with_overrides_revalidates(self):
        config = GatewayConfig(host="vps", password="secret")
        assert config.with_overrides(settle_seconds=5).settle_seconds == 5
        with pytest.raises(ConfigError):
            config.with_overrides(ssh_port=0)


class TestLoadGatewayConfig:
    """配置加载测试。Config loading tests."""

    def test_yaml_file(self, temp_dir: Path):
        path = _write(
            temp_dir / "gateway.yaml",
            {"gateway": {"host": "203.0.113.7", "ssh_port": "22", "password": "pw", "use_sudo": "yes"}},
        )
        config = load_gateway_config(path, environ={})
        assert config.host == "203.0.113.7"
        assert config.ssh_port == 22
        assert config.use_sudo is True

    def test_flat_yaml_file(self, temp_dir: Path):
        path = _write(temp_dir / "gateway.yaml", {"host": "vps", "key_path": "/keys/id"})
        assert load_gateway_config(path, environ={}).key_path == "/keys/id"

    def test_environment_wins(self, temp_dir: Path):
        path = _write(temp_dir / "gateway.yaml", {"host": "vps", "password": "from-file", "settle_seconds": 30})
        environ = {
            "PORTRELAY_SSH_PASSWORD": "from-env",
            "PORTRELAY_SETTLE_SECONDS": "5",
            "PORTRELAY_HOMELAB_IPV6": "none",
        }
        config = load_gateway_config(path, environ=environ)
        assert config.password == "from-env"
        assert config.settle_seconds == 5
        assert config.homelab_ipv6 is None

    def test_environment_only(self):
        config = load_gateway_config(environ={"PORTRELAY_HOST": "vps", "PORTRELAY_SSH_PASSWORD": "pw"})
        assert config.identity == f"root@vps:{DEFAULT_GATEWAY_SSH_PORT}"

    def test_missing_host(self):
        with pytest.raises(ConfigError, match="host"):
            load_gateway_config(environ={"PORTRELAY_SSH_PASSWORD": "pw"})

    def test_missing_file(self, temp_dir: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_gateway_config(temp_dir / "missing.yaml", environ={})

    def test_unknown_key(self, temp_dir: Path):
        path = _write(temp_dir / "gateway.yaml", {"host": "vps", "password": "pw", "hostname": "typo"})
        with pytest.raises(ConfigError, match="unknown setting"):
            load_gateway_config(path, environ={})

    def test_bad_integer(self, temp_dir: Path):
        path = _write(temp_dir / "gateway.yaml", {"host": "vps", "password": "pw", "ssh_port": "ssh"})
        with pytest.raises(ConfigError, match="integer"):
            load_gateway_config(path, environ={})

    def test_not_a_mapping(self, temp_dir: Path):
        path = temp_dir / "gateway.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_gateway_config(path, environ={})

    def test_invalid_yaml(self, temp_dir: Path):
        path = temp_dir / "gateway.yaml"
        path.write_text("host: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="cannot parse"):
            load_gateway_config(path, environ={})
