"""Gateway configuration: YAML file plus environment overrides.

The shell setup scripts kept the VPS address, SSH port and homelab tunnel
addresses in global variables at the top of each script.  Here they are one
explicit :class:`GatewayConfig` that is handed to the SSH session, the remote
executor and the reconciler.
"""

from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from portrelay.errors import ConfigError
from portrelay.logging_utils import get_logger

from .defaults import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_GATEWAY_SSH_PORT,
    DEFAULT_GATEWAY_SSH_USER,
    DEFAULT_HOMELAB_WG_IPV4,
    DEFAULT_HOMELAB_WG_IPV6,
    DEFAULT_NAT_CHAIN,
    DEFAULT_NAT_TABLE,
    DEFAULT_RECONNECT_BACKOFF_SECONDS,
    DEFAULT_RESTART_LOG_PATH,
    DEFAULT_RESTART_SCRIPT_PATH,
    DEFAULT_SETTLE_SECONDS,
    DEFAULT_VERIFY_RECONNECT_ATTEMPTS,
    DEFAULT_VERIFY_RECONNECT_TIMEOUT,
    DEFAULT_WG_INTERFACE,
)

LOGGER = get_logger(__name__)

# 环境变量 -> GatewayConfig 字段
ENV_KEYS = {
    "PORTRELAY_HOST": "host",
    "PORTRELAY_SSH_PORT": "ssh_port",
    "PORTRELAY_SSH_USER": "username",
    "PORTRELAY_SSH_PASSWORD": "password",
    "PORTRELAY_SSH_KEY": "key_path",
    "PORTRELAY_HOMELAB_IPV4": "homelab_ipv4",
    "PORTRELAY_HOMELAB_IPV6": "homelab_ipv6",
    "PORTRELAY_PUBLIC_INTERFACE": "public_interface",
    "PORTRELAY_SETTLE_SECONDS": "settle_seconds",
}

_INT_FIELDS = {
    "ssh_port",
    "connect_timeout",
    "command_timeout",
    "verify_reconnect_timeout",
    "settle_seconds",
    "verify_reconnect_attempts",
    "reconnect_backoff_seconds",
}
_BOOL_FIELDS = {"use_sudo"}


@dataclass(frozen=True)
class GatewayConfig:
    """Everything needed to reach the gateway and describe its forwarding."""

    host: str
    ssh_port: int = DEFAULT_GATEWAY_SSH_PORT
    username: str = DEFAULT_GATEWAY_SSH_USER
    password: Optional[str] = None
    key_path: Optional[str] = None
    homelab_ipv4: str = DEFAULT_HOMELAB_WG_IPV4
    homelab_ipv6: Optional[str] = DEFAULT_HOMELAB_WG_IPV6
    public_interface: Optional[str] = None
    wg_interface: str = DEFAULT_WG_INTERFACE
    nat_table: str = DEFAULT_NAT_TABLE
    nat_chain: str = DEFAULT_NAT_CHAIN
    use_sudo: bool = False
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    verify_reconnect_timeout: int = DEFAULT_VERIFY_RECONNECT_TIMEOUT
    settle_seconds: int = DEFAULT_SETTLE_SECONDS
    verify_reconnect_attempts: int = DEFAULT_VERIFY_RECONNECT_ATTEMPTS
    reconnect_backoff_seconds: int = DEFAULT_RECONNECT_BACKOFF_SECONDS
    rule_store_path: Optional[str] = None
    restart_script_path: str = DEFAULT_RESTART_SCRIPT_PATH
    restart_log_path: str = DEFAULT_RESTART_LOG_PATH

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("gateway host is required")
        if not 1 <= self.ssh_port <= 65535:
            raise ConfigError(f"ssh_port {self.ssh_port} is outside the valid range (1-65535)")
        if not self.password and not self.key_path:
            raise ConfigError("either an SSH password or a private key path is required")
        try:
            if ipaddress.ip_address(self.homelab_ipv4).version != 4:
                raise ConfigError(f"homelab_ipv4 is not an IPv4 address: {self.homelab_ipv4}")
            if self.homelab_ipv6 and ipaddress.ip_address(self.homelab_ipv6).version != 6:
                raise ConfigError(f"homelab_ipv6 is not an IPv6 address: {self.homelab_ipv6}")
        except ValueError as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(f"invalid homelab address: {exc}") from exc
        for name in _INT_FIELDS - {"ssh_port"}:
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.verify_reconnect_attempts < 1:
            raise ConfigError("verify_reconnect_attempts must be at least 1")

    @property
    def identity(self) -> str:
        """Key used to serialize reconciliations against the same gateway."""
        return f"{self.username}@{self.host}:{self.ssh_port}"

    def targets(self) -> dict[str, str]:
        """Return the homelab tunnel address per address family."""
        result = {"ipv4": self.homelab_ipv4}
        if self.homelab_ipv6:
            result["ipv6"] = self.homelab_ipv6
        return result

    def with_overrides(self, **overrides: Any) -> "GatewayConfig":
        return replace(self, **overrides)


def _coerce(name: str, value: Any, *, source: str) -> Any:
    if value is None:
        return None
    if name in _INT_FIELDS:
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{source}: {name} must be an integer, got {value!r}") from exc
    if name in _BOOL_FIELDS:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}
    return str(value)


def _from_mapping(data: Mapping[str, Any], *, source: str) -> dict[str, Any]:
    known = {f.name for f in fields(GatewayConfig)}
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"{source}: unknown setting {key!r}")
        values[key] = _coerce(key, value, source=source)
    return values


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_key, name in ENV_KEYS.items():
        raw = environ.get(env_key)
        if raw:
            values[name] = _coerce(name, raw, source=f"environment variable {env_key}")
            LOGGER.debug("Using gateway setting from env", extra={"setting": name, "source": env_key})
    return values


def load_gateway_config(
    path: str | Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from ``path`` (YAML) and the environment.

    Environment variables listed in :data:`ENV_KEYS` win over the file so
    automation can inject the password without writing it to disk.
    """

    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"config file not found: {config_path}")
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")
        gateway = data.get("gateway", data)
        if not isinstance(gateway, dict):
            raise ConfigError(f"{config_path}: 'gateway' must be a mapping")
        values.update(_from_mapping(gateway, source=str(config_path)))
        LOGGER.info("Loaded gateway config", extra={"path": str(config_path)})

    values.update(_env_overrides(environ))

    if "homelab_ipv6" in values and values["homelab_ipv6"] in ("", "none", "None"):
        values["homelab_ipv6"] = None

    if "host" not in values:
        raise ConfigError("gateway host is required (config 'host' or PORTRELAY_HOST)")
    return GatewayConfig(**values)
