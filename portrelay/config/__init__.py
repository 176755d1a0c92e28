"""Centralized configuration for PortRelay.

This package consolidates the defaults that the shell setup scripts
scattered across global variables, and the :class:`GatewayConfig` that
carries them explicitly through the rest of the code.
"""

from .defaults import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_CONFIG_FILENAME,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_GATEWAY_SSH_PORT,
    DEFAULT_HOMELAB_WG_IPV4,
    DEFAULT_HOMELAB_WG_IPV6,
    DEFAULT_NAT_CHAIN,
    DEFAULT_NAT_TABLE,
    DEFAULT_RULE_STORE_FILENAME,
    DEFAULT_SETTLE_SECONDS,
    DEFAULT_VERIFY_RECONNECT_TIMEOUT,
    DEFAULT_WG_INTERFACE,
)
from .gateway import ENV_KEYS, GatewayConfig, load_gateway_config

__all__ = [
    "DEFAULT_COMMAND_TIMEOUT",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_GATEWAY_SSH_PORT",
    "DEFAULT_HOMELAB_WG_IPV4",
    "DEFAULT_HOMELAB_WG_IPV6",
    "DEFAULT_NAT_CHAIN",
    "DEFAULT_NAT_TABLE",
    "DEFAULT_RULE_STORE_FILENAME",
    "DEFAULT_SETTLE_SECONDS",
    "DEFAULT_VERIFY_RECONNECT_TIMEOUT",
    "DEFAULT_WG_INTERFACE",
    "ENV_KEYS",
    "GatewayConfig",
    "load_gateway_config",
]
