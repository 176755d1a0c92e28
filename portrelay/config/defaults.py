"""Project-wide default values for PortRelay.

These constants capture the gateway/homelab layout that the shell setup
scripts hard-coded.  Keeping them centralized makes it easier to audit and
adjust defaults without touching call sites; a ``GatewayConfig`` built from
a YAML file or the environment overrides any of them.
"""

# 家庭服务器在隧道内的地址
DEFAULT_HOMELAB_WG_IPV4 = "10.0.0.2"
DEFAULT_HOMELAB_WG_IPV6 = "fd42:42:42::2"

# VPS 自身的 SSH 端口（22 已让给家庭服务器转发）
DEFAULT_GATEWAY_SSH_PORT = 9001
DEFAULT_GATEWAY_SSH_USER = "root"

DEFAULT_WG_INTERFACE = "wg0"
DEFAULT_NAT_TABLE = "wg-quick-nat-rules"
DEFAULT_NAT_CHAIN = "prerouting"
DEFAULT_PREROUTING_PRIORITY = -100

# Used by ``ip route get`` to find the gateway's public interface.
ROUTE_LOOKUP_ADDRESS = "8.8.8.8"

DEFAULT_CONNECT_TIMEOUT = 20
DEFAULT_COMMAND_TIMEOUT = 60
DEFAULT_VERIFY_RECONNECT_TIMEOUT = 120

# WireGuard needs tens of seconds to renegotiate after a restart.
DEFAULT_SETTLE_SECONDS = 30
DEFAULT_VERIFY_RECONNECT_ATTEMPTS = 4
DEFAULT_RECONNECT_BACKOFF_SECONDS = 5

DEFAULT_RESTART_SCRIPT_PATH = "/tmp/portrelay-restart-wg.sh"
DEFAULT_RESTART_LOG_PATH = "/tmp/portrelay-restart-wg.log"

DEFAULT_RULE_STORE_FILENAME = "forwarded-ports.json"
DEFAULT_CONFIG_FILENAME = "gateway.yaml"
