"""nftables 后端：命令构造与 JSON 规则解析。

Typed command builder and structured rule parser for the gateway's
nftables NAT namespace.

Commands are never assembled by pasting user input into a shell string:
every operation has its own builder, every argument is validated first and
then passed through :func:`shlex.quote`.  Listings use ``nft -j`` so the
verification step compares parsed descriptors instead of grepping text.
"""

from __future__ import annotations

import ipaddress
import json
import re
import shlex
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from portrelay.errors import ValidationError
from portrelay.logging_utils import get_logger
from portrelay.port_spec import PortSpec
from portrelay.tools.rule_store import AddressFamily, PortRule, Protocol

LOGGER = get_logger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.@:-]{1,64}$")

# ``nft`` reports a missing table or chain this way.
MISSING_NAMESPACE_MARKER = "No such file or directory"


def _check_name(value: str, what: str) -> str:
    if not value or not _NAME_RE.match(value):
        raise ValidationError(f"invalid {what}: {value!r}")
    return value


@dataclass(frozen=True)
class NftCommand:
    """One remote invocation, kept as an argv list until it is rendered."""

    argv: tuple[str, ...]
    description: str
    mutating: bool = False

    def render(self) -> str:
        return " ".join(shlex.quote(part) for part in self.argv)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class LiveRule:
    """A DNAT rule as reported by the gateway (``nft -j`` descriptor)."""

    family: AddressFamily
    protocol: Protocol
    port_spec: PortSpec
    target: str
    handle: Optional[int] = None
    iifname: Optional[str] = None

    def matches(self, rule: PortRule) -> bool:
        return (
            self.family is rule.family
            and self.protocol is rule.protocol
            and self.port_spec == rule.port_spec
            and _same_address(self.target, rule.target)
        )

    def __str__(self) -> str:
        return f"{self.port_spec}/{self.protocol.value} -> {self.target}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "family": self.family.value,
            "protocol": self.protocol.value,
            "port_spec": str(self.port_spec),
            "target": self.target,
            "handle": self.handle,
            "iifname": self.iifname,
        }


def _same_address(left: str, right: str) -> bool:
    try:
        return ipaddress.ip_address(left) == ipaddress.ip_address(right)
    except ValueError:
        return left == right


class NftCommandBuilder:
    """Build the nftables/systemd commands for one gateway namespace."""

    def __init__(
        self,
        table: str,
        chain: str,
        *,
        use_sudo: bool = False,
        priority: int = -100,
    ):
        self.table = _check_name(table, "nft table name")
        self.chain = _check_name(chain, "nft chain name")
        self.use_sudo = use_sudo
        self.priority = int(priority)

    def _argv(self, *parts: str) -> tuple[str, ...]:
        prefix: tuple[str, ...] = ("sudo", "-n") if self.use_sudo else ()
        return prefix + tuple(parts)

    def ensure_namespace(self, family: AddressFamily) -> List[NftCommand]:
        """Create the NAT table and prerouting chain; ``nft add`` is idempotent."""
        fam = family.nft_family
        return [
            NftCommand(self._argv("nft", "add", "table", fam, self.table), f"ensure {fam} table", True),
            NftCommand(
                self._argv(
                    "nft", "add", "chain", fam, self.table, self.chain,
                    f"{{ type nat hook prerouting priority {self.priority}; }}",
                ),
                f"ensure {fam} chain",
                True,
            ),
        ]

    def list_rules(self, family: AddressFamily) -> NftCommand:
        fam = family.nft_family
        return NftCommand(
            self._argv("nft", "-j", "list", "chain", fam, self.table, self.chain),
            f"list {fam} {self.table} {self.chain}",
        )

    def add_rule(self, rule: PortRule, iifname: str) -> NftCommand:
        _check_name(iifname, "interface name")
        target = str(ipaddress.ip_address(rule.target))
        fam = rule.family.nft_family
        return NftCommand(
            self._argv(
                "nft", "add", "rule", fam, self.table, self.chain,
                "iifname", iifname,
                rule.protocol.value, "dport", str(rule.port_spec),
                "dnat", "to", target,
            ),
            f"add {fam} DNAT {rule}",
            True,
        )

    def delete_rule(self, family: AddressFamily, handle: int) -> NftCommand:
        if isinstance(handle, bool) or not isinstance(handle, int) or handle < 0:
            raise ValidationError(f"invalid rule handle: {handle!r}")
        fam = family.nft_family
        return NftCommand(
            self._argv("nft", "delete", "rule", fam, self.table, self.chain, "handle", str(handle)),
            f"delete {fam} rule handle {handle}",
            True,
        )

    def restart_daemon(self, wg_interface: str) -> NftCommand:
        _check_name(wg_interface, "WireGuard interface")
        return NftCommand(
            self._argv("systemctl", "restart", f"wg-quick@{wg_interface}"),
            f"restart wg-quick@{wg_interface}",
            True,
        )

    def route_lookup(self, address: str) -> NftCommand:
        return NftCommand(
            ("ip", "-o", "route", "get", str(ipaddress.ip_address(address))),
            "discover public interface",
        )


def _port_from_json(value: Any) -> Optional[PortSpec]:
    """Accept ``8080``, ``{"range": [lo, hi]}`` or a one-element ``{"set": [...]}``."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return PortSpec(value, value)
    if isinstance(value, dict):
        if "range" in value:
            bounds = value["range"]
            if isinstance(bounds, list) and len(bounds) == 2 and all(isinstance(b, int) for b in bounds):
                return PortSpec(bounds[0], bounds[1])
            return None
        if "set" in value:
            members = value["set"]
            if isinstance(members, list) and len(members) == 1:
                return _port_from_json(members[0])
    return None


def _parse_rule(rule: dict[str, Any], family: AddressFamily) -> Optional[LiveRule]:
    protocol: Optional[Protocol] = None
    port_spec: Optional[PortSpec] = None
    target: Optional[str] = None
    iifname: Optional[str] = None

    for expr in rule.get("expr", []):
        if not isinstance(expr, dict):
            continue
        match = expr.get("match")
        if isinstance(match, dict) and match.get("op", "==") == "==":
            left = match.get("left") or {}
            right = match.get("right")
            payload = left.get("payload") if isinstance(left, dict) else None
            meta = left.get("meta") if isinstance(left, dict) else None
            if isinstance(payload, dict) and payload.get("field") == "dport":
                try:
                    protocol = Protocol(payload.get("protocol"))
                    port_spec = _port_from_json(right)
                except (ValueError, ValidationError):
                    return None
            elif isinstance(meta, dict) and meta.get("key") == "iifname" and isinstance(right, str):
                iifname = right
            continue
        dnat = expr.get("dnat")
        if isinstance(dnat, dict) and isinstance(dnat.get("addr"), str):
            target = dnat["addr"]

    if protocol is None or port_spec is None or target is None:
        return None
    handle = rule.get("handle")
    return LiveRule(
        family=family,
        protocol=protocol,
        port_spec=port_spec,
        target=target,
        handle=handle if isinstance(handle, int) else None,
        iifname=iifname,
    )


def parse_live_rules(
    json_text: str,
    family: AddressFamily,
    *,
    table: Optional[str] = None,
    chain: Optional[str] = None,
) -> List[LiveRule]:
    """Parse ``nft -j list chain`` output into :class:`LiveRule` descriptors.

    Only rules that carry a ``dport`` match on tcp/udp and a ``dnat`` target
    are returned; anything else in the chain (masquerade, counters, rules of
    another table when ``table``/``chain`` are given) is skipped rather than
    misreported.  Malformed JSON raises ``ValueError``.
    """

    if not json_text.strip():
        return []
    data = json.loads(json_text)
    items = data.get("nftables", []) if isinstance(data, dict) else []

    rules: List[LiveRule] = []
    for item in items:
        rule = item.get("rule") if isinstance(item, dict) else None
        if not isinstance(rule, dict):
            continue
        if table is not None and rule.get("table") != table:
            continue
        if chain is not None and rule.get("chain") != chain:
            continue
        if rule.get("family") not in (None, family.nft_family):
            continue
        parsed = _parse_rule(rule, family)
        if parsed is not None:
            rules.append(parsed)
    return rules


def parse_route_device(output: str) -> Optional[str]:
    """Return the ``dev`` name from ``ip -o route get`` output."""

    tokens = output.split()
    for index, token in enumerate(tokens[:-1]):
        if token == "dev":
            return tokens[index + 1]
    return None


def find_matching(live: Iterable[LiveRule], rule: PortRule) -> List[LiveRule]:
    return [item for item in live if item.matches(rule)]


def render_restart_script(restart: NftCommand, script_path: str, list_commands: Sequence[NftCommand]) -> str:
    """Shell script run detached on the gateway: restart, dump rules, self-clean."""

    lines = [
        "#!/bin/sh",
        "echo \"restart started $(date -u +%Y-%m-%dT%H:%M:%SZ)\"",
        f"if {restart.render()}; then",
        "    echo 'restart ok'",
        "else",
        "    status=$?",
        "    echo \"restart failed: $status\"",
        "fi",
        "sleep 5",
    ]
    for command in list_commands:
        lines.append(f"{command.render()} || true")
    lines.append(f"rm -f {shlex.quote(script_path)}")
    return "\n".join(lines) + "\n"
