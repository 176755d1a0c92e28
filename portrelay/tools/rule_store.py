"""转发规则存储。Rule store holding the desired DNAT port-forwarding rules."""

from __future__ import annotations

import ipaddress
import json
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from portrelay.errors import ConfigError, InvalidPortSpec, InvalidProtocol, RuleStoreError, ValidationError
from portrelay.logging_utils import get_logger
from portrelay.port_spec import PortSpec, parse_port_spec

LOGGER = get_logger(__name__)


class Protocol(str, Enum):
    """传输层协议。Transport protocol of a forwarded port."""

    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, value: "str | Protocol") -> "Protocol":
        if isinstance(value, Protocol):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise InvalidProtocol(f"invalid protocol {value!r}: must be tcp or udp") from exc


class AddressFamily(str, Enum):
    """地址族。Address family of the forwarding target."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def nft_family(self) -> str:
        return "ip" if self is AddressFamily.IPV4 else "ip6"

    @classmethod
    def of(cls, address: str) -> "AddressFamily":
        try:
            version = ipaddress.ip_address(address).version
        except ValueError as exc:
            raise ValidationError(f"invalid target address {address!r}") from exc
        return cls.IPV4 if version == 4 else cls.IPV6


class MutationResult(str, Enum):
    """规则变更结果。Result of a store mutation."""

    APPLIED = "applied"
    NOOP = "noop"


@dataclass(frozen=True)
class PortRule:
    """One inbound-to-gateway, forward-to-target (DNAT) rule."""

    port_spec: PortSpec
    protocol: Protocol
    target: str

    @property
    def family(self) -> AddressFamily:
        return AddressFamily.of(self.target)

    @property
    def key(self) -> tuple[PortSpec, Protocol, AddressFamily]:
        """Identity key: two rules with the same key are the same rule."""
        return (self.port_spec, self.protocol, self.family)

    @classmethod
    def build(cls, port_spec: "str | int | PortSpec", protocol: "str | Protocol", target: str) -> "PortRule":
        return cls(parse_port_spec(port_spec), Protocol.parse(protocol), target)

    def __str__(self) -> str:
        return f"{self.port_spec}/{self.protocol.value} -> {self.target}"

    def to_dict(self) -> dict[str, Any]:
        """转换为字典。Convert to dictionary."""
        return {
            "port_spec": str(self.port_spec),
            "protocol": self.protocol.value,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortRule":
        """从字典创建。Create from dictionary."""
        return cls.build(data["port_spec"], data["protocol"], data["target"])


class RuleStore:
    """Authoritative record of the desired rules for one gateway.

    The store is an insertion-ordered mapping keyed by :attr:`PortRule.key`.
    When ``path`` is given every successful mutation is written back as
    JSON so the record survives between runs.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else None
        self._rules: dict[tuple[PortSpec, Protocol, AddressFamily], PortRule] = {}
        self._lock = threading.RLock()
        self.updated_at = 0
        self._load()

    def _load(self) -> None:
        """加载规则。Load rules from disk."""
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            rules = [PortRule.from_dict(item) for item in data.get("rules", [])]
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValidationError) as exc:
            raise ConfigError(f"rule store {self.path} is corrupt: {exc}") from exc
        for rule in rules:
            self._rules.setdefault(rule.key, rule)
        self.updated_at = int(data.get("updated_at", 0))
        LOGGER.debug("Loaded rule store", extra={"path": str(self.path), "rules": len(self._rules)})

    def save(self) -> None:
        """保存规则。Persist rules to disk."""
        if self.path is None:
            return
        payload = {
            "version": "1",
            "rules": [rule.to_dict() for rule in self._rules.values()],
            "updated_at": self.updated_at,
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise RuleStoreError(f"cannot write rule store {self.path}: {exc}") from exc

    def _commit(self) -> None:
        previous = self.updated_at
        self.updated_at = int(time.time())
        try:
            self.save()
        except RuleStoreError:
            self.updated_at = previous
            raise

    @staticmethod
    def validate(rule: PortRule) -> None:
        """Raise :class:`ValidationError` unless ``rule`` is well formed."""
        if not isinstance(rule.port_spec, PortSpec):
            parse_port_spec(rule.port_spec)
            raise InvalidPortSpec(f"port_spec must be a PortSpec, got {rule.port_spec!r}")
        if not isinstance(rule.protocol, Protocol):
            Protocol.parse(rule.protocol)
            raise InvalidProtocol(f"protocol must be a Protocol, got {rule.protocol!r}")
        AddressFamily.of(rule.target)

    def contains(self, rule: PortRule) -> bool:
        with self._lock:
            return rule.key in self._rules

    def add(self, rule: PortRule) -> MutationResult:
        """Add ``rule``; adding an existing rule is a no-op, not an error."""
        self.validate(rule)
        with self._lock:
            if rule.key in self._rules:
                return MutationResult.NOOP
            self._rules[rule.key] = rule
            try:
                self._commit()
            except RuleStoreError:
                del self._rules[rule.key]
                raise
        LOGGER.info("Rule recorded", extra={"rule": str(rule)})
        return MutationResult.APPLIED

    def remove(self, rule: PortRule) -> MutationResult:
        """Remove ``rule``; removing an absent rule is a no-op."""
        self.validate(rule)
        with self._lock:
            if rule.key not in self._rules:
                return MutationResult.NOOP
            previous = dict(self._rules)
            del self._rules[rule.key]
            try:
                self._commit()
            except RuleStoreError:
                self._rules = previous
                raise
        LOGGER.info("Rule forgotten", extra={"rule": str(rule)})
        return MutationResult.APPLIED

    def list(self) -> "RuleSnapshot":
        """Return a restartable snapshot of the rules in insertion order."""
        with self._lock:
            return RuleSnapshot(tuple(self._rules.values()))

    def __len__(self) -> int:
        return len(self._rules)


class RuleSnapshot:
    """Finite view over the rules at the time :meth:`RuleStore.list` ran.

    Every ``iter()`` starts again from the first rule, so the snapshot can be
    walked more than once.
    """

    def __init__(self, rules: tuple[PortRule, ...]):
        self._rules = rules

    def __iter__(self) -> Iterator[PortRule]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule: object) -> bool:
        if not isinstance(rule, PortRule):
            return False
        return any(item.key == rule.key for item in self._rules)
