"""远端执行器。Remote executor for the gateway's NAT rules and tunnel daemon."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Iterable, List, Optional

from portrelay.config import GatewayConfig
from portrelay.config.defaults import DEFAULT_PREROUTING_PRIORITY, ROUTE_LOOKUP_ADDRESS
from portrelay.errors import ExecError, RemoteCommandError
from portrelay.logging_utils import get_logger
from portrelay.ssh_utils import CommandResult, GatewaySession
from portrelay.tools.nft_backend import (
    MISSING_NAMESPACE_MARKER,
    LiveRule,
    NftCommand,
    NftCommandBuilder,
    find_matching,
    parse_live_rules,
    parse_route_device,
    render_restart_script,
)
from portrelay.tools.rule_store import AddressFamily, PortRule

LOGGER = get_logger(__name__)

SessionFactory = Callable[[GatewayConfig], GatewaySession]


class RuleAction(str, Enum):
    """规则操作。Requested change to a rule."""

    ADD = "add"
    REMOVE = "remove"


class ApplyOutcome(str, Enum):
    """下发结果。Whether ``apply_rule`` changed the live gateway state."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"


class RemoteExecutor:
    """Apply rule mutations on the gateway and query its live state.

    Mutations are check-then-act: the live chain is read first and the
    add/delete is only issued when it would change something, so a rerun
    after a crash converges instead of duplicating rules.  Read-only
    commands are retried once on a non-zero exit; mutations never are.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        session_factory: SessionFactory = GatewaySession,
        builder: Optional[NftCommandBuilder] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.builder = builder or NftCommandBuilder(
            config.nat_table,
            config.nat_chain,
            use_sudo=config.use_sudo,
            priority=DEFAULT_PREROUTING_PRIORITY,
        )
        self.session: GatewaySession = session_factory(config)
        self._public_interface: Optional[str] = config.public_interface

    # -- connection -----------------------------------------------------

    def connect(self, timeout: Optional[float] = None) -> None:
        self.session.connect(timeout=timeout)

    def reconnect(self, timeout: Optional[float] = None) -> None:
        """Drop the current channel and open a fresh one.

        After a tunnel restart the old transport may be half-dead, so it is
        discarded rather than reused.
        """
        self.session.close()
        self.session = self.session_factory(self.config)
        self.session.connect(timeout=timeout)

    def close(self) -> None:
        self.session.close()

    # -- primitives -----------------------------------------------------

    def _run(self, command: NftCommand, *, read_only: bool) -> CommandResult:
        attempts = 2 if read_only and not command.mutating else 1
        attempt = 1
        while True:
            LOGGER.debug("$ %s", command.render(), extra={"attempt": attempt})
            result = self.session.execute(command.render(), timeout=self.config.command_timeout)
            if result.ok:
                return result
            error = RemoteCommandError(command.render(), result.exit_status, result.stdout, result.stderr)
            if attempt >= attempts or MISSING_NAMESPACE_MARKER in result.stderr:
                raise error
            LOGGER.warning(
                "Read-only command failed, retrying once",
                extra={"command": command.description, "exit_status": result.exit_status},
            )
            attempt += 1

    def families(self) -> List[AddressFamily]:
        return [AddressFamily(name) for name in self.config.targets()]

    def discover_public_interface(self) -> str:
        """Return the gateway's public interface, asking the gateway once."""

        if self._public_interface:
            return self._public_interface
        result = self._run(self.builder.route_lookup(ROUTE_LOOKUP_ADDRESS), read_only=True)
        device = parse_route_device(result.stdout)
        if not device:
            raise RemoteCommandError(
                self.builder.route_lookup(ROUTE_LOOKUP_ADDRESS).render(),
                result.exit_status,
                result.stdout,
                "no 'dev' in route output",
            )
        LOGGER.info("Discovered gateway public interface", extra={"interface": device})
        self._public_interface = device
        return device

    def query_family(self, family: AddressFamily) -> List[LiveRule]:
        """List the managed DNAT rules of one address family."""

        command = self.builder.list_rules(family)
        try:
            result = self._run(command, read_only=True)
        except RemoteCommandError as exc:
            if MISSING_NAMESPACE_MARKER in exc.stderr:
                LOGGER.info("Managed chain does not exist yet", extra={"family": family.value})
                return []
            raise
        try:
            return parse_live_rules(
                result.stdout,
                family,
                table=self.config.nat_table,
                chain=self.config.nat_chain,
            )
        except ValueError as exc:
            raise RemoteCommandError(
                command.render(), result.exit_status, result.stdout, f"unparseable nft JSON: {exc}"
            ) from exc

    def query_live_rules(self, families: Optional[Iterable[AddressFamily]] = None) -> List[LiveRule]:
        """Return the live DNAT descriptors for ``families`` (default: all configured)."""

        rules: List[LiveRule] = []
        for family in families or self.families():
            rules.extend(self.query_family(family))
        return rules

    # -- mutations ------------------------------------------------------

    def apply_rule(self, rule: PortRule, action: RuleAction) -> ApplyOutcome:
        """Make the live chain contain (ADD) or not contain (REMOVE) ``rule``."""

        action = RuleAction(action)
        existing = find_matching(self.query_family(rule.family), rule)

        if action is RuleAction.ADD:
            if existing:
                LOGGER.info("Live rule already present", extra={"rule": str(rule)})
                return ApplyOutcome.UNCHANGED
            iifname = self.discover_public_interface()
            for command in self.builder.ensure_namespace(rule.family):
                self._run(command, read_only=False)
            self._run(self.builder.add_rule(rule, iifname), read_only=False)
            LOGGER.info("Live rule added", extra={"rule": str(rule), "family": rule.family.value})
            return ApplyOutcome.CHANGED

        if not existing:
            LOGGER.info("Live rule already absent", extra={"rule": str(rule)})
            return ApplyOutcome.UNCHANGED
        for live in existing:
            if live.handle is None:
                raise RemoteCommandError(
                    self.builder.list_rules(rule.family).render(), 0, "", f"no handle reported for {live}"
                )
            self._run(self.builder.delete_rule(rule.family, live.handle), read_only=False)
        LOGGER.info(
            "Live rule removed",
            extra={"rule": str(rule), "family": rule.family.value, "count": len(existing)},
        )
        return ApplyOutcome.CHANGED

    def restart_tunnel(self) -> None:
        """Restart the tunnel daemon detached from this SSH channel.

        A small script is uploaded and launched with ``nohup setsid``; the
        restart may cut the network path our own session rides on, so the
        call must not wait for it.
        """

        restart = self.builder.restart_daemon(self.config.wg_interface)
        script = render_restart_script(
            restart,
            self.config.restart_script_path,
            [self.builder.list_rules(family) for family in self.families()],
        )
        self.session.upload_text(script, self.config.restart_script_path)
        self.session.spawn_detached(f"sh {self.config.restart_script_path}", self.config.restart_log_path)
        LOGGER.info(
            "Tunnel restart dispatched",
            extra={"interface": self.config.wg_interface, "log": self.config.restart_log_path},
        )

    def read_restart_log(self) -> Optional[str]:
        """Fetch the output of the last detached restart; ``None`` when it cannot be read."""

        command = NftCommand(("cat", self.config.restart_log_path), "read restart log")
        try:
            return self._run(command, read_only=True).stdout
        except ExecError as exc:
            LOGGER.warning("Restart log unavailable", extra={"error": str(exc)})
            return None


__all__ = [
    "ApplyOutcome",
    "RemoteExecutor",
    "RuleAction",
    "SessionFactory",
]
