"""主程序入口：管理 VPS 网关上转发到家庭服务器的端口。

This module is the operator-facing entry point:
1. One-shot subcommands (``add``, ``remove``, ``list``, ``drift``) for
   automation, each printing a structured result (``--json`` for machines).
2. An interactive loop in the style of the homelab setup script, where the
   operator types ``add 8080 tcp`` / ``remove 20-22 udp`` / ``list``.
3. Console colouring and a per-run log file under ``artifacts/logs``.
"""

from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from portrelay.config import DEFAULT_CONFIG_FILENAME, DEFAULT_RULE_STORE_FILENAME, GatewayConfig, load_gateway_config
from portrelay.errors import ConfigError
from portrelay.logging_utils import get_logger, register_secrets, setup_logging
from portrelay.tools.reconciler import DriftReport, ListResult, Outcome, ReconciliationResult, Reconciler
from portrelay.tools.remote_executor import RemoteExecutor
from portrelay.tools.rule_store import RuleStore

if os.name == "nt":
    os.system("")

BLUE = "\033[34m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
RESET = "\033[0m"

STATE_DIR_ENV = "PORTRELAY_STATE_DIR"
LOGGER = get_logger("cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


@dataclass(frozen=True)
class MenuAction:
    """定义交互式菜单选项。Define an interactive menu option for the CLI."""

    key: str
    description: str
    handler: Callable[[Reconciler, list[str]], bool]


def _colorize(message: str, color: str) -> str:
    """Return ``message`` wrapped in ANSI color codes."""

    return f"{color}{message}{RESET}"


def logwrite(message: str, *, color: str | None = None) -> None:
    """Print ``message`` (optionally colorized) and persist it to the run log."""

    text = _colorize(message, color) if color and sys.stdout.isatty() else message
    print(text)
    LOGGER.info(message)


def log_info(message: str) -> None:
    logwrite(message, color=BLUE)


def log_success(message: str) -> None:
    logwrite(message, color=GREEN)


def log_warning(message: str) -> None:
    logwrite(message, color=YELLOW)


def log_error(message: str) -> None:
    logwrite(message, color=RED)


def log_section(title: str) -> None:
    """Print a visual separator for a workflow step."""

    divider = "=" * 24
    log_info(divider)
    log_info(title)


def artifacts_dir() -> Path:
    """Directory for run logs and the default rule store.

    ``$PORTRELAY_STATE_DIR`` when set, otherwise ``./artifacts`` under the
    working directory.
    """

    override = os.environ.get(STATE_DIR_ENV)
    return Path(override).expanduser() if override else Path.cwd() / "artifacts"


def build_reconciler(config: GatewayConfig) -> Reconciler:
    """Wire the rule store, the remote executor and the reconciler together."""

    store_path = Path(config.rule_store_path) if config.rule_store_path else artifacts_dir() / DEFAULT_RULE_STORE_FILENAME
    store = RuleStore(store_path)
    executor = RemoteExecutor(config)
    return Reconciler(config, store, executor)


def _print_reconciliation(result: ReconciliationResult) -> None:
    label = result.label
    for report in result.families.values():
        details = ", ".join(
            part
            for part in (
                f"store={report.store_result.value}" if report.store_result else "",
                f"gateway={report.apply_outcome.value}" if report.apply_outcome else "",
                f"verified={report.verified}" if report.verified is not None else "",
                f"error={report.error}" if report.error else "",
            )
            if part
        )
        logwrite(f"  [{report.family.value}] {details or '-'}")
    if result.live_rules:
        log_info("Current forwarded rules on the gateway:")
        for rule in result.live_rules:
            logwrite(f"  {rule.family.value}  {rule}")
    if result.ok and result.outcome is Outcome.NOOP:
        log_warning(f"⚠️ {label}: {result.message}")
    elif result.ok:
        log_success(f"✅ {label}: {result.message}")
    else:
        log_error(f"❌ {label}: {result.message}")
    if result.cancel_requested and result.ok:
        log_warning("⚠️ A cancellation was requested after changes started; the cycle ran to completion.")


def _print_listing(result: ListResult) -> None:
    if not result.ok:
        log_error(f"❌ Failed to list rules from the gateway: {result.error}")
        return
    if not result.rules:
        log_info("No forwarded ports found on the gateway.")
        return
    log_info("Current forwarded rules on the gateway:")
    for rule in result.rules:
        logwrite(f"  {rule.family.value}  {rule}  (handle {rule.handle})")


def _print_drift(report: DriftReport) -> None:
    if report.error is not None:
        log_error(f"❌ Drift check failed: {report.error}")
        return
    if report.in_sync:
        log_success("✅ Local record and gateway agree.")
        return
    for rule in report.only_local:
        log_warning(f"  recorded locally, missing on gateway: {rule}")
    for live_rule in report.only_live:
        log_warning(f"  live on gateway, not recorded locally: {live_rule}")


def _emit(payload: Any, as_json: bool, printer: Callable[[Any], None]) -> None:
    if as_json:
        print(json.dumps(payload.to_dict(), indent=2, ensure_ascii=False))
    else:
        printer(payload)


def _handle_change(action: str) -> Callable[[Reconciler, list[str]], bool]:
    def handler(reconciler: Reconciler, args: list[str]) -> bool:
        if len(args) != 2:
            log_warning(f"Usage: {action} <port_or_range> <tcp|udp>  e.g. '{action} 8080 tcp'")
            return False
        port_spec, protocol = args
        log_section(f"{action} {port_spec}/{protocol}")
        if action == "add":
            result = reconciler.add(port_spec, protocol)
        else:
            result = reconciler.remove(port_spec, protocol)
        _print_reconciliation(result)
        return result.ok

    return handler


def _handle_list(reconciler: Reconciler, args: list[str]) -> bool:
    result = reconciler.list()
    _print_listing(result)
    return result.ok


def _handle_drift(reconciler: Reconciler, args: list[str]) -> bool:
    report = reconciler.drift()
    _print_drift(report)
    return report.error is None


MENU_ACTIONS: tuple[MenuAction, ...] = (
    MenuAction("add", "add <port|lo-hi> <tcp|udp>     forward a port to the homelab", _handle_change("add")),
    MenuAction("remove", "remove <port|lo-hi> <tcp|udp>  stop forwarding a port", _handle_change("remove")),
    MenuAction("list", "list                           show forwarded ports on the gateway", _handle_list),
    MenuAction("drift", "drift                          compare local record with the gateway", _handle_drift),
)

EXIT_CHOICES = {"q", "quit", "exit", "done"}


def _print_main_menu() -> None:
    """Render the interactive menu in a consistent order."""

    print("\n=== PortRelay: VPS → homelab port forwarding ===")
    for action in MENU_ACTIONS:
        print(f"  {action.description}")
    print("  done                           leave")


def interactive_loop(reconciler: Reconciler, read: Callable[[str], str] = input) -> None:
    """Read ``add/remove/list/drift`` commands until the operator is done."""

    log_info("Changes are applied by restarting WireGuard on the gateway in a detached process.")
    log_info(f"Each change waits {reconciler.config.settle_seconds}s for the tunnel to settle before verifying.")
    while True:
        _print_main_menu()
        try:
            line = read("Action: ").strip()
        except EOFError:
            break
        if not line:
            continue
        choice, *args = line.split()
        choice = choice.lower()
        if choice in EXIT_CHOICES:
            break
        for action in MENU_ACTIONS:
            if choice == action.key:
                action.handler(reconciler, args)
                break
        else:
            log_warning("Unknown command. Use 'add', 'remove', 'list', 'drift' or 'done'.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage DNAT port forwarding from a WireGuard gateway (VPS) to a homelab.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"gateway YAML config (default: ./{DEFAULT_CONFIG_FILENAME} if present)",
    )
    parser.add_argument("--json", action="store_true", help="print machine-readable results")
    parser.add_argument("--ask-password", action="store_true", help="prompt for the SSH password")
    parser.add_argument("--settle", type=int, default=None, help="override the post-restart settle delay (seconds)")
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")

    sub = parser.add_subparsers(dest="command")
    for name, help_text in (("add", "forward a port or range"), ("remove", "stop forwarding a port or range")):
        change = sub.add_parser(name, help=help_text)
        change.add_argument("port_spec", help="single port (8080) or inclusive range (5000-5010)")
        change.add_argument("protocol", help="tcp or udp")
    sub.add_parser("list", help="list forwarded ports on the gateway")
    sub.add_parser("drift", help="compare the local record with the gateway")
    sub.add_parser("interactive", help="interactive add/remove/list loop (default)")
    return parser.parse_args(argv)


def _resolve_config(args: argparse.Namespace) -> GatewayConfig:
    environ = dict(os.environ)
    if args.ask_password:
        environ["PORTRELAY_SSH_PASSWORD"] = getpass.getpass("Gateway SSH password: ")
    config_path = args.config
    if config_path is None and Path(DEFAULT_CONFIG_FILENAME).exists():
        config_path = Path(DEFAULT_CONFIG_FILENAME)
    config = load_gateway_config(config_path, environ=environ)
    register_secrets([config.password])
    if args.settle is not None:
        config = config.with_overrides(settle_seconds=args.settle)
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(artifacts_dir() / "logs", level=10 if args.verbose else 20)

    try:
        config = _resolve_config(args)
        reconciler = build_reconciler(config)
    except ConfigError as exc:
        log_error(f"❌ Invalid configuration: {exc}")
        return EXIT_CONFIG

    try:
        command = args.command or "interactive"
        if command in ("add", "remove"):
            change = reconciler.add if command == "add" else reconciler.remove
            result = change(args.port_spec, args.protocol)
            _emit(result, args.json, _print_reconciliation)
            return EXIT_OK if result.ok else EXIT_FAILED
        if command == "list":
            listing = reconciler.list()
            _emit(listing, args.json, _print_listing)
            return EXIT_OK if listing.ok else EXIT_FAILED
        if command == "drift":
            report = reconciler.drift()
            _emit(report, args.json, _print_drift)
            return EXIT_OK if report.error is None else EXIT_FAILED
        interactive_loop(reconciler)
        return EXIT_OK
    finally:
        reconciler.executor.close()


if __name__ == "__main__":
    sys.exit(main())
