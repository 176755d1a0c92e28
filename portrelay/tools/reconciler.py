"""端口转发协调器。Reconciler driving one validate→apply→restart→verify cycle.

A cycle runs through ``Idle -> Validating -> Applying -> Restarting ->
Verifying -> Done | Failed``.  Validation failures never reach the gateway.
Failures after that point are reported with the phase and address family
they happened in; nothing is rolled back, because a rollback would need
another tunnel restart.  Listing and drift reports bypass the state machine.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from portrelay.config import GatewayConfig
from portrelay.errors import (
    AuthError,
    ConnectError,
    ExecError,
    PartialApplicationError,
    PortRelayError,
    ReconciliationCancelled,
    RuleStoreError,
    ValidationError,
    VerificationMismatch,
    VerifyReconnectTimeout,
)
from portrelay.logging_utils import get_logger
from portrelay.port_spec import PortSpec
from portrelay.tools.nft_backend import LiveRule, find_matching
from portrelay.tools.remote_executor import ApplyOutcome, RemoteExecutor, RuleAction
from portrelay.tools.rule_store import AddressFamily, MutationResult, PortRule, Protocol, RuleStore

LOGGER = get_logger(__name__)

_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def gateway_lock(identity: str) -> threading.Lock:
    """Return the process-wide lock serializing cycles against ``identity``."""

    with _LOCKS_GUARD:
        lock = _LOCKS.get(identity)
        if lock is None:
            lock = _LOCKS[identity] = threading.Lock()
        return lock


class ReconcileState(str, Enum):
    """协调状态。Reconciliation cycle state."""

    IDLE = "idle"
    VALIDATING = "validating"
    APPLYING = "applying"
    RESTARTING = "restarting"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class Outcome(str, Enum):
    """调用方可见的结果。Caller-facing result of an operation."""

    APPLIED = "applied"
    NOOP = "noop"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconciliationRequest:
    """Transient description of one requested change."""

    action: RuleAction
    port_spec: Union[str, int, PortSpec]
    protocol: Union[str, Protocol]


@dataclass
class FamilyReport:
    """What happened to one address family during the cycle."""

    family: AddressFamily
    rule: Optional[PortRule] = None
    store_result: Optional[MutationResult] = None
    apply_outcome: Optional[ApplyOutcome] = None
    error: Optional[str] = None
    verified: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "family": self.family.value,
            "rule": str(self.rule) if self.rule else None,
            "store": self.store_result.value if self.store_result else None,
            "apply": self.apply_outcome.value if self.apply_outcome else None,
            "error": self.error,
            "verified": self.verified,
        }


@dataclass
class ReconciliationResult:
    """Structured report of a finished cycle."""

    request: ReconciliationRequest
    state: ReconcileState = ReconcileState.IDLE
    outcome: Outcome = Outcome.FAILED
    phase: Optional[ReconcileState] = None
    error: Optional[BaseException] = None
    families: Dict[AddressFamily, FamilyReport] = field(default_factory=dict)
    restarted: bool = False
    live_rules: List[LiveRule] = field(default_factory=list)
    restart_log: Optional[str] = None
    cancel_requested: bool = False
    history: List[ReconcileState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ReconcileState.DONE

    @property
    def label(self) -> str:
        action = getattr(self.request.action, "value", self.request.action)
        protocol = getattr(self.request.protocol, "value", self.request.protocol)
        return f"{action} {self.request.port_spec}/{protocol}"

    @property
    def message(self) -> str:
        if self.error is not None:
            phase = self.phase.value if self.phase else "unknown"
            return f"{type(self.error).__name__} during {phase}: {self.error}"
        if self.outcome is Outcome.NOOP:
            return "no change needed"
        return "applied and verified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.label,
            "state": self.state.value,
            "outcome": self.outcome.value,
            "phase": self.phase.value if self.phase else None,
            "error": type(self.error).__name__ if self.error else None,
            "message": self.message,
            "families": [report.to_dict() for report in self.families.values()],
            "restarted": self.restarted,
            "live_rules": [rule.to_dict() for rule in self.live_rules],
            "cancel_requested": self.cancel_requested,
        }


@dataclass
class ListResult:
    """Result of a read-only listing."""

    outcome: Outcome
    rules: List[LiveRule] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "rules": [rule.to_dict() for rule in self.rules],
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


@dataclass
class DriftReport:
    """Difference between the local rule store and the live gateway."""

    only_local: List[PortRule] = field(default_factory=list)
    only_live: List[LiveRule] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def in_sync(self) -> bool:
        return self.error is None and not self.only_local and not self.only_live

    def to_dict(self) -> dict[str, Any]:
        return {
            "in_sync": self.in_sync,
            "only_local": [str(rule) for rule in self.only_local],
            "only_live": [str(rule) for rule in self.only_live],
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
        }


class _CycleFailed(Exception):
    """Internal signal carrying the phase a cycle failed in."""

    def __init__(self, phase: ReconcileState, error: BaseException):
        super().__init__(str(error))
        self.phase = phase
        self.error = error


class Reconciler:
    """Coordinate the rule store and the remote executor for one gateway."""

    def __init__(
        self,
        config: GatewayConfig,
        store: RuleStore,
        executor: RemoteExecutor,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store = store
        self.executor = executor
        self._sleep = sleep
        self._clock = clock
        self._lock = gateway_lock(config.identity)
        self._state = ReconcileState.IDLE
        self._cancel_event: Optional[threading.Event] = None
        self._result: Optional[ReconciliationResult] = None

    @property
    def state(self) -> ReconcileState:
        return self._state

    def _enter(self, result: ReconciliationResult, state: ReconcileState) -> None:
        self._state = state
        result.state = state
        result.history.append(state)
        LOGGER.info(
            "Reconciliation state",
            extra={"gateway": self.config.identity, "state": state.value},
        )

    def cancel(self) -> bool:
        """Ask the running cycle to stop.

        Returns ``True`` when the cycle is still validating and will stop
        without touching anything.  Later phases run to completion and the
        request is only recorded on the result.
        """

        event = self._cancel_event
        if event is None:
            return False
        event.set()
        if self._result is not None:
            self._result.cancel_requested = True
        return self._state in (ReconcileState.IDLE, ReconcileState.VALIDATING)

    # -- caller-facing surface -----------------------------------------

    def add(self, port_spec: Union[str, int, PortSpec], protocol: Union[str, Protocol]) -> ReconciliationResult:
        return self.reconcile(ReconciliationRequest(RuleAction.ADD, port_spec, protocol))

    def remove(self, port_spec: Union[str, int, PortSpec], protocol: Union[str, Protocol]) -> ReconciliationResult:
        return self.reconcile(ReconciliationRequest(RuleAction.REMOVE, port_spec, protocol))

    def list(self) -> ListResult:
        """Return the live rules without mutating anything or restarting."""

        with self._lock:
            try:
                self.executor.connect()
                rules = self.executor.query_live_rules()
            except ExecError as exc:
                LOGGER.error("Listing live rules failed", extra={"error": str(exc)})
                return ListResult(Outcome.FAILED, error=exc)
        return ListResult(Outcome.NOOP, rules=rules)

    def drift(self) -> DriftReport:
        """Compare the rule store with the gateway's live rules."""

        with self._lock:
            try:
                self.executor.connect()
                live = self.executor.query_live_rules()
            except ExecError as exc:
                LOGGER.error("Drift check failed", extra={"error": str(exc)})
                return DriftReport(error=exc)
        local = list(self.store.list())
        return DriftReport(
            only_local=[rule for rule in local if not find_matching(live, rule)],
            only_live=[item for item in live if not any(item.matches(rule) for rule in local)],
        )

    # -- cycle ----------------------------------------------------------

    def reconcile(
        self,
        request: ReconciliationRequest,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconciliationResult:
        """Run one full cycle for ``request`` and report how it ended."""

        with self._lock:
            result = ReconciliationResult(request=request)
            self._result = result
            self._cancel_event = cancel_event or threading.Event()
            self._enter(result, ReconcileState.IDLE)
            try:
                self._run_cycle(request, result)
            except _CycleFailed as failure:
                result.phase = failure.phase
                result.error = failure.error
                result.outcome = Outcome.FAILED
                self._enter(result, ReconcileState.FAILED)
                LOGGER.error(
                    "Reconciliation failed",
                    extra={"phase": failure.phase.value, "error": str(failure.error)},
                )
            finally:
                if self._cancel_event.is_set():
                    result.cancel_requested = True
                self._cancel_event = None
                self._result = None
                final_state = result.state
                self._state = ReconcileState.IDLE
            LOGGER.info(
                "Reconciliation finished",
                extra={"state": final_state.value, "outcome": result.outcome.value},
            )
            return result

    def _run_cycle(self, request: ReconciliationRequest, result: ReconciliationResult) -> None:
        rules = self._validate(request, result)
        changed = self._apply(request, rules, result)
        if not changed:
            result.outcome = Outcome.NOOP
            self._enter(result, ReconcileState.DONE)
            return
        self._restart(result)
        self._verify(request, rules, result)
        result.outcome = Outcome.APPLIED
        self._enter(result, ReconcileState.DONE)

    def _validate(self, request: ReconciliationRequest, result: ReconciliationResult) -> List[PortRule]:
        self._enter(result, ReconcileState.VALIDATING)
        try:
            action = RuleAction(request.action)
        except ValueError as exc:
            raise _CycleFailed(
                ReconcileState.VALIDATING, ValidationError(f"unknown action {request.action!r}")
            ) from exc
        rules: List[PortRule] = []
        try:
            for target in self.config.targets().values():
                rule = PortRule.build(request.port_spec, request.protocol, target)
                self.store.validate(rule)
                rules.append(rule)
        except ValidationError as exc:
            raise _CycleFailed(ReconcileState.VALIDATING, exc) from exc

        cancel_event = self._cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise _CycleFailed(
                ReconcileState.VALIDATING,
                ReconciliationCancelled(f"{action.value} {request.port_spec}/{request.protocol} cancelled"),
            )
        for rule in rules:
            result.families[rule.family] = FamilyReport(family=rule.family, rule=rule)
        return rules

    def _apply(self, request: ReconciliationRequest, rules: List[PortRule], result: ReconciliationResult) -> bool:
        self._enter(result, ReconcileState.APPLYING)
        action = RuleAction(request.action)

        for rule in rules:
            report = result.families[rule.family]
            try:
                if action is RuleAction.ADD:
                    report.store_result = self.store.add(rule)
                else:
                    report.store_result = self.store.remove(rule)
            except RuleStoreError as exc:
                report.error = str(exc)
                raise _CycleFailed(ReconcileState.APPLYING, exc) from exc

        applied: List[str] = []
        try:
            self.executor.connect()
        except ExecError as exc:
            raise _CycleFailed(ReconcileState.APPLYING, exc) from exc

        for rule in rules:
            report = result.families[rule.family]
            try:
                report.apply_outcome = self.executor.apply_rule(rule, action)
            except ExecError as exc:
                report.error = str(exc)
                if applied:
                    error: BaseException = PartialApplicationError(applied, [rule.family.value], exc)
                else:
                    error = exc
                raise _CycleFailed(ReconcileState.APPLYING, error) from exc
            applied.append(rule.family.value)

        return any(
            report.apply_outcome is ApplyOutcome.CHANGED for report in result.families.values()
        )

    def _restart(self, result: ReconciliationResult) -> None:
        self._enter(result, ReconcileState.RESTARTING)
        try:
            self.executor.restart_tunnel()
        except ExecError as exc:
            raise _CycleFailed(ReconcileState.RESTARTING, exc) from exc
        result.restarted = True
        LOGGER.info("Waiting for the tunnel to settle", extra={"seconds": self.config.settle_seconds})
        self._sleep(self.config.settle_seconds)

    def _reconnect_for_verify(self) -> None:
        cfg = self.config
        deadline = self._clock() + cfg.verify_reconnect_timeout
        last_error: Optional[ConnectError] = None
        for attempt in range(1, cfg.verify_reconnect_attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                self.executor.reconnect(timeout=min(cfg.connect_timeout, remaining))
                return
            except AuthError:
                raise
            except ConnectError as exc:
                last_error = exc
                LOGGER.warning(
                    "Reconnect after restart failed",
                    extra={"attempt": attempt, "error": str(exc)},
                )
            if attempt < cfg.verify_reconnect_attempts:
                backoff = cfg.reconnect_backoff_seconds * (2 ** (attempt - 1))
                self._sleep(max(0.0, min(backoff, deadline - self._clock())))
        raise VerifyReconnectTimeout(
            f"gateway {cfg.identity} did not come back within "
            f"{cfg.verify_reconnect_timeout}s ({cfg.verify_reconnect_attempts} attempts): {last_error}"
        ) from last_error

    def _verify(self, request: ReconciliationRequest, rules: List[PortRule], result: ReconciliationResult) -> None:
        self._enter(result, ReconcileState.VERIFYING)
        expected_present = RuleAction(request.action) is RuleAction.ADD
        try:
            self._reconnect_for_verify()
            live = self.executor.query_live_rules([rule.family for rule in rules])
        except PortRelayError as exc:
            raise _CycleFailed(ReconcileState.VERIFYING, exc) from exc
        result.live_rules = live
        result.restart_log = self.executor.read_restart_log()

        failed: List[str] = []
        for rule in rules:
            present = bool(find_matching(live, rule))
            report = result.families[rule.family]
            report.verified = present is expected_present
            if not report.verified:
                failed.append(rule.family.value)
        if failed:
            raise _CycleFailed(ReconcileState.VERIFYING, VerificationMismatch(failed, expected_present))
