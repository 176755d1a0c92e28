"""Rule store, nftables backend, remote executor and reconciler."""

from __future__ import annotations

from .reconciler import Outcome, ReconcileState, ReconciliationRequest, ReconciliationResult, Reconciler
from .remote_executor import ApplyOutcome, RemoteExecutor, RuleAction
from .rule_store import AddressFamily, MutationResult, PortRule, Protocol, RuleStore

__all__ = [
    "AddressFamily",
    "ApplyOutcome",
    "MutationResult",
    "Outcome",
    "PortRule",
    "Protocol",
    "ReconcileState",
    "ReconciliationRequest",
    "ReconciliationResult",
    "Reconciler",
    "RemoteExecutor",
    "RuleAction",
    "RuleStore",
]
