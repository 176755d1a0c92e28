"""Exception hierarchy shared by the rule store, executor and reconciler."""

from __future__ import annotations

from typing import Iterable, List, Optional


class PortRelayError(RuntimeError):
    """Base class for every error raised by PortRelay."""


class ConfigError(ValueError):
    """Raised when the gateway configuration or rule store file is invalid."""


class ValidationError(PortRelayError):
    """Raised when a requested rule is malformed.  Never touches the gateway."""


class InvalidPortSpec(ValidationError):
    """The port is not 1-65535 or the range has ``lo > hi``."""


class InvalidProtocol(ValidationError):
    """The protocol is neither tcp nor udp."""


class ExecError(PortRelayError):
    """Base class for failures on the remote command channel."""


class ConnectError(ExecError):
    """The SSH channel to the gateway could not be established."""


class AuthError(ConnectError):
    """The gateway rejected the supplied password or key."""


class ConnectTimeout(ConnectError):
    """Establishing the SSH channel took longer than the connect timeout."""


class VerifyReconnectTimeout(ConnectError):
    """The gateway did not come back before the post-restart reconnect deadline."""


class CommandTimeout(ExecError):
    """A remote command did not finish within the command timeout."""


class RemoteCommandError(ExecError):
    """A remote tool exited non-zero."""

    def __init__(self, command: str, exit_status: int, stdout: str = "", stderr: str = ""):
        details = (stderr or stdout).strip()[-600:] or f"exit status {exit_status}"
        super().__init__(f"remote command failed ({exit_status}): {command}: {details}")
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class PartialApplicationError(PortRelayError):
    """One address family was applied on the gateway, another one failed."""

    def __init__(self, applied: Iterable[str], failed: Iterable[str], cause: Optional[BaseException] = None):
        self.applied: List[str] = list(applied)
        self.failed: List[str] = list(failed)
        self.cause = cause
        message = (
            f"partial application: applied={','.join(self.applied) or '-'} "
            f"failed={','.join(self.failed) or '-'}"
        )
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class VerificationMismatch(PortRelayError):
    """Live gateway state after the restart does not match the request."""

    def __init__(self, failed: Iterable[str], expected_present: bool):
        self.failed: List[str] = list(failed)
        self.expected_present = expected_present
        wanted = "present" if expected_present else "absent"
        super().__init__(
            f"verification mismatch: rule not {wanted} for {','.join(self.failed)}"
        )


class RuleStoreError(PortRelayError):
    """The rule store could not be written; the in-memory record is unchanged."""


class ReconciliationCancelled(PortRelayError):
    """The cycle was cancelled before any change was made."""


__all__ = [
    "AuthError",
    "CommandTimeout",
    "ConfigError",
    "ConnectError",
    "ConnectTimeout",
    "ExecError",
    "InvalidPortSpec",
    "InvalidProtocol",
    "PartialApplicationError",
    "PortRelayError",
    "ReconciliationCancelled",
    "RemoteCommandError",
    "RuleStoreError",
    "ValidationError",
    "VerificationMismatch",
    "VerifyReconnectTimeout",
]
