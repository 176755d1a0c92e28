"""Utilities for working with the SSH command channel to the gateway."""

from __future__ import annotations

import io
import os
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import paramiko

from portrelay.config import GatewayConfig
from portrelay.errors import (
    AuthError,
    CommandTimeout,
    ConnectError,
    ConnectTimeout,
    RemoteCommandError,
)
from portrelay.logging_utils import get_logger

LOGGER = get_logger(__name__)


class SSHKeyLoadError(ConnectError):
    """Raised when a private key cannot be parsed."""


@dataclass
class CommandResult:
    """Return value for :meth:`GatewaySession.execute`."""

    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def _candidate_keys() -> Iterable[type[paramiko.PKey]]:
    """Yield supported Paramiko key classes in preferred order."""

    return (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(path: str | os.PathLike[str]) -> paramiko.PKey:
    """Load a private key from ``path``.

    Keys are attempted in the order Ed25519 → ECDSA → RSA.  DSA keys are
    deliberately unsupported because Paramiko 3.x removed ``DSSKey``.
    """

    key_path = Path(path).expanduser()
    if key_path.is_dir():
        raise SSHKeyLoadError(f"private key path is a directory: {key_path}")

    if not key_path.exists():
        raise SSHKeyLoadError(f"private key file does not exist: {key_path}")

    errors: list[str] = []
    for key_cls in _candidate_keys():
        try:
            return key_cls.from_private_key_file(str(key_path))
        except paramiko.PasswordRequiredException as exc:
            raise SSHKeyLoadError("private key is passphrase protected; unlock it or use a password") from exc
        except paramiko.SSHException as exc:
            errors.append(str(exc))

    joined = "; ".join(filter(None, errors)) or "unknown error"
    raise SSHKeyLoadError(f"cannot parse private key {key_path}: {joined}")


class GatewaySession:
    """Paramiko-backed command channel to one gateway.

    The session is opened lazily by :meth:`connect` and owned by a single
    :class:`~portrelay.tools.remote_executor.RemoteExecutor`.  Paramiko
    failures are translated into the PortRelay error taxonomy here, so the
    callers never see ``paramiko`` exceptions.
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self, timeout: Optional[float] = None) -> None:
        """Open the SSH connection if it is not already open."""

        if self.connected:
            return
        self.close()

        cfg = self.config
        timeout = cfg.connect_timeout if timeout is None else timeout
        pkey: Optional[paramiko.PKey] = None
        if cfg.key_path:
            pkey = load_private_key(cfg.key_path)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        LOGGER.debug("Connecting to gateway", extra={"gateway": cfg.identity, "timeout": timeout})
        try:
            client.connect(
                cfg.host,
                port=cfg.ssh_port,
                username=cfg.username,
                password=cfg.password,
                pkey=pkey,
                allow_agent=False,
                look_for_keys=False,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise AuthError(f"SSH authentication to {cfg.identity} failed: {exc}") from exc
        except socket.timeout as exc:
            client.close()
            raise ConnectTimeout(
                f"connecting to {cfg.identity} timed out after {timeout}s"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ConnectError(f"cannot establish SSH connection to {cfg.identity}: {exc}") from exc

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(30)
        self._client = client
        LOGGER.info("Connected to gateway", extra={"gateway": cfg.identity})

    def close(self) -> None:
        """Close and reset the Paramiko client if it exists."""

        if self._client is not None:
            try:
                self._client.close()
            except (paramiko.SSHException, OSError) as exc:
                LOGGER.debug("Closing SSH client failed", extra={"error": str(exc)})
            self._client = None

    def __enter__(self) -> "GatewaySession":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _require_client(self) -> paramiko.SSHClient:
        if not self.connected or self._client is None:
            raise ConnectError(f"not connected to {self.config.identity}")
        return self._client

    def execute(self, command: str, *, timeout: Optional[float] = None, check: bool = False) -> CommandResult:
        """Run ``command`` and wait for it, returning its output and status.

        ``check=True`` raises :class:`RemoteCommandError` for a non-zero exit.
        """

        client = self._require_client()
        timeout = self.config.command_timeout if timeout is None else timeout
        LOGGER.debug("(paramiko) $ %s", command)
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout as exc:
            raise CommandTimeout(f"remote command timed out after {timeout}s: {command}") from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            self.close()
            raise ConnectError(f"SSH channel to {self.config.identity} failed: {exc}") from exc

        result = CommandResult(exit_status, out, err)
        if check and not result.ok:
            raise RemoteCommandError(command, exit_status, out, err)
        return result

    def upload_text(self, text: str, remote_path: str, mode: int = 0o700) -> None:
        """Write ``text`` to ``remote_path`` over SFTP without a local temp file."""

        client = self._require_client()
        try:
            with client.open_sftp() as sftp:
                sftp.putfo(io.BytesIO(text.encode("utf-8")), remote_path)
                sftp.chmod(remote_path, mode)
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectError(f"SFTP upload to {remote_path} failed: {exc}") from exc

    def spawn_detached(self, command: str, log_path: str) -> None:
        """Start ``command`` on the gateway so it outlives this SSH channel.

        The command runs in its own session (``setsid``) with ``nohup`` and its
        output redirected to ``log_path``; the call returns as soon as the
        process has been forked.
        """

        wrapped = (
            f"nohup setsid sh -c {shlex.quote(command)} "
            f"> {shlex.quote(log_path)} 2>&1 < /dev/null &"
        )
        self.execute(wrapped, check=True)


__all__ = [
    "CommandResult",
    "GatewaySession",
    "SSHKeyLoadError",
    "load_private_key",
]
