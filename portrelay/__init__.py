"""PortRelay 核心模块：网关端口转发的校验、下发与重启校验。

Core helpers that keep the DNAT port-forwarding rules of a WireGuard
gateway (VPS) in line with what the homelab operator asked for.  The
modules under :mod:`portrelay.tools` expose the rule store, the remote
executor and the reconciler; :mod:`portrelay.ssh_utils` owns the SSH
command channel.
"""

from __future__ import annotations

from .port_spec import PortSpec, parse_port_spec

__version__ = "0.3.0"

__all__ = ["PortSpec", "parse_port_spec", "__version__"]
