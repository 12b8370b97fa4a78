"""
talosforge/models/bootstrap.py

Per-node bootstrap state and the diagnostics snapshot attached to fatal
bootstrap failures.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class BootstrapState(str, Enum):
    """
    Node OS state as detected by querying it, never assumed.

    Transitions only move forward: UNCONFIGURED -> CONFIGURED_UNBOOTSTRAPPED
    -> CONFIGURED_BOOTSTRAPPED.
    """

    UNCONFIGURED = "unconfigured"
    CONFIGURED_UNBOOTSTRAPPED = "configured-unbootstrapped"
    CONFIGURED_BOOTSTRAPPED = "configured-bootstrapped"

    @property
    def configured(self) -> bool:
        return self is not BootstrapState.UNCONFIGURED


class NodeTarget(BaseModel):
    """Addresses of a node the sequencers talk to."""

    name: str
    public_ip: str
    private_ip: Optional[str] = None
    role: str = "control-plane"


class PortCheck(BaseModel):
    host: str
    port: int
    reachable: bool


class ServiceHealth(BaseModel):
    node: str
    service: str
    state: str = "unknown"
    healthy: bool = False
    error: Optional[str] = None


class DiagnosticsReport(BaseModel):
    """
    Connectivity and service snapshot taken after a fatal bootstrap failure.

    Attributes:
        ports: Reachability of 50000 and 6443 on each control-plane node and the
            load balancer.
        services: apid/etcd/kubelet/trustd health per reachable node.
        etcd_members: Members reported by the first node that answered.
        errors: Checks that themselves failed.
    """

    ports: List[PortCheck] = Field(default_factory=list)
    services: List[ServiceHealth] = Field(default_factory=list)
    etcd_members: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    def summary(self) -> str:
        """
        Render a short multi-line, human-readable summary.
        """
        lines = ["Diagnostics:"]
        for check in self.ports:
            status = "open" if check.reachable else "closed"
            lines.append(f"  port {check.host}:{check.port} {status}")
        for svc in self.services:
            status = "healthy" if svc.healthy else "unhealthy"
            detail = f" ({svc.error})" if svc.error else ""
            lines.append(f"  {svc.node} {svc.service}: {svc.state}, {status}{detail}")
        members = ", ".join(self.etcd_members) if self.etcd_members else "none"
        lines.append(f"  etcd members: {members}")
        lines.extend(f"  check error: {err}" for err in self.errors)
        return "\n".join(lines)
