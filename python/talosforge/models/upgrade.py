"""
talosforge/models/upgrade.py

The read-only plan produced by an upgrade dry run.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class UpgradePlan(BaseModel):
    """
    What an upgrade to `os_version` / `kubernetes_version` would replace.

    Attributes:
        cluster: Cluster name.
        os_version: Target node OS version.
        kubernetes_version: Target Kubernetes version.
        control_plane: Control-plane servers to replace, in replacement order.
        workers: Worker servers to replace.
        up_to_date: Servers already carrying the target version labels.
        missing: Desired pool members with no server yet; created, not replaced.
        blocked: Why the upgrade would be refused, if it would be.
    """

    cluster: str
    os_version: str
    kubernetes_version: str
    control_plane: List[str] = Field(default_factory=list)
    workers: List[str] = Field(default_factory=list)
    up_to_date: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    blocked: Optional[str] = None

    @property
    def replacements(self) -> int:
        return len(self.control_plane) + len(self.workers)

    def summary(self) -> str:
        lines = [
            f"Upgrade plan for {self.cluster}: "
            f"{self.os_version} / {self.kubernetes_version}",
            f"  control plane to replace: {', '.join(self.control_plane) or '-'}",
            f"  workers to replace: {', '.join(self.workers) or '-'}",
            f"  already at target: {', '.join(self.up_to_date) or '-'}",
        ]
        if self.missing:
            lines.append(f"  to be created: {', '.join(self.missing)}")
        if self.blocked:
            lines.append(f"  BLOCKED: {self.blocked}")
        return "\n".join(lines)
