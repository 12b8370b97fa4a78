"""
talosforge/models/k8s.py

Pydantic views of the few Kubernetes objects the sequencers inspect, built
from `kubectl get -o json` output.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class KubernetesNode(BaseModel):
    """A node and the status fields used for readiness and version checks."""

    model_config = ConfigDict(frozen=True)

    name: str
    ready: bool = False
    kubelet_version: str = ""
    os_image: str = ""
    internal_ip: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_json(cls, item: Dict[str, Any]) -> KubernetesNode:
        meta = item.get("metadata", {})
        status = item.get("status", {})
        conditions = status.get("conditions", [])
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
        )
        info = status.get("nodeInfo", {})
        internal_ip = next(
            (
                a.get("address")
                for a in status.get("addresses", [])
                if a.get("type") == "InternalIP"
            ),
            None,
        )
        return cls(
            name=meta.get("name", ""),
            ready=ready,
            kubelet_version=info.get("kubeletVersion", ""),
            os_image=info.get("osImage", ""),
            internal_ip=internal_ip,
            labels=meta.get("labels", {}) or {},
        )


class KubernetesPod(BaseModel):
    """A pod's phase and whether all of its containers are ready."""

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    phase: str = "Unknown"
    ready: bool = False

    @property
    def running_and_ready(self) -> bool:
        return self.phase == "Running" and self.ready

    @classmethod
    def from_json(cls, item: Dict[str, Any]) -> KubernetesPod:
        meta = item.get("metadata", {})
        status = item.get("status", {})
        statuses: List[Dict[str, Any]] = status.get("containerStatuses", []) or []
        return cls(
            name=meta.get("name", ""),
            namespace=meta.get("namespace", ""),
            phase=status.get("phase", "Unknown"),
            ready=bool(statuses) and all(s.get("ready", False) for s in statuses),
        )
