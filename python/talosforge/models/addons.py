"""
talosforge/models/addons.py

Describes one installable addon (chart coordinates, values, pre-requisite
secrets and readiness criteria) and the report produced after applying a set
of them.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChartRef(BaseModel):
    """Helm chart coordinates rendered with `helm template --repo`."""

    repository: str
    name: str
    version: str


class SecretRequirement(BaseModel):
    """A secret that must exist with the given non-empty keys."""

    name: str
    namespace: str
    keys: List[str]


class AddonSpec(BaseModel):
    """
    Attributes:
        name: Addon name used in reports and errors.
        chart: Chart to render.
        release: Helm release name.
        namespace: Target namespace, created when missing.
        values: Chart values.
        pre_manifests: Objects applied before the chart (typically secrets).
        ready_selector: Label selector of the workload pods that must be Running
            and ready.
        ready_namespace: Namespace of those pods, defaults to `namespace`.
        required_secrets: Secrets that must exist with non-empty keys.
        timeout: Readiness budget in seconds; None uses the manager default.
        cni: Whether this addon provides pod networking and must run first.
    """

    name: str
    chart: ChartRef
    release: str
    namespace: str
    values: Dict[str, Any] = Field(default_factory=dict)
    pre_manifests: List[Dict[str, Any]] = Field(default_factory=list)
    ready_selector: str
    ready_namespace: Optional[str] = None
    required_secrets: List[SecretRequirement] = Field(default_factory=list)
    timeout: Optional[float] = None
    cni: bool = False

    @property
    def pods_namespace(self) -> str:
        return self.ready_namespace or self.namespace


class AddonReport(BaseModel):
    """Names of the addons installed and verified, in application order."""

    installed: List[str] = Field(default_factory=list)
