"""
talosforge/deployment/addons.py

Applies platform addons to a ready cluster and waits for each to be usable.

For every addon: its namespace and pre-requisite objects (secrets) are applied
first, then the rendered chart, then we poll until the workload pods selected
by label are Running and ready and every required secret has non-empty keys.
The CNI goes first on its own; the remaining addons run concurrently, and
their failures are collected rather than rolled back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from talosforge.errors import AddonInstallError
from talosforge.models.addons import AddonReport, AddonSpec, ChartRef
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.models.settings import Timeouts
from talosforge.services.catalog import enabled_addons
from talosforge.services.cilium import IPSEC_SECRET, NAMESPACE as CILIUM_NAMESPACE
from talosforge.utils.helm import render_chart
from talosforge.utils.k8s import KubernetesClient, dump_manifests, namespace_manifest
from talosforge.utils.polling import Interval, poll_until

logger = logging.getLogger(__name__)

ChartRenderer = Callable[..., Awaitable[str]]
KubernetesClientFactory = Callable[[bytes], KubernetesClient]


class AddonManager:
    """
    Args:
        k8s_factory: Builds a Kubernetes client from kubeconfig bytes.
        token: Provider API token handed to the CCM and CSI.
        timeouts: Default readiness budget and poll interval.
        renderer: Chart renderer; `helm template` by default.
    """

    def __init__(
        self,
        k8s_factory: KubernetesClientFactory,
        token: str,
        timeouts: Timeouts,
        renderer: ChartRenderer = render_chart,
    ) -> None:
        self.k8s_factory = k8s_factory
        self.token = token
        self.timeouts = timeouts
        self.renderer = renderer

    async def _render(self, addon: AddonSpec, kube_version: str) -> str:
        chart: ChartRef = addon.chart
        return await self.renderer(
            chart, addon.release, addon.namespace, addon.values, kube_version=kube_version
        )

    async def wait_ready(self, k8s: KubernetesClient, addon: AddonSpec) -> None:
        """
        Poll until the addon's pods are Running+ready and its secrets are populated.

        Raises:
            PollTimeoutError: If that does not happen within the addon timeout.
        """

        async def _ready() -> bool:
            pods = await k8s.list_pods(addon.pods_namespace, addon.ready_selector)
            if not pods or not all(p.running_and_ready for p in pods):
                return False
            for requirement in addon.required_secrets:
                data = await k8s.get_secret(requirement.name, requirement.namespace)
                if data is None or not all(data.get(key) for key in requirement.keys):
                    return False
            return True

        await poll_until(
            _ready,
            timeout=addon.timeout or self.timeouts.addon,
            interval=Interval.exponential(self.timeouts.addon_poll, maximum=30.0),
            description=f"addon {addon.name} to become ready",
        )

    async def install(self, k8s: KubernetesClient, addon: AddonSpec, kube_version: str) -> None:
        """
        Apply one addon and wait for it. Re-applying an installed addon is a no-op
        apart from the readiness check.
        """
        logger.info("Installing addon %s", addon.name)
        # 1) Namespace and pre-requisite objects
        objects: List[Dict[str, Any]] = [namespace_manifest(addon.namespace), *addon.pre_manifests]
        await k8s.apply_manifests(dump_manifests(objects))

        # 2) Chart
        manifests = await self._render(addon, kube_version)
        await k8s.apply_manifests(manifests)

        # 3) Readiness
        await self.wait_ready(k8s, addon)
        logger.info("Addon %s is ready", addon.name)

    async def _existing_ipsec_key(self, k8s: KubernetesClient, spec: ClusterSpec) -> str:
        if spec.addons.cilium_encryption != "ipsec":
            return ""
        data: Optional[Dict[str, str]] = await k8s.get_secret(IPSEC_SECRET, CILIUM_NAMESPACE)
        return (data or {}).get("keys", "")

    async def apply(self, spec: ClusterSpec, kubeconfig: bytes, network_id: int) -> AddonReport:
        """
        Install every enabled addon.

        Args:
            spec: Desired cluster state (addon toggles).
            kubeconfig: Admin kubeconfig of the ready cluster.
            network_id: Private network id for the CCM.

        Returns:
            AddonReport: Installed addon names, CNI first.

        Raises:
            AddonInstallError: Naming every addon that failed.
        """
        k8s = self.k8s_factory(kubeconfig)
        kube_version = spec.versions.kubernetes_version
        addons = enabled_addons(
            spec, self.token, network_id, await self._existing_ipsec_key(k8s, spec)
        )
        report = AddonReport()

        # 1) CNI first, sequentially; nothing else can become ready without it
        for addon in (a for a in addons if a.cni):
            try:
                await self.install(k8s, addon, kube_version)
            except Exception as exc:
                raise AddonInstallError({addon.name: exc}) from exc
            report.installed.append(addon.name)

        # 2) Everything else concurrently
        rest = [a for a in addons if not a.cni]
        results = await asyncio.gather(
            *(self.install(k8s, addon, kube_version) for addon in rest),
            return_exceptions=True,
        )
        failures: Dict[str, BaseException] = {}
        for addon, result in zip(rest, results):
            if isinstance(result, Exception):
                logger.error("Addon %s failed: %s", addon.name, result)
                failures[addon.name] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                report.installed.append(addon.name)

        if failures:
            raise AddonInstallError(failures)
        return report
