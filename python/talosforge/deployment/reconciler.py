"""
talosforge/deployment/reconciler.py

Top-level entry point tying the components together.

`reconcile` converges a cluster end to end and is safe to call repeatedly
(first create, scale-out, re-runs after a failure):

  1) load or generate the cluster secrets
  2) converge provider resources
  3) derive and persist the talosconfig
  4) bootstrap the control plane (etcd bootstrap at most once)
  5) configure workers
  6) install addons
  7) wait for every node to be Ready

`destroy`, `upgrade` and `plan_upgrade` (the upgrade dry run) delegate to the
cleaner and the upgrade sequencer.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from talosforge.cloud.adapter import CloudAdapter
from talosforge.deployment.addons import AddonManager, ChartRenderer
from talosforge.deployment.bootstrap import BootstrapSequencer, KubernetesClientFactory
from talosforge.deployment.cleanup import ClusterCleaner
from talosforge.deployment.images import ImageBuilder, ImageCoordinator
from talosforge.deployment.infrastructure import InfrastructureReconciler, provider_id
from talosforge.deployment.upgrade import UpgradeSequencer
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.models.secrets import ClusterCredential
from talosforge.models.settings import ProviderSettings, Timeouts
from talosforge.models.upgrade import UpgradePlan
from talosforge.secrets.generator import TalosConfigGenerator
from talosforge.secrets.kubeconfig import write_private_file
from talosforge.secrets.node_secrets import get_or_generate_secrets
from talosforge.utils.helm import render_chart
from talosforge.utils.k8s import KubectlClient
from talosforge.utils.public_ip import get_public_ipv4
from talosforge.utils.talos import NodeOSClient

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Args:
        cloud: Provider adapter.
        node_os: Node OS API client (e.g. TalosctlClient).
        image_builder: Builds versioned node OS snapshots.
        settings: Provider token and state directory.
        timeouts: Wait budgets; read from the environment when omitted.
        k8s_factory: Builds a Kubernetes client from kubeconfig bytes;
            KubectlClient by default.
        public_ip_resolver: Returns the caller's public IPv4.
        chart_renderer: Renders addon charts; `helm template` by default.
    """

    def __init__(
        self,
        cloud: CloudAdapter,
        node_os: NodeOSClient,
        image_builder: ImageBuilder,
        settings: ProviderSettings,
        timeouts: Optional[Timeouts] = None,
        k8s_factory: Optional[KubernetesClientFactory] = None,
        public_ip_resolver: Optional[Callable[[], Awaitable[str]]] = None,
        chart_renderer: ChartRenderer = render_chart,
    ) -> None:
        self.settings = settings
        self.timeouts = timeouts if timeouts is not None else Timeouts()
        command_timeout = self.timeouts.command

        def _kubectl(kubeconfig: bytes) -> KubectlClient:
            return KubectlClient(kubeconfig, command_timeout=command_timeout)

        async def _public_ip() -> str:
            return await get_public_ipv4(settings.public_ip_url)

        factory = k8s_factory or _kubectl
        self.infrastructure = InfrastructureReconciler(
            cloud, ImageCoordinator(cloud, image_builder), public_ip_resolver or _public_ip
        )
        self.bootstrap = BootstrapSequencer(
            cloud, node_os, factory, self.timeouts, settings.state_dir
        )
        self.addons = AddonManager(
            factory, settings.hcloud_token.get_secret_value(), self.timeouts, chart_renderer
        )
        self.upgrader = UpgradeSequencer(
            cloud,
            node_os,
            self.infrastructure,
            self.bootstrap,
            self.timeouts,
            settings.state_dir,
            settings.max_parallel_workers,
        )
        self.cleaner = ClusterCleaner(cloud, settings.state_dir)

    async def reconcile(self, spec: ClusterSpec) -> ClusterCredential:
        """
        Converge `spec` and return the admin credential.

        Raises:
            SecretsCorruptedError: If the persisted secrets are unreadable.
            ReconcileStepError: If a provider step failed.
            BootstrapError: If the control plane or a worker failed to come up.
            AddonInstallError: If any addon failed.
            NodeCountMismatchError: If not every node became Ready.
        """
        cluster_dir = self.settings.cluster_dir(spec.name)

        # 1) Secrets, before touching the provider
        node_secrets = await get_or_generate_secrets(
            cluster_dir / "secrets.yaml", spec.versions.os_version
        )

        # 2) Infrastructure
        infra = await self.infrastructure.reconcile(spec)

        # 3) Client configuration
        generator = TalosConfigGenerator(
            spec, node_secrets, infra.endpoint, infra.api_load_balancer.private_ip
        )
        talosconfig = generator.get_client_config()
        await write_private_file(cluster_dir / "talosconfig", talosconfig)

        # 4) Control plane, 5) workers
        credential = await self.bootstrap.bootstrap(spec, infra, generator, talosconfig)
        await self.bootstrap.configure_workers(spec, infra, generator, talosconfig)

        # 6) Addons
        if spec.addons.any_enabled:
            network_id = provider_id("network", infra.network.name, infra.network.id)
            report = await self.addons.apply(spec, credential.kubeconfig, network_id)
            logger.info("Installed addons: %s", ", ".join(report.installed))

        # 7) Every node Ready
        await self.bootstrap.wait_for_nodes(
            self.bootstrap.k8s_factory(credential.kubeconfig),
            spec.control_plane_count + spec.worker_count,
            require_ready=True,
        )
        logger.info("Cluster %s reconciled; API at %s", spec.name, credential.server)
        return credential

    async def destroy(self, spec: ClusterSpec, remove_local_state: bool = False) -> None:
        await self.cleaner.destroy(spec, remove_local_state=remove_local_state)

    async def upgrade(
        self, spec: ClusterSpec, skip_health_check: bool = False
    ) -> ClusterCredential:
        return await self.upgrader.upgrade(spec, skip_health_check=skip_health_check)

    async def plan_upgrade(self, spec: ClusterSpec) -> UpgradePlan:
        return await self.upgrader.plan(spec)
