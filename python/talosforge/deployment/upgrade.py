"""
talosforge/deployment/upgrade.py

Rolling replacement of pool members onto a new OS/Kubernetes version pair.

Nodes are replaced, never mutated: leave etcd (control plane), delete the
server and its node object, recreate it under the same name from the new
image and configure it. Control-plane members go one at a time and only while
etcd has its full membership, so at most one member is ever absent; after each
one the cluster health check must pass (with a few retries) before the next.
Workers go with bounded concurrency. Members whose version labels already
match are skipped, which makes an interrupted upgrade resumable.

`plan` is the dry run: it reads the provider inventory and reports what an
upgrade would replace, without touching anything.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from talosforge.cloud.adapter import CloudAdapter, delete_if_present
from talosforge.deployment.bootstrap import BootstrapSequencer, node_target
from talosforge.deployment.infrastructure import InfrastructureReconciler
from talosforge.errors import (
    ConfigurationError,
    PollTimeoutError,
    QuorumError,
    TalosforgeError,
    UpgradeVerificationError,
)
from talosforge.models.cloud import InfrastructureState, Server
from talosforge.models.cluster_spec import ClusterSpec, NodePool
from talosforge.models.k8s import KubernetesNode
from talosforge.models.secrets import ClusterCredential
from talosforge.models.settings import Timeouts
from talosforge.models.upgrade import UpgradePlan
from talosforge.secrets.generator import TalosConfigGenerator
from talosforge.secrets.node_secrets import load_secrets
from talosforge.utils import naming
from talosforge.utils.async_command_runner import CommandError
from talosforge.utils.async_retry import async_retry
from talosforge.utils.k8s import KubernetesClient
from talosforge.utils.polling import Interval, poll_until
from talosforge.utils.talos import NodeOSClient

logger = logging.getLogger(__name__)

HEALTH_CHECK_ATTEMPTS = 3


def needs_replacement(server: Server, spec: ClusterSpec) -> bool:
    labels = server.labels
    return (
        labels.get(naming.OS_VERSION_LABEL) != spec.versions.os_version
        or labels.get(naming.K8S_VERSION_LABEL) != spec.versions.kubernetes_version
    )


def quorum_block(spec: ClusterSpec) -> Optional[str]:
    """
    Why replacing control-plane members of `spec` would break quorum, or None.
    """
    if spec.control_plane_count < 3:
        return (
            f"replacing a member of a {spec.control_plane_count}-node control plane "
            "would leave etcd without quorum"
        )
    return None


def version_mismatches(nodes: List[KubernetesNode], spec: ClusterSpec) -> List[str]:
    """
    Describe every node whose kubelet or OS image is not at the target version.
    """
    problems = []
    for node in nodes:
        if node.kubelet_version != spec.versions.kubernetes_version:
            problems.append(
                f"{node.name}: kubelet {node.kubelet_version or '?'} != {spec.versions.kubernetes_version}"
            )
        if spec.versions.os_version not in node.os_image:
            problems.append(
                f"{node.name}: os image {node.os_image or '?'} != {spec.versions.os_version}"
            )
    return problems


class UpgradeSequencer:
    """
    Args:
        cloud: Provider adapter.
        node_os: Node OS API client.
        infrastructure: Reconciler used for images, resources and recreation.
        bootstrap: Sequencer used for node configuration and readiness.
        timeouts: Wait budgets.
        state_dir: Root of the per-cluster state directories.
        max_parallel_workers: Worker replacements in flight at once.
    """

    def __init__(
        self,
        cloud: CloudAdapter,
        node_os: NodeOSClient,
        infrastructure: InfrastructureReconciler,
        bootstrap: BootstrapSequencer,
        timeouts: Timeouts,
        state_dir: Path,
        max_parallel_workers: int = 1,
    ) -> None:
        self.cloud = cloud
        self.node_os = node_os
        self.infrastructure = infrastructure
        self.bootstrap = bootstrap
        self.timeouts = timeouts
        self.state_dir = Path(state_dir)
        self.max_parallel_workers = max(1, max_parallel_workers)

    async def _etcd_members(self, servers: List[Server], talosconfig: bytes) -> List[str]:
        """
        Membership as reported by the first control-plane node that answers.
        """
        last_error: Optional[Exception] = None
        for server in servers:
            if not server.public_ipv4:
                continue
            try:
                return await self.node_os.etcd_members(server.public_ipv4, talosconfig)
            except Exception as exc:
                last_error = exc
        raise QuorumError(f"no control-plane node reports etcd membership: {last_error}")

    async def _wait_for_membership(
        self, servers: List[Server], talosconfig: bytes, expected: int
    ) -> None:
        async def _full() -> bool:
            return len(await self._etcd_members(servers, talosconfig)) >= expected

        try:
            await poll_until(
                _full,
                timeout=self.timeouts.etcd_membership,
                interval=Interval.exponential(self.timeouts.port_poll, maximum=30.0),
                description=f"etcd membership to return to {expected}",
            )
        except PollTimeoutError as exc:
            raise QuorumError(str(exc)) from exc

    async def _remove(self, server: Server, k8s: KubernetesClient) -> None:
        await delete_if_present("server", server.name, lambda: self.cloud.delete_server(server.name))
        await k8s.delete_node(server.name)

    async def health_check(self, servers: List[Server], talosconfig: bytes, expected: int) -> None:
        """
        One health check: the first control-plane node answers its
        authenticated API and etcd reports `expected` members.

        Raises:
            UpgradeVerificationError: If either check fails.
        """
        answering = [s for s in servers if s.public_ipv4]
        if not answering:
            raise UpgradeVerificationError("no control-plane node has a public address")
        primary = answering[0]
        try:
            await self.node_os.version(primary.public_ipv4 or "", talosconfig)
        except (TalosforgeError, CommandError) as exc:
            raise UpgradeVerificationError(
                f"node OS API of {primary.name} is not responding: {exc}"
            ) from exc
        members = await self._etcd_members(servers, talosconfig)
        if len(members) < expected:
            raise UpgradeVerificationError(
                f"etcd reports {len(members)} of {expected} members"
            )

    async def health_check_with_retry(
        self, servers: List[Server], talosconfig: bytes, expected: int
    ) -> None:
        @async_retry(
            retries=HEALTH_CHECK_ATTEMPTS,
            delay=self.timeouts.health_retry,
            noisy=True,
            retry_on=(UpgradeVerificationError, QuorumError),
        )
        async def _check() -> None:
            await self.health_check(servers, talosconfig, expected)

        await _check()

    async def replace_control_plane_node(
        self,
        spec: ClusterSpec,
        infra: InfrastructureState,
        pool: NodePool,
        pool_index: int,
        member_index: int,
        generator: TalosConfigGenerator,
        talosconfig: bytes,
        k8s: KubernetesClient,
    ) -> Server:
        """
        Replace one control-plane member without losing etcd quorum.

        Raises:
            QuorumError: If etcd is not at full membership beforehand, or does
                not return to it afterwards.
        """
        expected = spec.control_plane_count
        current = infra.control_plane
        old = next(s for s in current if s.name == naming.server_name(spec.name, pool.name, member_index))
        peers = [s for s in current if s.name != old.name]

        # 1) Full membership first
        members = await self._etcd_members(current, talosconfig)
        if len(members) < expected:
            raise QuorumError(
                f"etcd has {len(members)} of {expected} members; refusing to remove {old.name}"
            )

        # 2) Leave etcd, then remove server and node object
        logger.info("Replacing control-plane node %s", old.name)
        await self.node_os.etcd_leave(node_target(old).public_ip, talosconfig)
        await self._remove(old, k8s)

        # 3) Recreate under the same name from the new image, configure
        desired = self.infrastructure.desired_server(
            spec,
            pool,
            pool_index,
            member_index,
            naming.ROLE_CONTROL_PLANE,
            infra.network,
            infra.images,
            infra.placement_groups.get(pool.name),
            infra.ssh_key,
        )
        new = await self.infrastructure.ensure_server(desired)
        target = node_target(new)
        sans = [s for s in (target.public_ip, target.private_ip) if s]
        await self.bootstrap.configure_node(
            target, generator.generate_control_plane_config(sans, new.name), talosconfig
        )

        # 4) Back to full size before touching the next member
        await self._wait_for_membership(peers + [new], talosconfig, expected)
        return new

    async def replace_worker_node(
        self,
        spec: ClusterSpec,
        infra: InfrastructureState,
        pool: NodePool,
        pool_index: int,
        old: Server,
        generator: TalosConfigGenerator,
        talosconfig: bytes,
        k8s: KubernetesClient,
    ) -> Server:
        member_index = naming.parse_member_index(spec.name, pool.name, old.name)
        if member_index is None:
            raise ConfigurationError(
                f"{old.name} carries pool {pool.name!r} labels but does not follow "
                f"the {naming.server_name(spec.name, pool.name, 1)} naming scheme"
            )
        logger.info("Replacing worker node %s", old.name)
        await self._remove(old, k8s)
        desired = self.infrastructure.desired_server(
            spec,
            pool,
            pool_index,
            member_index,
            naming.ROLE_WORKER,
            infra.network,
            infra.images,
            None,
            infra.ssh_key,
        )
        new = await self.infrastructure.ensure_server(desired)
        await self.bootstrap.configure_node(
            node_target(new, naming.ROLE_WORKER),
            generator.generate_worker_config(new.name),
            talosconfig,
        )
        return new

    async def plan(self, spec: ClusterSpec) -> UpgradePlan:
        """
        Dry run: report what `upgrade(spec)` would replace. Reads the provider
        inventory only; nothing is created, deleted or configured.
        """
        servers = await self.cloud.list_servers_by_label({naming.CLUSTER_LABEL: spec.name})
        by_name = {s.name: s for s in servers}
        plan = UpgradePlan(
            cluster=spec.name,
            os_version=spec.versions.os_version,
            kubernetes_version=spec.versions.kubernetes_version,
        )
        for role, pools in (
            (naming.ROLE_CONTROL_PLANE, spec.control_plane),
            (naming.ROLE_WORKER, spec.workers),
        ):
            for pool in pools:
                for member_index in range(1, pool.count + 1):
                    name = naming.server_name(spec.name, pool.name, member_index)
                    server = by_name.get(name)
                    if server is None:
                        plan.missing.append(name)
                    elif not needs_replacement(server, spec):
                        plan.up_to_date.append(name)
                    elif role == naming.ROLE_CONTROL_PLANE:
                        plan.control_plane.append(name)
                    else:
                        plan.workers.append(name)
        if plan.control_plane:
            plan.blocked = quorum_block(spec)
        logger.info("Dry run, no changes made.\n%s", plan.summary())
        return plan

    async def upgrade(
        self, spec: ClusterSpec, skip_health_check: bool = False
    ) -> ClusterCredential:
        """
        Roll every pool onto `spec.versions`.

        Args:
            spec: Desired state carrying the target version pair.
            skip_health_check: Skip the health check after each control-plane
                replacement and at the end.

        Returns:
            ClusterCredential: Re-derived from the unchanged cluster secrets.

        Raises:
            QuorumError: If a control-plane replacement would break quorum.
            UpgradeVerificationError: If the cluster is unhealthy after a
                control-plane replacement, or nodes do not report the target
                versions.
        """
        cluster_dir = self.state_dir / spec.name
        secrets_path = cluster_dir / "secrets.yaml"
        if not secrets_path.exists():
            raise ConfigurationError(
                f"no secrets at {secrets_path}; cluster {spec.name} was never created here"
            )
        node_secrets = await load_secrets(secrets_path)

        # 1) Images and resources; existing members are kept as they are
        infra = await self.infrastructure.reconcile(spec)
        generator = TalosConfigGenerator(
            spec, node_secrets, infra.endpoint, infra.api_load_balancer.private_ip
        )
        talosconfig = generator.get_client_config()
        k8s = self.bootstrap.k8s_factory(generator.get_kubeconfig(infra.endpoint))

        # 2) Control plane, strictly one at a time
        stale_cp = [s for s in infra.control_plane if needs_replacement(s, spec)]
        blocked = quorum_block(spec) if stale_cp else None
        if blocked:
            raise QuorumError(blocked)
        for pool_index, pool in enumerate(spec.control_plane):
            for member_index in range(1, pool.count + 1):
                name = naming.server_name(spec.name, pool.name, member_index)
                server = next(s for s in infra.control_plane if s.name == name)
                if not needs_replacement(server, spec):
                    logger.info("%s already at target versions", name)
                    continue
                new = await self.replace_control_plane_node(
                    spec, infra, pool, pool_index, member_index, generator, talosconfig, k8s
                )
                infra.control_plane = [new if s.name == name else s for s in infra.control_plane]
                if not skip_health_check:
                    logger.info("Checking cluster health after replacing %s", name)
                    await self.health_check_with_retry(
                        infra.control_plane, talosconfig, spec.control_plane_count
                    )

        # Deleting the first control-plane server unassigns the floating IP
        if spec.public_vip:
            infra.floating_ip = await self.infrastructure.ensure_floating_ip(
                spec, infra.control_plane[0]
            )

        # 3) Workers, bounded concurrency
        semaphore = asyncio.Semaphore(self.max_parallel_workers)

        async def _bounded(pool: NodePool, pool_index: int, server: Server) -> Server:
            async with semaphore:
                return await self.replace_worker_node(
                    spec, infra, pool, pool_index, server, generator, talosconfig, k8s
                )

        for pool_index, pool in enumerate(spec.workers):
            servers = infra.workers.get(pool.name, [])
            stale = [s for s in servers if needs_replacement(s, spec)]
            replaced = await asyncio.gather(*(_bounded(pool, pool_index, s) for s in stale))
            by_name = {s.name: s for s in replaced}
            infra.workers[pool.name] = [by_name.get(s.name, s) for s in servers]

        # 4) Control plane readiness and credential, then any new workers
        credential = await self.bootstrap.bootstrap(spec, infra, generator, talosconfig)
        await self.bootstrap.configure_workers(spec, infra, generator, talosconfig)

        # 5) Everything healthy, Ready and at the target versions
        if not skip_health_check:
            await self.health_check_with_retry(
                infra.control_plane, talosconfig, spec.control_plane_count
            )
        nodes = await self.bootstrap.wait_for_nodes(
            k8s, spec.control_plane_count + spec.worker_count, require_ready=True
        )
        problems = version_mismatches(nodes, spec)
        if problems:
            raise UpgradeVerificationError("; ".join(problems))
        logger.info(
            "Cluster %s upgraded to %s / %s",
            spec.name,
            spec.versions.os_version,
            spec.versions.kubernetes_version,
        )
        return credential
