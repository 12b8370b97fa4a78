"""
talosforge/deployment/bootstrap.py

Drives control-plane and worker nodes from maintenance mode to a configured,
joined state, and issues the one-time etcd bootstrap.

Per control-plane node, sequentially:
  1) wait for the node OS API port
  2) detect the node's state by querying it; apply the machine config over the
     insecure maintenance connection only when the node is unconfigured
  3) wait for the configuration reboot (port goes down, then comes back)
  4) wait for the authenticated API; a persistent certificate rejection from
     a node that has left maintenance mode is a certificate mismatch
  5) on the first node only: bootstrap etcd unless any node already reports
     etcd members or the `<cluster>-state` marker exists, then record the marker
  6) wait for the Kubernetes API behind the load balancer and for the nodes
  7) derive, verify and persist the admin kubeconfig

Any exhausted wait collects diagnostics and raises a BootstrapError carrying them.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from talosforge.cloud.adapter import CloudAdapter, ensure
from talosforge.deployment.diagnostics import collect_diagnostics
from talosforge.errors import (
    BootstrapError,
    CertificateMismatchError,
    EtcdAlreadyBootstrappedError,
    NodeCountMismatchError,
    NodeRebootError,
    PollTimeoutError,
    TalosforgeError,
)
from talosforge.models.bootstrap import BootstrapState, NodeTarget
from talosforge.models.cloud import Certificate, InfrastructureState, Server
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.models.k8s import KubernetesNode
from talosforge.models.secrets import ClusterCredential
from talosforge.models.settings import Timeouts
from talosforge.secrets.generator import TalosConfigGenerator
from talosforge.secrets.kubeconfig import persist_kubeconfig
from talosforge.secrets.pki import generate_ca
from talosforge.utils import naming
from talosforge.utils.async_command_runner import CommandError
from talosforge.utils.k8s import KubernetesClient
from talosforge.utils.network import wait_for_port, wait_for_port_closed
from talosforge.utils.polling import Interval, poll_until
from talosforge.utils.talos import (
    TALOS_API_PORT,
    NodeAuthenticationError,
    NodeOSClient,
    NodeOSError,
)

logger = logging.getLogger(__name__)

API_PORT = 6443
AUTH_REJECTION_LIMIT = 3

KubernetesClientFactory = Callable[[bytes], KubernetesClient]


def node_target(server: Server, role: str = naming.ROLE_CONTROL_PLANE) -> NodeTarget:
    if not server.public_ipv4:
        raise BootstrapError(f"server {server.name} has no public address", node=server.name)
    return NodeTarget(
        name=server.name, public_ip=server.public_ipv4, private_ip=server.private_ip, role=role
    )


class BootstrapSequencer:
    """
    Args:
        cloud: Provider adapter (for the bootstrap marker certificate).
        node_os: Node OS API client.
        k8s_factory: Builds a Kubernetes client from kubeconfig bytes.
        timeouts: Wait budgets.
        state_dir: Root of the per-cluster state directories.
    """

    def __init__(
        self,
        cloud: CloudAdapter,
        node_os: NodeOSClient,
        k8s_factory: KubernetesClientFactory,
        timeouts: Timeouts,
        state_dir: Path,
    ) -> None:
        self.cloud = cloud
        self.node_os = node_os
        self.k8s_factory = k8s_factory
        self.timeouts = timeouts
        self.state_dir = Path(state_dir)

    # ------------------------------------------------------------------
    # State detection
    # ------------------------------------------------------------------

    async def detect_state(self, node: NodeTarget, talosconfig: bytes) -> BootstrapState:
        """
        Query a node: authenticated first, then the maintenance connection.

        Raises:
            CertificateMismatchError: If the node rejects our certificate but is
                not in maintenance mode.
            NodeOSError: If the node answers neither connection.
        """
        try:
            await self.node_os.version(node.public_ip, talosconfig)
        except NodeAuthenticationError as exc:
            if await self.node_os.maintenance_mode(node.public_ip):
                return BootstrapState.UNCONFIGURED
            raise CertificateMismatchError(
                f"{node.name} rejects the cluster client certificate: {exc}", node=node.name
            ) from exc
        except (NodeOSError, CommandError):
            if await self.node_os.maintenance_mode(node.public_ip):
                return BootstrapState.UNCONFIGURED
            raise

        members = await self._etcd_members_quiet(node, talosconfig)
        if members:
            return BootstrapState.CONFIGURED_BOOTSTRAPPED
        return BootstrapState.CONFIGURED_UNBOOTSTRAPPED

    async def _etcd_members_quiet(self, node: NodeTarget, talosconfig: bytes) -> List[str]:
        try:
            return await self.node_os.etcd_members(node.public_ip, talosconfig)
        except (NodeOSError, CommandError) as exc:
            logger.debug("etcd members on %s unavailable: %s", node.name, exc)
            return []

    # ------------------------------------------------------------------
    # Per-node protocol (steps 1-4)
    # ------------------------------------------------------------------

    async def _wait_for_reboot(self, node: NodeTarget) -> None:
        try:
            await wait_for_port_closed(
                node.public_ip, TALOS_API_PORT, timeout=self.timeouts.reboot_start
            )
        except PollTimeoutError:
            logger.info("%s did not visibly go down for reboot; continuing", node.name)
        try:
            await wait_for_port(
                node.public_ip,
                TALOS_API_PORT,
                timeout=self.timeouts.reboot,
                poll_interval=self.timeouts.port_poll,
            )
        except PollTimeoutError as exc:
            raise NodeRebootError(
                f"{node.name} did not come back after applying its configuration: {exc}",
                node=node.name,
            ) from exc

    async def _wait_authenticated(self, node: NodeTarget, talosconfig: bytes) -> None:
        rejections = 0

        async def _check() -> bool:
            nonlocal rejections
            try:
                await self.node_os.version(node.public_ip, talosconfig)
                return True
            except NodeAuthenticationError as exc:
                if await self.node_os.maintenance_mode(node.public_ip):
                    rejections = 0
                    return False
                rejections += 1
                if rejections >= AUTH_REJECTION_LIMIT:
                    raise CertificateMismatchError(
                        f"{node.name} left maintenance mode but rejects the cluster "
                        f"client certificate: {exc}",
                        node=node.name,
                    ) from exc
                return False

        await poll_until(
            _check,
            timeout=self.timeouts.node_ready,
            interval=Interval.fixed(self.timeouts.port_poll),
            description=f"authenticated node OS API on {node.name}",
            fatal=(CertificateMismatchError,),
        )

    async def configure_node(
        self, node: NodeTarget, machine_config: bytes, talosconfig: bytes
    ) -> BootstrapState:
        """
        Take one node through steps 1-4.

        Returns:
            BootstrapState: The node's state after configuration (never UNCONFIGURED).
        """
        # 1) Node OS API port
        try:
            await wait_for_port(
                node.public_ip,
                TALOS_API_PORT,
                timeout=self.timeouts.port_wait,
                poll_interval=self.timeouts.port_poll,
            )
        except PollTimeoutError as exc:
            raise BootstrapError(
                f"node OS API of {node.name} never became reachable: {exc}", node=node.name
            ) from exc

        # 2) Detect, apply only if unconfigured
        async def _detect() -> BootstrapState:
            return await self.detect_state(node, talosconfig)

        try:
            state = await poll_until(
                _detect,
                timeout=self.timeouts.port_wait,
                interval=Interval.fixed(self.timeouts.port_poll),
                description=f"state of {node.name}",
                fatal=(CertificateMismatchError,),
            )
        except PollTimeoutError as exc:
            raise BootstrapError(
                f"could not determine the state of {node.name}: {exc}", node=node.name
            ) from exc

        logger.info("Node %s is %s", node.name, state.value)
        if state is BootstrapState.UNCONFIGURED:
            try:
                await self.node_os.apply_config_insecure(node.public_ip, machine_config)
            except (NodeOSError, CommandError) as exc:
                raise BootstrapError(
                    f"applying the machine config to {node.name} failed: {exc}",
                    node=node.name,
                ) from exc
            # 3) Reboot
            await self._wait_for_reboot(node)
            state = BootstrapState.CONFIGURED_UNBOOTSTRAPPED

        # 4) Authenticated API
        try:
            await self._wait_authenticated(node, talosconfig)
        except PollTimeoutError as exc:
            raise BootstrapError(
                f"authenticated node OS API of {node.name} never answered: {exc}",
                node=node.name,
            ) from exc
        return state

    # ------------------------------------------------------------------
    # etcd bootstrap (step 5)
    # ------------------------------------------------------------------

    async def _ensure_marker(self, cluster: str) -> Certificate:
        marker_name = naming.state_marker_name(cluster)

        async def _create() -> Certificate:
            pair = generate_ca(marker_name, "ecdsa")
            return await self.cloud.create_certificate(
                Certificate(
                    name=marker_name,
                    certificate=pair.crt,
                    private_key=pair.key,
                    labels=naming.cluster_labels(cluster),
                )
            )

        return await ensure(
            "certificate", marker_name, lambda: self.cloud.get_certificate(marker_name), _create
        )

    async def bootstrap_etcd_once(
        self, cluster: str, nodes: List[NodeTarget], talosconfig: bytes
    ) -> bool:
        """
        Issue the etcd bootstrap on `nodes[0]` unless etcd already has members
        anywhere or the marker certificate exists.

        Returns:
            bool: True if the bootstrap call was issued in this invocation.
        """
        marker = await self.cloud.get_certificate(naming.state_marker_name(cluster))
        members: List[str] = []
        for node in nodes:
            members = await self._etcd_members_quiet(node, talosconfig)
            if members:
                break

        if marker is not None or members:
            logger.info(
                "etcd already bootstrapped (marker=%s, members=%s); skipping",
                marker is not None,
                members,
            )
            if marker is None:
                await self._ensure_marker(cluster)
            return False

        logger.info("Bootstrapping etcd on %s", nodes[0].name)
        try:
            await self.node_os.bootstrap_etcd(nodes[0].public_ip, talosconfig)
        except EtcdAlreadyBootstrappedError:
            logger.info("%s reports etcd as already bootstrapped", nodes[0].name)
            await self._ensure_marker(cluster)
            return False
        except (NodeOSError, CommandError) as exc:
            raise BootstrapError(
                f"etcd bootstrap on {nodes[0].name} failed: {exc}", node=nodes[0].name
            ) from exc
        await self._ensure_marker(cluster)
        return True

    # ------------------------------------------------------------------
    # Readiness (step 6)
    # ------------------------------------------------------------------

    async def wait_for_nodes(
        self, k8s: KubernetesClient, expected: int, require_ready: bool, timeout: Optional[float] = None
    ) -> List[KubernetesNode]:
        """
        Poll the node list until `expected` nodes are registered (and Ready if
        `require_ready`).

        Raises:
            NodeCountMismatchError: If fewer report in before the timeout.
        """
        seen: Dict[str, int] = {"registered": 0, "ready": 0}

        async def _check() -> Optional[List[KubernetesNode]]:
            nodes = await k8s.list_nodes()
            ready = [n for n in nodes if n.ready]
            seen["registered"], seen["ready"] = len(nodes), len(ready)
            counted = ready if require_ready else nodes
            return nodes if len(counted) >= expected else None

        try:
            return await poll_until(
                _check,
                timeout=timeout if timeout is not None else self.timeouts.node_ready,
                interval=Interval.fixed(self.timeouts.node_ready_poll),
                description=f"{expected} {'Ready' if require_ready else 'registered'} nodes",
            )
        except PollTimeoutError as exc:
            raise NodeCountMismatchError(
                f"expected {expected} nodes, {seen['registered']} registered and "
                f"{seen['ready']} Ready: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def _diagnosed(
        self,
        exc: BootstrapError,
        talosconfig: bytes,
        control_plane: List[NodeTarget],
        lb_ip: str,
    ) -> BootstrapError:
        if exc.diagnostics is None:
            exc.diagnostics = await collect_diagnostics(
                self.node_os, talosconfig, control_plane, lb_ip, self.timeouts.dial
            )
        return exc

    async def bootstrap(
        self,
        spec: ClusterSpec,
        infra: InfrastructureState,
        generator: TalosConfigGenerator,
        talosconfig: bytes,
    ) -> ClusterCredential:
        """
        Configure the control plane, bootstrap etcd once and return the
        verified, persisted admin credential.

        Raises:
            BootstrapError: (or a subclass) with diagnostics attached.
        """
        control_plane = [node_target(s) for s in infra.control_plane]
        lb_ip = infra.endpoint
        try:
            for index, node in enumerate(control_plane):
                sans = [s for s in (node.public_ip, node.private_ip) if s]
                config = generator.generate_control_plane_config(sans, node.name)
                await self.configure_node(node, config, talosconfig)
                if index == 0:
                    await self.bootstrap_etcd_once(spec.name, control_plane, talosconfig)

            try:
                await wait_for_port(
                    lb_ip,
                    API_PORT,
                    timeout=self.timeouts.kubernetes_api,
                    poll_interval=self.timeouts.port_poll,
                )
            except PollTimeoutError as exc:
                raise BootstrapError(f"Kubernetes API behind {lb_ip} never answered: {exc}") from exc

            kubeconfig = generator.get_kubeconfig(lb_ip)
            k8s = self.k8s_factory(kubeconfig)
            await self.wait_for_nodes(
                k8s, len(control_plane), require_ready=not spec.addons.cilium
            )
        except BootstrapError as exc:
            raise await self._diagnosed(exc, talosconfig, control_plane, lb_ip)
        except (TalosforgeError, CommandError) as exc:
            wrapped = BootstrapError(f"control plane of {spec.name} failed to come up: {exc}")
            raise await self._diagnosed(wrapped, talosconfig, control_plane, lb_ip) from exc

        path = self.state_dir / spec.name / "kubeconfig"
        credential = await persist_kubeconfig(path, kubeconfig, lb_ip)
        logger.info("Control plane of %s is up; kubeconfig at %s", spec.name, path)
        return credential

    async def configure_workers(
        self,
        spec: ClusterSpec,
        infra: InfrastructureState,
        generator: TalosConfigGenerator,
        talosconfig: bytes,
        servers: Optional[List[Server]] = None,
    ) -> None:
        """
        Take worker nodes through steps 1-4, concurrently. Defaults to every
        worker in `infra`.
        """
        workers = [
            node_target(s, naming.ROLE_WORKER)
            for s in (servers if servers is not None else infra.all_workers)
        ]
        if not workers:
            return

        async def _one(node: NodeTarget) -> None:
            await self.configure_node(node, generator.generate_worker_config(node.name), talosconfig)

        try:
            results = await asyncio.gather(
                *(_one(node) for node in workers), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        except BootstrapError as exc:
            control_plane = [node_target(s) for s in infra.control_plane]
            raise await self._diagnosed(exc, talosconfig, control_plane, infra.endpoint)
        except (TalosforgeError, CommandError) as exc:
            wrapped = BootstrapError(f"worker configuration of {spec.name} failed: {exc}")
            control_plane = [node_target(s) for s in infra.control_plane]
            raise await self._diagnosed(
                wrapped, talosconfig, control_plane, infra.endpoint
            ) from exc
