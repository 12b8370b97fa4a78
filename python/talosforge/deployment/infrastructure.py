"""
talosforge/deployment/infrastructure.py

Converges the provider resources of one cluster, in strict dependency order:

  0) compute subnets from the network CIDR
  1) network and subnets, then SSH key and versioned images
  2) firewall (applied by label selector)
  3) placement group per control-plane pool
  4) API load balancer, optional ingress load balancer
  5) control-plane servers, then worker servers (pool members concurrently)
  6) optional floating IP on the first control-plane server

Every step is get-before-create by deterministic name. The first failure aborts
the run with a ReconcileStepError naming the step; nothing already created is
rolled back, so the next run resumes where this one stopped.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Dict, List, Optional

from talosforge.cloud.adapter import CloudAdapter, ensure
from talosforge.errors import ReconcileStepError
from talosforge.models.cloud import (
    Firewall,
    FloatingIP,
    HealthCheck,
    HttpHealthCheck,
    InfrastructureState,
    LoadBalancer,
    LoadBalancerService,
    Network,
    PlacementGroup,
    Server,
    SSHKey,
    Snapshot,
    Subnet,
)
from talosforge.models.cluster_spec import (
    CONTROL_PLANE_POOL_SIZE,
    ClusterSpec,
    FirewallRule,
    NodePool,
)
from talosforge.deployment.images import ImageCoordinator, image_for
from talosforge.utils import naming
from talosforge.utils.network import cidr_host, cidr_subnet

logger = logging.getLogger(__name__)

API_PORT = 6443
TALOS_API_PORT = 50000

CONTROL_PLANE_SUBNET = 0
LOAD_BALANCER_SUBNET = 1
WORKER_SUBNET_OFFSET = 2


@asynccontextmanager
async def reconcile_step(
    step: str, resource: Optional[str] = None
) -> AsyncGenerator[None, None]:
    """
    Wrap any failure inside the block as a ReconcileStepError for `step`.
    Cancellation passes through untouched.
    """
    try:
        yield
    except ReconcileStepError:
        raise
    except Exception as exc:
        logger.error("Step %s failed%s: %s", step, f" for {resource}" if resource else "", exc)
        raise ReconcileStepError(step, exc, resource) from exc


def provider_id(kind: str, name: str, resource_id: Optional[int]) -> int:
    """
    The provider-assigned id of `name`. A resource the provider returned
    without one fails the `kind` step.
    """
    if resource_id is None:
        raise ReconcileStepError(
            kind, ValueError(f"provider returned {kind} {name} without an id"), name
        )
    return resource_id


def node_subnet(spec: ClusterSpec, index: int) -> str:
    """
    The `index`-th node subnet: 0 control plane, 1 load balancers, 2+i worker pool i.
    """
    node_range = ipaddress.IPv4Network(spec.network.node_ipv4_cidr)
    newbits = spec.network.node_subnet_mask_size - node_range.prefixlen
    return cidr_subnet(spec.network.node_ipv4_cidr, newbits, index)


def desired_subnets(spec: ClusterSpec) -> List[Subnet]:
    count = WORKER_SUBNET_OFFSET + len(spec.workers)
    return [
        Subnet(ip_range=node_subnet(spec, index), network_zone=spec.network.zone)
        for index in range(count)
    ]


def api_load_balancer_private_ip(spec: ClusterSpec) -> str:
    return cidr_host(node_subnet(spec, LOAD_BALANCER_SUBNET), -2)


def ingress_load_balancer_private_ip(spec: ClusterSpec) -> str:
    return cidr_host(node_subnet(spec, LOAD_BALANCER_SUBNET), -3)


def server_private_ip(spec: ClusterSpec, role: str, pool_index: int, member_index: int) -> str:
    """
    Deterministic private address of a pool member (1-based member_index).
    Control-plane pools share subnet 0 in blocks of CONTROL_PLANE_POOL_SIZE;
    each worker pool has its own subnet.
    """
    if role == naming.ROLE_CONTROL_PLANE:
        return cidr_host(
            node_subnet(spec, CONTROL_PLANE_SUBNET),
            pool_index * CONTROL_PLANE_POOL_SIZE + member_index,
        )
    return cidr_host(node_subnet(spec, WORKER_SUBNET_OFFSET + pool_index), member_index)


def build_firewall_rules(spec: ClusterSpec, current_ipv4: Optional[str]) -> List[FirewallRule]:
    """
    Inbound rules for the Kubernetes API and the node OS API, then any extra rules.
    """
    fw = spec.firewall
    own = [f"{current_ipv4}/32"] if current_ipv4 else []

    def _sources(override: Optional[List[str]]) -> List[str]:
        base = override if override is not None else fw.api_source
        return sorted(set(base + own))

    rules = []
    kube_sources = _sources(fw.kube_api_source)
    if kube_sources:
        rules.append(
            FirewallRule(
                description="Allow Incoming Requests to Kube API",
                protocol="tcp",
                port=str(API_PORT),
                source_ips=kube_sources,
            )
        )
    talos_sources = _sources(fw.talos_api_source)
    if talos_sources:
        rules.append(
            FirewallRule(
                description="Allow Incoming Requests to Talos API",
                protocol="tcp",
                port=str(TALOS_API_PORT),
                source_ips=talos_sources,
            )
        )
    return rules + list(fw.extra_rules)


def api_load_balancer_services() -> List[LoadBalancerService]:
    """
    6443 is health-checked with an HTTPS GET on /version expecting 401: an
    anonymous request to a healthy API server is rejected, not served.
    """
    return [
        LoadBalancerService(
            protocol="tcp",
            listen_port=API_PORT,
            destination_port=API_PORT,
            health_check=HealthCheck(
                protocol="http",
                port=API_PORT,
                interval=3,
                timeout=2,
                retries=2,
                http=HttpHealthCheck(path="/version", status_codes=["401"], tls=True),
            ),
        ),
        LoadBalancerService(
            protocol="tcp",
            listen_port=TALOS_API_PORT,
            destination_port=TALOS_API_PORT,
            health_check=HealthCheck(protocol="tcp", port=TALOS_API_PORT),
        ),
    ]


def ingress_load_balancer_services() -> List[LoadBalancerService]:
    return [
        LoadBalancerService(
            protocol="tcp",
            listen_port=port,
            destination_port=port,
            health_check=HealthCheck(protocol="tcp", port=port, interval=15, timeout=10),
        )
        for port in (80, 443)
    ]


class InfrastructureReconciler:
    """
    Args:
        cloud: Provider adapter.
        images: Coordinator for versioned node OS snapshots.
        public_ip_resolver: Returns the caller's public IPv4; only called when
            the firewall restricts sources to the current address.
    """

    def __init__(
        self,
        cloud: CloudAdapter,
        images: ImageCoordinator,
        public_ip_resolver: Optional[Callable[[], Awaitable[str]]] = None,
    ) -> None:
        self.cloud = cloud
        self.images = images
        self.public_ip_resolver = public_ip_resolver

    async def reconcile(self, spec: ClusterSpec) -> InfrastructureState:
        """
        Converge all provider resources for `spec`.

        Returns:
            InfrastructureState: Live resources after convergence.

        Raises:
            ReconcileStepError: For the first step that failed.
        """
        name = spec.name
        logger.info("Reconciling infrastructure for cluster %s", name)

        # 1) Network, SSH key, images
        network = await self.ensure_network(spec)
        ssh_key = await self.ensure_ssh_key(spec)
        async with reconcile_step("images"):
            images = await self.images.ensure_images(spec)

        # 2) Firewall
        firewall = await self.ensure_firewall(spec)

        # 3) Placement groups
        placement_groups = await self.ensure_placement_groups(spec)

        # 4) Load balancers
        api_lb = await self.ensure_api_load_balancer(spec, network)
        ingress_lb = None
        if spec.load_balancer.ingress_enabled:
            ingress_lb = await self.ensure_ingress_load_balancer(spec, network)

        # 5) Servers: control plane first, then workers
        control_plane: List[Server] = []
        for pool_index, pool in enumerate(spec.control_plane):
            control_plane += await self.ensure_pool(
                spec,
                pool,
                pool_index,
                naming.ROLE_CONTROL_PLANE,
                network,
                images,
                placement_groups.get(pool.name),
                ssh_key,
            )
        workers: Dict[str, List[Server]] = {}
        for pool_index, pool in enumerate(spec.workers):
            workers[pool.name] = await self.ensure_pool(
                spec, pool, pool_index, naming.ROLE_WORKER, network, images, None, ssh_key
            )

        # 6) Floating IP
        floating_ip = None
        if spec.public_vip and control_plane:
            floating_ip = await self.ensure_floating_ip(spec, control_plane[0])

        return InfrastructureState(
            network=network,
            firewall=firewall,
            placement_groups=placement_groups,
            api_load_balancer=api_lb,
            ingress_load_balancer=ingress_lb,
            ssh_key=ssh_key,
            images=images,
            control_plane=control_plane,
            workers=workers,
            floating_ip=floating_ip,
        )

    async def ensure_network(self, spec: ClusterSpec) -> Network:
        net_name = naming.network_name(spec.name)
        subnets = desired_subnets(spec)
        async with reconcile_step("network", net_name):
            network = await ensure(
                "network",
                net_name,
                lambda: self.cloud.get_network(net_name),
                lambda: self.cloud.create_network(
                    Network(
                        name=net_name,
                        ip_range=spec.network.ipv4_cidr,
                        subnets=subnets,
                        labels=naming.cluster_labels(spec.name),
                    )
                ),
            )
            network_id = provider_id("network", net_name, network.id)
            present = {s.ip_range for s in network.subnets}
            for subnet in subnets:
                if subnet.ip_range not in present:
                    logger.info("Adding subnet %s to %s", subnet.ip_range, net_name)
                    network = await self.cloud.add_subnet(network_id, subnet)
        return network

    async def ensure_ssh_key(self, spec: ClusterSpec) -> Optional[SSHKey]:
        if not spec.ssh_public_key:
            return None
        key_name = naming.ssh_key_name(spec.name)
        public_key = spec.ssh_public_key
        async with reconcile_step("ssh_key", key_name):
            return await ensure(
                "ssh key",
                key_name,
                lambda: self.cloud.get_ssh_key(key_name),
                lambda: self.cloud.create_ssh_key(
                    SSHKey(
                        name=key_name,
                        public_key=public_key,
                        labels=naming.cluster_labels(spec.name),
                    )
                ),
            )

    async def ensure_firewall(self, spec: ClusterSpec) -> Firewall:
        fw_name = naming.firewall_name(spec.name)
        async with reconcile_step("firewall", fw_name):
            current_ipv4 = None
            if spec.firewall.use_current_ipv4:
                if self.public_ip_resolver is None:
                    raise ValueError("use_current_ipv4 is set but no public IP resolver is configured")
                current_ipv4 = await self.public_ip_resolver()
            rules = build_firewall_rules(spec, current_ipv4)
            firewall = await ensure(
                "firewall",
                fw_name,
                lambda: self.cloud.get_firewall(fw_name),
                lambda: self.cloud.create_firewall(
                    Firewall(
                        name=fw_name,
                        rules=rules,
                        apply_to_label_selectors=[naming.cluster_selector(spec.name)],
                        labels=naming.cluster_labels(spec.name),
                    )
                ),
            )
            if firewall.rules != rules:
                firewall_id = provider_id("firewall", fw_name, firewall.id)
                logger.info("Updating rules of firewall %s", fw_name)
                firewall = await self.cloud.set_firewall_rules(firewall_id, rules)
        return firewall

    async def ensure_placement_groups(self, spec: ClusterSpec) -> Dict[str, PlacementGroup]:
        groups: Dict[str, PlacementGroup] = {}
        for pool in spec.control_plane:
            pg_name = naming.placement_group_name(spec.name, pool.name)
            async with reconcile_step("placement_group", pg_name):
                groups[pool.name] = await ensure(
                    "placement group",
                    pg_name,
                    lambda: self.cloud.get_placement_group(pg_name),
                    lambda: self.cloud.create_placement_group(
                        PlacementGroup(
                            name=pg_name,
                            type="spread",
                            labels={
                                **naming.cluster_labels(spec.name),
                                naming.POOL_LABEL: pool.name,
                            },
                        )
                    ),
                )
        return groups

    async def ensure_api_load_balancer(self, spec: ClusterSpec, network: Network) -> LoadBalancer:
        lb_name = naming.api_load_balancer_name(spec.name)
        async with reconcile_step("api_load_balancer", lb_name):
            return await ensure(
                "load balancer",
                lb_name,
                lambda: self.cloud.get_load_balancer(lb_name),
                lambda: self.cloud.create_load_balancer(
                    LoadBalancer(
                        name=lb_name,
                        type=spec.load_balancer.type,
                        location=spec.location,
                        algorithm=spec.load_balancer.algorithm,
                        network_id=network.id,
                        private_ip=api_load_balancer_private_ip(spec),
                        services=api_load_balancer_services(),
                        target_label_selector=naming.role_selector(
                            spec.name, naming.ROLE_CONTROL_PLANE
                        ),
                        labels={
                            **naming.cluster_labels(spec.name),
                            naming.ROLE_LABEL: "kube-api",
                        },
                    )
                ),
            )

    async def ensure_ingress_load_balancer(
        self, spec: ClusterSpec, network: Network
    ) -> LoadBalancer:
        lb_name = naming.ingress_load_balancer_name(spec.name)
        target_role = naming.ROLE_WORKER if spec.worker_count else naming.ROLE_CONTROL_PLANE
        async with reconcile_step("ingress_load_balancer", lb_name):
            return await ensure(
                "load balancer",
                lb_name,
                lambda: self.cloud.get_load_balancer(lb_name),
                lambda: self.cloud.create_load_balancer(
                    LoadBalancer(
                        name=lb_name,
                        type=spec.load_balancer.type,
                        location=spec.location,
                        algorithm=spec.load_balancer.algorithm,
                        network_id=network.id,
                        private_ip=ingress_load_balancer_private_ip(spec),
                        services=ingress_load_balancer_services(),
                        target_label_selector=naming.role_selector(spec.name, target_role),
                        labels={
                            **naming.cluster_labels(spec.name),
                            naming.ROLE_LABEL: "ingress",
                        },
                    )
                ),
            )

    def desired_server(
        self,
        spec: ClusterSpec,
        pool: NodePool,
        pool_index: int,
        member_index: int,
        role: str,
        network: Network,
        images: Dict[str, Snapshot],
        placement_group: Optional[PlacementGroup],
        ssh_key: Optional[SSHKey],
    ) -> Server:
        """
        The server a pool member should be, before the provider assigns ids.
        """
        return Server(
            name=naming.server_name(spec.name, pool.name, member_index),
            server_type=pool.server_type,
            location=spec.pool_location(pool),
            image=image_for(pool, images),
            network_id=network.id,
            private_ip=server_private_ip(spec, role, pool_index, member_index),
            placement_group_id=placement_group.id if placement_group else None,
            ssh_key_ids=[ssh_key.id] if ssh_key and ssh_key.id is not None else [],
            labels=naming.server_labels(
                spec.name,
                role,
                pool.name,
                spec.versions.os_version,
                spec.versions.kubernetes_version,
                extra=pool.labels,
            ),
        )

    async def ensure_server(self, desired: Server) -> Server:
        async with reconcile_step("server", desired.name):
            return await ensure(
                "server",
                desired.name,
                lambda: self.cloud.get_server(desired.name),
                lambda: self.cloud.create_server(desired),
            )

    async def ensure_pool(
        self,
        spec: ClusterSpec,
        pool: NodePool,
        pool_index: int,
        role: str,
        network: Network,
        images: Dict[str, Snapshot],
        placement_group: Optional[PlacementGroup],
        ssh_key: Optional[SSHKey],
    ) -> List[Server]:
        """
        Create missing members of one pool concurrently and join before returning.
        Members beyond `count` are left in place and reported.
        """
        desired = [
            self.desired_server(
                spec, pool, pool_index, index, role, network, images, placement_group, ssh_key
            )
            for index in range(1, pool.count + 1)
        ]
        results = await asyncio.gather(
            *(self.ensure_server(d) for d in desired), return_exceptions=True
        )
        # Every member has settled; surface the first failure in member order.
        for result in results:
            if isinstance(result, BaseException):
                raise result
        servers: List[Server] = [r for r in results if isinstance(r, Server)]

        async with reconcile_step("server_inventory", pool.name):
            labelled = await self.cloud.list_servers_by_label(
                {naming.CLUSTER_LABEL: spec.name, naming.POOL_LABEL: pool.name}
            )
        wanted = {d.name for d in desired}
        extra = sorted(s.name for s in labelled if s.name not in wanted)
        if extra:
            logger.warning(
                "Pool %s has %d member(s) beyond its count: %s",
                pool.name,
                len(extra),
                ", ".join(extra),
            )
        return servers

    async def ensure_floating_ip(self, spec: ClusterSpec, server: Server) -> FloatingIP:
        fip_name = naming.floating_ip_name(spec.name)
        async with reconcile_step("floating_ip", fip_name):
            floating_ip = await ensure(
                "floating ip",
                fip_name,
                lambda: self.cloud.get_floating_ip(fip_name),
                lambda: self.cloud.create_floating_ip(
                    FloatingIP(
                        name=fip_name,
                        home_location=spec.location,
                        labels=naming.cluster_labels(spec.name),
                    )
                ),
            )
            if floating_ip.server_id != server.id:
                fip_id = provider_id("floating_ip", fip_name, floating_ip.id)
                server_id = provider_id("server", server.name, server.id)
                logger.info("Assigning floating IP %s to %s", fip_name, server.name)
                floating_ip = await self.cloud.assign_floating_ip(fip_id, server_id)
        return floating_ip
