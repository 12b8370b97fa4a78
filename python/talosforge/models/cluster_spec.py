"""
talosforge/models/cluster_spec.py

Declarative description of one cluster: network layout, firewall policy,
control-plane and worker node pools, versions and addon toggles.

The model is frozen; a reconciliation run never mutates it. Derived network
ranges are filled in at validation time from `network.ipv4_cidr`, so a spec
that only sets the top-level CIDR always yields the same subnets.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from talosforge.utils.network import cidr_subnet

CONTROL_PLANE_POOL_SIZE = 10

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def _check_resource_name(value: str, what: str) -> str:
    if not _NAME_RE.match(value):
        raise ValueError(
            f"{what} '{value}' must be lowercase alphanumerics and '-', "
            "starting and ending with an alphanumeric"
        )
    return value


class NetworkSpec(BaseModel):
    """
    Private network layout.

    Attributes:
        ipv4_cidr: Top-level private range, e.g. "10.0.0.0/16".
        zone: Provider network zone the subnets live in.
        node_ipv4_cidr: Range sliced into per-role node subnets.
            Defaults to cidrsubnet(ipv4_cidr, 3, 2).
        service_ipv4_cidr: Kubernetes service range. Defaults to cidrsubnet(ipv4_cidr, 3, 3).
        pod_ipv4_cidr: Kubernetes pod range. Defaults to cidrsubnet(ipv4_cidr, 1, 1).
        node_subnet_mask_size: Prefix length of each node subnet.
            Defaults to 32 - (24 - pod prefix length).
    """

    model_config = ConfigDict(frozen=True)

    ipv4_cidr: str = "10.0.0.0/16"
    zone: str = "eu-central"
    node_ipv4_cidr: str = ""
    service_ipv4_cidr: str = ""
    pod_ipv4_cidr: str = ""
    node_subnet_mask_size: int = 0

    @model_validator(mode="before")
    @classmethod
    def derive_ranges(cls, data: Any) -> Any:
        """
        Fill in every derived range that was not given explicitly.
        """
        if not isinstance(data, dict):
            return data
        values = dict(data)
        cidr = values.get("ipv4_cidr") or "10.0.0.0/16"
        try:
            ipaddress.IPv4Network(cidr)
        except ValueError as exc:
            raise ValueError(f"ipv4_cidr '{cidr}' is not a valid IPv4 network") from exc
        values["ipv4_cidr"] = cidr
        values["node_ipv4_cidr"] = values.get("node_ipv4_cidr") or cidr_subnet(cidr, 3, 2)
        values["service_ipv4_cidr"] = values.get("service_ipv4_cidr") or cidr_subnet(
            cidr, 3, 3
        )
        values["pod_ipv4_cidr"] = values.get("pod_ipv4_cidr") or cidr_subnet(cidr, 1, 1)
        if not values.get("node_subnet_mask_size"):
            pod_prefix = ipaddress.IPv4Network(values["pod_ipv4_cidr"]).prefixlen
            values["node_subnet_mask_size"] = 32 - (24 - pod_prefix)
        return values

    @model_validator(mode="after")
    def check_ranges(self) -> NetworkSpec:
        """
        Node subnets must fit inside the node range, and the node range inside the network.
        """
        network = ipaddress.IPv4Network(self.ipv4_cidr)
        node_range = ipaddress.IPv4Network(self.node_ipv4_cidr)
        if not node_range.subnet_of(network):
            raise ValueError(f"node range {node_range} is outside network {network}")
        if not node_range.prefixlen <= self.node_subnet_mask_size <= 30:
            raise ValueError(
                f"node_subnet_mask_size {self.node_subnet_mask_size} does not fit "
                f"inside node range {node_range}"
            )
        return self


class FirewallRule(BaseModel):
    """A single inbound firewall rule."""

    model_config = ConfigDict(frozen=True)

    description: str = ""
    direction: Literal["in", "out"] = "in"
    protocol: Literal["tcp", "udp", "icmp", "gre", "esp"] = "tcp"
    port: Optional[str] = None
    source_ips: List[str] = Field(default_factory=list)
    destination_ips: List[str] = Field(default_factory=list)


class FirewallSpec(BaseModel):
    """
    Source restrictions for the cluster firewall.

    `kube_api_source` and `talos_api_source` override `api_source` for their
    respective port when set. With `use_current_ipv4`, the caller's public
    address (as a /32) is added to both.
    """

    model_config = ConfigDict(frozen=True)

    api_source: List[str] = Field(default_factory=lambda: ["0.0.0.0/0", "::/0"])
    kube_api_source: Optional[List[str]] = None
    talos_api_source: Optional[List[str]] = None
    use_current_ipv4: bool = False
    extra_rules: List[FirewallRule] = Field(default_factory=list)

    @field_validator("api_source", "kube_api_source", "talos_api_source")
    @classmethod
    def check_sources(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        for source in value or []:
            try:
                ipaddress.ip_network(source, strict=False)
            except ValueError as exc:
                raise ValueError(f"firewall source '{source}' is not a network") from exc
        return value


class NodePool(BaseModel):
    """
    A set of identically shaped servers.

    Members are named `<cluster>-<pool>-<index>` with a 1-based index; that name
    is the idempotency key for create-vs-reuse.

    Attributes:
        name: Pool name, used verbatim in member names.
        server_type: Provider instance type, e.g. "cx22" or "cax21".
        count: Desired number of members.
        image: Snapshot id or image name. None selects the versioned OS snapshot.
        location: Overrides the cluster location for this pool.
        labels: Extra labels put on every member.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    server_type: str
    count: int = Field(default=1, ge=0)
    image: Optional[str] = None
    location: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        return _check_resource_name(value, "pool name")


class VersionSpec(BaseModel):
    """Node OS and Kubernetes version pair, e.g. v1.9.5 / v1.32.3."""

    model_config = ConfigDict(frozen=True)

    os_version: str
    kubernetes_version: str

    @field_validator("os_version", "kubernetes_version")
    @classmethod
    def ensure_v_prefix(cls, value: str) -> str:
        value = value.strip()
        if not re.match(r"^v?\d+\.\d+\.\d+([-+].+)?$", value):
            raise ValueError(f"'{value}' is not a semantic version")
        return value if value.startswith("v") else f"v{value}"


class AddonToggles(BaseModel):
    """Which platform addons to install, and the CNI options."""

    model_config = ConfigDict(frozen=True)

    ccm: bool = True
    csi: bool = True
    cilium: bool = True
    cilium_encryption: Optional[Literal["ipsec", "wireguard"]] = None
    cilium_kube_proxy_replacement: bool = True
    metrics_server: bool = False
    cert_manager: bool = False
    ingress_nginx: bool = False
    argocd: bool = False

    @property
    def any_enabled(self) -> bool:
        return any(
            (
                self.cilium,
                self.ccm,
                self.csi,
                self.metrics_server,
                self.cert_manager,
                self.ingress_nginx,
                self.argocd,
            )
        )


class LoadBalancerSpec(BaseModel):
    """Load balancer shape; the API load balancer always exists."""

    model_config = ConfigDict(frozen=True)

    type: str = "lb11"
    algorithm: Literal["round_robin", "least_connections"] = "round_robin"
    ingress_enabled: bool = False


class ClusterSpec(BaseModel):
    """
    Desired state of one cluster.

    Attributes:
        name: Cluster name, the prefix of every owned resource.
        location: Default provider location, e.g. "nbg1".
        network: Private network layout.
        firewall: Firewall source policy.
        control_plane: One or more control-plane pools.
        workers: Zero or more worker pools.
        versions: OS/Kubernetes version pair.
        addons: Addon toggles.
        load_balancer: Load balancer shape.
        public_vip: Whether to allocate a floating IP for the first control-plane node.
        ssh_public_key: Optional key uploaded as `<cluster>-key`.
        extra_sans: Additional subject alternative names for the API certificate.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    location: str = "nbg1"
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    firewall: FirewallSpec = Field(default_factory=FirewallSpec)
    control_plane: List[NodePool]
    workers: List[NodePool] = Field(default_factory=list)
    versions: VersionSpec
    addons: AddonToggles = Field(default_factory=AddonToggles)
    load_balancer: LoadBalancerSpec = Field(default_factory=LoadBalancerSpec)
    public_vip: bool = False
    ssh_public_key: Optional[str] = None
    extra_sans: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        _check_resource_name(value, "cluster name")
        if len(value) > 32:
            raise ValueError("cluster name must be at most 32 characters")
        return value

    @model_validator(mode="after")
    def check_pools(self) -> ClusterSpec:
        """
        At least one control-plane member, unique pool names, enough node
        subnets for every pool, and room in each subnet for its members.
        Control-plane pools share one subnet in blocks of
        CONTROL_PLANE_POOL_SIZE addresses.
        """
        if not self.control_plane or sum(p.count for p in self.control_plane) < 1:
            raise ValueError("at least one control-plane node is required")
        names = [p.name for p in self.control_plane + self.workers]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate node pool name(s) in {names}")
        node_prefix = ipaddress.IPv4Network(self.network.node_ipv4_cidr).prefixlen
        available = 2 ** (self.network.node_subnet_mask_size - node_prefix)
        if len(self.workers) + 2 > available:
            raise ValueError(
                f"{len(self.workers)} worker pools do not fit into {available} node subnets"
            )
        hosts = 2 ** (32 - self.network.node_subnet_mask_size) - 2
        for pool in self.control_plane:
            if pool.count > CONTROL_PLANE_POOL_SIZE:
                raise ValueError(
                    f"control-plane pool {pool.name!r} has {pool.count} members; "
                    f"at most {CONTROL_PLANE_POOL_SIZE} are allowed"
                )
        if len(self.control_plane) * CONTROL_PLANE_POOL_SIZE > hosts:
            raise ValueError(
                f"{len(self.control_plane)} control-plane pools do not fit into a "
                f"/{self.network.node_subnet_mask_size} subnet"
            )
        for pool in self.workers:
            if pool.count > hosts:
                raise ValueError(
                    f"worker pool {pool.name!r} has {pool.count} members but its "
                    f"/{self.network.node_subnet_mask_size} subnet holds {hosts}"
                )
        return self

    @property
    def control_plane_count(self) -> int:
        return sum(p.count for p in self.control_plane)

    @property
    def worker_count(self) -> int:
        return sum(p.count for p in self.workers)

    def pool_location(self, pool: NodePool) -> str:
        return pool.location or self.location


__all__ = [
    "NetworkSpec",
    "FirewallRule",
    "FirewallSpec",
    "NodePool",
    "VersionSpec",
    "AddonToggles",
    "LoadBalancerSpec",
    "ClusterSpec",
]
