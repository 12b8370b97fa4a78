"""
talosforge/models/cloud.py

Pydantic models for the provider resources talosforge owns, as seen through
the CloudAdapter contract, plus InfrastructureState, the summary returned by
the infrastructure reconciler.

Every resource carries an `id` assigned by the provider (None until created)
and a `labels` mapping used for label-based lookup and cleanup.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from talosforge.models.cluster_spec import FirewallRule


class Subnet(BaseModel):
    """A subnet of a private network."""

    ip_range: str
    network_zone: str
    type: Literal["cloud", "server", "vswitch"] = "cloud"


class Network(BaseModel):
    id: Optional[int] = None
    name: str
    ip_range: str
    subnets: List[Subnet] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class Firewall(BaseModel):
    """
    Firewall applied to servers by label selector rather than per server, so
    servers created later are covered automatically.
    """

    id: Optional[int] = None
    name: str
    rules: List[FirewallRule] = Field(default_factory=list)
    apply_to_label_selectors: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class PlacementGroup(BaseModel):
    id: Optional[int] = None
    name: str
    type: Literal["spread"] = "spread"
    labels: Dict[str, str] = Field(default_factory=dict)


class HttpHealthCheck(BaseModel):
    path: str = "/"
    status_codes: List[str] = Field(default_factory=lambda: ["2??", "3??"])
    tls: bool = False


class HealthCheck(BaseModel):
    protocol: Literal["tcp", "http", "https"] = "tcp"
    port: int
    interval: int = 3
    timeout: int = 2
    retries: int = 2
    http: Optional[HttpHealthCheck] = None


class LoadBalancerService(BaseModel):
    protocol: Literal["tcp", "http", "https"] = "tcp"
    listen_port: int
    destination_port: int
    proxyprotocol: bool = False
    health_check: Optional[HealthCheck] = None


class LoadBalancer(BaseModel):
    """
    Attributes:
        private_ip: Address on the private network, fixed at creation.
        target_label_selector: Servers matching this selector become targets.
        public_ipv4: Assigned by the provider on creation.
    """

    id: Optional[int] = None
    name: str
    type: str
    location: str
    algorithm: str = "round_robin"
    network_id: Optional[int] = None
    private_ip: Optional[str] = None
    public_ipv4: Optional[str] = None
    services: List[LoadBalancerService] = Field(default_factory=list)
    target_label_selector: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class Server(BaseModel):
    id: Optional[int] = None
    name: str
    server_type: str
    location: str
    image: str
    network_id: Optional[int] = None
    private_ip: Optional[str] = None
    public_ipv4: Optional[str] = None
    placement_group_id: Optional[int] = None
    ssh_key_ids: List[int] = Field(default_factory=list)
    status: str = "running"
    labels: Dict[str, str] = Field(default_factory=dict)


class SSHKey(BaseModel):
    id: Optional[int] = None
    name: str
    public_key: str
    labels: Dict[str, str] = Field(default_factory=dict)


class FloatingIP(BaseModel):
    id: Optional[int] = None
    name: str
    home_location: str
    type: Literal["ipv4", "ipv6"] = "ipv4"
    ip: Optional[str] = None
    server_id: Optional[int] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """A server image snapshot, found again by its labels."""

    id: Optional[int] = None
    description: str
    architecture: Literal["x86", "arm"] = "x86"
    labels: Dict[str, str] = Field(default_factory=dict)


class Certificate(BaseModel):
    """
    An uploaded certificate. talosforge only uses one: the `<cluster>-state`
    marker recording that etcd was bootstrapped.
    """

    id: Optional[int] = None
    name: str
    certificate: str
    private_key: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class InfrastructureState(BaseModel):
    """
    Live resources after the infrastructure reconciler ran.

    Attributes:
        images: Snapshot per CPU architecture ("amd64", "arm64").
        control_plane: Control-plane servers in creation order; the first is
            the bootstrap candidate.
        workers: Worker servers keyed by pool name.
    """

    network: Network
    firewall: Firewall
    placement_groups: Dict[str, PlacementGroup] = Field(default_factory=dict)
    api_load_balancer: LoadBalancer
    ingress_load_balancer: Optional[LoadBalancer] = None
    ssh_key: Optional[SSHKey] = None
    images: Dict[str, Snapshot] = Field(default_factory=dict)
    control_plane: List[Server] = Field(default_factory=list)
    workers: Dict[str, List[Server]] = Field(default_factory=dict)
    floating_ip: Optional[FloatingIP] = None

    @property
    def endpoint(self) -> str:
        """Public address of the API load balancer."""
        if not self.api_load_balancer.public_ipv4:
            raise ValueError(
                f"load balancer {self.api_load_balancer.name} has no public address"
            )
        return self.api_load_balancer.public_ipv4

    @property
    def all_workers(self) -> List[Server]:
        return [server for servers in self.workers.values() for server in servers]
