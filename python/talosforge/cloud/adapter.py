"""
talosforge/cloud/adapter.py

The contract talosforge consumes from the cloud provider, plus the idempotent
get-or-create and delete-if-present helpers every caller goes through.

Implementations must:
  - raise ResourceAlreadyExistsError when creating a name that already exists,
  - raise ResourceNotFoundError when deleting or mutating something missing,
  - retry TransientCloudError (rate limiting, timeouts) internally with bounded
    exponential backoff, e.g. by decorating calls with `cloud_retry`.

The reconciler itself never retries cloud calls.
"""

from __future__ import annotations

import abc
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from typing_extensions import TypeVar

from talosforge.models.cloud import (
    Certificate,
    Firewall,
    FloatingIP,
    LoadBalancer,
    Network,
    PlacementGroup,
    Server,
    Snapshot,
    SSHKey,
    Subnet,
)
from talosforge.models.cluster_spec import FirewallRule
from talosforge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CloudError(Exception):
    """Base class for errors surfaced by a CloudAdapter."""


class ResourceNotFoundError(CloudError):
    """The named resource does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' not found")
        self.kind = kind
        self.name = name


class ResourceAlreadyExistsError(CloudError):
    """A resource with the requested name already exists."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} '{name}' already exists")
        self.kind = kind
        self.name = name


class TransientCloudError(CloudError):
    """Rate limiting, timeouts and similar retryable provider failures."""


cloud_retry = async_retry(
    retries=5,
    delay=1.0,
    backoff=2.0,
    max_delay=30.0,
    noisy=True,
    retry_on=(TransientCloudError,),
)


class CloudAdapter(abc.ABC):
    """
    Provider CRUD for every resource kind talosforge owns. Lookups are by name
    and return None when absent; label arguments are exact-match mappings.
    """

    # Network
    @abc.abstractmethod
    async def get_network(self, name: str) -> Optional[Network]: ...

    @abc.abstractmethod
    async def create_network(self, network: Network) -> Network: ...

    @abc.abstractmethod
    async def add_subnet(self, network_id: int, subnet: Subnet) -> Network: ...

    @abc.abstractmethod
    async def delete_network(self, name: str) -> None: ...

    # Firewall
    @abc.abstractmethod
    async def get_firewall(self, name: str) -> Optional[Firewall]: ...

    @abc.abstractmethod
    async def create_firewall(self, firewall: Firewall) -> Firewall: ...

    @abc.abstractmethod
    async def set_firewall_rules(
        self, firewall_id: int, rules: List[FirewallRule]
    ) -> Firewall: ...

    @abc.abstractmethod
    async def delete_firewall(self, name: str) -> None: ...

    # Placement group
    @abc.abstractmethod
    async def get_placement_group(self, name: str) -> Optional[PlacementGroup]: ...

    @abc.abstractmethod
    async def create_placement_group(
        self, placement_group: PlacementGroup
    ) -> PlacementGroup: ...

    @abc.abstractmethod
    async def delete_placement_group(self, name: str) -> None: ...

    # Load balancer
    @abc.abstractmethod
    async def get_load_balancer(self, name: str) -> Optional[LoadBalancer]: ...

    @abc.abstractmethod
    async def create_load_balancer(self, load_balancer: LoadBalancer) -> LoadBalancer: ...

    @abc.abstractmethod
    async def delete_load_balancer(self, name: str) -> None: ...

    # Server
    @abc.abstractmethod
    async def get_server(self, name: str) -> Optional[Server]: ...

    @abc.abstractmethod
    async def create_server(self, server: Server) -> Server: ...

    @abc.abstractmethod
    async def delete_server(self, name: str) -> None: ...

    @abc.abstractmethod
    async def list_servers_by_label(self, labels: Dict[str, str]) -> List[Server]: ...

    # SSH key
    @abc.abstractmethod
    async def get_ssh_key(self, name: str) -> Optional[SSHKey]: ...

    @abc.abstractmethod
    async def create_ssh_key(self, ssh_key: SSHKey) -> SSHKey: ...

    @abc.abstractmethod
    async def delete_ssh_key(self, name: str) -> None: ...

    # Floating IP
    @abc.abstractmethod
    async def get_floating_ip(self, name: str) -> Optional[FloatingIP]: ...

    @abc.abstractmethod
    async def create_floating_ip(self, floating_ip: FloatingIP) -> FloatingIP: ...

    @abc.abstractmethod
    async def assign_floating_ip(self, floating_ip_id: int, server_id: int) -> FloatingIP: ...

    @abc.abstractmethod
    async def delete_floating_ip(self, name: str) -> None: ...

    # Snapshot
    @abc.abstractmethod
    async def get_snapshot_by_labels(self, labels: Dict[str, str]) -> Optional[Snapshot]: ...

    @abc.abstractmethod
    async def delete_snapshot(self, snapshot_id: int) -> None: ...

    # Certificate
    @abc.abstractmethod
    async def get_certificate(self, name: str) -> Optional[Certificate]: ...

    @abc.abstractmethod
    async def create_certificate(self, certificate: Certificate) -> Certificate: ...

    @abc.abstractmethod
    async def delete_certificate(self, name: str) -> None: ...

    # Sweep
    @abc.abstractmethod
    async def cleanup_by_label(self, labels: Dict[str, str]) -> None:
        """
        Delete every resource of every kind (except snapshots) carrying all of
        `labels`, in dependency-safe order.
        """


async def ensure(
    kind: str,
    name: str,
    get: Callable[[], Awaitable[Optional[T]]],
    create: Callable[[], Awaitable[T]],
) -> T:
    """
    Get-before-create. An already-exists response from `create` (a concurrent
    or earlier creation) resolves to the existing resource.

    Args:
        kind: Resource kind for logs and errors.
        name: Resource name.
        get: Looks the resource up by name.
        create: Creates it.

    Returns:
        The existing or newly created resource.

    Raises:
        ResourceNotFoundError: If create reported a conflict but the resource
            still cannot be found.
    """
    existing = await get()
    if existing is not None:
        logger.debug("%s %s already exists", kind, name)
        return existing

    logger.info("Creating %s %s", kind, name)
    try:
        return await create()
    except ResourceAlreadyExistsError:
        logger.info("%s %s was created concurrently, reusing it", kind, name)
        again = await get()
        if again is None:
            raise ResourceNotFoundError(kind, name)
        return again


async def delete_if_present(
    kind: str, name: str, delete: Callable[[], Awaitable[None]]
) -> bool:
    """
    Delete a resource, treating not-found as success.

    Returns:
        True if something was deleted, False if it was already gone.
    """
    try:
        await delete()
    except ResourceNotFoundError:
        logger.debug("%s %s already absent", kind, name)
        return False
    logger.info("Deleted %s %s", kind, name)
    return True
