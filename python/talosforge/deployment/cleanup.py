"""
talosforge/deployment/cleanup.py

Tears a cluster down in strict reverse creation order:

  floating IP -> worker servers -> control-plane servers -> ingress LB ->
  API LB -> placement groups -> firewall -> SSH key -> marker certificate -> network

Deletion is by deterministic name, plus every server carrying the cluster and
role labels (members beyond the current pool counts). Not-found counts as
success. Failures do not stop the teardown; if any occurred, a label-based
sweep runs as a safety net before a CleanupError reports all of them.
Versioned OS snapshots are shared between clusters and are kept.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Awaitable, Callable, List

from talosforge.cloud.adapter import CloudAdapter, delete_if_present
from talosforge.errors import CleanupError, ReconcileStepError
from talosforge.models.cluster_spec import ClusterSpec, NodePool
from talosforge.utils import naming

logger = logging.getLogger(__name__)


class ClusterCleaner:
    """
    Args:
        cloud: Provider adapter.
        state_dir: Root of the per-cluster state directories.
    """

    def __init__(self, cloud: CloudAdapter, state_dir: Path) -> None:
        self.cloud = cloud
        self.state_dir = Path(state_dir)

    async def _server_names(
        self, spec: ClusterSpec, pools: List[NodePool], role: str, errors: List[BaseException]
    ) -> List[str]:
        names = [
            name
            for pool in pools
            for name in naming.pool_member_names(spec.name, pool.name, pool.count)
        ]
        try:
            labelled = await self.cloud.list_servers_by_label(
                {naming.CLUSTER_LABEL: spec.name, naming.ROLE_LABEL: role}
            )
        except Exception as exc:
            errors.append(ReconcileStepError(f"list_{role}_servers", exc))
            labelled = []
        names += [s.name for s in labelled]
        return list(dict.fromkeys(names))

    async def destroy(self, spec: ClusterSpec, remove_local_state: bool = False) -> None:
        """
        Delete every resource owned by the cluster.

        Args:
            spec: The cluster to destroy.
            remove_local_state: Also delete `<state_dir>/<cluster>` on success.

        Raises:
            CleanupError: Listing every failure and whether the label sweep succeeded.
        """
        name = spec.name
        errors: List[BaseException] = []
        logger.info("Destroying cluster %s", name)

        async def _delete(kind: str, resource: str, delete: Callable[[], Awaitable[None]]) -> None:
            try:
                await delete_if_present(kind, resource, delete)
            except Exception as exc:
                logger.error("Deleting %s %s failed: %s", kind, resource, exc)
                errors.append(ReconcileStepError(f"delete_{kind.replace(' ', '_')}", exc, resource))

        def _server_deleter(server: str) -> Callable[[], Awaitable[None]]:
            return lambda: self.cloud.delete_server(server)

        # 1) Floating IP
        fip = naming.floating_ip_name(name)
        await _delete("floating ip", fip, lambda: self.cloud.delete_floating_ip(fip))

        # 2) Workers, then 3) control plane
        for pools, role in (
            (spec.workers, naming.ROLE_WORKER),
            (spec.control_plane, naming.ROLE_CONTROL_PLANE),
        ):
            servers = await self._server_names(spec, pools, role, errors)
            await asyncio.gather(*(_delete("server", s, _server_deleter(s)) for s in servers))

        # 4) Load balancers
        ingress = naming.ingress_load_balancer_name(name)
        await _delete("load balancer", ingress, lambda: self.cloud.delete_load_balancer(ingress))
        api = naming.api_load_balancer_name(name)
        await _delete("load balancer", api, lambda: self.cloud.delete_load_balancer(api))

        # 5) Placement groups
        for pool in spec.control_plane:
            pg = naming.placement_group_name(name, pool.name)
            await _delete("placement group", pg, lambda: self.cloud.delete_placement_group(pg))

        # 6) Firewall, SSH key, marker certificate, network
        fw = naming.firewall_name(name)
        await _delete("firewall", fw, lambda: self.cloud.delete_firewall(fw))
        key = naming.ssh_key_name(name)
        await _delete("ssh key", key, lambda: self.cloud.delete_ssh_key(key))
        marker = naming.state_marker_name(name)
        await _delete("certificate", marker, lambda: self.cloud.delete_certificate(marker))
        net = naming.network_name(name)
        await _delete("network", net, lambda: self.cloud.delete_network(net))

        if errors:
            sweep_succeeded = True
            logger.warning("Cleanup of %s had %d failure(s); sweeping by label", name, len(errors))
            try:
                await self.cloud.cleanup_by_label({naming.CLUSTER_LABEL: name})
            except Exception as exc:
                logger.error("Label sweep for %s failed: %s", name, exc)
                errors.append(ReconcileStepError("label_sweep", exc))
                sweep_succeeded = False
            raise CleanupError(errors, sweep_succeeded)

        if remove_local_state:
            cluster_dir = self.state_dir / name
            if cluster_dir.exists():
                shutil.rmtree(cluster_dir)
                logger.info("Removed local state %s", cluster_dir)
        logger.info("Cluster %s destroyed", name)
