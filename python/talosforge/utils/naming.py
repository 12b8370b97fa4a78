"""
talosforge/utils/naming.py

Deterministic resource names and labels. Every owned resource is named from
the cluster name, and the name is the idempotency key for get-before-create.
"""

from __future__ import annotations

from typing import Dict, List, Optional

LABEL_PREFIX = "talosforge.io"
CLUSTER_LABEL = f"{LABEL_PREFIX}/cluster"
ROLE_LABEL = f"{LABEL_PREFIX}/role"
POOL_LABEL = f"{LABEL_PREFIX}/pool"
MANAGED_BY_LABEL = f"{LABEL_PREFIX}/managed-by"
OS_VERSION_LABEL = f"{LABEL_PREFIX}/os-version"
K8S_VERSION_LABEL = f"{LABEL_PREFIX}/k8s-version"
ARCH_LABEL = f"{LABEL_PREFIX}/arch"
OS_LABEL = f"{LABEL_PREFIX}/os"

MANAGED_BY = "talosforge"
ROLE_CONTROL_PLANE = "control-plane"
ROLE_WORKER = "worker"


def network_name(cluster: str) -> str:
    return f"{cluster}-net"


def firewall_name(cluster: str) -> str:
    return f"{cluster}-fw"


def placement_group_name(cluster: str, pool: str) -> str:
    return f"{cluster}-{pool}-pg"


def api_load_balancer_name(cluster: str) -> str:
    return f"{cluster}-kube"


def ingress_load_balancer_name(cluster: str) -> str:
    return f"{cluster}-ingress"


def ssh_key_name(cluster: str) -> str:
    return f"{cluster}-key"


def floating_ip_name(cluster: str) -> str:
    return f"{cluster}-vip"


def state_marker_name(cluster: str) -> str:
    return f"{cluster}-state"


def server_name(cluster: str, pool: str, index: int) -> str:
    """
    Name of the `index`-th (1-based) member of a pool.
    """
    if index < 1:
        raise ValueError(f"pool member index must be 1-based, got {index}")
    return f"{cluster}-{pool}-{index}"


def pool_member_names(cluster: str, pool: str, count: int) -> List[str]:
    return [server_name(cluster, pool, index) for index in range(1, count + 1)]


def parse_member_index(cluster: str, pool: str, name: str) -> Optional[int]:
    """
    Return the member index if `name` follows the pool naming scheme, else None.
    """
    prefix = f"{cluster}-{pool}-"
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix) :]
    return int(suffix) if suffix.isdigit() and int(suffix) > 0 else None


def cluster_labels(cluster: str) -> Dict[str, str]:
    """Labels put on every owned resource."""
    return {CLUSTER_LABEL: cluster, MANAGED_BY_LABEL: MANAGED_BY}


def server_labels(
    cluster: str,
    role: str,
    pool: str,
    os_version: str,
    kubernetes_version: str,
    extra: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    return {
        **(extra or {}),
        **cluster_labels(cluster),
        ROLE_LABEL: role,
        POOL_LABEL: pool,
        OS_VERSION_LABEL: os_version,
        K8S_VERSION_LABEL: kubernetes_version,
    }


def label_selector(labels: Dict[str, str]) -> str:
    """Render labels as a `k=v,k=v` selector, sorted for stable output."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def cluster_selector(cluster: str) -> str:
    return label_selector({CLUSTER_LABEL: cluster})


def role_selector(cluster: str, role: str) -> str:
    return label_selector({CLUSTER_LABEL: cluster, ROLE_LABEL: role})
