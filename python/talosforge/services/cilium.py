"""
talosforge/services/cilium.py

Cilium CNI. Installed before every other addon, since nothing else schedules
until pod networking exists.
"""

from __future__ import annotations

import secrets
from typing import Any, Dict, List

from talosforge.models.addons import AddonSpec, ChartRef, SecretRequirement
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.secrets.generator import KUBEPRISM_PORT
from talosforge.utils.k8s import secret_manifest

CHART = ChartRef(repository="https://helm.cilium.io", name="cilium", version="1.16.6")
NAMESPACE = "kube-system"
IPSEC_SECRET = "cilium-ipsec-keys"


def ipsec_key() -> str:
    """Key line in the `<spi>+ <algo> <key> <bits>` form Cilium expects."""
    return f"3+ rfc4106(gcm(aes)) {secrets.token_hex(20)} 128"


def cilium_values(spec: ClusterSpec) -> Dict[str, Any]:
    addons = spec.addons
    kpr = addons.cilium_kube_proxy_replacement
    values: Dict[str, Any] = {
        "ipam": {"mode": "kubernetes"},
        "routingMode": "native",
        "ipv4NativeRoutingCIDR": spec.network.ipv4_cidr,
        "bpf": {"masquerade": kpr, "hostLegacyRouting": True},
        "k8s": {"requireIPv4PodCIDR": True},
        "k8sServiceHost": "127.0.0.1",
        "k8sServicePort": KUBEPRISM_PORT,
        "kubeProxyReplacement": kpr,
        "cgroup": {"autoMount": {"enabled": False}, "hostRoot": "/sys/fs/cgroup"},
        "securityContext": {
            "capabilities": {
                "ciliumAgent": [
                    "CHOWN", "KILL", "NET_ADMIN", "NET_RAW", "IPC_LOCK", "SYS_ADMIN",
                    "SYS_RESOURCE", "DAC_OVERRIDE", "FOWNER", "SETGID", "SETUID",
                ],
                "cleanCiliumState": ["NET_ADMIN", "SYS_ADMIN", "SYS_RESOURCE"],
            }
        },
        "operator": {"replicas": 2 if spec.control_plane_count > 1 else 1},
        "encryption": {
            "enabled": addons.cilium_encryption is not None,
            "type": addons.cilium_encryption or "wireguard",
        },
    }
    if kpr:
        values["kubeProxyReplacementHealthzBindAddr"] = "0.0.0.0:10256"
    return values


def cilium_addon(spec: ClusterSpec, existing_ipsec_key: str = "") -> AddonSpec:
    """
    Args:
        spec: Desired cluster state.
        existing_ipsec_key: Key already present in the cluster; reused so that
            re-applying never rotates it.
    """
    pre: List[Dict[str, Any]] = []
    required: List[SecretRequirement] = []
    if spec.addons.cilium_encryption == "ipsec":
        pre.append(
            secret_manifest(IPSEC_SECRET, NAMESPACE, {"keys": existing_ipsec_key or ipsec_key()})
        )
        required.append(SecretRequirement(name=IPSEC_SECRET, namespace=NAMESPACE, keys=["keys"]))
    return AddonSpec(
        name="cilium",
        chart=CHART,
        release="cilium",
        namespace=NAMESPACE,
        values=cilium_values(spec),
        pre_manifests=pre,
        ready_selector="k8s-app=cilium",
        required_secrets=required,
        cni=True,
    )
