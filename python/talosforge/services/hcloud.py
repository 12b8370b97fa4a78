"""
talosforge/services/hcloud.py

Cloud-controller manager and CSI driver. Both authenticate with the provider
token from a secret applied ahead of the chart; the CCM also needs the private
network id to route pod traffic.
"""

from __future__ import annotations

from typing import Any, Dict

from talosforge.models.addons import AddonSpec, ChartRef, SecretRequirement
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.utils.k8s import secret_manifest

NAMESPACE = "kube-system"
CCM_CHART = ChartRef(
    repository="https://charts.hetzner.cloud",
    name="hcloud-cloud-controller-manager",
    version="1.21.0",
)
CSI_CHART = ChartRef(repository="https://charts.hetzner.cloud", name="hcloud-csi", version="2.11.0")
CCM_SECRET = "hcloud"
CSI_SECRET = "hcloud-csi"

CONTROL_PLANE_SELECTOR = {"node-role.kubernetes.io/control-plane": ""}
CONTROL_PLANE_TOLERATIONS = [
    {"key": "node-role.kubernetes.io/control-plane", "effect": "NoSchedule", "operator": "Exists"},
    {"key": "node.cloudprovider.kubernetes.io/uninitialized", "value": "true", "effect": "NoSchedule"},
    {"key": "node.kubernetes.io/not-ready", "effect": "NoSchedule", "operator": "Exists"},
]


def ccm_values(spec: ClusterSpec) -> Dict[str, Any]:
    return {
        "kind": "DaemonSet",
        "nodeSelector": CONTROL_PLANE_SELECTOR,
        "tolerations": CONTROL_PLANE_TOLERATIONS,
        "networking": {
            "enabled": True,
            "clusterCIDR": spec.network.pod_ipv4_cidr,
            "network": {"valueFrom": {"secretKeyRef": {"name": CCM_SECRET, "key": "network"}}},
        },
        "env": {
            "HCLOUD_LOAD_BALANCERS_LOCATION": {"value": spec.location},
            "HCLOUD_LOAD_BALANCERS_USE_PRIVATE_IP": {"value": "true"},
            "HCLOUD_LOAD_BALANCERS_ENABLED": {"value": "true"},
            "KUBERNETES_SERVICE_HOST": {"value": "localhost"},
            "KUBERNETES_SERVICE_PORT": {"value": "6443"},
        },
    }


def ccm_addon(spec: ClusterSpec, token: str, network_id: int) -> AddonSpec:
    return AddonSpec(
        name="hcloud-ccm",
        chart=CCM_CHART,
        release="hcloud-cloud-controller-manager",
        namespace=NAMESPACE,
        values=ccm_values(spec),
        pre_manifests=[
            secret_manifest(CCM_SECRET, NAMESPACE, {"token": token, "network": str(network_id)})
        ],
        ready_selector="app.kubernetes.io/name=hcloud-cloud-controller-manager",
        required_secrets=[
            SecretRequirement(name=CCM_SECRET, namespace=NAMESPACE, keys=["token", "network"])
        ],
    )


def csi_values(spec: ClusterSpec) -> Dict[str, Any]:
    return {
        "controller": {
            "replicaCount": 2 if spec.control_plane_count > 1 else 1,
            "hcloudToken": {"existingSecret": {"name": CSI_SECRET, "key": "token"}},
            "nodeSelector": CONTROL_PLANE_SELECTOR,
            "tolerations": CONTROL_PLANE_TOLERATIONS[:1],
        },
        "storageClasses": [
            {"name": "hcloud-volumes", "defaultStorageClass": True, "reclaimPolicy": "Delete"}
        ],
    }


def csi_addon(spec: ClusterSpec, token: str) -> AddonSpec:
    return AddonSpec(
        name="hcloud-csi",
        chart=CSI_CHART,
        release="hcloud-csi",
        namespace=NAMESPACE,
        values=csi_values(spec),
        pre_manifests=[secret_manifest(CSI_SECRET, NAMESPACE, {"token": token})],
        ready_selector="app.kubernetes.io/name=hcloud-csi,app.kubernetes.io/component=controller",
        required_secrets=[SecretRequirement(name=CSI_SECRET, namespace=NAMESPACE, keys=["token"])],
    )
