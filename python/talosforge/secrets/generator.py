"""
talosforge/secrets/generator.py

Derives machine configuration documents, the talosconfig and the admin
kubeconfig from a persisted NodeSecrets bundle.

Machine configs name the load balancer (`https://<lb>:6443`) as the control-plane
endpoint and carry it, plus every extra SAN, in the certificate SANs, so that
clients keep trusting the cluster when individual nodes are replaced.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import yaml

from talosforge.models.cluster_spec import ClusterSpec
from talosforge.models.secrets import CertificateAndKey, NodeSecrets
from talosforge.secrets.pki import issue_client_certificate

API_PORT = 6443
KUBEPRISM_PORT = 7445
INSTALLER_IMAGE = "ghcr.io/siderolabs/installer"
KUBELET_IMAGE = "ghcr.io/siderolabs/kubelet"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def _ca_block(ca: CertificateAndKey, include_key: bool = True) -> Dict[str, str]:
    return {"crt": _b64(ca.crt), "key": _b64(ca.key) if include_key else ""}


class TalosConfigGenerator:
    """
    Args:
        spec: Desired cluster state.
        node_secrets: The cluster's persisted secrets.
        endpoint: Public address of the API load balancer.
        private_endpoint: Private address of the API load balancer, added to SANs.
    """

    def __init__(
        self,
        spec: ClusterSpec,
        node_secrets: NodeSecrets,
        endpoint: str,
        private_endpoint: Optional[str] = None,
    ) -> None:
        self.spec = spec
        self.secrets = node_secrets
        self.endpoint = endpoint
        self.private_endpoint = private_endpoint

    @property
    def control_plane_endpoint(self) -> str:
        return f"https://{self.endpoint}:{API_PORT}"

    def cert_sans(self, extra: Optional[List[str]] = None) -> List[str]:
        """
        Load balancer addresses, the cluster's extra SANs and `extra`, de-duplicated
        in first-seen order.
        """
        candidates = [self.endpoint, self.private_endpoint, *self.spec.extra_sans]
        candidates += extra or []
        return list(dict.fromkeys(s for s in candidates if s))

    def _machine_section(
        self, machine_type: str, hostname: str, sans: List[str]
    ) -> Dict[str, Any]:
        versions = self.spec.versions
        machine: Dict[str, Any] = {
            "type": machine_type,
            "token": self.secrets.trustd_token,
            "ca": _ca_block(self.secrets.os_ca, include_key=machine_type == "controlplane"),
            "certSANs": sans,
            "kubelet": {
                "image": f"{KUBELET_IMAGE}:{versions.kubernetes_version}",
                "nodeIP": {"validSubnets": [self.spec.network.node_ipv4_cidr]},
            },
            "network": {"hostname": hostname},
            "install": {
                "disk": "/dev/sda",
                "image": f"{INSTALLER_IMAGE}:{versions.os_version}",
            },
            "features": {
                "rbac": True,
                "kubePrism": {"enabled": True, "port": KUBEPRISM_PORT},
            },
        }
        if self.spec.addons.ccm:
            machine["kubelet"]["extraArgs"] = {"cloud-provider": "external"}
        return machine

    def _cluster_section(self, control_plane: bool, sans: List[str]) -> Dict[str, Any]:
        network = self.spec.network
        addons = self.spec.addons
        cluster: Dict[str, Any] = {
            "id": self.secrets.cluster_id,
            "secret": self.secrets.cluster_secret,
            "clusterName": self.spec.name,
            "controlPlane": {"endpoint": self.control_plane_endpoint},
            "network": {
                "dnsDomain": "cluster.local",
                "podSubnets": [network.pod_ipv4_cidr],
                "serviceSubnets": [network.service_ipv4_cidr],
                "cni": {"name": "none" if addons.cilium else "flannel"},
            },
            "token": self.secrets.bootstrap_token,
            "ca": _ca_block(self.secrets.k8s_ca, include_key=control_plane),
            "proxy": {
                "disabled": addons.cilium and addons.cilium_kube_proxy_replacement
            },
            "discovery": {"enabled": True},
            "externalCloudProvider": {"enabled": addons.ccm},
        }
        if control_plane:
            cluster.update(
                {
                    "secretboxEncryptionSecret": self.secrets.secretbox_encryption_secret,
                    "aggregatorCA": _ca_block(self.secrets.k8s_aggregator_ca),
                    "serviceAccount": {"key": _b64(self.secrets.service_account_key)},
                    "apiServer": {
                        "image": f"registry.k8s.io/kube-apiserver:{self.spec.versions.kubernetes_version}",
                        "certSANs": sans,
                    },
                    "etcd": {
                        "ca": _ca_block(self.secrets.etcd_ca),
                        "advertisedSubnets": [network.node_ipv4_cidr],
                    },
                    "allowSchedulingOnControlPlanes": self.spec.worker_count == 0,
                }
            )
        return cluster

    def _document(self, machine_type: str, hostname: str, sans: List[str]) -> bytes:
        control_plane = machine_type == "controlplane"
        doc = {
            "version": "v1alpha1",
            "debug": False,
            "persist": True,
            "machine": self._machine_section(machine_type, hostname, sans),
            "cluster": self._cluster_section(control_plane, sans),
        }
        return yaml.safe_dump(doc, sort_keys=False).encode()

    def generate_control_plane_config(self, sans: List[str], hostname: str) -> bytes:
        """
        Machine config for a control-plane node.

        Args:
            sans: Additional SANs (e.g. the node's own addresses).
            hostname: The node's hostname, equal to its server name.
        """
        return self._document("controlplane", hostname, self.cert_sans(sans))

    def generate_worker_config(self, hostname: str) -> bytes:
        return self._document("worker", hostname, self.cert_sans())

    def get_client_config(self) -> bytes:
        """
        talosconfig with an `os:admin` client certificate signed by the OS CA.
        The load balancer forwards the node OS API port, so it is the endpoint.
        """
        client = issue_client_certificate(
            self.secrets.os_ca, "talosforge", ["os:admin"], "ed25519"
        )
        config = {
            "context": self.spec.name,
            "contexts": {
                self.spec.name: {
                    "endpoints": [self.endpoint],
                    "ca": _b64(self.secrets.os_ca.crt),
                    "crt": _b64(client.crt),
                    "key": _b64(client.key),
                }
            },
        }
        return yaml.safe_dump(config, sort_keys=False).encode()

    def get_kubeconfig(self, endpoint: str) -> bytes:
        """
        Admin kubeconfig for `https://<endpoint>:6443` with a `system:masters`
        client certificate signed by the persisted Kubernetes CA.
        """
        client = issue_client_certificate(
            self.secrets.k8s_ca, "admin", ["system:masters"], "ecdsa"
        )
        name = self.spec.name
        user = f"admin@{name}"
        config = {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": [
                {
                    "name": name,
                    "cluster": {
                        "server": f"https://{endpoint}:{API_PORT}",
                        "certificate-authority-data": _b64(self.secrets.k8s_ca.crt),
                    },
                }
            ],
            "users": [
                {
                    "name": user,
                    "user": {
                        "client-certificate-data": _b64(client.crt),
                        "client-key-data": _b64(client.key),
                    },
                }
            ],
            "contexts": [
                {
                    "name": user,
                    "context": {"cluster": name, "namespace": "default", "user": user},
                }
            ],
            "current-context": user,
            "preferences": {},
        }
        return yaml.safe_dump(config, sort_keys=False).encode()
