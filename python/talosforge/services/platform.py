"""
talosforge/services/platform.py

Optional platform addons: metrics-server, cert-manager, ingress-nginx, Argo CD.
"""

from __future__ import annotations

from talosforge.models.addons import AddonSpec, ChartRef, SecretRequirement
from talosforge.models.cluster_spec import ClusterSpec


def metrics_server_addon(spec: ClusterSpec) -> AddonSpec:
    return AddonSpec(
        name="metrics-server",
        chart=ChartRef(
            repository="https://kubernetes-sigs.github.io/metrics-server",
            name="metrics-server",
            version="3.12.2",
        ),
        release="metrics-server",
        namespace="kube-system",
        values={
            "replicas": 2 if spec.worker_count > 1 else 1,
            "args": ["--kubelet-insecure-tls"],
        },
        ready_selector="app.kubernetes.io/name=metrics-server",
    )


def cert_manager_addon(spec: ClusterSpec) -> AddonSpec:
    return AddonSpec(
        name="cert-manager",
        chart=ChartRef(
            repository="https://charts.jetstack.io", name="cert-manager", version="v1.16.3"
        ),
        release="cert-manager",
        namespace="cert-manager",
        values={
            "crds": {"enabled": True},
            "replicaCount": 2 if spec.control_plane_count > 1 else 1,
            "startupapicheck": {"enabled": False},
        },
        ready_selector="app.kubernetes.io/instance=cert-manager",
        # The webhook serving certificate only exists once cert-manager works.
        required_secrets=[
            SecretRequirement(
                name="cert-manager-webhook-ca",
                namespace="cert-manager",
                keys=["ca.crt", "tls.crt", "tls.key"],
            )
        ],
    )


def ingress_nginx_addon(spec: ClusterSpec) -> AddonSpec:
    return AddonSpec(
        name="ingress-nginx",
        chart=ChartRef(
            repository="https://kubernetes.github.io/ingress-nginx",
            name="ingress-nginx",
            version="4.12.0",
        ),
        release="ingress-nginx",
        namespace="ingress-nginx",
        values={
            "controller": {
                "kind": "DaemonSet" if spec.load_balancer.ingress_enabled else "Deployment",
                "service": {
                    "type": "NodePort",
                    "nodePorts": {"http": 30000, "https": 30001},
                },
                "config": {"use-proxy-protocol": "false"},
            }
        },
        ready_selector="app.kubernetes.io/name=ingress-nginx,app.kubernetes.io/component=controller",
    )


def argocd_addon(spec: ClusterSpec) -> AddonSpec:
    return AddonSpec(
        name="argocd",
        chart=ChartRef(
            repository="https://argoproj.github.io/argo-helm", name="argo-cd", version="7.7.16"
        ),
        release="argocd",
        namespace="argocd",
        values={
            "global": {"domain": ""},
            "configs": {"params": {"server.insecure": True}},
            "server": {"replicas": 2 if spec.worker_count > 1 else 1},
        },
        ready_selector="app.kubernetes.io/name=argocd-server",
        required_secrets=[
            SecretRequirement(
                name="argocd-initial-admin-secret", namespace="argocd", keys=["password"]
            )
        ],
    )
