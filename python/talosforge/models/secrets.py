"""
talosforge/models/secrets.py

Persisted cluster secret material and the derived cluster credential.

NodeSecrets is generated once per cluster and never rotated: the CAs in it are
the cluster identity. ClusterCredential is re-derived from it on every run.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CertificateAndKey(BaseModel):
    """PEM-encoded certificate and private key."""

    model_config = ConfigDict(frozen=True)

    crt: str
    key: str

    @field_validator("crt")
    @classmethod
    def check_crt(cls, value: str) -> str:
        if "BEGIN CERTIFICATE" not in value:
            raise ValueError("crt is not a PEM certificate")
        return value

    @field_validator("key")
    @classmethod
    def check_key(cls, value: str) -> str:
        if "PRIVATE KEY" not in value:
            raise ValueError("key is not a PEM private key")
        return value


class NodeSecrets(BaseModel):
    """
    Secret bundle from which machine configs, the talosconfig and the admin
    kubeconfig are derived.

    Attributes:
        cluster_id: Random cluster identifier.
        cluster_secret: Shared secret for cluster discovery.
        bootstrap_token: Kubernetes bootstrap token, `[a-z0-9]{6}.[a-z0-9]{16}`.
        trustd_token: Token used by nodes to request certificates from trustd.
        secretbox_encryption_secret: Key for encrypting Kubernetes secrets at rest.
        os_ca: CA for the node OS API.
        k8s_ca: Kubernetes cluster CA.
        k8s_aggregator_ca: Front-proxy CA.
        etcd_ca: etcd CA.
        service_account_key: PEM key signing service-account tokens.
        generated_for: Node OS version the bundle was generated for.
    """

    model_config = ConfigDict(frozen=True)

    cluster_id: str
    cluster_secret: str
    bootstrap_token: str = Field(pattern=r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
    trustd_token: str = Field(pattern=r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
    secretbox_encryption_secret: str
    os_ca: CertificateAndKey
    k8s_ca: CertificateAndKey
    k8s_aggregator_ca: CertificateAndKey
    etcd_ca: CertificateAndKey
    service_account_key: str
    generated_for: str


class ClusterCredential(BaseModel):
    """
    Admin kubeconfig for a cluster, treated as a capability rather than config.

    Attributes:
        kubeconfig: Raw kubeconfig YAML.
        host: Host (the API load balancer address) the current context points at.
        port: API port, always 6443.
        path: Where the kubeconfig was persisted, if it was.
    """

    kubeconfig: bytes
    host: str
    port: int = 6443
    path: Optional[str] = None

    @property
    def server(self) -> str:
        return f"https://{self.host}:{self.port}"
