"""
talosforge/models/settings.py

Explicit configuration objects, read from the environment by pydantic-settings
and passed to constructors by the caller. Nothing here is read implicitly at
import time.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Timeouts(BaseSettings):
    """
    Timeouts and poll intervals in seconds.

    Each field maps to an environment variable prefixed with `TALOSFORGE_TIMEOUT_`,
    e.g. `TALOSFORGE_TIMEOUT_NODE_READY=900`.
    """

    model_config = SettingsConfigDict(env_prefix="TALOSFORGE_TIMEOUT_")

    port_wait: float = 120.0
    port_poll: float = 5.0
    reboot_start: float = 30.0
    reboot: float = 600.0
    node_ready: float = 600.0
    node_ready_poll: float = 10.0
    kubernetes_api: float = 900.0
    addon: float = 600.0
    addon_poll: float = 5.0
    etcd_membership: float = 600.0
    health_retry: float = 10.0
    dial: float = 2.0
    command: float = 120.0


class ProviderSettings(BaseSettings):
    """
    Provider token and local state settings.

    `hcloud_token` is read from `HCLOUD_TOKEN`; the remaining fields use the
    `TALOSFORGE_` prefix, e.g. `TALOSFORGE_STATE_DIR`.

    Attributes:
        hcloud_token: API token, handed to the CCM and CSI addons as secrets.
        state_dir: Root for `<state_dir>/<cluster>/{secrets.yaml,kubeconfig,talosconfig}`.
        max_parallel_workers: Worker replacements in flight during an upgrade.
        public_ip_url: Endpoint returning the caller's public IPv4 as plain text.
    """

    model_config = SettingsConfigDict(env_prefix="TALOSFORGE_", populate_by_name=True)

    hcloud_token: SecretStr = Field(
        validation_alias=AliasChoices("HCLOUD_TOKEN", "hcloud_token")
    )
    state_dir: Path = Path.home() / ".talosforge"
    max_parallel_workers: int = Field(default=1, ge=1)
    public_ip_url: str = "https://ipv4.icanhazip.com"

    def cluster_dir(self, cluster_name: str) -> Path:
        return self.state_dir / cluster_name
