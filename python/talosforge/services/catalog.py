"""
talosforge/services/catalog.py

Maps a spec's addon toggles to the AddonSpecs to apply, CNI first.
"""

from __future__ import annotations

from typing import List

from talosforge.models.addons import AddonSpec
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.services.cilium import cilium_addon
from talosforge.services.hcloud import ccm_addon, csi_addon
from talosforge.services.platform import (
    argocd_addon,
    cert_manager_addon,
    ingress_nginx_addon,
    metrics_server_addon,
)


def enabled_addons(
    spec: ClusterSpec, token: str, network_id: int, existing_ipsec_key: str = ""
) -> List[AddonSpec]:
    """
    Args:
        spec: Desired cluster state.
        token: Provider API token for the CCM and CSI secrets.
        network_id: Id of the cluster's private network.
        existing_ipsec_key: Cilium IPsec key already in the cluster, if any.
    """
    toggles = spec.addons
    addons: List[AddonSpec] = []
    if toggles.cilium:
        addons.append(cilium_addon(spec, existing_ipsec_key))
    if toggles.ccm:
        addons.append(ccm_addon(spec, token, network_id))
    if toggles.csi:
        addons.append(csi_addon(spec, token))
    if toggles.metrics_server:
        addons.append(metrics_server_addon(spec))
    if toggles.cert_manager:
        addons.append(cert_manager_addon(spec))
    if toggles.ingress_nginx:
        addons.append(ingress_nginx_addon(spec))
    if toggles.argocd:
        addons.append(argocd_addon(spec))
    return addons
