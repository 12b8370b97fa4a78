"""
talosforge/deployment/diagnostics.py

Collects a DiagnosticsReport after a fatal bootstrap failure: port reachability
on every control-plane node and the load balancer, core service health and
etcd membership. Collection itself never raises; failed checks are recorded
in the report.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from talosforge.models.bootstrap import DiagnosticsReport, NodeTarget, PortCheck, ServiceHealth
from talosforge.utils.network import is_port_open
from talosforge.utils.talos import TALOS_API_PORT, NodeOSClient

logger = logging.getLogger(__name__)

API_PORT = 6443
CORE_SERVICES = ("apid", "etcd", "kubelet", "trustd")


async def collect_diagnostics(
    node_os: NodeOSClient,
    talosconfig: bytes,
    control_plane: List[NodeTarget],
    load_balancer_ip: str,
    dial_timeout: float = 2.0,
) -> DiagnosticsReport:
    """
    Build a connectivity and health snapshot.

    Args:
        node_os: Node OS client used for service and etcd checks.
        talosconfig: Client configuration for authenticated calls.
        control_plane: Control-plane nodes to check.
        load_balancer_ip: Public address of the API load balancer.
        dial_timeout: TCP dial timeout per port check.
    """
    report = DiagnosticsReport()

    # 1) Port reachability, all at once
    hosts = [node.public_ip for node in control_plane] + [load_balancer_ip]
    targets = [(host, port) for host in hosts for port in (TALOS_API_PORT, API_PORT)]
    results = await asyncio.gather(
        *(is_port_open(host, port, dial_timeout) for host, port in targets)
    )
    report.ports = [
        PortCheck(host=host, port=port, reachable=ok)
        for (host, port), ok in zip(targets, results)
    ]
    reachable = {c.host for c in report.ports if c.reachable and c.port == TALOS_API_PORT}

    # 2) Service health on nodes whose API answers
    for node in control_plane:
        if node.public_ip not in reachable:
            continue
        for service in CORE_SERVICES:
            try:
                health = await node_os.service_status(node.public_ip, talosconfig, service)
                report.services.append(health.model_copy(update={"node": node.name}))
            except Exception as exc:
                report.services.append(
                    ServiceHealth(node=node.name, service=service, error=str(exc))
                )

    # 3) etcd membership from the first node that answers
    for node in control_plane:
        if node.public_ip not in reachable:
            continue
        try:
            report.etcd_members = await node_os.etcd_members(node.public_ip, talosconfig)
            break
        except Exception as exc:
            report.errors.append(f"etcd members via {node.name}: {exc}")

    logger.info("%s", report.summary())
    return report
