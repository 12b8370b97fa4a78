"""
talosforge/utils/helm.py

Renders Helm charts to plain manifests with `helm template --repo`, so that
applying them is a `kubectl apply` like any other object and no Helm release
state lives in the cluster.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import yaml

from talosforge.models.addons import ChartRef
from talosforge.utils.async_command_runner import run_command
from talosforge.utils.ephemeral_file import ephemeral_manager

logger = logging.getLogger(__name__)


async def render_chart(
    chart: ChartRef,
    release: str,
    namespace: str,
    values: Dict[str, Any],
    *,
    kube_version: Optional[str] = None,
    timeout: float = 300.0,
    helm: str = "helm",
) -> str:
    """
    Render a chart from a remote repository.

    Args:
        chart: Repository, chart name and pinned version.
        release: Release name used in rendered object names.
        namespace: Namespace the objects are rendered into.
        values: Chart values, passed as a values file.
        kube_version: Kubernetes version for chart capability checks.
        timeout: Seconds before the helm invocation is abandoned.
        helm: Path or name of the helm binary.

    Returns:
        str: The rendered multi-document YAML.

    Raises:
        CommandError: If helm fails (download or template errors).
    """
    rendered_values = yaml.safe_dump(values, sort_keys=False).encode()
    async with ephemeral_manager(
        "values.yaml", content=rendered_values, prefix="helm-values-"
    ) as values_path:
        command = [
            helm,
            "template",
            release,
            chart.name,
            "--repo",
            chart.repository,
            "--version",
            chart.version,
            "--namespace",
            namespace,
            "--include-crds",
            "--values",
            values_path,
        ]
        if kube_version:
            command += ["--kube-version", kube_version.lstrip("v")]
        logger.info("Rendering chart %s %s", chart.name, chart.version)
        return await run_command(command, sensitive=False, retries=3, timeout=timeout)
