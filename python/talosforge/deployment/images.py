"""
talosforge/deployment/images.py

Versioned node OS snapshots: one per CPU architecture actually used by the
pools, found by labels or built through an ImageBuilder. Builds for different
architectures run concurrently; snapshots outlive the cluster and are shared
by every cluster using the same version pair.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from typing_extensions import Protocol

from talosforge.cloud.adapter import CloudAdapter
from talosforge.models.cloud import Snapshot
from talosforge.models.cluster_spec import ClusterSpec, NodePool
from talosforge.utils.naming import (
    ARCH_LABEL,
    K8S_VERSION_LABEL,
    OS_LABEL,
    OS_VERSION_LABEL,
)

logger = logging.getLogger(__name__)

ARCH_AMD64 = "amd64"
ARCH_ARM64 = "arm64"


class ImageBuilder(Protocol):
    """Produces a labelled node OS snapshot for one architecture."""

    async def build(
        self,
        *,
        architecture: str,
        os_version: str,
        kubernetes_version: str,
        location: str,
        labels: Dict[str, str],
    ) -> Snapshot: ...


def architecture_for(server_type: str) -> str:
    """
    Ampere server types (`cax*`) are arm64, everything else amd64.
    """
    return ARCH_ARM64 if server_type.lower().startswith("cax") else ARCH_AMD64


def snapshot_labels(os_version: str, kubernetes_version: str, architecture: str) -> Dict[str, str]:
    return {
        OS_LABEL: "talos",
        OS_VERSION_LABEL: os_version,
        K8S_VERSION_LABEL: kubernetes_version,
        ARCH_LABEL: architecture,
    }


def required_architectures(spec: ClusterSpec) -> List[str]:
    """
    Architectures of pools that use the versioned snapshot, sorted.
    """
    return sorted(
        {
            architecture_for(pool.server_type)
            for pool in spec.control_plane + spec.workers
            if pool.image is None and pool.count > 0
        }
    )


class ImageCoordinator:
    """
    Args:
        cloud: Provider adapter used to look snapshots up.
        builder: Builds a snapshot when none matches.
    """

    def __init__(self, cloud: CloudAdapter, builder: ImageBuilder) -> None:
        self.cloud = cloud
        self.builder = builder

    async def _ensure_one(self, spec: ClusterSpec, architecture: str) -> Snapshot:
        labels = snapshot_labels(
            spec.versions.os_version, spec.versions.kubernetes_version, architecture
        )
        existing = await self.cloud.get_snapshot_by_labels(labels)
        if existing is not None:
            logger.info("Reusing %s snapshot %s", architecture, existing.id)
            return existing
        logger.info(
            "Building %s snapshot for %s / %s",
            architecture,
            spec.versions.os_version,
            spec.versions.kubernetes_version,
        )
        return await self.builder.build(
            architecture=architecture,
            os_version=spec.versions.os_version,
            kubernetes_version=spec.versions.kubernetes_version,
            location=spec.location,
            labels=labels,
        )

    async def ensure_images(self, spec: ClusterSpec) -> Dict[str, Snapshot]:
        """
        Return the snapshot for every required architecture, building missing
        ones concurrently.
        """
        architectures = required_architectures(spec)
        snapshots = await asyncio.gather(
            *(self._ensure_one(spec, arch) for arch in architectures)
        )
        return dict(zip(architectures, snapshots))


def image_for(pool: NodePool, images: Dict[str, Snapshot]) -> str:
    """
    The image reference a pool's servers are created from.
    """
    if pool.image is not None:
        return pool.image
    snapshot = images[architecture_for(pool.server_type)]
    return str(snapshot.id)
