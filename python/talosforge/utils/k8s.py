"""
talosforge/utils/k8s.py

Kubernetes access through `kubectl`: the KubernetesClient contract and its
subprocess implementation. Every call runs against an explicit kubeconfig
(handed to kubectl as an ephemeral file), never the ambient one.
"""

from __future__ import annotations

import abc
import base64
import json
import logging
from typing import Any, Dict, List, Optional

import yaml

from talosforge.models.k8s import KubernetesNode, KubernetesPod
from talosforge.utils.async_command_runner import CommandError, run_command
from talosforge.utils.ephemeral_file import ephemeral_manager

logger = logging.getLogger(__name__)


class KubernetesClient(abc.ABC):
    """The cluster operations the sequencers and addon manager need."""

    @abc.abstractmethod
    async def list_nodes(self) -> List[KubernetesNode]: ...

    @abc.abstractmethod
    async def list_pods(self, namespace: str, selector: str) -> List[KubernetesPod]: ...

    @abc.abstractmethod
    async def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        """
        Return the decoded data of a secret, or None if it does not exist.
        """

    @abc.abstractmethod
    async def apply_manifests(self, manifests: str) -> None:
        """
        Apply a multi-document YAML stream (create or update).
        """

    @abc.abstractmethod
    async def delete_node(self, name: str) -> None:
        """
        Delete a node object; a missing node is not an error.
        """


def secret_manifest(name: str, namespace: str, data: Dict[str, str]) -> Dict[str, Any]:
    """
    Build an Opaque Secret manifest with base64-encoded data.
    """
    b64_data = {
        k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in data.items()
    }
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "type": "Opaque",
        "data": b64_data,
    }


def namespace_manifest(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def dump_manifests(objects: List[Dict[str, Any]]) -> str:
    return yaml.safe_dump_all(objects, sort_keys=False)


class KubectlClient(KubernetesClient):
    """
    KubernetesClient backed by the `kubectl` binary.

    Args:
        kubeconfig: Admin kubeconfig bytes.
        command_timeout: Per-invocation timeout in seconds.
        kubectl: Path or name of the kubectl binary.
    """

    def __init__(
        self, kubeconfig: bytes, command_timeout: float = 120.0, kubectl: str = "kubectl"
    ) -> None:
        self._kubeconfig = kubeconfig
        self._timeout = command_timeout
        self._kubectl = kubectl

    async def _run(
        self, args: List[str], input_data: Optional[str] = None, retries: int = 1
    ) -> str:
        async with ephemeral_manager(
            "kubeconfig", content=self._kubeconfig, prefix="kubeconfig-"
        ) as path:
            return await run_command(
                [self._kubectl, "--kubeconfig", path, *args],
                sensitive=False,
                input_data=input_data,
                retries=retries,
                timeout=self._timeout,
            )

    async def list_nodes(self) -> List[KubernetesNode]:
        raw = await self._run(["get", "nodes", "-o", "json"])
        items = json.loads(raw).get("items", [])
        return [KubernetesNode.from_json(item) for item in items]

    async def list_pods(self, namespace: str, selector: str) -> List[KubernetesPod]:
        raw = await self._run(
            ["get", "pods", "-n", namespace, "-l", selector, "-o", "json"]
        )
        items = json.loads(raw).get("items", [])
        return [KubernetesPod.from_json(item) for item in items]

    async def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        try:
            raw = await self._run(["-n", namespace, "get", "secret", name, "-o", "json"])
        except CommandError as ex:
            if "NotFound" in ex.stderr or "NotFound" in str(ex):
                return None
            raise
        b64_data = json.loads(raw).get("data", {}) or {}
        return {
            key: base64.b64decode(val).decode("utf-8") for key, val in b64_data.items()
        }

    async def apply_manifests(self, manifests: str) -> None:
        if not manifests.strip():
            return
        await self._run(
            ["apply", "--server-side", "--force-conflicts", "-f", "-"],
            input_data=manifests,
            retries=3,
        )

    async def delete_node(self, name: str) -> None:
        await self._run(["delete", "node", name, "--ignore-not-found"])
