"""
talosforge/utils/talos.py

Node OS API access: the NodeOSClient contract and its `talosctl`-backed
implementation.

Unauthenticated calls (maintenance mode) only take the node address. Every
authenticated call takes the talosconfig bytes, so one client instance can
serve both phases of a node's life.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import List, Optional, Union

from talosforge.errors import EtcdAlreadyBootstrappedError, TalosforgeError
from talosforge.models.bootstrap import ServiceHealth
from talosforge.utils.async_command_runner import CommandError, run_command
from talosforge.utils.ephemeral_file import ephemeral_manager

logger = logging.getLogger(__name__)

TALOS_API_PORT = 50000

_AUTH_MARKERS = (
    "x509",
    "tls:",
    "certificate",
    "authentication handshake failed",
    "PermissionDenied",
    "Unauthenticated",
)
_UNREACHABLE_MARKERS = (
    "connection refused",
    "no route to host",
    "i/o timeout",
    "DeadlineExceeded",
    "context deadline exceeded",
    "Unavailable",
    "connection reset",
)
_MAINTENANCE_MARKER = "maintenance mode"
_ETCD_DOWN_MARKERS = ("etcd is not running", "service \"etcd\" not running", "NotFound")


class NodeOSError(TalosforgeError):
    """A node OS API call failed."""

    def __init__(self, message: str, node: str) -> None:
        super().__init__(f"{node}: {message}")
        self.node = node


class NodeAuthenticationError(NodeOSError):
    """The node rejected the client certificate (or we rejected the node's)."""


class NodeUnreachableError(NodeOSError):
    """The node API could not be reached."""


def classify_talosctl_error(
    node: str, stderr: str
) -> Optional[Union[str, Exception]]:
    """
    Map talosctl stderr to a dedicated exception, or None to keep the generic
    CommandError.
    """
    if any(marker in stderr for marker in _AUTH_MARKERS):
        return NodeAuthenticationError(stderr.splitlines()[-1] if stderr else "", node)
    if any(marker in stderr for marker in _UNREACHABLE_MARKERS):
        return NodeUnreachableError(stderr.splitlines()[-1] if stderr else "", node)
    return None


class NodeOSClient(abc.ABC):
    """Operations on a single node's OS API."""

    @abc.abstractmethod
    async def maintenance_mode(self, ip: str) -> bool:
        """
        True if the node answers unauthenticated requests, i.e. it is still
        waiting for its machine configuration.
        """

    @abc.abstractmethod
    async def apply_config_insecure(self, ip: str, config: bytes) -> None:
        """
        Apply a machine configuration over the unauthenticated maintenance
        connection. The node reboots afterwards.
        """

    @abc.abstractmethod
    async def version(self, ip: str, talosconfig: bytes) -> str:
        """
        Authenticated version call; the cheapest proof that the node is
        configured with our certificates.

        Raises:
            NodeAuthenticationError: On certificate rejection.
            NodeUnreachableError: If the node cannot be reached.
        """

    @abc.abstractmethod
    async def service_status(
        self, ip: str, talosconfig: bytes, service: str
    ) -> ServiceHealth: ...

    @abc.abstractmethod
    async def etcd_members(self, ip: str, talosconfig: bytes) -> List[str]:
        """
        Hostnames of the etcd members as seen from this node; empty when etcd
        is not running there yet.
        """

    @abc.abstractmethod
    async def bootstrap_etcd(self, ip: str, talosconfig: bytes) -> None:
        """
        Raises:
            EtcdAlreadyBootstrappedError: If etcd already has data.
        """

    @abc.abstractmethod
    async def etcd_leave(self, ip: str, talosconfig: bytes) -> None:
        """Remove this node from etcd membership before it is destroyed."""


class TalosctlClient(NodeOSClient):
    """
    NodeOSClient backed by the `talosctl` binary.

    Args:
        command_timeout: Per-invocation timeout in seconds.
        talosctl: Path or name of the talosctl binary.
    """

    def __init__(self, command_timeout: float = 60.0, talosctl: str = "talosctl") -> None:
        self._timeout = command_timeout
        self._talosctl = talosctl

    async def _run_insecure(
        self, ip: str, args: List[str], input_data: Optional[bytes] = None
    ) -> str:
        return await run_command(
            [self._talosctl, "--nodes", ip, "--endpoints", ip, *args, "--insecure"],
            sensitive=False,
            input_data=input_data,
            retries=1,
            timeout=self._timeout,
            error_parser=lambda stderr: classify_talosctl_error(ip, stderr),
        )

    async def _run(self, ip: str, talosconfig: bytes, args: List[str]) -> str:
        async with ephemeral_manager(
            "talosconfig", content=talosconfig, prefix="talosconfig-"
        ) as path:
            return await run_command(
                [
                    self._talosctl,
                    "--talosconfig",
                    path,
                    "--nodes",
                    ip,
                    "--endpoints",
                    ip,
                    *args,
                ],
                sensitive=False,
                retries=1,
                timeout=self._timeout,
                error_parser=lambda stderr: classify_talosctl_error(ip, stderr),
            )

    async def maintenance_mode(self, ip: str) -> bool:
        try:
            await self._run_insecure(ip, ["version"])
            return True
        except (CommandError, NodeOSError) as ex:
            text = getattr(ex, "stderr", "") or str(ex)
            return _MAINTENANCE_MARKER in text

    async def apply_config_insecure(self, ip: str, config: bytes) -> None:
        async with ephemeral_manager(
            "machineconfig.yaml", content=config, prefix="machineconfig-"
        ) as path:
            await self._run_insecure(ip, ["apply-config", "--file", path])
        logger.info("Applied machine configuration to %s", ip)

    async def version(self, ip: str, talosconfig: bytes) -> str:
        raw = await self._run(ip, talosconfig, ["version"])
        tags = [
            line.split(":", 1)[1].strip()
            for line in raw.splitlines()
            if line.strip().startswith("Tag:")
        ]
        return tags[-1] if tags else raw

    async def service_status(
        self, ip: str, talosconfig: bytes, service: str
    ) -> ServiceHealth:
        raw = await self._run(ip, talosconfig, ["get", "services", service, "-o", "json"])
        spec = json.loads(raw).get("spec", {}) if raw else {}
        running = bool(spec.get("running"))
        healthy = bool(spec.get("healthy"))
        return ServiceHealth(
            node=ip,
            service=service,
            state="running" if running else "stopped",
            healthy=running and healthy,
        )

    async def etcd_members(self, ip: str, talosconfig: bytes) -> List[str]:
        try:
            raw = await self._run(ip, talosconfig, ["etcd", "members"])
        except CommandError as ex:
            if any(marker in ex.stderr for marker in _ETCD_DOWN_MARKERS):
                return []
            raise
        # NODE  ID  HOSTNAME  PEER URLS  CLIENT URLS  LEARNER
        rows = [line.split() for line in raw.splitlines()[1:] if line.strip()]
        return [row[2] for row in rows if len(row) >= 3]

    async def bootstrap_etcd(self, ip: str, talosconfig: bytes) -> None:
        try:
            await self._run(ip, talosconfig, ["bootstrap"])
        except CommandError as ex:
            if "AlreadyExists" in ex.stderr or "already bootstrapped" in ex.stderr:
                raise EtcdAlreadyBootstrappedError(
                    f"etcd on {ip} is already bootstrapped", node=ip
                ) from ex
            raise
        logger.info("Issued etcd bootstrap on %s", ip)

    async def etcd_leave(self, ip: str, talosconfig: bytes) -> None:
        await self._run(ip, talosconfig, ["etcd", "leave"])
        logger.info("Node %s left etcd", ip)
