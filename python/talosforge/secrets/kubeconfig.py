"""
talosforge/secrets/kubeconfig.py

Verification and persistence of the admin kubeconfig (and the talosconfig,
which is persisted the same way).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import aiofiles
import yaml

from talosforge.errors import CredentialError
from talosforge.models.secrets import ClusterCredential


def _named_entry(entries: Any, name: Any, key: str) -> Optional[Dict[str, Any]]:
    """
    The `key` mapping of the `{name: ..., key: {...}}` entry called `name`, or
    None when no entry has that name.
    """
    if not isinstance(entries, list):
        raise CredentialError(f"kubeconfig {key}s are not a list")
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            body = entry.get(key)
            if not isinstance(body, dict):
                raise CredentialError(f"kubeconfig {key} {name!r} is not a mapping")
            return body
    return None


def verify_kubeconfig(raw: bytes, expected_host: str, expected_port: int = 6443) -> ClusterCredential:
    """
    Check that a kubeconfig has non-empty clusters/users/contexts and a
    current-context whose cluster points at `https://<expected_host>:<expected_port>`.

    Returns:
        ClusterCredential: The verified credential (not yet persisted).

    Raises:
        CredentialError: On any structural problem or endpoint mismatch.
    """
    try:
        doc = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise CredentialError(f"kubeconfig does not parse: {exc}") from exc
    if not isinstance(doc, dict):
        raise CredentialError("kubeconfig is not a mapping")

    missing = [
        section for section in ("clusters", "users", "contexts") if not doc.get(section)
    ]
    if missing:
        raise CredentialError(f"kubeconfig has empty sections: {', '.join(missing)}")

    current = doc.get("current-context")
    if not current:
        raise CredentialError("kubeconfig has no current-context")

    context = _named_entry(doc["contexts"], current, "context")
    if context is None:
        raise CredentialError(f"current-context '{current}' is not defined")

    cluster = _named_entry(doc["clusters"], context.get("cluster"), "cluster")
    if cluster is None:
        raise CredentialError(f"context '{current}' references an unknown cluster")

    server_url = cluster.get("server")
    if not isinstance(server_url, str):
        raise CredentialError(f"cluster of context '{current}' has no server URL")
    try:
        server = urlparse(server_url)
        port = server.port
    except ValueError as exc:
        raise CredentialError(f"kubeconfig server {server_url!r} is not a valid URL: {exc}") from exc
    if server.scheme != "https" or server.hostname != expected_host or port != expected_port:
        raise CredentialError(
            f"kubeconfig server {server_url!r} does not match "
            f"https://{expected_host}:{expected_port}"
        )
    return ClusterCredential(kubeconfig=raw, host=expected_host, port=expected_port)


async def write_private_file(path: Union[str, Path], content: bytes) -> None:
    """
    Write `content` to `path` with mode 0600, replacing any previous file.
    The parent directory is created with mode 0700 when missing.
    """
    path = Path(path)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.close(fd)
    async with aiofiles.open(tmp_path, "wb") as f:
        await f.write(content)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


async def persist_kubeconfig(
    path: Union[str, Path], raw: bytes, expected_host: str
) -> ClusterCredential:
    """
    Verify, then write the kubeconfig with owner-only permissions.
    """
    credential = verify_kubeconfig(raw, expected_host)
    await write_private_file(path, raw)
    return credential.model_copy(update={"path": str(path)})
