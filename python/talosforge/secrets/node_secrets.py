"""
talosforge/secrets/node_secrets.py

Load-or-generate for a cluster's NodeSecrets file.

The file is the cluster identity. It is created once (mode 0600) and never
overwritten: a later run, an upgrade or a different OS version all reuse it. A
file that exists but cannot be parsed is fatal rather than silently replaced.
"""

from __future__ import annotations

import base64
import logging
import os
import secrets
import string
from pathlib import Path
from typing import Any, Union

import aiofiles
import yaml

from talosforge.errors import SecretsCorruptedError
from talosforge.models.secrets import NodeSecrets
from talosforge.models.validator import validate_type
from talosforge.secrets.pki import generate_ca, generate_private_key, load_ca, private_key_pem

logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


def _token() -> str:
    """Random `[a-z0-9]{6}.[a-z0-9]{16}` token."""
    head = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    tail = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return f"{head}.{tail}"


def _random_b64(num_bytes: int = 32) -> str:
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode()


def generate_secrets(os_version: str) -> NodeSecrets:
    """
    Generate a fresh secrets bundle (no I/O).
    """
    return NodeSecrets(
        cluster_id=_random_b64(),
        cluster_secret=_random_b64(),
        bootstrap_token=_token(),
        trustd_token=_token(),
        secretbox_encryption_secret=_random_b64(),
        os_ca=generate_ca("talos", "ed25519", organization="talos"),
        k8s_ca=generate_ca("kubernetes", "ecdsa", organization="kubernetes"),
        k8s_aggregator_ca=generate_ca("front-proxy", "ecdsa"),
        etcd_ca=generate_ca("etcd", "ecdsa", organization="etcd"),
        service_account_key=private_key_pem(generate_private_key("ecdsa")),
        generated_for=os_version,
    )


def _parse_secrets(raw: str, path: Path) -> NodeSecrets:
    try:
        data: Any = yaml.safe_load(raw)
        loaded = validate_type(data, NodeSecrets)
        for ca in (loaded.os_ca, loaded.k8s_ca, loaded.k8s_aggregator_ca, loaded.etcd_ca):
            load_ca(ca)
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        raise SecretsCorruptedError(
            f"secrets file {path} exists but is invalid: {exc}"
        ) from exc
    return loaded


async def load_secrets(path: Union[str, Path]) -> NodeSecrets:
    """
    Read and validate an existing secrets file.

    Raises:
        FileNotFoundError: If the file does not exist.
        SecretsCorruptedError: If it exists but is invalid.
    """
    path = Path(path)
    async with aiofiles.open(path, "r") as f:
        raw = await f.read()
    return _parse_secrets(raw, path)


async def save_secrets(path: Union[str, Path], node_secrets: NodeSecrets) -> None:
    """
    Write a new secrets file with mode 0600.

    The content goes to a private temporary file in the same directory which is
    then hard-linked into place, so `path` either does not exist or holds the
    complete bundle.

    Raises:
        FileExistsError: If the file already exists; it is never overwritten.
    """
    path = Path(path)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    content = yaml.safe_dump(node_secrets.model_dump(mode="json"), sort_keys=False)
    tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(8)}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    os.close(fd)
    try:
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)
            await f.flush()
        os.link(tmp_path, path)
    finally:
        os.unlink(tmp_path)


async def get_or_generate_secrets(path: Union[str, Path], os_version: str) -> NodeSecrets:
    """
    Load the secrets at `path`, or generate and persist them if absent.

    Args:
        path: `<state_dir>/<cluster>/secrets.yaml`.
        os_version: Node OS version recorded in newly generated bundles.

    Returns:
        NodeSecrets: The persisted bundle.

    Raises:
        SecretsCorruptedError: If the file exists but is invalid.
    """
    path = Path(path)
    if path.exists():
        loaded = await load_secrets(path)
        if loaded.generated_for != os_version:
            logger.info(
                "Reusing secrets generated for %s with node OS %s",
                loaded.generated_for,
                os_version,
            )
        return loaded

    logger.info("Generating new cluster secrets at %s", path)
    fresh = generate_secrets(os_version)
    try:
        await save_secrets(path, fresh)
    except FileExistsError:
        # Another run created it in between; theirs wins.
        return await load_secrets(path)
    return fresh
