"""
talosforge/utils/ephemeral_file.py

Async context manager yielding a path inside a private temporary directory,
used to hand kubeconfig/talosconfig bytes to `kubectl`, `talosctl` and `helm`,
which only accept them as files.

Prefers `/dev/shm` so credentials never touch disk, and falls back to the
system temporary directory where `/dev/shm` does not exist.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


def _default_parent_dir() -> str:
    return "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_manager(
    single_file_name: str,
    *,
    content: Optional[bytes] = None,
    prefix: str = "talosforge-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Create a private directory, yield the path of `single_file_name` inside it,
    and remove everything on exit.

    Args:
        single_file_name: The ephemeral filename.
        content: If given, written to the file (mode 0600) before yielding.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory; defaults to /dev/shm.

    Yields:
        str: The ephemeral file path.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent_dir(), prefix=prefix)
    ephemeral_path = os.path.join(ephemeral_dir, single_file_name)

    try:
        if content is not None:
            fd = os.open(ephemeral_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            os.close(fd)
            async with aiofiles.open(ephemeral_path, "wb") as f:
                await f.write(content)
        yield ephemeral_path

    finally:
        # Remove ephemeral files, then remove ephemeral_dir
        if os.path.isdir(ephemeral_dir):
            for item in os.listdir(ephemeral_dir):
                item_path = os.path.join(ephemeral_dir, item)
                if os.path.isfile(item_path) or os.path.islink(item_path):
                    os.remove(item_path)
            os.rmdir(ephemeral_dir)
