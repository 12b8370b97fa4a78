"""
talosforge/utils/public_ip.py

Resolves the caller's public IPv4 address for "restrict to current IP"
firewall rules. Resolved fresh on every call; never cached.
"""

from __future__ import annotations

import ipaddress

import aiohttp

from talosforge.utils.async_retry import async_retry


@async_retry(retries=3, delay=1.0, backoff=2.0, noisy=True)
async def get_public_ipv4(url: str = "https://ipv4.icanhazip.com", timeout: float = 10.0) -> str:
    """
    Ask a plain-text echo service for our public address.

    Args:
        url: Endpoint answering with the caller's IPv4 address.
        timeout: Total request timeout in seconds.

    Returns:
        str: The address, e.g. "203.0.113.7".

    Raises:
        aiohttp.ClientError: On HTTP failures (after retries).
        ValueError: If the response is not an IPv4 address.
    """
    async with aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout)
    ) as session:
        async with session.get(url) as resp:
            resp.raise_for_status()
            body = (await resp.text()).strip()
    return str(ipaddress.IPv4Address(body))
