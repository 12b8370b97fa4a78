"""
talosforge/utils/network.py

Plain TCP reachability checks and the CIDR arithmetic used to lay out the
private network deterministically.
"""

from __future__ import annotations

import asyncio
import ipaddress
from typing import Union

from talosforge.utils.polling import Interval, poll_until

DIAL_TIMEOUT = 2.0


async def is_port_open(host: str, port: int, dial_timeout: float = DIAL_TIMEOUT) -> bool:
    """
    Return True if a TCP connection to host:port succeeds within dial_timeout.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=dial_timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def wait_for_port(
    host: str, port: int, *, timeout: float, poll_interval: float = 5.0
) -> None:
    """
    Wait until host:port accepts TCP connections.

    Raises:
        PollTimeoutError: If the port stays closed for the whole timeout.
    """

    async def _open() -> bool:
        return await is_port_open(host, port)

    await poll_until(
        _open,
        timeout=timeout,
        interval=Interval.fixed(poll_interval),
        description=f"{host}:{port} to accept connections",
    )


async def wait_for_port_closed(
    host: str, port: int, *, timeout: float, poll_interval: float = 1.0
) -> None:
    """
    Wait until host:port stops accepting TCP connections (e.g. a node going
    down for reboot).

    Raises:
        PollTimeoutError: If the port stays open for the whole timeout.
    """

    async def _closed() -> bool:
        return not await is_port_open(host, port)

    await poll_until(
        _closed,
        timeout=timeout,
        interval=Interval.fixed(poll_interval),
        description=f"{host}:{port} to close",
    )


def cidr_subnet(cidr: str, newbits: int, netnum: int) -> str:
    """
    Terraform-style cidrsubnet: extend the prefix of `cidr` by `newbits` and
    return the `netnum`-th resulting network.

    Example:
        cidr_subnet("10.0.0.0/16", 3, 2) == "10.0.64.0/19"
    """
    network = ipaddress.ip_network(cidr, strict=False)
    new_prefix = network.prefixlen + newbits
    if new_prefix > network.max_prefixlen:
        raise ValueError(f"cannot add {newbits} bits to {cidr}")
    if netnum < 0 or netnum >= 2**newbits:
        raise ValueError(f"network number {netnum} does not fit in {newbits} bits")
    size = 2 ** (network.max_prefixlen - new_prefix)
    base = int(network.network_address) + netnum * size
    return str(ipaddress.ip_network((base, new_prefix)))


def cidr_host(cidr: str, hostnum: int) -> str:
    """
    Terraform-style cidrhost: the `hostnum`-th address in `cidr`. Negative
    numbers count back from the end of the range (-1 is the broadcast address).

    Example:
        cidr_host("10.0.64.128/25", -2) == "10.0.64.254"
    """
    network = ipaddress.ip_network(cidr, strict=False)
    index = hostnum if hostnum >= 0 else network.num_addresses + hostnum
    if index < 0 or index >= network.num_addresses:
        raise ValueError(f"host number {hostnum} is outside {cidr}")
    address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address] = (
        network.network_address + index
    )
    return str(address)
