"""Probe target selection: subnet resolution and host ranges per phase."""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)

# Host offsets (last octet on a /24) where home devices usually live:
# routers and static assignments at the bottom, DHCP pools above.
DEFAULT_COMMON_RANGES: tuple[tuple[int, int], ...] = (
    (1, 10),
    (20, 100),
    (100, 200),
    (200, 254),
)

DEFAULT_MAX_SWEEP_HOSTS = 1024


def resolve_subnet(subnet: str) -> ipaddress.IPv4Network:
    """Resolve ``"auto"`` to the local /24, or parse the given CIDR.

    Raises
    ------
    ValueError:
        If *subnet* is not a valid IPv4 network.
    """
    if subnet.lower() != "auto":
        return ipaddress.IPv4Network(subnet, strict=False)
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            local_ip = s.getsockname()[0]
        finally:
            s.close()
        network = ipaddress.IPv4Network(f"{local_ip}/24", strict=False)
        logger.info("Auto-detected subnet: %s (from local IP %s)", network, local_ip)
        return network
    except OSError:
        logger.warning("Subnet auto-detection failed, falling back to 192.168.1.0/24")
        return ipaddress.IPv4Network("192.168.1.0/24")


def in_network(address: str, network: ipaddress.IPv4Network) -> bool:
    try:
        return ipaddress.ip_address(address) in network
    except ValueError:
        return False


def common_targets(
    network: ipaddress.IPv4Network,
    ranges: Sequence[tuple[int, int]] = DEFAULT_COMMON_RANGES,
    exclude: Iterable[str] = (),
) -> list[str]:
    """Hosts whose offset from the network address falls in *ranges*.

    Overlapping ranges are de-duplicated; order is ascending.
    """
    excluded = set(exclude)
    base = int(network.network_address)
    broadcast = int(network.broadcast_address)
    offsets: set[int] = set()
    for low, high in ranges:
        offsets.update(range(max(1, low), high + 1))

    targets: list[str] = []
    for offset in sorted(offsets):
        value = base + offset
        if value >= broadcast and network.num_addresses > 2:
            break
        address = str(ipaddress.IPv4Address(value))
        if address not in excluded:
            targets.append(address)
    return targets


def full_targets(
    network: ipaddress.IPv4Network,
    exclude: Iterable[str] = (),
    max_hosts: int = DEFAULT_MAX_SWEEP_HOSTS,
) -> list[str]:
    """Every host address in *network* not in *exclude*, up to *max_hosts*."""
    excluded = set(exclude)
    targets: list[str] = []
    for host in network.hosts():
        address = str(host)
        if address in excluded:
            continue
        if len(targets) >= max_hosts:
            logger.warning(
                "Full sweep of %s truncated to %d hosts", network, max_hosts
            )
            break
        targets.append(address)
    return targets
