"""Passive reads of the operating system's neighbor (ARP) cache.

On Linux the kernel table is read from ``/proc/net/arp``; elsewhere the
``arp -an`` command is run. Either way the read is bounded by a short
timeout and yields (network address, hardware address) pairs for complete
entries only. Nothing is sent on the network.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import pathlib
import re
import sys
from dataclasses import dataclass

from nestscout.devices.records import CandidateRecord, SourceFlag
from nestscout.devices.vendors import try_normalize_mac

logger = logging.getLogger(__name__)

PROC_NET_ARP = pathlib.Path("/proc/net/arp")

# ATF_COM: entry is complete
_ATF_COM = 0x02

# BSD/macOS: "? (192.168.1.20) at 0:17:88:a:b:c on en0 ifscope [ethernet]"
_BSD_ARP_LINE = re.compile(
    r"\((?P<ip>[0-9a-fA-F.:]+)\)\s+at\s+(?P<mac>[0-9a-fA-F:.-]+)(?:\s+on\s+(?P<iface>\S+))?"
)


@dataclass(frozen=True)
class NeighborEntry:
    """One complete neighbor-cache entry."""

    network_address: str
    hardware_address: str
    interface: str | None = None

    def to_candidate(self) -> CandidateRecord:
        return CandidateRecord(
            source=SourceFlag.CACHE,
            network_address=self.network_address,
            hardware_address=self.hardware_address,
        )


def _valid_ip(value: str) -> str | None:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def parse_proc_net_arp(text: str) -> list[NeighborEntry]:
    """Parse the Linux ``/proc/net/arp`` table.

    Incomplete entries (flags without ATF_COM), all-zero and broadcast
    hardware addresses are skipped.
    """
    entries: list[NeighborEntry] = []
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4:
            continue
        ip = _valid_ip(parts[0])
        if ip is None:
            continue
        try:
            flags = int(parts[2], 16)
        except ValueError:
            continue
        if not flags & _ATF_COM:
            continue
        mac = try_normalize_mac(parts[3])
        if mac is None:
            continue
        interface = parts[5] if len(parts) > 5 else None
        entries.append(NeighborEntry(ip, mac, interface))
    return entries


def parse_arp_output(text: str) -> list[NeighborEntry]:
    """Parse BSD/macOS ``arp -an`` output, skipping ``(incomplete)`` rows."""
    entries: list[NeighborEntry] = []
    for line in text.splitlines():
        match = _BSD_ARP_LINE.search(line)
        if not match:
            continue
        ip = _valid_ip(match.group("ip"))
        mac = try_normalize_mac(match.group("mac"))
        if ip is None or mac is None:
            continue
        entries.append(NeighborEntry(ip, mac, match.group("iface")))
    return entries


class NeighborCacheReader:
    """Reads the local neighbor cache within a timeout.

    Parameters
    ----------
    proc_path:
        Location of the Linux ARP table.
    arp_command:
        Command used when the proc table is not available.
    """

    def __init__(
        self,
        proc_path: pathlib.Path = PROC_NET_ARP,
        arp_command: tuple[str, ...] = ("arp", "-an"),
    ) -> None:
        self._proc_path = proc_path
        self._arp_command = arp_command

    async def read(self, timeout: float) -> list[NeighborEntry]:
        """Return the cache contents, de-duplicated by network address.

        A read that fails or exceeds *timeout* returns an empty list; the
        cache is only ever a hint.
        """
        try:
            entries = await asyncio.wait_for(self._read_entries(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Neighbor cache read exceeded %.2fs, skipping", timeout)
            return []
        except OSError:
            logger.warning("Neighbor cache unavailable", exc_info=True)
            return []

        unique: dict[str, NeighborEntry] = {}
        for entry in entries:
            unique.setdefault(entry.network_address, entry)
        logger.info("Neighbor cache returned %d entries", len(unique))
        return list(unique.values())

    async def _read_entries(self) -> list[NeighborEntry]:
        if sys.platform.startswith("linux") and self._proc_path.exists():
            return parse_proc_net_arp(self._proc_path.read_text())
        return parse_arp_output(await self._run_arp())

    async def _run_arp(self) -> str:
        proc = await asyncio.create_subprocess_exec(
            *self._arp_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            raise
        if proc.returncode != 0:
            logger.warning(
                "%s failed: %s", " ".join(self._arp_command), stderr.decode().strip()
            )
            return ""
        return stdout.decode(errors="replace")
