"""mDNS/DNS-SD announcement channel.

Uses the zeroconf library to browse HomeKit, Matter and common smart-home
service types. Every resolved service instance becomes an ``Announcement``
carrying its TXT record for the metadata parser.
"""

from __future__ import annotations

import asyncio
import logging

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from nestscout.announcements.channel import Announcement, AnnouncementChannel, Emit

logger = logging.getLogger(__name__)

# Service types browsed by default
BROWSE_SERVICE_TYPES: list[str] = [
    "_hap._tcp.local.",
    "_hap._udp.local.",
    "_homekit._tcp.local.",
    "_matterc._udp.local.",
    "_matter._tcp.local.",
    "_airplay._tcp.local.",
    "_raop._tcp.local.",
    "_companion-link._tcp.local.",
    "_googlecast._tcp.local.",
    "_sonos._tcp.local.",
    "_hue._tcp.local.",
]

_RESOLVE_TIMEOUT_MS = 1500


def instance_label(name: str, service_type: str) -> str | None:
    """Return the instance part of a full service name.

    ``"Living Room Lamp._hap._tcp.local."`` -> ``"Living Room Lamp"``.
    """
    if name.endswith("." + service_type):
        label = name[: -len(service_type) - 1]
    else:
        label = name.split("._", 1)[0]
    label = label.replace("\\032", " ").strip()
    return label or None


def announcement_from_info(info) -> Announcement | None:
    """Build an ``Announcement`` from a resolved zeroconf ServiceInfo.

    Returns None if no IPv4 address is available.
    """
    addresses = info.parsed_addresses()
    ipv4_addrs = [a for a in addresses if ":" not in a]
    if not ipv4_addrs:
        return None

    hostname = info.server.rstrip(".") if info.server else None
    if hostname and hostname.endswith(".local"):
        hostname = hostname[: -len(".local")]

    return Announcement(
        channel=MDNSChannel.name,
        network_address=ipv4_addrs[0],
        service_type=info.type,
        instance_name=instance_label(info.name, info.type),
        hostname=hostname or None,
        raw_fields=dict(info.properties or {}),
    )


class MDNSChannel(AnnouncementChannel):
    """Browse mDNS service types until told to stop.

    Parameters
    ----------
    service_types:
        Service types to browse. Defaults to ``BROWSE_SERVICE_TYPES``.
    resolve_timeout_ms:
        Milliseconds allowed to resolve each discovered instance.
    """

    name = "mdns"

    def __init__(
        self,
        service_types: list[str] | None = None,
        resolve_timeout_ms: int = _RESOLVE_TIMEOUT_MS,
    ) -> None:
        self._service_types = service_types or BROWSE_SERVICE_TYPES
        self._resolve_timeout_ms = resolve_timeout_ms

    async def run(self, emit: Emit, stop: asyncio.Event) -> None:
        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        pending: set[asyncio.Task] = set()

        async def resolve(zeroconf: Zeroconf, service_type: str, name: str) -> None:
            info = AsyncServiceInfo(service_type, name)
            try:
                resolved = await info.async_request(zeroconf, self._resolve_timeout_ms)
            except Exception:
                logger.debug("Resolving %s failed", name, exc_info=True)
                return
            if not resolved:
                logger.debug("Could not resolve %s", name)
                return
            announcement = announcement_from_info(info)
            if announcement is not None:
                emit(announcement)

        def on_service_state_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
                return
            task = asyncio.ensure_future(resolve(zeroconf, service_type, name))
            pending.add(task)
            task.add_done_callback(pending.discard)

        browser = AsyncServiceBrowser(
            aiozc.zeroconf,
            self._service_types,
            handlers=[on_service_state_change],
        )
        try:
            await stop.wait()
        finally:
            for task in list(pending):
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await browser.async_cancel()
            await aiozc.async_close()
