"""SSDP/UPnP announcement channel.

Sends M-SEARCH multicast, listens for responses and NOTIFY announcements,
then fetches each device description XML from its LOCATION URL to pick up
the friendly name, manufacturer and model.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from xml.etree import ElementTree

import httpx

from nestscout.announcements.channel import Announcement, AnnouncementChannel, Emit

logger = logging.getLogger(__name__)

SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
UPNP_NS = "urn:schemas-upnp-org:device-1-0"

M_SEARCH_REQUEST = (
    "M-SEARCH * HTTP/1.1\r\n"
    f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
    "MAN: \"ssdp:discover\"\r\n"
    "MX: 2\r\n"
    "ST: ssdp:all\r\n"
    "\r\n"
)


def parse_ssdp_response(raw: str, source_ip: str) -> dict | None:
    """Parse an SSDP M-SEARCH response or NOTIFY into header values.

    Returns None if the message is missing a LOCATION header (required) or
    announces a device leaving (``ssdp:byebye``).
    """
    if not raw.strip():
        return None

    headers: dict[str, str] = {}
    for line in raw.split("\r\n"):
        if ":" in line and not line.startswith(("HTTP/", "NOTIFY ", "M-SEARCH ")):
            key, _, value = line.partition(":")
            headers[key.strip().lower()] = value.strip()

    if headers.get("nts") == "ssdp:byebye":
        return None

    location = headers.get("location")
    if not location:
        return None

    return {
        "location": location,
        "server": headers.get("server"),
        "usn": headers.get("usn"),
        "st": headers.get("st") or headers.get("nt"),
        "source_ip": source_ip,
    }


def parse_upnp_xml(xml_text: str) -> dict | None:
    """Parse a UPnP device description XML and extract device metadata.

    Returns None if the XML is malformed or has no <device> element.
    """
    if not xml_text.strip():
        return None

    try:
        root = ElementTree.fromstring(xml_text)
    except ElementTree.ParseError:
        return None

    device = root.find(f"{{{UPNP_NS}}}device")
    if device is None:
        device = root.find("device")
    if device is None:
        return None

    def _text(tag: str) -> str | None:
        el = device.find(f"{{{UPNP_NS}}}{tag}")
        if el is None:
            el = device.find(tag)
        return el.text.strip() if el is not None and el.text and el.text.strip() else None

    return {
        "friendly_name": _text("friendlyName"),
        "manufacturer": _text("manufacturer"),
        "model_name": _text("modelName"),
        "model_number": _text("modelNumber"),
        "device_type": _text("deviceType"),
        "udn": _text("UDN"),
    }


def build_announcement(response: dict, description: dict | None) -> Announcement:
    """Combine SSDP headers and the (optional) description into an announcement."""
    description = description or {}
    raw_fields = {
        key: value
        for key, value in (
            ("server", response.get("server")),
            ("usn", response.get("usn")),
            ("md", description.get("model_name")),
            ("model_number", description.get("model_number")),
            ("device_type", description.get("device_type")),
            ("udn", description.get("udn")),
        )
        if value
    }
    return Announcement(
        channel=SSDPChannel.name,
        network_address=response["source_ip"],
        service_type=response.get("st") or "upnp:rootdevice",
        instance_name=description.get("friendly_name"),
        manufacturer=description.get("manufacturer"),
        raw_fields=raw_fields,
    )


class _SSDPProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[tuple[str, str]]) -> None:
        self._queue = queue

    def datagram_received(self, data: bytes, addr) -> None:
        self._queue.put_nowait((data.decode("utf-8", errors="replace"), addr[0]))

    def error_received(self, exc: Exception) -> None:
        logger.debug("SSDP socket error: %s", exc)


class SSDPChannel(AnnouncementChannel):
    """SSDP/UPnP discovery until told to stop.

    Parameters
    ----------
    xml_fetch_timeout:
        Seconds to wait for each description XML fetch.
    search_repeats:
        Number of M-SEARCH requests sent (UDP is lossy).
    search_interval:
        Seconds between repeated M-SEARCH requests.
    """

    name = "ssdp"

    def __init__(
        self,
        xml_fetch_timeout: float = 2.0,
        search_repeats: int = 2,
        search_interval: float = 1.0,
    ) -> None:
        self._xml_fetch_timeout = xml_fetch_timeout
        self._search_repeats = max(1, search_repeats)
        self._search_interval = search_interval

    async def run(self, emit: Emit, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        responses: asyncio.Queue[tuple[str, str]] = asyncio.Queue()

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        sock.bind(("", 0))
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SSDPProtocol(responses), sock=sock
        )

        seen_locations: set[str] = set()
        fetches: set[asyncio.Task] = set()
        searcher = asyncio.ensure_future(self._search(transport, stop))
        stop_waiter = asyncio.ensure_future(stop.wait())

        try:
            async with httpx.AsyncClient(
                timeout=self._xml_fetch_timeout, verify=False
            ) as client:
                while not stop.is_set():
                    getter = asyncio.ensure_future(responses.get())
                    done, _ = await asyncio.wait(
                        {getter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if getter not in done:
                        getter.cancel()
                        break
                    raw, source_ip = getter.result()
                    parsed = parse_ssdp_response(raw, source_ip)
                    if parsed is None or parsed["location"] in seen_locations:
                        continue
                    seen_locations.add(parsed["location"])
                    task = asyncio.ensure_future(self._describe(client, parsed, emit))
                    fetches.add(task)
                    task.add_done_callback(fetches.discard)

                for task in list(fetches):
                    task.cancel()
                await asyncio.gather(*fetches, return_exceptions=True)
        finally:
            searcher.cancel()
            stop_waiter.cancel()
            await asyncio.gather(searcher, stop_waiter, return_exceptions=True)
            transport.close()

        logger.info("SSDP heard %d distinct locations", len(seen_locations))

    async def _search(self, transport: asyncio.DatagramTransport, stop: asyncio.Event) -> None:
        for attempt in range(self._search_repeats):
            if stop.is_set():
                return
            transport.sendto(M_SEARCH_REQUEST.encode(), (SSDP_ADDR, SSDP_PORT))
            if attempt + 1 < self._search_repeats:
                await asyncio.sleep(self._search_interval)

    async def _describe(self, client: httpx.AsyncClient, response: dict, emit: Emit) -> None:
        description = await self._fetch_xml(client, response["location"])
        emit(build_announcement(response, description))

    async def _fetch_xml(self, client: httpx.AsyncClient, url: str) -> dict | None:
        """Fetch and parse a UPnP device description XML."""
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            return parse_upnp_xml(resp.text)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError):
            logger.debug("Failed to fetch UPnP XML from %s", url, exc_info=True)
            return None
