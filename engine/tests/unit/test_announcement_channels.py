"""Unit tests for the mDNS and SSDP announcement channels.

Tests cover:
- Instance label extraction and ServiceInfo conversion
- SSDP response/NOTIFY header parsing
- UPnP device description XML parsing
- Announcement construction and description fetching
"""
from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from nestscout.announcements.mdns import (
    BROWSE_SERVICE_TYPES,
    announcement_from_info,
    instance_label,
)
from nestscout.announcements.ssdp import (
    SSDPChannel,
    build_announcement,
    parse_ssdp_response,
    parse_upnp_xml,
)


def make_info(
    name: str = "Eve Energy 1A2B._hap._tcp.local.",
    type_: str = "_hap._tcp.local.",
    addresses: list[str] | None = None,
    server: str | None = "Eve-Energy-1A2B.local.",
    properties: dict | None = None,
) -> MagicMock:
    info = MagicMock()
    info.name = name
    info.type = type_
    info.server = server
    info.properties = {b"sf": b"1", b"ci": b"7"} if properties is None else properties
    info.parsed_addresses.return_value = ["192.168.1.42"] if addresses is None else addresses
    return info


# ---------------------------------------------------------------------------
# mDNS
# ---------------------------------------------------------------------------

class TestServiceTypes:

    def test_includes_commissioning_types(self) -> None:
        assert "_hap._tcp.local." in BROWSE_SERVICE_TYPES
        assert "_matterc._udp.local." in BROWSE_SERVICE_TYPES

    def test_all_end_with_local(self) -> None:
        for st in BROWSE_SERVICE_TYPES:
            assert st.endswith(".local."), st


class TestInstanceLabel:

    def test_strips_service_type(self) -> None:
        assert instance_label("Living Room Lamp._hap._tcp.local.", "_hap._tcp.local.") == (
            "Living Room Lamp"
        )

    def test_escaped_spaces(self) -> None:
        assert instance_label("Hall\\032Light._hap._tcp.local.", "_hap._tcp.local.") == (
            "Hall Light"
        )

    def test_mismatched_type_falls_back(self) -> None:
        assert instance_label("Speaker._raop._tcp.local.", "_airplay._tcp.local.") == "Speaker"

    def test_empty_label(self) -> None:
        assert instance_label("._hap._tcp.local.", "_hap._tcp.local.") is None


class TestAnnouncementFromInfo:

    def test_full_info(self) -> None:
        announcement = announcement_from_info(make_info())
        assert announcement is not None
        assert announcement.channel == "mdns"
        assert announcement.network_address == "192.168.1.42"
        assert announcement.service_type == "_hap._tcp.local."
        assert announcement.instance_name == "Eve Energy 1A2B"
        assert announcement.hostname == "Eve-Energy-1A2B"
        assert announcement.raw_fields == {b"sf": b"1", b"ci": b"7"}

    def test_prefers_ipv4(self) -> None:
        info = make_info(addresses=["fe80::1", "192.168.1.43"])
        assert announcement_from_info(info).network_address == "192.168.1.43"

    def test_ipv6_only_is_skipped(self) -> None:
        assert announcement_from_info(make_info(addresses=["fe80::1"])) is None

    def test_missing_server_and_properties(self) -> None:
        info = make_info(server=None, properties={})
        info.properties = None
        announcement = announcement_from_info(info)
        assert announcement.hostname is None
        assert announcement.raw_fields == {}


# ---------------------------------------------------------------------------
# SSDP
# ---------------------------------------------------------------------------

SEARCH_RESPONSE = (
    "HTTP/1.1 200 OK\r\n"
    "LOCATION: http://192.168.1.50:1400/xml/device_description.xml\r\n"
    "SERVER: Linux UPnP/1.0 Sonos/70.3\r\n"
    "USN: uuid:RINCON_48A6B88E5FA10100::urn:schemas-upnp-org:device:ZonePlayer:1\r\n"
    "ST: urn:schemas-upnp-org:device:ZonePlayer:1\r\n"
    "\r\n"
)

DESCRIPTION_XML = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <device>
    <deviceType>urn:schemas-upnp-org:device:ZonePlayer:1</deviceType>
    <friendlyName>Kitchen - Sonos One</friendlyName>
    <manufacturer>Sonos, Inc.</manufacturer>
    <modelName>Sonos One</modelName>
    <modelNumber>S13</modelNumber>
    <UDN>uuid:RINCON_48A6B88E5FA10100</UDN>
  </device>
</root>
"""


class TestParseSSDPResponse:

    def test_search_response(self) -> None:
        parsed = parse_ssdp_response(SEARCH_RESPONSE, "192.168.1.50")
        assert parsed["location"].endswith("device_description.xml")
        assert parsed["st"] == "urn:schemas-upnp-org:device:ZonePlayer:1"
        assert parsed["source_ip"] == "192.168.1.50"

    def test_notify_uses_nt(self) -> None:
        raw = (
            "NOTIFY * HTTP/1.1\r\n"
            "HOST: 239.255.255.250:1900\r\n"
            "LOCATION: http://192.168.1.60/desc.xml\r\n"
            "NT: upnp:rootdevice\r\n"
            "NTS: ssdp:alive\r\n"
            "\r\n"
        )
        parsed = parse_ssdp_response(raw, "192.168.1.60")
        assert parsed["st"] == "upnp:rootdevice"

    def test_byebye_ignored(self) -> None:
        raw = (
            "NOTIFY * HTTP/1.1\r\n"
            "LOCATION: http://192.168.1.60/desc.xml\r\n"
            "NTS: ssdp:byebye\r\n"
            "\r\n"
        )
        assert parse_ssdp_response(raw, "192.168.1.60") is None

    def test_missing_location(self) -> None:
        assert parse_ssdp_response("HTTP/1.1 200 OK\r\nSERVER: x\r\n\r\n", "1.2.3.4") is None

    def test_empty(self) -> None:
        assert parse_ssdp_response("", "1.2.3.4") is None


class TestParseUPnPXML:

    def test_namespaced_description(self) -> None:
        parsed = parse_upnp_xml(DESCRIPTION_XML)
        assert parsed["friendly_name"] == "Kitchen - Sonos One"
        assert parsed["manufacturer"] == "Sonos, Inc."
        assert parsed["model_name"] == "Sonos One"
        assert parsed["udn"] == "uuid:RINCON_48A6B88E5FA10100"

    def test_without_namespace(self) -> None:
        parsed = parse_upnp_xml("<root><device><friendlyName>TV</friendlyName></device></root>")
        assert parsed["friendly_name"] == "TV"
        assert parsed["manufacturer"] is None

    def test_malformed(self) -> None:
        assert parse_upnp_xml("<root><device>") is None

    def test_no_device(self) -> None:
        assert parse_upnp_xml("<root></root>") is None

    def test_empty(self) -> None:
        assert parse_upnp_xml("   ") is None


class TestBuildAnnouncement:

    def test_with_description(self) -> None:
        response = parse_ssdp_response(SEARCH_RESPONSE, "192.168.1.50")
        announcement = build_announcement(response, parse_upnp_xml(DESCRIPTION_XML))
        assert announcement.channel == "ssdp"
        assert announcement.network_address == "192.168.1.50"
        assert announcement.instance_name == "Kitchen - Sonos One"
        assert announcement.manufacturer == "Sonos, Inc."
        assert announcement.raw_fields["md"] == "Sonos One"
        assert announcement.raw_fields["model_number"] == "S13"

    def test_without_description(self) -> None:
        response = parse_ssdp_response(SEARCH_RESPONSE, "192.168.1.50")
        announcement = build_announcement(response, None)
        assert announcement.instance_name is None
        assert "md" not in announcement.raw_fields
        assert announcement.raw_fields["usn"].startswith("uuid:RINCON")


class TestDescriptionFetch:

    @pytest.mark.asyncio
    async def test_describe_emits_announcement(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=DESCRIPTION_XML)

        emitted = []
        response = parse_ssdp_response(SEARCH_RESPONSE, "192.168.1.50")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SSDPChannel()._describe(client, response, emitted.append)
        assert len(emitted) == 1
        assert emitted[0].manufacturer == "Sonos, Inc."

    @pytest.mark.asyncio
    async def test_failed_fetch_still_emits_headers(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        emitted = []
        response = parse_ssdp_response(SEARCH_RESPONSE, "192.168.1.50")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SSDPChannel()._describe(client, response, emitted.append)
        assert len(emitted) == 1
        assert emitted[0].manufacturer is None
        assert emitted[0].raw_fields["server"].startswith("Linux")
