"""Well-known port -> service name mapping for open-port annotation.

Covers the general-purpose services seen on home networks plus the ports
smart-home ecosystems (HomeKit/Apple, Matter, Google Cast, Hue, Sonos)
listen on.
"""

from __future__ import annotations

SERVICE_NAMES: dict[int, str] = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    53: "DNS",
    80: "HTTP",
    443: "HTTPS",
    445: "SMB",
    548: "AFP",
    554: "RTSP",
    631: "IPP",
    1883: "MQTT",
    1400: "Sonos",
    3283: "Apple Remote Desktop",
    3689: "DAAP",
    5000: "AirPlay",
    5009: "AirPort Admin",
    5223: "Apple Push",
    5353: "mDNS",
    5540: "Matter",
    5580: "Matter Server",
    5900: "VNC",
    7000: "AirPlay",
    8008: "Google Cast",
    8009: "Google Cast",
    8080: "HTTP-Alt",
    8123: "Home Assistant",
    8443: "HTTPS-Alt",
    8883: "MQTT-TLS",
    49152: "UPnP",
    51826: "HomeKit",
    62078: "iPhone Sync",
}

# Ports checked by default when probing for smart-home accessories
HOMEKIT_PORTS: tuple[int, ...] = (
    5000, 7000, 3689, 49152, 62078, 5353, 8080, 548, 631, 5009, 5223, 5900, 3283,
)

DEFAULT_PROBE_PORTS: tuple[int, ...] = tuple(
    sorted(set(HOMEKIT_PORTS) | {80, 443, 1400, 5540, 8008, 8009, 8123, 8443, 51826})
)


def get_service_name(port: int) -> str | None:
    """Return the conventional service name for *port*, or None."""
    return SERVICE_NAMES.get(port)
