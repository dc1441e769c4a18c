"""Hardware-address normalization and OUI vendor lookup.

The vendor table maps the first three octets of a hardware address to a
manufacturer. A small built-in table covers common smart-home vendors; a
JSON file of additional prefixes can be layered on top with
``VendorTable.load``.
"""

from __future__ import annotations

import json
import logging
import pathlib
import re

logger = logging.getLogger(__name__)

_HEX12 = re.compile(r"[0-9A-F]{12}")

# Addresses that show up in neighbor caches but never identify a device
NON_DEVICE_ADDRESSES = frozenset({
    "00:00:00:00:00:00",
    "FF:FF:FF:FF:FF:FF",
})

BUILTIN_OUI_PREFIXES: dict[str, str] = {
    # Apple
    "00:03:93": "Apple",
    "00:1B:63": "Apple",
    "00:1C:B3": "Apple",
    "28:CF:E9": "Apple",
    "AC:BC:32": "Apple",
    "F0:18:98": "Apple",
    # Google / Nest
    "00:1A:11": "Google",
    "3C:5A:B4": "Google",
    "54:60:09": "Google",
    "F4:F5:D8": "Google",
    "18:B4:30": "Nest Labs",
    "64:16:66": "Nest Labs",
    # Amazon
    "68:37:E9": "Amazon",
    "74:C2:46": "Amazon",
    "F0:27:2D": "Amazon",
    # Lighting and accessories
    "00:17:88": "Philips Lighting",
    "D0:73:D5": "LIFX",
    "44:61:32": "ecobee",
    "94:10:3E": "Belkin",
    "EC:1A:59": "Belkin",
    "24:FD:5B": "SmartThings",
    "D0:52:A8": "SmartThings",
    "2C:AA:8E": "Wyze",
    "7C:78:B2": "Wyze",
    # Audio
    "00:0E:58": "Sonos",
    "5C:AA:FD": "Sonos",
    "78:28:CA": "Sonos",
    # Chipsets common in DIY/IoT accessories
    "24:0A:C4": "Espressif",
    "30:AE:A4": "Espressif",
    "A4:CF:12": "Espressif",
    "00:12:4B": "Texas Instruments",
    "50:C7:BF": "TP-Link",
    "EC:08:6B": "TP-Link",
    # Single-board computers and virtual machines
    "B8:27:EB": "Raspberry Pi",
    "DC:A6:32": "Raspberry Pi",
    "00:0C:29": "VMware",
    "00:50:56": "VMware",
    "08:00:27": "VirtualBox",
}


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to uppercase colon-separated format.

    Accepts colon, dash, dot (Cisco), or no-separator formats, and
    unpadded octets as printed by BSD ``arp`` (``a:b:c:d:e:f``).

    Raises
    ------
    ValueError:
        If the input cannot be parsed as a MAC address.
    """
    mac = mac.strip()

    if ":" in mac or "-" in mac:
        parts = re.split(r"[:-]", mac)
        if len(parts) != 6 or not all(1 <= len(p) <= 2 for p in parts):
            raise ValueError(f"Invalid MAC address: {mac!r}")
        flat = "".join(p.zfill(2) for p in parts).upper()
    elif "." in mac:
        groups = mac.split(".")
        if len(groups) != 3 or not all(len(g) == 4 for g in groups):
            raise ValueError(f"Invalid MAC address: {mac!r}")
        flat = "".join(groups).upper()
    else:
        flat = mac.upper()

    if not _HEX12.fullmatch(flat):
        raise ValueError(f"Invalid MAC address: {mac!r}")
    return ":".join(flat[i : i + 2] for i in range(0, 12, 2))


def try_normalize_mac(mac: str | None) -> str | None:
    """Like ``normalize_mac`` but returns None for absent or invalid input."""
    if not mac:
        return None
    try:
        normalized = normalize_mac(mac)
    except ValueError:
        return None
    if normalized in NON_DEVICE_ADDRESSES:
        return None
    return normalized


def is_locally_administered(mac: str) -> bool:
    """True for randomized/locally-administered addresses (bit 1 of octet 0)."""
    return bool(int(mac[0:2], 16) & 0x02)


class VendorTable:
    """OUI prefix -> manufacturer lookup.

    Parameters
    ----------
    prefixes:
        Mapping of ``"AA:BB:CC"`` prefixes to manufacturer names. Defaults
        to the built-in table.
    """

    def __init__(self, prefixes: dict[str, str] | None = None) -> None:
        self._prefixes = dict(BUILTIN_OUI_PREFIXES if prefixes is None else prefixes)

    @classmethod
    def load(cls, path: pathlib.Path) -> VendorTable:
        """Load extra prefixes from a JSON object on top of the built-in table.

        A missing or malformed file leaves the built-in table in place.
        """
        table = cls()
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError):
            logger.warning("Could not load vendor table from %s", path, exc_info=True)
            return table
        if not isinstance(data, dict):
            logger.warning("Vendor table %s is not a JSON object, ignoring", path)
            return table

        added = 0
        for prefix, manufacturer in data.items():
            key = _normalize_prefix(prefix)
            if key is None or not isinstance(manufacturer, str) or not manufacturer:
                continue
            table._prefixes[key] = manufacturer
            added += 1
        logger.info("Loaded %d vendor prefixes from %s", added, path)
        return table

    def __len__(self) -> int:
        return len(self._prefixes)

    def lookup(self, mac_address: str | None) -> str | None:
        """Return the manufacturer for a hardware address, or None.

        Locally-administered (randomized) addresses have no registered
        vendor and always return None.
        """
        normalized = try_normalize_mac(mac_address)
        if normalized is None or is_locally_administered(normalized):
            return None
        return self._prefixes.get(normalized[:8])


def _normalize_prefix(prefix: str) -> str | None:
    flat = re.sub(r"[^0-9A-Fa-f]", "", str(prefix)).upper()
    if len(flat) != 6:
        return None
    return f"{flat[0:2]}:{flat[2:4]}:{flat[4:6]}"
