#!/usr/bin/env python3
"""Build a vendor-prefix JSON file from the IEEE MA-L registry.

Downloads the IEEE OUI CSV, shortens manufacturer names to the brand users
recognise, and writes a JSON object of ``"AA:BB:CC": "Brand"`` pairs. Point
``engine.vendor_file`` at the output to extend the built-in vendor table.

Usage:
    python scripts/update_vendor_table.py [--output PATH] [--smart-home-only]

Output (default):
    engine/config/vendors.json
"""

from __future__ import annotations

import argparse
import csv
import io
import json
import re
from pathlib import Path

IEEE_SOURCE_URL = "https://standards-oui.ieee.org/oui/oui.csv"

DEFAULT_OUTPUT = Path(__file__).resolve().parents[1] / "engine" / "config" / "vendors.json"

# ---------------------------------------------------------------------------
# Brand aliases (applied after suffix stripping and title-casing)
# ---------------------------------------------------------------------------

BRAND_ALIASES: dict[str, str] = {
    "Amazon Technologies": "Amazon",
    "Amazon.Com Services": "Amazon",
    "Arlo Technology": "Arlo",
    "Aqara": "Aqara",
    "Belkin International": "Belkin",
    "Ecobee": "ecobee",
    "Espressif": "Espressif",
    "Google": "Google",
    "Lifi Labs Management": "LIFX",
    "Nanoleaf": "Nanoleaf",
    "Nest Labs": "Nest Labs",
    "Philips": "Philips Lighting",
    "Philips Lighting Bv": "Philips Lighting",
    "Signify": "Philips Lighting",
    "Raspberry Pi": "Raspberry Pi",
    "Ring": "Ring",
    "Samsung Electronics": "Samsung",
    "Smartthings": "SmartThings",
    "Sonos": "Sonos",
    "Texas Instruments": "Texas Instruments",
    "Tp-Link": "TP-Link",
    "Tp-Link Systems": "TP-Link",
    "Tuya Smart": "Tuya",
    "Wyze Labs": "Wyze",
    "Xiaomi Communications": "Xiaomi",
}

# Brands kept by --smart-home-only
SMART_HOME_BRANDS = frozenset({
    "Amazon",
    "Apple",
    "Aqara",
    "Arlo",
    "Belkin",
    "ecobee",
    "Espressif",
    "Google",
    "LIFX",
    "Nanoleaf",
    "Nest Labs",
    "Philips Lighting",
    "Ring",
    "SmartThings",
    "Sonos",
    "Texas Instruments",
    "TP-Link",
    "Tuya",
    "Wyze",
    "Xiaomi",
})

# Longer patterns first
_LEGAL_SUFFIXES = [
    r"\bCo\.,\s*Ltd\.?",
    r"\bCorporation\b",
    r"\bCorporate\b",
    r"\bTechnologies\b",
    r"\bLimited\b",
    r"\bInc\.?",
    r"\bLtd\.?",
    r"\bLLC\b",
    r"\bCorp\.?",
    r"\bGmbH\b",
    r"\bB\.V\.?",
    r"\bA\.?G\.?",
    r"\bCo\.?",
]

_SUFFIX_RE = re.compile(r"(?:" + "|".join(_LEGAL_SUFFIXES) + r")[\s,]*$", re.IGNORECASE)
_PAREN_RE = re.compile(r"\s*\([^)]*\)\s*")


def brand_name(raw: str) -> str:
    """Reduce a registered organisation name to a short brand.

    ``"Sonos, Inc."`` -> ``"Sonos"``, ``"LIFI LABS MANAGEMENT PTY LTD"``
    stays long unless an alias covers it.
    """
    name = _PAREN_RE.sub(" ", raw.strip())
    # Chained suffixes ("Co., Ltd. Inc") need more than one pass
    for _ in range(3):
        name = _SUFFIX_RE.sub("", name.strip().rstrip(","))
    name = re.sub(r"\s+", " ", name.strip().title()).rstrip(",").strip()
    return BRAND_ALIASES.get(name, name)


def parse_registry_csv(csv_text: str) -> dict[str, str]:
    """Parse the IEEE MA-L CSV into ``{"AA:BB:CC": brand}``.

    Rows whose assignment is not exactly six hex digits, or that have no
    organisation name, are skipped.
    """
    prefixes: dict[str, str] = {}
    reader = csv.reader(io.StringIO(csv_text))
    if next(reader, None) is None:
        return prefixes

    for row in reader:
        if len(row) < 3:
            continue
        assignment = row[1].strip().upper()
        if not re.fullmatch(r"[0-9A-F]{6}", assignment):
            continue
        organisation = row[2].strip()
        if not organisation:
            continue
        brand = brand_name(organisation)
        if brand:
            prefixes[f"{assignment[0:2]}:{assignment[2:4]}:{assignment[4:6]}"] = brand
    return prefixes


def write_vendor_file(prefixes: dict[str, str], output: Path) -> None:
    """Write prefixes as a sorted JSON object ``VendorTable.load`` accepts."""
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(dict(sorted(prefixes.items())), indent=1) + "\n")


def main(argv: list[str] | None = None) -> None:
    """Download the registry and write the vendor file."""
    import httpx

    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT)
    parser.add_argument(
        "--smart-home-only",
        action="store_true",
        help="Keep only prefixes of common smart-home brands",
    )
    args = parser.parse_args(argv)

    print(f"Downloading {IEEE_SOURCE_URL} ...")
    response = httpx.get(IEEE_SOURCE_URL, timeout=60.0, follow_redirects=True)
    response.raise_for_status()

    prefixes = parse_registry_csv(response.text)
    if args.smart_home_only:
        prefixes = {k: v for k, v in prefixes.items() if v in SMART_HOME_BRANDS}
    print(f"Parsed {len(prefixes):,} prefixes")

    write_vendor_file(prefixes, args.output)
    print(f"Wrote {args.output}")


if __name__ == "__main__":
    main()
