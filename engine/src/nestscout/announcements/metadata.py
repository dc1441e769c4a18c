"""Parser for service-announcement TXT records.

Announcement payloads are untrusted network data. The parser never raises:
absent fields stay ``None``, malformed or out-of-range values are recorded
as invalid, and unrecognised keys are preserved in ``extra``.

Recognised keys (HomeKit Accessory Protocol and Matter TXT records):

=====  ==========================================================
``sf``  status flags bitfield, bit 0 set = accessory not yet paired
``ff``  feature flags bitfield
``ci``  accessory category code, valid range 1..32
``sh``  setup hash (presence is what matters)
``pv``  protocol version, ``major[.minor]``
``md``  model name
``id``  device id
``c#``  configuration number
``s#``  state number
``CM``  Matter commissioning mode (non-zero = commissionable)
``D``   Matter discriminator
=====  ==========================================================
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

STATUS_NOT_PAIRED = 0x01

CATEGORY_MIN = 1
CATEGORY_MAX = 32

PROTOCOL_MAJOR_MIN = 1
PROTOCOL_MAJOR_MAX = 99

_MAX_KEY_LEN = 64
_MAX_VALUE_LEN = 255
_MAX_EXTRA_FIELDS = 64
_MAX_BITFIELD = 0xFFFFFFFF

_KNOWN_KEYS = frozenset({"sf", "ff", "ci", "sh", "pv", "md", "id", "c#", "s#", "CM", "D"})

_VERSION_RE = re.compile(r"^\s*(\d{1,3})(?:\.(\d{1,3}))?\s*$")

# HAP category names (category 24-27 are reserved)
CATEGORY_NAMES: dict[int, str] = {
    1: "Other",
    2: "Bridge",
    3: "Fan",
    4: "Garage Door Opener",
    5: "Lightbulb",
    6: "Door Lock",
    7: "Outlet",
    8: "Switch",
    9: "Thermostat",
    10: "Sensor",
    11: "Security System",
    12: "Door",
    13: "Window",
    14: "Window Covering",
    15: "Programmable Switch",
    16: "Range Extender",
    17: "IP Camera",
    18: "Video Doorbell",
    19: "Air Purifier",
    20: "Heater",
    21: "Air Conditioner",
    22: "Humidifier",
    23: "Dehumidifier",
    28: "Sprinkler",
    29: "Faucet",
    30: "Shower System",
    31: "Television",
    32: "Speaker",
}


class ProtocolFamily:
    """Namespace for protocol family tags derived from service types."""

    HAP = "hap"
    MATTER = "matter"
    AIRPLAY = "airplay"
    GOOGLECAST = "googlecast"
    UPNP = "upnp"
    OTHER = "other"


# Ordered: the first match wins when a device advertises several families
_FAMILY_MARKERS: tuple[tuple[str, str], ...] = (
    ("_matter", ProtocolFamily.MATTER),
    ("_hap.", ProtocolFamily.HAP),
    ("_homekit.", ProtocolFamily.HAP),
    ("_airplay.", ProtocolFamily.AIRPLAY),
    ("_raop.", ProtocolFamily.AIRPLAY),
    ("_googlecast.", ProtocolFamily.GOOGLECAST),
    ("upnp:", ProtocolFamily.UPNP),
    ("urn:", ProtocolFamily.UPNP),
)


@dataclass(frozen=True)
class ServiceMetadata:
    """Structured view of an announcement's key/value payload.

    ``None`` means "not announced". Validity flags distinguish an absent
    field from one that was present but malformed.
    """

    protocol_family: str | None = None
    status_flags: int | None = None
    feature_flags: int | None = None
    category: int | None = None
    category_raw: str | None = None
    category_valid: bool = False
    setup_hash_present: bool = False
    protocol_version: str | None = None
    protocol_version_valid: bool = False
    model: str | None = None
    device_id: str | None = None
    config_number: int | None = None
    state_number: int | None = None
    commissioning_mode: int | None = None
    discriminator: int | None = None
    service_types: frozenset[str] = frozenset()
    extra: Mapping[str, str] = field(default_factory=dict)

    @property
    def not_paired(self) -> bool:
        """True if the status flags say the accessory is not yet paired."""
        return self.status_flags is not None and bool(
            self.status_flags & STATUS_NOT_PAIRED
        )

    @property
    def paired(self) -> bool:
        """True only when status flags are present and bit 0 is clear."""
        return self.status_flags is not None and not (
            self.status_flags & STATUS_NOT_PAIRED
        )

    @property
    def category_name(self) -> str:
        if not self.category_valid or self.category is None:
            return "Unknown"
        return CATEGORY_NAMES.get(self.category, "Accessory")

    @property
    def is_empty(self) -> bool:
        return self == EMPTY_METADATA


EMPTY_METADATA = ServiceMetadata()


def _text(value: Any) -> str | None:
    """Decode a raw TXT key or value to bounded text."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8", errors="replace")
    elif not isinstance(value, str):
        value = str(value)
    value = value.replace("\x00", "").strip()
    return value[:_MAX_VALUE_LEN]


def _parse_int(value: str | None) -> int | None:
    """Parse a decimal or 0x-prefixed integer, returning None if malformed."""
    if not value:
        return None
    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        return int(value, 10)
    except ValueError:
        return None


def _parse_bitfield(key: str, value: str | None) -> int | None:
    parsed = _parse_int(value)
    if parsed is None:
        if value:
            logger.debug("Ignoring malformed %s bitfield %r", key, value)
        return None
    if parsed < 0 or parsed > _MAX_BITFIELD:
        logger.debug("Ignoring out-of-range %s bitfield %r", key, value)
        return None
    return parsed


def _parse_version(value: str | None) -> tuple[str | None, bool]:
    if not value:
        return None, False
    match = _VERSION_RE.match(value)
    if match is None:
        return None, False
    major = int(match.group(1))
    minor = int(match.group(2)) if match.group(2) is not None else 0
    if not PROTOCOL_MAJOR_MIN <= major <= PROTOCOL_MAJOR_MAX:
        return None, False
    return f"{major}.{minor}", True


def protocol_family_for(service_types: Iterable[str]) -> str | None:
    """Return the protocol family tag for a set of announced service types."""
    lowered = [st.lower() for st in service_types]
    if not lowered:
        return None
    for marker, family in _FAMILY_MARKERS:
        if any(marker in st for st in lowered):
            return family
    return ProtocolFamily.OTHER


def parse_service_metadata(
    raw_fields: Mapping[Any, Any] | None,
    service_types: Iterable[str] = (),
) -> ServiceMetadata:
    """Parse raw announcement key/value pairs into ``ServiceMetadata``.

    Parameters
    ----------
    raw_fields:
        TXT record pairs. Keys and values may be ``str``, ``bytes`` or
        ``None``. A ``None`` mapping is treated as empty.
    service_types:
        Service types the payload was announced under; used for the
        protocol family tag.
    """
    types = frozenset(st for st in service_types if st)
    fields: dict[str, str | None] = {}
    extra: dict[str, str] = {}

    try:
        items = list(raw_fields.items()) if raw_fields else []
    except (AttributeError, TypeError):
        logger.debug("Ignoring non-mapping announcement payload %r", raw_fields)
        items = []

    for raw_key, raw_value in items:
        key = _text(raw_key)
        if not key:
            continue
        key = key[:_MAX_KEY_LEN]
        value = _text(raw_value)
        # Matter keys are case-significant; HAP keys are lowercase
        normalized = key if key in ("CM", "D") else key.lower()
        if normalized in _KNOWN_KEYS:
            fields[normalized] = value
        elif len(extra) < _MAX_EXTRA_FIELDS:
            extra[key] = value or ""

    ci_raw = fields.get("ci")
    category = _parse_int(ci_raw)
    category_valid = category is not None and CATEGORY_MIN <= category <= CATEGORY_MAX
    if ci_raw and not category_valid:
        logger.debug("Announcement category %r outside %d..%d", ci_raw, CATEGORY_MIN, CATEGORY_MAX)

    version, version_valid = _parse_version(fields.get("pv"))

    return ServiceMetadata(
        protocol_family=protocol_family_for(types),
        status_flags=_parse_bitfield("sf", fields.get("sf")),
        feature_flags=_parse_bitfield("ff", fields.get("ff")),
        category=category if category_valid else None,
        category_raw=ci_raw or None,
        category_valid=category_valid,
        setup_hash_present=bool(fields.get("sh")),
        protocol_version=version,
        protocol_version_valid=version_valid,
        model=fields.get("md") or None,
        device_id=fields.get("id") or None,
        config_number=_non_negative(_parse_int(fields.get("c#"))),
        state_number=_non_negative(_parse_int(fields.get("s#"))),
        commissioning_mode=_non_negative(_parse_int(fields.get("CM"))),
        discriminator=_non_negative(_parse_int(fields.get("D"))),
        service_types=types,
        extra=extra,
    )


def _non_negative(value: int | None) -> int | None:
    if value is None or value < 0:
        return None
    return value


def merge_service_metadata(
    current: ServiceMetadata, incoming: ServiceMetadata
) -> ServiceMetadata:
    """Union two metadata records.

    Known fields take the incoming value when it is present; service types
    and extra fields are unioned so nothing announced earlier is lost.
    """
    if incoming.is_empty:
        return current
    if current.is_empty:
        return incoming

    updates: dict[str, Any] = {}
    for name in (
        "status_flags",
        "feature_flags",
        "protocol_version",
        "model",
        "device_id",
        "config_number",
        "state_number",
        "commissioning_mode",
        "discriminator",
    ):
        value = getattr(incoming, name)
        if value is not None:
            updates[name] = value
    if incoming.protocol_version is not None:
        updates["protocol_version_valid"] = incoming.protocol_version_valid
    if incoming.category_raw is not None:
        updates["category"] = incoming.category
        updates["category_raw"] = incoming.category_raw
        updates["category_valid"] = incoming.category_valid

    service_types = current.service_types | incoming.service_types
    updates["service_types"] = service_types
    updates["protocol_family"] = (
        protocol_family_for(service_types) or current.protocol_family
    )
    updates["setup_hash_present"] = (
        current.setup_hash_present or incoming.setup_hash_present
    )
    updates["extra"] = {**current.extra, **incoming.extra}
    return replace(current, **updates)
