"""Internal device records and the candidate records sources produce.

``DiscoveredDevice`` is mutable and owned by ``DeviceTable``; nothing else
writes to it. Sources emit immutable ``CandidateRecord`` objects which the
table merges by identity.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from nestscout.announcements.metadata import EMPTY_METADATA, ServiceMetadata


class SourceFlag(enum.IntFlag):
    """Which discovery phases contributed to a record."""

    NONE = 0
    CACHE = 1
    PROBE = 2
    ANNOUNCEMENT = 4
    REACHABILITY = 8


class TrustRank(enum.IntEnum):
    """Naming trust per source. Higher ranks may overwrite lower ones."""

    SEED = 0
    CACHE = 1
    PROBE = 2
    ANNOUNCEMENT = 3


_RANK_FOR_SOURCE: dict[SourceFlag, TrustRank] = {
    SourceFlag.CACHE: TrustRank.CACHE,
    SourceFlag.PROBE: TrustRank.PROBE,
    SourceFlag.REACHABILITY: TrustRank.PROBE,
    SourceFlag.ANNOUNCEMENT: TrustRank.ANNOUNCEMENT,
}


def rank_for_source(source: SourceFlag) -> TrustRank:
    """Return the trust rank for a single-source flag."""
    return _RANK_FOR_SOURCE.get(source, TrustRank.SEED)


class Reachability(str, enum.Enum):
    """What active probing learned about a host."""

    OPEN_PORTS = "alive-open-ports"
    ALIVE_NO_PORTS = "alive-no-ports"
    NO_RESPONSE = "no-response"


@dataclass(frozen=True, order=True)
class OpenPort:
    """An open TCP port and the service it most likely carries."""

    port: int
    service: str | None = None


@dataclass(frozen=True)
class CandidateRecord:
    """One observation of a device from one source."""

    source: SourceFlag
    network_address: str
    hardware_address: str | None = None
    display_name: str | None = None
    manufacturer: str | None = None
    service_metadata: ServiceMetadata = EMPTY_METADATA
    open_ports: frozenset[OpenPort] = frozenset()
    reachability: Reachability | None = None

    @property
    def rate_key(self) -> str:
        """Key used by the rate limiter: source plus address."""
        return f"{self.source.name.lower()}:{self.network_address}"


@dataclass(frozen=True)
class KnownIdentity:
    """An identity remembered from a previous session, used as a seed."""

    identity: str
    network_address: str | None = None
    display_name: str | None = None
    manufacturer: str | None = None


@dataclass
class DiscoveredDevice:
    """The unified record for one device within a discovery session."""

    identity: str
    network_address: str
    first_seen: datetime
    last_seen: datetime
    hardware_address: str | None = None
    display_name: str = ""
    manufacturer: str | None = None
    service_metadata: ServiceMetadata = EMPTY_METADATA
    open_ports: set[OpenPort] = field(default_factory=set)
    source_flags: SourceFlag = SourceFlag.NONE
    reachability: Reachability | None = None
    previous_addresses: set[str] = field(default_factory=set)
    name_rank: TrustRank = TrustRank.SEED
    manufacturer_rank: TrustRank = TrustRank.SEED

    @property
    def open_port_numbers(self) -> list[int]:
        return sorted(p.port for p in self.open_ports)
