"""The unified device-record table for one discovery session.

The table is the only place device records are mutated. It resolves each
candidate to an identity, merges it into the matching record, migrates
address-keyed records once a hardware address is learned, and enforces the
record bound by evicting the least-recently-seen unpinned record.

Identity rules:
- A candidate with a hardware address is keyed by that address.
- A candidate without one is keyed by the record currently holding its
  network address, or by the network address itself for a new record.
- An address-keyed record that later learns its hardware address is
  re-keyed in place; the old key becomes an alias. If a record already
  exists under that hardware address, the address-keyed record is folded
  into it and retired.
"""

from __future__ import annotations

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator

from nestscout.announcements.metadata import merge_service_metadata
from nestscout.devices.records import (
    CandidateRecord,
    DiscoveredDevice,
    KnownIdentity,
    Reachability,
    TrustRank,
    rank_for_source,
)
from nestscout.devices.vendors import VendorTable, try_normalize_mac
from nestscout.matching.fuzzy import normalize_name, similarity

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 512
MERGE_SUGGESTION_THRESHOLD = 0.85

_REACHABILITY_ORDER = {
    None: 0,
    Reachability.NO_RESPONSE: 1,
    Reachability.ALIVE_NO_PORTS: 2,
    Reachability.OPEN_PORTS: 3,
}


@dataclass(frozen=True)
class MergeOutcome:
    """What a single merge did to the table."""

    identity: str
    created: bool = False
    changed: bool = False
    migrated_from: str | None = None
    folded: str | None = None


@dataclass(frozen=True)
class MergeSuggestion:
    """Two records with different identities whose names look alike.

    The engine never merges these itself; confirming is up to the caller.
    """

    identity_a: str
    identity_b: str
    name_a: str
    name_b: str
    similarity: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceTable:
    """Bounded, identity-keyed store of ``DiscoveredDevice`` records.

    Parameters
    ----------
    max_records:
        Maximum number of records kept. Must be at least 1.
    vendors:
        OUI lookup used to fill in manufacturers from hardware addresses.
    seed:
        Identities remembered from earlier sessions. Seeded names and
        manufacturers apply at the lowest trust rank when a live
        observation creates the record.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        vendors: VendorTable | None = None,
        seed: list[KnownIdentity] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {max_records}")
        self._max_records = max_records
        self._vendors = vendors or VendorTable()
        self._clock = clock
        self._records: OrderedDict[str, DiscoveredDevice] = OrderedDict()
        self._aliases: dict[str, str] = {}
        self._by_address: dict[str, str] = {}
        self._pins: Counter[str] = Counter()
        self._seed: dict[str, KnownIdentity] = {}
        self.evicted: list[str] = []
        self.add_seed(seed or [])

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def max_records(self) -> int:
        return self._max_records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DiscoveredDevice]:
        return iter(list(self._records.values()))

    def __contains__(self, key: str) -> bool:
        return self.resolve(key) is not None

    def resolve(self, key: str) -> str | None:
        """Return the live identity for an identity, retired alias, or address."""
        if key in self._records:
            return key
        normalized = try_normalize_mac(key)
        if normalized is not None and normalized in self._records:
            return normalized
        aliased = self._aliases.get(key)
        if aliased is not None and aliased in self._records:
            return aliased
        by_address = self._by_address.get(key)
        if by_address is not None and by_address in self._records:
            return by_address
        return None

    def get(self, key: str) -> DiscoveredDevice | None:
        identity = self.resolve(key)
        return self._records.get(identity) if identity is not None else None

    def identities(self) -> list[str]:
        """Identities ordered from least to most recently seen."""
        return list(self._records.keys())

    def add_seed(self, identities: Iterable[KnownIdentity]) -> None:
        """Remember identities from an earlier session (lowest trust rank)."""
        for known in identities:
            self._seed[self._seed_key(known.identity)] = known

    def seeded_addresses(self) -> list[str]:
        return sorted({k.network_address for k in self._seed.values() if k.network_address})

    # ------------------------------------------------------------------
    # Pinning (records with in-flight probes)
    # ------------------------------------------------------------------

    def pin(self, network_address: str) -> None:
        """Protect the record at *network_address* from eviction."""
        self._pins[network_address] += 1

    def unpin(self, network_address: str) -> None:
        """Release one pin and evict anything the bound now requires."""
        if self._pins[network_address] <= 1:
            self._pins.pop(network_address, None)
        else:
            self._pins[network_address] -= 1
        self._enforce_bound()

    def is_pinned(self, identity: str) -> bool:
        record = self._records.get(identity)
        if record is None:
            return False
        return self._pins.get(record.network_address, 0) > 0 or self._pins.get(identity, 0) > 0

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def merge(self, candidate: CandidateRecord) -> MergeOutcome:
        """Merge one candidate observation into the table."""
        now = self._clock()
        hardware = try_normalize_mac(candidate.hardware_address)
        address = candidate.network_address
        migrated_from: str | None = None
        folded: str | None = None
        created = False

        if hardware is not None:
            address_holder = self._address_keyed_record(address)
            if hardware in self._records:
                identity = hardware
                if address_holder is not None:
                    self._fold(address_holder, into=hardware)
                    folded = address_holder
            elif address_holder is not None:
                self._migrate(address_holder, hardware)
                identity = hardware
                migrated_from = address_holder
            else:
                identity = hardware
                self._create(identity, address, now)
                created = True
        else:
            existing = self.resolve(address)
            if existing is not None:
                identity = existing
            else:
                identity = address
                self._create(identity, address, now)
                created = True

        record = self._records[identity]
        changed = self._apply(record, candidate, hardware, now) or created
        self._records.move_to_end(identity)
        self._enforce_bound()

        return MergeOutcome(
            identity=identity,
            created=created,
            changed=changed or migrated_from is not None or folded is not None,
            migrated_from=migrated_from,
            folded=folded,
        )

    def reset(self) -> None:
        """Drop every record; seeds and pins are kept."""
        self._records.clear()
        self._aliases.clear()
        self._by_address.clear()
        self.evicted.clear()

    # ------------------------------------------------------------------
    # Advisory helpers
    # ------------------------------------------------------------------

    def suggest_merges(
        self, threshold: float = MERGE_SUGGESTION_THRESHOLD
    ) -> list[MergeSuggestion]:
        """Find pairs of records whose display names are near-identical."""
        named = sorted(
            (
                (record.identity, record.display_name, normalize_name(record.display_name))
                for record in self._records.values()
                if normalize_name(record.display_name)
            ),
        )
        suggestions: list[MergeSuggestion] = []
        for i, (id_a, name_a, norm_a) in enumerate(named):
            for id_b, name_b, norm_b in named[i + 1 :]:
                shorter, longer = sorted((len(norm_a), len(norm_b)))
                # similarity can never exceed shorter/longer
                if shorter / longer <= threshold:
                    continue
                score = similarity(name_a, name_b)
                if score > threshold:
                    suggestions.append(
                        MergeSuggestion(id_a, id_b, name_a, name_b, round(score, 4))
                    )
        return suggestions

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _seed_key(self, identity: str) -> str:
        return try_normalize_mac(identity) or identity

    def _address_keyed_record(self, address: str) -> str | None:
        """Identity of a record keyed by *address* with no hardware address."""
        record = self._records.get(address)
        if record is not None and record.hardware_address is None:
            return address
        return None

    def _create(self, identity: str, address: str, now: datetime) -> DiscoveredDevice:
        record = DiscoveredDevice(
            identity=identity,
            network_address=address,
            first_seen=now,
            last_seen=now,
        )
        known = self._seed.get(identity)
        if known is not None:
            if known.display_name:
                record.display_name = known.display_name
                record.name_rank = TrustRank.SEED
            if known.manufacturer:
                record.manufacturer = known.manufacturer
                record.manufacturer_rank = TrustRank.SEED
        self._records[identity] = record
        self._by_address[address] = identity
        logger.debug("New device record %s at %s", identity, address)
        return record

    def _migrate(self, old_identity: str, hardware: str) -> None:
        record = self._records.pop(old_identity)
        record.identity = hardware
        record.hardware_address = hardware
        known = self._seed.get(hardware)
        if known is not None:
            if known.display_name and not record.display_name:
                record.display_name = known.display_name
            if known.manufacturer and record.manufacturer is None:
                record.manufacturer = known.manufacturer
        self._records[hardware] = record
        self._aliases[old_identity] = hardware
        self._by_address[record.network_address] = hardware
        self._repoint_aliases(old_identity, hardware)
        logger.info("Migrated device identity %s -> %s", old_identity, hardware)

    def _fold(self, old_identity: str, into: str) -> None:
        source = self._records.pop(old_identity)
        target = self._records[into]
        target.open_ports |= source.open_ports
        target.service_metadata = merge_service_metadata(
            source.service_metadata, target.service_metadata
        )
        target.source_flags |= source.source_flags
        target.previous_addresses |= source.previous_addresses
        target.first_seen = min(source.first_seen, target.first_seen)
        if _REACHABILITY_ORDER[source.reachability] > _REACHABILITY_ORDER[target.reachability]:
            target.reachability = source.reachability
        if source.display_name and source.name_rank > target.name_rank:
            target.display_name = source.display_name
            target.name_rank = source.name_rank
        if source.manufacturer and source.manufacturer_rank > target.manufacturer_rank:
            target.manufacturer = source.manufacturer
            target.manufacturer_rank = source.manufacturer_rank
        self._aliases[old_identity] = into
        self._repoint_aliases(old_identity, into)
        logger.info("Folded address-keyed record %s into %s", old_identity, into)

    def _repoint_aliases(self, old: str, new: str) -> None:
        for alias, target in self._aliases.items():
            if target == old:
                self._aliases[alias] = new

    def _apply(
        self,
        record: DiscoveredDevice,
        candidate: CandidateRecord,
        hardware: str | None,
        now: datetime,
    ) -> bool:
        """Apply one candidate's fields to a record. Returns True if changed."""
        changed = False
        rank = rank_for_source(candidate.source)

        if hardware is not None and record.hardware_address is None:
            record.hardware_address = hardware
            changed = True

        if candidate.network_address != record.network_address:
            old = record.network_address
            record.previous_addresses.add(old)
            record.network_address = candidate.network_address
            if self._by_address.get(old) == record.identity:
                del self._by_address[old]
            changed = True
        self._by_address[record.network_address] = record.identity

        name = (candidate.display_name or "").strip()
        if name and rank >= record.name_rank and name != record.display_name:
            record.display_name = name
            record.name_rank = rank
            changed = True
        elif name and rank > record.name_rank:
            record.name_rank = rank

        manufacturer = (candidate.manufacturer or "").strip()
        if manufacturer and (record.manufacturer is None or rank >= record.manufacturer_rank):
            if manufacturer != record.manufacturer:
                record.manufacturer = manufacturer
                changed = True
            record.manufacturer_rank = rank
        elif record.manufacturer is None and record.hardware_address is not None:
            vendor = self._vendors.lookup(record.hardware_address)
            if vendor is not None:
                record.manufacturer = vendor
                record.manufacturer_rank = TrustRank.CACHE
                changed = True

        if candidate.open_ports - record.open_ports:
            record.open_ports |= candidate.open_ports
            changed = True

        if not candidate.service_metadata.is_empty:
            merged = merge_service_metadata(record.service_metadata, candidate.service_metadata)
            if merged != record.service_metadata:
                record.service_metadata = merged
                changed = True

        if candidate.source not in record.source_flags:
            record.source_flags |= candidate.source
            changed = True

        if record.open_ports:
            reachability = Reachability.OPEN_PORTS
        else:
            reachability = candidate.reachability
        if _REACHABILITY_ORDER[reachability] > _REACHABILITY_ORDER[record.reachability]:
            record.reachability = reachability
            changed = True

        record.last_seen = now
        return changed

    def _enforce_bound(self) -> None:
        while len(self._records) > self._max_records:
            # The most recently seen record is never a candidate
            *older, _newest = self._records
            victim = next((identity for identity in older if not self.is_pinned(identity)), None)
            if victim is None:
                logger.debug(
                    "Record bound %d exceeded but every older record is mid-probe",
                    self._max_records,
                )
                return
            self._evict(victim)

    def _evict(self, identity: str) -> None:
        record = self._records.pop(identity)
        if self._by_address.get(record.network_address) == identity:
            del self._by_address[record.network_address]
        for alias in [a for a, target in self._aliases.items() if target == identity]:
            del self._aliases[alias]
        self.evicted.append(identity)
        logger.info(
            "Evicted least-recently-seen device %s (bound %d)",
            identity,
            self._max_records,
        )
