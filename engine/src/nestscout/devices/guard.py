"""Update rate limiting and advisory anomaly detection.

The rate limiter drops updates from any single source key that arrive
faster than the configured rate; dropped updates are counted, never raised.
The anomaly detector only observes: it flags names that hop across many
addresses, addresses that cycle through many names, and addresses that
report more than one hardware address, without blocking anything.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_PER_MINUTE = 100
DEFAULT_MAX_ADDRESSES_PER_NAME = 3
DEFAULT_MAX_NAMES_PER_ADDRESS = 5


class AnomalyKind:
    """Namespace for advisory anomaly kinds."""

    ADDRESS_HOPPING = "address-hopping"
    IDENTITY_FLAPPING = "identity-flapping"
    HARDWARE_ADDRESS_CHANGED = "hardware-address-changed"
    RECORDS_EVICTED = "records-evicted"
    UPDATES_DROPPED = "updates-dropped"


@dataclass(frozen=True)
class AnomalyFlag:
    """One advisory signal for a human to look at."""

    kind: str
    subject: str
    description: str
    observed: tuple[str, ...] = ()


class SlidingWindowRateLimiter:
    """Per-key sliding-window counter.

    Parameters
    ----------
    limit_per_minute:
        Updates accepted per key within ``window`` seconds. Values below 1
        are clamped to 1.
    window:
        Window length in seconds.
    clock:
        Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = max(1, int(limit_per_minute))
        self._window = window
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._rejected: dict[str, int] = defaultdict(int)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def rejected_count(self) -> int:
        return sum(self._rejected.values())

    def rejected_by_key(self) -> dict[str, int]:
        return dict(self._rejected)

    def allow(self, key: str) -> bool:
        """Record an update for *key*; return False if it must be dropped."""
        now = self._clock()
        hits = self._hits[key]
        cutoff = now - self._window
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self._limit:
            self._rejected[key] += 1
            if self._rejected[key] == 1:
                logger.warning(
                    "Rate limit of %d/min reached for %s, dropping updates",
                    self._limit,
                    key,
                )
            return False
        hits.append(now)
        return True

    def reset(self) -> None:
        self._hits.clear()
        self._rejected.clear()


class AnomalyDetector:
    """Tracks name/address/hardware-address associations over a session.

    Parameters
    ----------
    max_addresses_per_name:
        A display name seen on more distinct addresses than this is flagged
        as address hopping.
    max_names_per_address:
        An address seen with more distinct display names than this is
        flagged as identity flapping.
    """

    def __init__(
        self,
        max_addresses_per_name: int = DEFAULT_MAX_ADDRESSES_PER_NAME,
        max_names_per_address: int = DEFAULT_MAX_NAMES_PER_ADDRESS,
    ) -> None:
        self._max_addresses = max_addresses_per_name
        self._max_names = max_names_per_address
        self._addresses_by_name: dict[str, set[str]] = defaultdict(set)
        self._names_by_address: dict[str, set[str]] = defaultdict(set)
        self._hardware_by_address: dict[str, set[str]] = defaultdict(set)

    def observe(
        self,
        display_name: str | None,
        address: str,
        hardware_address: str | None = None,
    ) -> None:
        """Record one (name, address, hardware address) observation."""
        name = (display_name or "").strip()
        if name:
            self._addresses_by_name[name].add(address)
            self._names_by_address[address].add(name)
        if hardware_address:
            self._hardware_by_address[address].add(hardware_address)

    def anomalies(self) -> list[AnomalyFlag]:
        """Return advisory flags in a stable order."""
        flags: list[AnomalyFlag] = []
        for name in sorted(self._addresses_by_name):
            addresses = self._addresses_by_name[name]
            if len(addresses) > self._max_addresses:
                flags.append(AnomalyFlag(
                    kind=AnomalyKind.ADDRESS_HOPPING,
                    subject=name,
                    description=(
                        f"'{name}' seen on {len(addresses)} distinct addresses"
                    ),
                    observed=tuple(sorted(addresses)),
                ))
        for address in sorted(self._names_by_address):
            names = self._names_by_address[address]
            if len(names) > self._max_names:
                flags.append(AnomalyFlag(
                    kind=AnomalyKind.IDENTITY_FLAPPING,
                    subject=address,
                    description=(
                        f"{address} announced {len(names)} distinct names"
                    ),
                    observed=tuple(sorted(names)),
                ))
        for address in sorted(self._hardware_by_address):
            hardware = self._hardware_by_address[address]
            if len(hardware) > 1:
                flags.append(AnomalyFlag(
                    kind=AnomalyKind.HARDWARE_ADDRESS_CHANGED,
                    subject=address,
                    description=(
                        f"{address} reported {len(hardware)} hardware addresses"
                    ),
                    observed=tuple(sorted(hardware)),
                ))
        return flags

    def reset(self) -> None:
        self._addresses_by_name.clear()
        self._names_by_address.clear()
        self._hardware_by_address.clear()
