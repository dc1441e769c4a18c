"""Inputs to a discovery run: the tuning block and the per-run request."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field, replace

from nestscout.devices.records import KnownIdentity
from nestscout.discovery.targets import DEFAULT_COMMON_RANGES, DEFAULT_MAX_SWEEP_HOSTS
from nestscout.scanner.service_names import DEFAULT_PROBE_PORTS


class DiscoveryRequestError(ValueError):
    """Raised before any I/O when a run is requested with invalid input."""


@dataclass(frozen=True)
class DiscoveryConfig:
    """Tuning knobs for one orchestrator.

    Listen windows are counted in ticks of ``listen_tick`` seconds.
    """

    min_listen_window: int = 1
    max_listen_window: int = 10
    early_exit_quiet_period: int = 3
    listen_tick: float = 1.0
    max_concurrency: int = 10
    per_attempt_timeout: float = 0.3
    max_records: int = 512
    rate_limit_per_minute: int = 100
    cache_timeout: float = 0.5
    phase_timeout: float = 60.0
    icmp_fallback: bool = True
    grab_banners: bool = False
    resolve_names: bool = True
    name_lookup_timeout: float = 1.0
    common_ranges: tuple[tuple[int, int], ...] = DEFAULT_COMMON_RANGES
    max_sweep_hosts: int = DEFAULT_MAX_SWEEP_HOSTS
    max_addresses_per_name: int = 3
    max_names_per_address: int = 5
    merge_suggestion_threshold: float = 0.85

    def validate(self) -> None:
        """Raise ``DiscoveryRequestError`` for values no run can use."""
        if self.max_concurrency < 1:
            raise DiscoveryRequestError(
                f"max_concurrency must be >= 1, got {self.max_concurrency}"
            )
        if self.per_attempt_timeout <= 0:
            raise DiscoveryRequestError(
                f"per_attempt_timeout must be > 0, got {self.per_attempt_timeout}"
            )
        if self.max_records < 1:
            raise DiscoveryRequestError(f"max_records must be >= 1, got {self.max_records}")
        if self.listen_tick <= 0:
            raise DiscoveryRequestError(f"listen_tick must be > 0, got {self.listen_tick}")
        if self.max_listen_window < 1 or self.early_exit_quiet_period < 1:
            raise DiscoveryRequestError("listen windows must be at least one tick")
        if self.phase_timeout <= 0 or self.cache_timeout <= 0:
            raise DiscoveryRequestError("phase and cache timeouts must be > 0")


@dataclass(frozen=True)
class DiscoveryRequest:
    """What to look for in one run.

    Either ``subnet`` or ``addresses`` selects the sweep targets; explicit
    ``addresses`` replace the range-derived targets. ``known_addresses`` and
    the addresses of ``seed`` identities are probed first.
    """

    subnet: str | None = "auto"
    addresses: tuple[str, ...] = ()
    ports: tuple[int, ...] = DEFAULT_PROBE_PORTS
    known_addresses: tuple[str, ...] = ()
    roster: tuple[str, ...] = ()
    full_coverage: bool = False
    expected_device_count: int = 0
    seed: tuple[KnownIdentity, ...] = field(default_factory=tuple)

    def validate(self) -> None:
        """Raise ``DiscoveryRequestError`` on malformed targets or ports."""
        if not self.subnet and not self.addresses:
            raise DiscoveryRequestError("either subnet or addresses is required")
        if self.subnet and self.subnet.lower() != "auto":
            try:
                ipaddress.IPv4Network(self.subnet, strict=False)
            except ValueError as exc:
                raise DiscoveryRequestError(f"invalid subnet {self.subnet!r}: {exc}") from None
        for address in (*self.addresses, *self.known_addresses):
            _canonical(address)
        for known in self.seed:
            if known.network_address is not None:
                _canonical(known.network_address, f"seed {known.identity!r}")
        for port in self.ports:
            if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
                raise DiscoveryRequestError(f"port must be in 1..65535, got {port!r}")
        if self.expected_device_count < 0:
            raise DiscoveryRequestError("expected_device_count must be >= 0")

    def normalized(self) -> DiscoveryRequest:
        """Validate, then return a copy with every address in canonical form.

        ``"FE80::1"`` and ``"fe80::1"`` name the same host; the prober keys
        results by the canonical spelling, so the request does too.
        """
        self.validate()
        return replace(
            self,
            addresses=tuple(_canonical(a) for a in self.addresses),
            known_addresses=tuple(_canonical(a) for a in self.known_addresses),
            seed=tuple(
                replace(k, network_address=_canonical(k.network_address))
                if k.network_address is not None else k
                for k in self.seed
            ),
        )


def _canonical(address: str, owner: str = "") -> str:
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        where = f" for {owner}" if owner else ""
        raise DiscoveryRequestError(f"invalid address {address!r}{where}") from None
