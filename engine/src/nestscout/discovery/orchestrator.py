"""Discovery orchestrator: runs the phases and owns the device table.

Four sequential phases, with announcement listening overlapping 2-4:

  Phase 1 (cache):    neighbor-cache read, bounded by ``cache_timeout``
  Phase 2 (targeted): probe known and seeded addresses before any sweep
  Phase 3 (common):   probe the common host ranges of the subnet
  Phase 4 (full):     sweep the rest, only when full coverage is requested
                      or fewer devices than expected were found

Every observation, whichever phase produced it, goes through ``_merge``:
rate limiter first, then the device table, then the anomaly detector, all
under one lock. Unanswered probes and reverse-name lookups are applied only
once listening has finished, so the merged set never depends on whether an
announcement or a probe arrived first.

Phase failures and timeouts are recorded in the report and never abort the
run; only invalid input raises, before any I/O.
"""

from __future__ import annotations

import asyncio
import inspect
import ipaddress
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from nestscout.announcements.channel import AnnouncementChannel
from nestscout.announcements.listener import AnnouncementListener
from nestscout.announcements.mdns import MDNSChannel
from nestscout.announcements.ssdp import SSDPChannel
from nestscout.devices.guard import (
    AnomalyDetector,
    AnomalyFlag,
    AnomalyKind,
    SlidingWindowRateLimiter,
)
from nestscout.devices.records import CandidateRecord, OpenPort, Reachability, SourceFlag
from nestscout.devices.scoring import ConfidenceScorer
from nestscout.devices.table import DeviceTable, MergeOutcome
from nestscout.devices.vendors import VendorTable, try_normalize_mac
from nestscout.discovery.session import DiscoveryConfig, DiscoveryRequest, DiscoveryRequestError
from nestscout.discovery.targets import common_targets, full_targets, in_network, resolve_subnet
from nestscout.events.bus import EventBus
from nestscout.events.types import EventType
from nestscout.models import (
    Anomaly,
    AssessmentSnapshot,
    DeviceSnapshot,
    DiscoveryReport,
    MergeAdvisory,
    PhaseName,
    PhaseReport,
    PhaseStatus,
    ProgressEvent,
    ScoredDevice,
)
from nestscout.registry import DeviceRegistry
from nestscout.scanner.names import reverse_lookup
from nestscout.scanner.neighbor_cache import NeighborCacheReader
from nestscout.scanner.prober import ActiveProber, HostProbeResult, ProbeOutcome

logger = logging.getLogger(__name__)

PHASE_ORDER: tuple[PhaseName, ...] = (
    PhaseName.CACHE,
    PhaseName.TARGETED,
    PhaseName.COMMON,
    PhaseName.FULL,
    PhaseName.ANNOUNCE,
)

_MAX_PHASE_ERRORS = 50
_LISTEN_GRACE = 5.0

ProgressCallback = Callable[[ProgressEvent], Any]
NameResolver = Callable[[str, float], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscoveryOrchestrator:
    """Runs discovery sessions and keeps their merged device set.

    One instance holds one session's state (table, rate limiter, anomaly
    detector) until ``reset()``. Only one ``run()`` may be active at a time.

    Parameters
    ----------
    config:
        Tuning block. Validated at the start of every run.
    prober:
        Active prober. Defaults to one built from ``config``.
    cache_reader:
        Neighbor-cache reader. Defaults to the platform reader.
    channels:
        Announcement channels. Defaults to mDNS and SSDP; an empty list
        disables listening.
    registry:
        External registry read for known names and told about results.
    event_bus:
        Receives progress, device and anomaly events.
    vendors:
        OUI table used by the device table.
    scorer:
        Confidence scorer. Defaults to the standard rule set.
    name_resolver:
        ``async (address, timeout) -> name | None`` used for probed hosts.
    """

    def __init__(
        self,
        config: DiscoveryConfig | None = None,
        *,
        prober: ActiveProber | None = None,
        cache_reader: NeighborCacheReader | None = None,
        channels: Sequence[AnnouncementChannel] | None = None,
        registry: DeviceRegistry | None = None,
        event_bus: EventBus | None = None,
        vendors: VendorTable | None = None,
        scorer: ConfidenceScorer | None = None,
        name_resolver: NameResolver | None = reverse_lookup,
    ) -> None:
        self._config = config or DiscoveryConfig()
        self._prober = prober or ActiveProber(
            icmp_fallback=self._config.icmp_fallback,
            grab_banners=self._config.grab_banners,
        )
        self._cache_reader = cache_reader or NeighborCacheReader()
        self._channels = list(channels) if channels is not None else [MDNSChannel(), SSDPChannel()]
        self._registry = registry
        self._bus = event_bus
        self._scorer = scorer or ConfidenceScorer()
        self._name_resolver = name_resolver if self._config.resolve_names else None

        self._table = DeviceTable(max_records=max(1, self._config.max_records), vendors=vendors)
        self._limiter = SlidingWindowRateLimiter(self._config.rate_limit_per_minute)
        self._detector = AnomalyDetector(
            max_addresses_per_name=self._config.max_addresses_per_name,
            max_names_per_address=self._config.max_names_per_address,
        )
        self._lock = asyncio.Lock()
        self._cancel = asyncio.Event()
        self._running = False
        self._roster: list[str] = []
        self._evicted_seen = 0
        # Per run: addresses that answered the cache or a probe, and
        # addresses whose probes got no response at all
        self._responsive: set[str] = set()
        self._silent: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def table(self) -> DeviceTable:
        return self._table

    @property
    def running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Stop admitting new work; the running ``run()`` returns partial results."""
        if self._running:
            logger.info("Discovery cancellation requested")
        self._cancel.set()

    def reset(self) -> None:
        """Forget every record, rate counter and anomaly observation."""
        if self._running:
            raise DiscoveryRequestError("cannot reset while a discovery run is active")
        self._table.reset()
        self._limiter.reset()
        self._detector.reset()
        self._roster = []
        self._evicted_seen = 0

    def snapshot(self, roster: Sequence[str] | None = None) -> list[ScoredDevice]:
        """Score every record; highest score first, then by identity."""
        names = list(roster) if roster is not None else self._roster
        scored = []
        for record in self._table:
            assessment = self._scorer.assess(record, names)
            scored.append(ScoredDevice(
                device=DeviceSnapshot.from_record(record),
                assessment=AssessmentSnapshot.from_assessment(assessment),
            ))
        scored.sort(key=lambda s: (-s.assessment.score, s.device.identity))
        return scored

    async def run(
        self,
        request: DiscoveryRequest,
        progress: ProgressCallback | None = None,
    ) -> DiscoveryReport:
        """Run one discovery session.

        Raises
        ------
        DiscoveryRequestError:
            On invalid configuration or request, or if a run is active.
        """
        if self._running:
            raise DiscoveryRequestError("a discovery run is already in progress")
        self._config.validate()
        request = request.normalized()

        self._running = True
        self._cancel.clear()
        try:
            return await self._run(request, progress)
        finally:
            self._running = False

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def _run(
        self, request: DiscoveryRequest, progress: ProgressCallback | None
    ) -> DiscoveryReport:
        cfg = self._config
        started_at = _utcnow()
        network = None
        if not request.addresses:
            try:
                network = resolve_subnet(request.subnet or "auto")
            except ValueError as exc:
                raise DiscoveryRequestError(str(exc)) from None

        self._table.add_seed(request.seed)
        self._responsive.clear()
        self._silent.clear()
        phases = {name: PhaseReport(phase=name) for name in PHASE_ORDER}
        probed: set[str] = set()
        listen_task: asyncio.Task | None = None
        listen_ticks = 0
        listen_exited_early = False

        logger.info(
            "Discovery started: %s, %d ports, concurrency %d",
            network or f"{len(request.addresses)} explicit hosts",
            len(request.ports),
            cfg.max_concurrency,
        )

        try:
            # ---- Phase 1: neighbor cache ----
            await self._cache_phase(phases[PhaseName.CACHE], request, network, progress)

            # ---- Announcements overlap phases 2-4 ----
            if self._channels and not self._cancel.is_set():
                listen_task = asyncio.create_task(
                    self._listen_phase(phases[PhaseName.ANNOUNCE], progress)
                )
            elif self._cancel.is_set():
                phases[PhaseName.ANNOUNCE].status = PhaseStatus.CANCELLED
            else:
                phases[PhaseName.ANNOUNCE].status = PhaseStatus.SKIPPED

            # ---- Phase 2: targeted ----
            targeted = _unique([*request.known_addresses, *self._table.seeded_addresses()])
            await self._probe_phase(
                phases[PhaseName.TARGETED], targeted, request, progress, probed
            )

            # ---- Phase 3: common ranges (or every explicit host) ----
            if request.addresses:
                common = [a for a in _unique(request.addresses) if a not in probed]
            else:
                common = common_targets(network, cfg.common_ranges, exclude=probed)
            await self._probe_phase(phases[PhaseName.COMMON], common, request, progress, probed)

            # ---- Phase 4: full sweep ----
            # Announcements still arriving must not decide whether to sweep
            responsive = len(self._responsive)
            wants_full = request.full_coverage or responsive < request.expected_device_count
            if network is not None and wants_full:
                full = full_targets(network, exclude=probed, max_hosts=cfg.max_sweep_hosts)
                await self._probe_phase(phases[PhaseName.FULL], full, request, progress, probed)
            elif self._cancel.is_set():
                phases[PhaseName.FULL].status = PhaseStatus.CANCELLED
            else:
                phases[PhaseName.FULL].status = PhaseStatus.SKIPPED
                logger.info("Full sweep not needed (%d hosts responded)", responsive)

            if listen_task is not None:
                listen_ticks, listen_exited_early = await listen_task

            # Everything below depends on the complete record set
            await self._annotate_silent()
            await self._resolve_names(probed)
        finally:
            if listen_task is not None and not listen_task.done():
                listen_task.cancel()
                await asyncio.gather(listen_task, return_exceptions=True)

        roster = await self._known_names(request)
        self._roster = roster
        scored = self.snapshot(roster)
        anomalies = self._collect_anomalies()
        suggestions = [
            MergeAdvisory.from_suggestion(s)
            for s in self._table.suggest_merges(cfg.merge_suggestion_threshold)
        ]

        report = DiscoveryReport(
            started_at=started_at,
            finished_at=_utcnow(),
            devices=scored,
            anomalies=anomalies,
            merge_suggestions=suggestions,
            phases=[phases[name] for name in PHASE_ORDER],
            cancelled=self._cancel.is_set(),
            rejected_updates=self._limiter.rejected_count,
            evicted=list(self._table.evicted),
            listen_ticks=listen_ticks,
            listen_exited_early=listen_exited_early,
        )

        await self._report_registry(scored)
        for anomaly in anomalies:
            await self._publish(EventType.ANOMALY_FLAGGED, anomaly.model_dump(mode="json"))
        await self._publish(
            EventType.DISCOVERY_COMPLETE,
            {
                "device_count": len(scored),
                "cancelled": report.cancelled,
                "phases": {p.phase.value: p.status.value for p in report.phases},
            },
        )
        logger.info(
            "Discovery finished: %d devices, %d anomalies, cancelled=%s",
            len(scored),
            len(anomalies),
            report.cancelled,
        )
        return report

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _cache_phase(
        self,
        report: PhaseReport,
        request: DiscoveryRequest,
        network: ipaddress.IPv4Network | None,
        progress: ProgressCallback | None,
    ) -> None:
        if self._cancel.is_set():
            report.status = PhaseStatus.CANCELLED
            return
        report.started_at = _utcnow()
        timeout = self._config.cache_timeout
        wanted = set(request.addresses) | set(request.known_addresses)
        try:
            entries = await asyncio.wait_for(
                self._cache_reader.read(timeout), timeout=timeout + 1.0
            )
        except asyncio.TimeoutError:
            report.status = PhaseStatus.TIMED_OUT
            entries = []
        except Exception as exc:
            logger.exception("Neighbor cache phase failed")
            report.status = PhaseStatus.FAILED
            report.errors.append(repr(exc))
            entries = []

        relevant = [
            e for e in entries
            if e.network_address in wanted
            or (network is not None and in_network(e.network_address, network))
        ]
        report.targets = len(relevant)
        self._responsive.update(e.network_address for e in relevant)
        for entry in relevant:
            await self._merge(entry.to_candidate())

        if report.status is PhaseStatus.PENDING:
            report.status = PhaseStatus.COMPLETED
        await self._finish_phase(report, progress)

    async def _probe_phase(
        self,
        report: PhaseReport,
        targets: list[str],
        request: DiscoveryRequest,
        progress: ProgressCallback | None,
        probed: set[str],
    ) -> None:
        cfg = self._config
        if self._cancel.is_set():
            report.status = PhaseStatus.CANCELLED
            return
        if not targets:
            report.status = PhaseStatus.SKIPPED
            return

        report.started_at = _utcnow()
        report.targets = len(targets)
        probed.update(targets)
        pinned: set[str] = set()
        finished = 0

        def on_host_start(address: str) -> None:
            self._table.pin(address)
            pinned.add(address)

        async def on_host_done(result: HostProbeResult) -> None:
            nonlocal finished
            try:
                await self._merge_probe_result(result, report)
            finally:
                await self._release(result.address, pinned)
            finished += 1
            await self._emit_progress(report.phase, finished / len(targets), progress)

        try:
            results = await asyncio.wait_for(
                self._prober.probe(
                    targets,
                    request.ports,
                    cfg.per_attempt_timeout,
                    cfg.max_concurrency,
                    cancel_event=self._cancel,
                    on_host_start=on_host_start,
                    on_host_done=on_host_done,
                ),
                timeout=cfg.phase_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Phase %s timed out after %.1fs", report.phase.value, cfg.phase_timeout
            )
            report.status = PhaseStatus.TIMED_OUT
        except Exception as exc:
            logger.exception("Phase %s failed", report.phase.value)
            report.status = PhaseStatus.FAILED
            report.errors.append(repr(exc))
        else:
            cancelled = any(r.outcome is ProbeOutcome.CANCELLED for r in results.values())
            report.status = PhaseStatus.CANCELLED if cancelled else PhaseStatus.COMPLETED
        finally:
            for address in list(pinned):
                await self._release(address, pinned)

        await self._finish_phase(report, progress)

    async def _listen_phase(
        self, report: PhaseReport, progress: ProgressCallback | None
    ) -> tuple[int, bool]:
        cfg = self._config
        report.started_at = _utcnow()
        listener = AnnouncementListener(
            self._channels,
            listen_tick=cfg.listen_tick,
            min_listen_window=cfg.min_listen_window,
            max_listen_window=cfg.max_listen_window,
            early_exit_quiet_period=cfg.early_exit_quiet_period,
        )
        window = cfg.max_listen_window * cfg.listen_tick + _LISTEN_GRACE
        try:
            result = await asyncio.wait_for(
                listener.listen(cancel_event=self._cancel, on_candidate=self._merge),
                timeout=window,
            )
        except asyncio.TimeoutError:
            report.status = PhaseStatus.TIMED_OUT
            await self._finish_phase(report, progress)
            return 0, False
        except Exception as exc:
            logger.exception("Announcement listening failed")
            report.status = PhaseStatus.FAILED
            report.errors.append(repr(exc))
            await self._finish_phase(report, progress)
            return 0, False

        report.targets = len(result.candidates)
        report.errors.extend(f"channel {name} failed" for name in result.failed_channels)
        report.status = PhaseStatus.CANCELLED if result.cancelled else PhaseStatus.COMPLETED
        await self._finish_phase(report, progress)
        return result.ticks, result.exited_early

    async def _finish_phase(self, report: PhaseReport, progress: ProgressCallback | None) -> None:
        report.finished_at = _utcnow()
        report.devices_after = len(self._table)
        logger.info(
            "Phase %s %s: %d targets, %d devices",
            report.phase.value,
            report.status.value,
            report.targets,
            report.devices_after,
        )
        await self._emit_progress(report.phase, 1.0, progress)
        await self._publish(
            EventType.DISCOVERY_PHASE_COMPLETE,
            report.model_dump(mode="json"),
        )

    async def _resolve_names(self, addresses: set[str]) -> None:
        """Look up reverse names for probed hosts that are still unnamed."""
        if self._name_resolver is None or self._cancel.is_set():
            return
        unnamed = []
        for address in sorted(addresses):
            record = self._table.get(address)
            if record is not None and not record.display_name:
                unnamed.append(address)
        if not unnamed:
            return
        timeout = self._config.name_lookup_timeout
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def lookup(address: str) -> None:
            async with semaphore:
                try:
                    name = await self._name_resolver(address, timeout)
                except Exception:
                    logger.debug("Reverse lookup failed for %s", address, exc_info=True)
                    return
            if name:
                await self._merge(CandidateRecord(
                    source=SourceFlag.PROBE,
                    network_address=address,
                    display_name=name,
                ))

        try:
            await asyncio.wait_for(
                asyncio.gather(*(lookup(a) for a in unnamed)),
                timeout=self._config.phase_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Reverse name lookups timed out")

    # ------------------------------------------------------------------
    # Merge routine (the only writer)
    # ------------------------------------------------------------------

    async def _merge(self, candidate: CandidateRecord) -> MergeOutcome | None:
        async with self._lock:
            if not self._limiter.allow(candidate.rate_key):
                return None
            outcome = self._table.merge(candidate)
            record = self._table.get(outcome.identity)
            if record is not None:
                self._detector.observe(
                    record.display_name,
                    record.network_address,
                    try_normalize_mac(candidate.hardware_address),
                )
            evicted = self._table.evicted[self._evicted_seen:]
            self._evicted_seen = len(self._table.evicted)

        if outcome.created:
            await self._publish(EventType.DEVICE_DISCOVERED, {
                "identity": outcome.identity,
                "network_address": candidate.network_address,
                "source": candidate.source.name.lower(),
            })
        elif outcome.changed:
            await self._publish(EventType.DEVICE_UPDATED, {
                "identity": outcome.identity,
                "network_address": candidate.network_address,
                "source": candidate.source.name.lower(),
                "migrated_from": outcome.migrated_from,
            })
        for identity in evicted:
            await self._publish(EventType.DEVICE_EVICTED, {"identity": identity})
        return outcome

    async def _merge_probe_result(self, result: HostProbeResult, report: PhaseReport) -> None:
        for error in result.errors:
            if len(report.errors) < _MAX_PHASE_ERRORS:
                report.errors.append(f"{result.address} {error}")

        if result.outcome is ProbeOutcome.NO_RESPONSE:
            # Applied by _annotate_silent once announcements are in
            self._silent.add(result.address)
            return
        if result.outcome is ProbeOutcome.OPEN_PORTS:
            self._responsive.add(result.address)
            candidate = CandidateRecord(
                source=SourceFlag.PROBE,
                network_address=result.address,
                open_ports=frozenset(
                    OpenPort(p.port, p.service_name) for p in result.open_ports
                ),
                reachability=Reachability.OPEN_PORTS,
            )
        elif result.outcome is ProbeOutcome.ALIVE_NO_PORTS:
            self._responsive.add(result.address)
            candidate = CandidateRecord(
                source=SourceFlag.REACHABILITY,
                network_address=result.address,
                reachability=Reachability.ALIVE_NO_PORTS,
            )
        else:
            return
        await self._merge(candidate)

    async def _annotate_silent(self) -> None:
        """Mark records whose probes went unanswered.

        A silent host never gets a record of its own; only records some
        other source created are annotated.
        """
        for address in sorted(self._silent):
            if address in self._table:
                await self._merge(CandidateRecord(
                    source=SourceFlag.PROBE,
                    network_address=address,
                    reachability=Reachability.NO_RESPONSE,
                ))

    async def _release(self, address: str, pinned: set[str]) -> None:
        if address not in pinned:
            return
        pinned.discard(address)
        async with self._lock:
            self._table.unpin(address)
            evicted = self._table.evicted[self._evicted_seen:]
            self._evicted_seen = len(self._table.evicted)
        for identity in evicted:
            await self._publish(EventType.DEVICE_EVICTED, {"identity": identity})

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _known_names(self, request: DiscoveryRequest) -> list[str]:
        names = list(request.roster)
        if self._registry is not None:
            try:
                names.extend(await self._registry.known_device_names())
            except Exception:
                logger.warning("Registry roster unavailable, scoring without it", exc_info=True)
        return _unique(n for n in names if n)

    async def _report_registry(self, scored: list[ScoredDevice]) -> None:
        if self._registry is None:
            return
        try:
            await self._registry.report(scored)
        except Exception:
            logger.warning("Reporting results to the registry failed", exc_info=True)

    def _collect_anomalies(self) -> list[Anomaly]:
        flags = list(self._detector.anomalies())
        if self._table.evicted:
            flags.append(AnomalyFlag(
                kind=AnomalyKind.RECORDS_EVICTED,
                subject="device-table",
                description=(
                    f"{len(self._table.evicted)} records evicted at the "
                    f"{self._table.max_records}-record bound"
                ),
                observed=tuple(self._table.evicted),
            ))
        rejected = self._limiter.rejected_by_key()
        if rejected:
            flags.append(AnomalyFlag(
                kind=AnomalyKind.UPDATES_DROPPED,
                subject="rate-limiter",
                description=(
                    f"{sum(rejected.values())} updates dropped above "
                    f"{self._limiter.limit}/min"
                ),
                observed=tuple(sorted(rejected)),
            ))
        return [Anomaly.from_flag(flag) for flag in flags]

    async def _emit_progress(
        self, phase: PhaseName, fraction: float, callback: ProgressCallback | None
    ) -> None:
        event = ProgressEvent(
            phase=phase,
            phase_index=PHASE_ORDER.index(phase),
            phase_count=len(PHASE_ORDER),
            fraction_complete=min(1.0, max(0.0, fraction)),
            device_count=len(self._table),
        )
        await self._publish(EventType.DISCOVERY_PROGRESS, event.model_dump(mode="json"))
        if callback is None:
            return
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Progress callback failed")

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._bus is None:
            return
        try:
            await self._bus.publish(event_type, payload)
        except Exception:
            logger.exception("Failed to publish %s", event_type)


def _unique(items) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)
