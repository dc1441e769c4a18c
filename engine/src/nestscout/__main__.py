"""NestScout -- entry point.

Usage::

    python -m nestscout [--config PATH] [--subnet CIDR] [--host IP ...]
                        [--known IP ...] [--roster NAME ...] [--full]
                        [--json] [--verbose]

Run sequence:
    1. Parse CLI arguments
    2. Load configuration from YAML (or defaults) and environment
    3. Initialise the event bus, vendor table and announcement channels
    4. Build the discovery orchestrator
    5. Run one discovery session (SIGINT cancels it and keeps partial results)
    6. Print the scored report as a table or JSON
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from nestscout.config import Settings, load_settings
from nestscout.discovery.orchestrator import DiscoveryOrchestrator
from nestscout.discovery.session import DiscoveryRequest, DiscoveryRequestError
from nestscout.events.bus import EventBus
from nestscout.events.types import EventType
from nestscout.models import DiscoveryReport, ProgressEvent

logger = logging.getLogger("nestscout")


# ---------------------------------------------------------------------------
# Integration seams -- thin wrappers around real subsystem constructors.
# These are module-level names so tests can patch them individually.
# ---------------------------------------------------------------------------


def load_config(config_path: str | None) -> Settings:
    """Load settings from a YAML file or the built-in defaults."""
    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


def create_event_bus() -> EventBus:
    return EventBus()


def create_channels(settings: Settings) -> list[Any]:
    """Build the announcement channels named in ``discovery.channels``."""
    from nestscout.announcements.mdns import MDNSChannel
    from nestscout.announcements.ssdp import SSDPChannel

    channels: list[Any] = []
    for name in settings.discovery.channels:
        key = name.strip().lower()
        if key == "mdns":
            channels.append(MDNSChannel(service_types=settings.discovery.mdns_service_types))
        elif key == "ssdp":
            channels.append(SSDPChannel())
        else:
            logger.warning("Unknown announcement channel %r ignored", name)
    return channels


def create_vendor_table(settings: Settings) -> Any:
    from nestscout.devices.vendors import VendorTable

    if settings.engine.vendor_file:
        return VendorTable.load(Path(settings.engine.vendor_file))
    return VendorTable()


def create_orchestrator(
    settings: Settings, event_bus: EventBus, roster: list[str]
) -> DiscoveryOrchestrator:
    """Create the discovery orchestrator with a static registry for *roster*."""
    from nestscout.registry import StaticDeviceRegistry

    return DiscoveryOrchestrator(
        settings.discovery_config(),
        channels=create_channels(settings),
        registry=StaticDeviceRegistry(roster),
        event_bus=event_bus,
        vendors=create_vendor_table(settings),
    )


def build_request(settings: Settings, args: argparse.Namespace) -> DiscoveryRequest:
    """Combine configured defaults with command-line overrides."""
    network = settings.network
    discovery = settings.discovery
    return DiscoveryRequest(
        subnet=args.subnet or network.subnet,
        addresses=tuple(args.host or ()),
        ports=tuple(network.ports),
        known_addresses=tuple([*network.known_addresses, *(args.known or ())]),
        full_coverage=args.full or discovery.full_coverage,
        expected_device_count=discovery.expected_device_count,
        seed=settings.seed_identities(),
    )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def format_report(report: DiscoveryReport) -> str:
    """Render a report as a fixed-width table followed by advisories."""
    lines = [
        f"{'SCORE':>5}  {'CLASS':<22} {'ADDRESS':<16} {'HARDWARE':<18} NAME",
    ]
    for scored in report.devices:
        device = scored.device
        assessment = scored.assessment
        name = device.display_name or "-"
        if device.manufacturer:
            name = f"{name} ({device.manufacturer})"
        lines.append(
            f"{assessment.score:>5}  {assessment.classification:<22} "
            f"{device.network_address:<16} {device.hardware_address or '-':<18} {name}"
        )

    lines.append("")
    lines.append(
        f"{len(report.devices)} devices"
        + (" (cancelled, partial results)" if report.cancelled else "")
    )
    for phase in report.phases:
        lines.append(f"  phase {phase.phase.value:<9} {phase.status.value}")
    for anomaly in report.anomalies:
        lines.append(f"  anomaly: {anomaly.description}")
    for advisory in report.merge_suggestions:
        lines.append(
            f"  possible duplicate: {advisory.name_a!r} / {advisory.name_b!r} "
            f"({advisory.similarity:.2f})"
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="nestscout",
        description="Discover and score unpaired smart-home accessories",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--subnet",
        type=str,
        default=None,
        help="IPv4 network to sweep, or 'auto' (default: from config)",
    )
    parser.add_argument(
        "--host",
        action="append",
        default=None,
        help="Probe only this address (repeatable)",
    )
    parser.add_argument(
        "--known",
        action="append",
        default=None,
        help="Address to probe before any sweep (repeatable)",
    )
    parser.add_argument(
        "--roster",
        action="append",
        default=None,
        help="Name of an already-known device (repeatable)",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        default=False,
        help="Sweep every host in the subnet",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Print the report as JSON",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main run coroutine
# ---------------------------------------------------------------------------


async def run_discovery(args: argparse.Namespace) -> DiscoveryReport:
    """Run one discovery session with the given arguments.

    SIGINT cancels the session; the partial report is still returned.
    """
    settings = load_config(args.config)
    roster = [*settings.scoring.roster, *(args.roster or ())]

    event_bus = create_event_bus()
    orchestrator = create_orchestrator(settings, event_bus, roster)
    request = build_request(settings, args)

    async def _log_device(event: dict[str, Any]) -> None:
        payload = event["payload"]
        logger.debug(
            "Found %s at %s via %s",
            payload["identity"],
            payload.get("network_address"),
            payload.get("source"),
        )

    event_bus.subscribe([EventType.DEVICE_DISCOVERED], _log_device)

    def _on_progress(event: ProgressEvent) -> None:
        if event.fraction_complete >= 1.0:
            logger.info(
                "Phase %d/%d (%s) done, %d devices so far",
                event.phase_index + 1,
                event.phase_count,
                event.phase.value,
                event.device_count,
            )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        return await orchestrator.run(request, progress=_on_progress)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await event_bus.drain()


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI args, run discovery and print the report."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        report = asyncio.run(run_discovery(args))
    except DiscoveryRequestError as exc:
        logger.error("Invalid discovery request: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        print(format_report(report))


if __name__ == "__main__":
    main()
