"""Tests for the command-line entry point (nestscout.__main__)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from nestscout.__main__ import (
    build_request,
    create_channels,
    format_report,
    main,
    parse_args,
    run_discovery,
)
from nestscout.announcements.mdns import MDNSChannel
from nestscout.announcements.ssdp import SSDPChannel
from nestscout.config import DiscoverySettings, NetworkConfig, ScoringSettings, SeedEntry, Settings
from nestscout.discovery.orchestrator import DiscoveryOrchestrator
from nestscout.discovery.session import DiscoveryConfig, DiscoveryRequestError
from nestscout.models import (
    AssessmentSnapshot,
    DeviceSnapshot,
    DiscoveryReport,
    MergeAdvisory,
    PhaseName,
    PhaseReport,
    PhaseStatus,
    ScoredDevice,
)
from nestscout.registry import StaticDeviceRegistry
from nestscout.scanner.neighbor_cache import NeighborEntry

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class EmptyProber:

    async def probe(self, addresses, ports, per_attempt_timeout, max_concurrency, **kwargs):
        return {}


class StaticCache:

    def __init__(self, entries):
        self.entries = entries

    async def read(self, timeout):
        return list(self.entries)


def sample_report() -> DiscoveryReport:
    device = DeviceSnapshot(
        identity="00:17:88:0A:0B:0C",
        network_address="10.0.0.2",
        hardware_address="00:17:88:0A:0B:0C",
        display_name="Hue Bridge",
        manufacturer="Philips",
        first_seen=NOW,
        last_seen=NOW,
    )
    return DiscoveryReport(
        started_at=NOW,
        finished_at=NOW,
        devices=[
            ScoredDevice(
                device=device,
                assessment=AssessmentSnapshot(score=25, classification="possible-match"),
            )
        ],
        merge_suggestions=[
            MergeAdvisory(
                identity_a="a", identity_b="b", name_a="Lamp", name_b="Lamp 2", similarity=0.9
            )
        ],
        phases=[PhaseReport(phase=PhaseName.CACHE, status=PhaseStatus.COMPLETED)],
    )


class TestParseArgs:

    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.config is None
        assert args.subnet is None
        assert args.host is None
        assert args.full is False
        assert args.json is False
        assert args.verbose is False

    def test_repeatable_options(self) -> None:
        args = parse_args([
            "--host", "10.0.0.1", "--host", "10.0.0.2",
            "--roster", "Lamp", "--known", "10.0.0.9", "--full", "--json", "-v",
        ])
        assert args.host == ["10.0.0.1", "10.0.0.2"]
        assert args.roster == ["Lamp"]
        assert args.known == ["10.0.0.9"]
        assert args.full is True
        assert args.json is True
        assert args.verbose is True


class TestBuildRequest:

    def test_cli_overrides_config(self) -> None:
        settings = Settings(
            network=NetworkConfig(subnet="10.1.0.0/24", ports=[80], known_addresses=["10.1.0.1"]),
            scoring=ScoringSettings(seed=[SeedEntry(identity="AA:BB:CC:00:00:01")]),
        )
        args = parse_args(["--subnet", "10.2.0.0/24", "--known", "10.2.0.5", "--full"])
        request = build_request(settings, args)
        assert request.subnet == "10.2.0.0/24"
        assert request.ports == (80,)
        assert request.known_addresses == ("10.1.0.1", "10.2.0.5")
        assert request.full_coverage is True
        assert request.seed[0].identity == "AA:BB:CC:00:00:01"

    def test_config_subnet_used_by_default(self) -> None:
        settings = Settings(network=NetworkConfig(subnet="10.1.0.0/24"))
        assert build_request(settings, parse_args([])).subnet == "10.1.0.0/24"


class TestCreateChannels:

    def test_named_channels(self) -> None:
        channels = create_channels(Settings())
        assert [type(c) for c in channels] == [MDNSChannel, SSDPChannel]

    def test_unknown_channel_ignored(self) -> None:
        settings = Settings(discovery=DiscoverySettings(channels=["ssdp", "bluetooth"]))
        assert [type(c) for c in create_channels(settings)] == [SSDPChannel]


class TestFormatReport:

    def test_table_contents(self) -> None:
        text = format_report(sample_report())
        assert "SCORE" in text.splitlines()[0]
        assert "Hue Bridge (Philips)" in text
        assert "possible-match" in text
        assert "1 devices" in text
        assert "phase cache" in text
        assert "possible duplicate: 'Lamp' / 'Lamp 2' (0.90)" in text

    def test_cancelled_marker(self) -> None:
        report = sample_report().model_copy(update={"cancelled": True})
        assert "partial results" in format_report(report)


class TestRunDiscovery:

    @pytest.mark.asyncio
    async def test_run_with_patched_subsystems(self) -> None:
        settings = Settings(
            network=NetworkConfig(subnet="10.0.0.0/29"),
            scoring=ScoringSettings(roster=["Hue Bridge"]),
        )
        created = {}

        def fake_create_orchestrator(settings, event_bus, roster):
            created["roster"] = roster
            return DiscoveryOrchestrator(
                DiscoveryConfig(resolve_names=False),
                prober=EmptyProber(),
                cache_reader=StaticCache([NeighborEntry("10.0.0.2", "00:17:88:0A:0B:0C", "eth0")]),
                channels=[],
                registry=StaticDeviceRegistry(roster),
                event_bus=event_bus,
            )

        with patch("nestscout.__main__.load_config", return_value=settings), \
             patch("nestscout.__main__.create_orchestrator", side_effect=fake_create_orchestrator):
            report = await run_discovery(parse_args(["--roster", "Kitchen Lamp"]))

        assert created["roster"] == ["Hue Bridge", "Kitchen Lamp"]
        assert [d.device.identity for d in report.devices] == ["00:17:88:0A:0B:0C"]


class TestMain:

    def test_json_output(self, capsys: pytest.CaptureFixture) -> None:
        with patch("nestscout.__main__.run_discovery", AsyncMock(return_value=sample_report())):
            main(["--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["devices"][0]["device"]["display_name"] == "Hue Bridge"
        assert data["devices"][0]["assessment"]["score"] == 25

    def test_table_output(self, capsys: pytest.CaptureFixture) -> None:
        with patch("nestscout.__main__.run_discovery", AsyncMock(return_value=sample_report())):
            main([])
        assert "Hue Bridge" in capsys.readouterr().out

    def test_invalid_request_exits_2(self) -> None:
        failing = AsyncMock(side_effect=DiscoveryRequestError("invalid subnet"))
        with patch("nestscout.__main__.run_discovery", failing):
            with pytest.raises(SystemExit) as exc_info:
                main(["--subnet", "bogus"])
        assert exc_info.value.code == 2
