"""Unit tests for MAC normalization and OUI vendor lookup."""

from __future__ import annotations

import json
import pathlib

import pytest

from nestscout.devices.vendors import (
    VendorTable,
    is_locally_administered,
    normalize_mac,
    try_normalize_mac,
)


class TestNormalizeMac:

    @pytest.mark.parametrize(
        "raw",
        [
            "aa:bb:cc:dd:ee:ff",
            "AA-BB-CC-DD-EE-FF",
            "aabb.ccdd.eeff",
            "AABBCCDDEEFF",
            "  aa:bb:cc:dd:ee:ff  ",
        ],
    )
    def test_formats(self, raw: str) -> None:
        assert normalize_mac(raw) == "AA:BB:CC:DD:EE:FF"

    def test_unpadded_bsd_octets(self) -> None:
        assert normalize_mac("0:1b:63:a:b:c") == "00:1B:63:0A:0B:0C"

    @pytest.mark.parametrize("raw", ["", "zz:bb:cc:dd:ee:ff", "aa:bb:cc", "aabb.ccdd", "123"])
    def test_invalid_raises(self, raw: str) -> None:
        with pytest.raises(ValueError):
            normalize_mac(raw)


class TestTryNormalizeMac:

    def test_none_and_garbage(self) -> None:
        assert try_normalize_mac(None) is None
        assert try_normalize_mac("(incomplete)") is None

    def test_non_device_addresses(self) -> None:
        assert try_normalize_mac("ff:ff:ff:ff:ff:ff") is None
        assert try_normalize_mac("00:00:00:00:00:00") is None


class TestLocallyAdministered:

    def test_randomized_address(self) -> None:
        assert is_locally_administered("DA:A1:19:00:00:01") is True

    def test_burned_in_address(self) -> None:
        assert is_locally_administered("00:17:88:00:00:01") is False


class TestVendorTable:

    def test_builtin_lookup(self) -> None:
        table = VendorTable()
        assert table.lookup("00:17:88:12:34:56") == "Philips Lighting"
        assert table.lookup("b8-27-eb-00-00-01") == "Raspberry Pi"

    def test_unknown_prefix(self) -> None:
        assert VendorTable().lookup("12:34:56:78:9A:BC") is None

    def test_randomized_address_has_no_vendor(self) -> None:
        table = VendorTable({"DA:A1:19": "Nobody"})
        assert table.lookup("DA:A1:19:00:00:01") is None

    def test_invalid_address(self) -> None:
        assert VendorTable().lookup("not-a-mac") is None
        assert VendorTable().lookup(None) is None

    def test_load_layers_on_builtin(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "vendors.json"
        path.write_text(json.dumps({"a4c138": "Telink", "bad": "x", "00:11:22": ""}))
        table = VendorTable.load(path)
        assert table.lookup("A4:C1:38:00:00:01") == "Telink"
        assert table.lookup("00:17:88:00:00:01") == "Philips Lighting"
        assert table.lookup("00:11:22:00:00:01") is None

    def test_load_missing_file_keeps_builtin(self, tmp_path: pathlib.Path) -> None:
        table = VendorTable.load(tmp_path / "missing.json")
        assert len(table) == len(VendorTable())

    def test_load_non_object_ignored(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "vendors.json"
        path.write_text("[1, 2, 3]")
        assert len(VendorTable.load(path)) == len(VendorTable())
