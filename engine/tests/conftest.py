"""Shared test fixtures for NestScout tests."""

import pathlib

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
ENGINE_ROOT = REPO_ROOT / "engine"


@pytest.fixture
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture
def engine_root() -> pathlib.Path:
    return ENGINE_ROOT
