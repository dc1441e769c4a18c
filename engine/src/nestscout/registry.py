"""Interface to the external device registry.

The registry is whatever already knows the user's devices (a home app, a
controller database). The engine only reads the names of known devices for
scoring and reports its scored results back; it never modifies the registry
otherwise.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from nestscout.models import ScoredDevice

logger = logging.getLogger(__name__)


class DeviceRegistry(ABC):
    """Read-mostly view of devices the user already has."""

    @abstractmethod
    async def known_device_names(self) -> list[str]:
        """Return display names of devices already known to the user."""

    @abstractmethod
    async def report(self, devices: list[ScoredDevice]) -> None:
        """Receive the scored results of a discovery session."""


class StaticDeviceRegistry(DeviceRegistry):
    """In-memory registry with a fixed roster.

    Reported devices are kept in ``reported`` (latest session only).

    Parameters
    ----------
    names:
        Display names of already-known devices.
    """

    def __init__(self, names: Iterable[str] = ()) -> None:
        self._names = [n for n in (str(name).strip() for name in names) if n]
        self.reported: list[ScoredDevice] = []

    async def known_device_names(self) -> list[str]:
        return list(self._names)

    async def report(self, devices: list[ScoredDevice]) -> None:
        self.reported = list(devices)
        logger.debug("Registry received %d scored devices", len(devices))
