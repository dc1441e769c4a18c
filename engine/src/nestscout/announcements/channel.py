"""Announcement channel interface.

A channel is one way of hearing devices announce themselves (mDNS, SSDP).
Channels push raw ``Announcement`` objects through an ``emit`` callback
until the listener sets the ``stop`` event. Parsing and merging happen
elsewhere; a channel only reports what it heard.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping


@dataclass(frozen=True)
class Announcement:
    """A single raw announcement as heard on the wire."""

    channel: str
    network_address: str
    service_type: str
    instance_name: str | None = None
    hostname: str | None = None
    manufacturer: str | None = None
    raw_fields: Mapping[Any, Any] = field(default_factory=dict)


Emit = Callable[[Announcement], None]


class AnnouncementChannel(ABC):
    """Abstract source of announcements."""

    name: str = "channel"

    @abstractmethod
    async def run(self, emit: Emit, stop: asyncio.Event) -> None:
        """Listen until *stop* is set, calling *emit* for each announcement.

        Raising is allowed; the listener logs the failure and keeps the
        other channels running.
        """
