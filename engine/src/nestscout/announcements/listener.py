"""Time-boxed listening on announcement channels with early exit.

The listener runs every channel concurrently and counts distinct device
identities per tick (``listen_tick`` seconds). It stops when the count has
been unchanged for ``early_exit_quiet_period`` consecutive ticks (but never
before ``min_listen_window`` ticks) or after ``max_listen_window`` ticks,
whichever comes first. Each announcement's payload is parsed into
``ServiceMetadata`` and handed on as a ``CandidateRecord``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from nestscout.announcements.channel import Announcement, AnnouncementChannel
from nestscout.announcements.metadata import parse_service_metadata
from nestscout.devices.records import CandidateRecord, SourceFlag

logger = logging.getLogger(__name__)

DEFAULT_LISTEN_TICK = 1.0
DEFAULT_MIN_LISTEN_WINDOW = 1
DEFAULT_MAX_LISTEN_WINDOW = 10
DEFAULT_EARLY_EXIT_QUIET_PERIOD = 3

_CHANNEL_SHUTDOWN_TIMEOUT = 2.0

CandidateCallback = Callable[[CandidateRecord], Any]


@dataclass(frozen=True)
class ListenResult:
    """Outcome of one listening window."""

    candidates: tuple[CandidateRecord, ...]
    ticks: int
    exited_early: bool
    identity_counts: tuple[int, ...]
    failed_channels: tuple[str, ...] = ()
    cancelled: bool = False


def announcement_to_candidate(announcement: Announcement) -> tuple[str, CandidateRecord]:
    """Parse an announcement; return its identity key and candidate record."""
    metadata = parse_service_metadata(
        announcement.raw_fields, (announcement.service_type,)
    )
    candidate = CandidateRecord(
        source=SourceFlag.ANNOUNCEMENT,
        network_address=announcement.network_address,
        display_name=announcement.instance_name or announcement.hostname,
        manufacturer=announcement.manufacturer,
        service_metadata=metadata,
    )
    identity = metadata.device_id or announcement.network_address
    return identity, candidate


class AnnouncementListener:
    """Listens on announcement channels for a bounded, adaptive window.

    Parameters
    ----------
    channels:
        Channels to run concurrently.
    listen_tick:
        Length of one time unit in seconds.
    min_listen_window:
        Ticks that always elapse before an early exit is allowed.
    max_listen_window:
        Hard upper bound on ticks.
    early_exit_quiet_period:
        Consecutive ticks without a new identity that end listening.
    """

    def __init__(
        self,
        channels: Sequence[AnnouncementChannel],
        listen_tick: float = DEFAULT_LISTEN_TICK,
        min_listen_window: int = DEFAULT_MIN_LISTEN_WINDOW,
        max_listen_window: int = DEFAULT_MAX_LISTEN_WINDOW,
        early_exit_quiet_period: int = DEFAULT_EARLY_EXIT_QUIET_PERIOD,
    ) -> None:
        if listen_tick <= 0:
            raise ValueError(f"listen_tick must be > 0, got {listen_tick}")
        if max_listen_window < 1:
            raise ValueError(f"max_listen_window must be >= 1, got {max_listen_window}")
        if early_exit_quiet_period < 1:
            raise ValueError(
                f"early_exit_quiet_period must be >= 1, got {early_exit_quiet_period}"
            )
        self._channels = list(channels)
        self._tick = listen_tick
        self._min_window = max(0, min(min_listen_window, max_listen_window))
        self._max_window = max_listen_window
        self._quiet_period = early_exit_quiet_period

    async def listen(
        self,
        *,
        cancel_event: asyncio.Event | None = None,
        on_candidate: CandidateCallback | None = None,
    ) -> ListenResult:
        """Run all channels for one window and return what was heard."""
        loop = asyncio.get_running_loop()
        cancel = cancel_event or asyncio.Event()
        queue: asyncio.Queue[Announcement] = asyncio.Queue()
        stop = asyncio.Event()
        failed: list[str] = []

        channel_tasks = [
            asyncio.create_task(self._run_channel(channel, queue.put_nowait, stop, failed))
            for channel in self._channels
        ]
        cancel_waiter = asyncio.ensure_future(cancel.wait())

        candidates: list[CandidateRecord] = []
        identities: set[str] = set()
        counts: list[int] = []
        quiet = 0
        ticks = 0
        exited_early = False

        async def accept(announcement: Announcement) -> None:
            identity, candidate = announcement_to_candidate(announcement)
            identities.add(identity)
            candidates.append(candidate)
            if on_candidate is not None:
                try:
                    result = on_candidate(candidate)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Announcement callback failed")

        try:
            while ticks < self._max_window and not cancel.is_set():
                tick_end = loop.time() + self._tick
                while not cancel.is_set():
                    remaining = tick_end - loop.time()
                    if remaining <= 0:
                        break
                    getter = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait(
                        {getter, cancel_waiter},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    if getter not in done:
                        getter.cancel()
                        await asyncio.gather(getter, return_exceptions=True)
                        # A get that completed while being cancelled still counts
                        if getter.done() and not getter.cancelled():
                            await accept(getter.result())
                        continue
                    await accept(getter.result())

                if cancel.is_set():
                    break
                ticks += 1
                previous = counts[-1] if counts else 0
                counts.append(len(identities))
                quiet = quiet + 1 if counts[-1] == previous else 0
                if (
                    quiet >= self._quiet_period
                    and ticks >= self._min_window
                    and ticks < self._max_window
                ):
                    exited_early = True
                    logger.info(
                        "Announcements quiet for %d ticks, stopping after %d",
                        quiet,
                        ticks,
                    )
                    break
        finally:
            stop.set()
            cancel_waiter.cancel()
            await self._shutdown(channel_tasks)

        # Announcements that landed while channels were shutting down
        while not queue.empty():
            await accept(queue.get_nowait())

        logger.info(
            "Listened for %d ticks, heard %d identities (%d announcements)",
            ticks,
            len(identities),
            len(candidates),
        )
        return ListenResult(
            candidates=tuple(candidates),
            ticks=ticks,
            exited_early=exited_early,
            identity_counts=tuple(counts),
            failed_channels=tuple(failed),
            cancelled=cancel.is_set(),
        )

    async def _run_channel(
        self,
        channel: AnnouncementChannel,
        emit: Callable[[Announcement], None],
        stop: asyncio.Event,
        failed: list[str],
    ) -> None:
        try:
            await channel.run(emit, stop)
        except asyncio.CancelledError:
            raise
        except Exception:
            failed.append(channel.name)
            logger.warning("Announcement channel %s failed", channel.name, exc_info=True)

    async def _shutdown(self, tasks: list[asyncio.Task]) -> None:
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=_CHANNEL_SHUTDOWN_TIMEOUT)
        for task in still_running:
            logger.warning("Announcement channel did not stop in time, cancelling")
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
