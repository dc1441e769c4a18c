"""Active prober: bounded-concurrency TCP connect probing with ICMP fallback.

A fixed pool of ``max_concurrency`` worker tasks pulls attempts off a queue,
so the number of in-flight attempts can never exceed the bound. One attempt
is either a TCP connect to ``(address, port)`` or a single reachability
(ICMP echo) check. Every attempt has its own timeout, and a host finishes
as soon as its last attempt does.

No root privileges are required: TCP probing is a plain connect scan and the
default reachability check shells out to ``ping``.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from nestscout.scanner.reachability import PingReachabilityChecker, ReachabilityChecker
from nestscout.scanner.service_names import get_service_name

logger = logging.getLogger(__name__)

# Ports where we send a minimal HTTP probe instead of passive read
_HTTP_PROBE_PORTS = frozenset({80, 443, 5000, 7000, 8008, 8080, 8123, 8443})
_HTTP_PROBE = b"HEAD / HTTP/1.0\r\nHost: probe\r\n\r\n"

_MAX_BANNER_LEN = 256

HostCallback = Callable[..., Any]


class ProbeOutcome(str, enum.Enum):
    """Per-host result of a probe run."""

    OPEN_PORTS = "open-ports"
    ALIVE_NO_PORTS = "alive-no-ports"
    NO_RESPONSE = "no-response"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PortResult:
    """An open port with optional service metadata."""

    port: int
    service_name: str | None = None
    banner: str | None = None


@dataclass(frozen=True)
class HostProbeResult:
    """Everything probing learned about one address."""

    address: str
    outcome: ProbeOutcome
    open_ports: tuple[PortResult, ...] = ()
    refused_ports: tuple[int, ...] = ()
    icmp_alive: bool | None = None
    errors: tuple[str, ...] = ()
    attempts: int = 0

    @property
    def alive(self) -> bool:
        return self.outcome in (ProbeOutcome.OPEN_PORTS, ProbeOutcome.ALIVE_NO_PORTS)


@dataclass(frozen=True)
class _Attempt:
    address: str
    port: int | None  # None = reachability check


@dataclass
class _HostState:
    address: str
    pending: int
    started: bool = False
    done: bool = False
    attempts: int = 0
    skipped: int = 0
    open_ports: list[PortResult] = field(default_factory=list)
    refused: list[int] = field(default_factory=list)
    icmp_alive: bool | None = None
    errors: list[str] = field(default_factory=list)
    unexpected: bool = False


# ----------------------------------------------------------------------
# Argument validation
# ----------------------------------------------------------------------


def validate_probe_arguments(
    addresses: Iterable[str],
    ports: Iterable[int],
    per_attempt_timeout: float,
    max_concurrency: int,
) -> tuple[list[str], list[int]]:
    """Check caller input before any I/O.

    Returns the de-duplicated addresses and ports in first-seen order.

    Raises
    ------
    ValueError:
        On an unparseable address, a port outside 1..65535, a non-positive
        timeout, or a concurrency bound below 1.
    """
    if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
        raise ValueError(f"max_concurrency must be an integer, got {max_concurrency!r}")
    if max_concurrency < 1:
        raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
    if not per_attempt_timeout or per_attempt_timeout <= 0:
        raise ValueError(f"per_attempt_timeout must be > 0, got {per_attempt_timeout!r}")

    clean_addresses: list[str] = []
    for address in addresses:
        try:
            normalized = str(ipaddress.ip_address(str(address).strip()))
        except ValueError:
            raise ValueError(f"Invalid network address: {address!r}") from None
        if normalized not in clean_addresses:
            clean_addresses.append(normalized)

    clean_ports: list[int] = []
    for port in ports:
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            raise ValueError(f"Port must be an integer in 1..65535, got {port!r}")
        if port not in clean_ports:
            clean_ports.append(port)

    return clean_addresses, clean_ports


# ----------------------------------------------------------------------
# Prober
# ----------------------------------------------------------------------


class ActiveProber:
    """Probes hosts for open TCP ports and basic reachability.

    Parameters
    ----------
    reachability:
        Checker used for the ICMP fallback. Defaults to system ``ping``.
    icmp_fallback:
        Queue one reachability check for hosts where no port was open and
        no connection was refused.
    grab_banners:
        Read the first bytes from each open port (best-effort).
    banner_timeout:
        Seconds to wait for banner data after connecting.
    """

    def __init__(
        self,
        reachability: ReachabilityChecker | None = None,
        icmp_fallback: bool = True,
        grab_banners: bool = False,
        banner_timeout: float = 1.0,
    ) -> None:
        self._reachability = reachability or PingReachabilityChecker()
        self._icmp_fallback = icmp_fallback
        self._grab_banners = grab_banners
        self._banner_timeout = banner_timeout
        self._in_flight = 0
        self._peak_in_flight = 0

    @property
    def peak_in_flight(self) -> int:
        """Highest number of simultaneous attempts seen in the last run."""
        return self._peak_in_flight

    async def probe(
        self,
        addresses: Iterable[str],
        ports: Iterable[int],
        per_attempt_timeout: float,
        max_concurrency: int,
        *,
        cancel_event: asyncio.Event | None = None,
        on_host_start: HostCallback | None = None,
        on_host_done: HostCallback | None = None,
    ) -> dict[str, HostProbeResult]:
        """Probe every address on every port.

        Parameters
        ----------
        addresses:
            IPv4/IPv6 addresses to probe.
        ports:
            TCP ports to try on each address. May be empty, in which case
            only the reachability check runs (if enabled).
        per_attempt_timeout:
            Seconds allowed for each individual attempt.
        max_concurrency:
            Exact number of worker tasks; the in-flight bound.
        cancel_event:
            When set, no new attempts start; in-flight attempts finish.
        on_host_start:
            Called with the address before its first attempt.
        on_host_done:
            Called with the ``HostProbeResult`` as soon as the host is
            finished. May be a coroutine function.

        Returns
        -------
        dict[str, HostProbeResult]:
            One result per distinct requested address, in request order.
        """
        targets, port_list = validate_probe_arguments(
            addresses, ports, per_attempt_timeout, max_concurrency
        )
        if not targets:
            return {}

        cancel = cancel_event or asyncio.Event()
        self._in_flight = 0
        self._peak_in_flight = 0

        queue: asyncio.Queue[_Attempt] = asyncio.Queue()
        states: dict[str, _HostState] = {}
        results: dict[str, HostProbeResult] = {}

        for address in targets:
            if port_list:
                states[address] = _HostState(address=address, pending=len(port_list))
                for port in port_list:
                    queue.put_nowait(_Attempt(address, port))
            elif self._icmp_fallback:
                states[address] = _HostState(address=address, pending=1)
                queue.put_nowait(_Attempt(address, None))
            else:
                states[address] = _HostState(address=address, pending=0, done=True)
                results[address] = HostProbeResult(address, ProbeOutcome.NO_RESPONSE)

        async def finish(state: _HostState) -> None:
            state.done = True
            result = self._build_result(state, cancel.is_set())
            results[state.address] = result
            await _invoke(on_host_done, result)

        async def worker() -> None:
            while True:
                attempt = await queue.get()
                try:
                    state = states[attempt.address]
                    if cancel.is_set():
                        state.skipped += 1
                    else:
                        if not state.started:
                            state.started = True
                            await _invoke(on_host_start, state.address)
                        await self._run_attempt(attempt, state, per_attempt_timeout)

                    state.pending -= 1
                    if state.pending == 0:
                        if self._needs_fallback(state, attempt, cancel):
                            state.pending = 1
                            queue.put_nowait(_Attempt(state.address, None))
                        else:
                            await finish(state)
                except Exception:
                    logger.exception("Probe worker failed on %s", attempt)
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(max_concurrency)]
        try:
            await queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        # Anything not finished (worker failure) still gets exactly one outcome
        for address, state in states.items():
            if address not in results:
                results[address] = self._build_result(state, cancel.is_set())

        logger.info(
            "Probed %d hosts on %d ports (peak %d in flight)",
            len(targets),
            len(port_list),
            self._peak_in_flight,
        )
        return {address: results[address] for address in targets}

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _needs_fallback(
        self, state: _HostState, attempt: _Attempt, cancel: asyncio.Event
    ) -> bool:
        return (
            self._icmp_fallback
            and attempt.port is not None
            and not cancel.is_set()
            and not state.open_ports
            and not state.refused
            and state.skipped == 0
        )

    async def _run_attempt(
        self, attempt: _Attempt, state: _HostState, timeout: float
    ) -> None:
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        state.attempts += 1
        try:
            if attempt.port is None:
                await self._check_reachability(state, timeout)
            else:
                await self._check_port(state, attempt.port, timeout)
        finally:
            self._in_flight -= 1

    async def _check_port(self, state: _HostState, port: int, timeout: float) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(state.address, port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return
        except ConnectionRefusedError:
            state.refused.append(port)
            return
        except OSError as exc:
            # Unreachable/no-route style failures: the host did not answer
            state.errors.append(f"{port}: {exc.strerror or exc}")
            return
        except Exception as exc:
            state.errors.append(f"{port}: {exc!r}")
            state.unexpected = True
            logger.warning("Unexpected error probing %s:%d", state.address, port, exc_info=True)
            return

        banner = None
        if self._grab_banners:
            banner = await self._grab_banner(reader, writer, port)

        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

        state.open_ports.append(
            PortResult(port=port, service_name=get_service_name(port), banner=banner)
        )

    async def _check_reachability(self, state: _HostState, timeout: float) -> None:
        try:
            state.icmp_alive = await self._reachability.is_alive(state.address, timeout)
        except OSError as exc:
            state.errors.append(f"icmp: {exc}")
            logger.debug("Reachability check unavailable for %s", state.address, exc_info=True)
        except Exception as exc:
            state.errors.append(f"icmp: {exc!r}")
            state.unexpected = True
            logger.warning("Unexpected reachability failure for %s", state.address, exc_info=True)

    async def _grab_banner(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        port: int,
    ) -> str | None:
        """Attempt to read a service banner from an open connection."""
        try:
            if port in _HTTP_PROBE_PORTS:
                writer.write(_HTTP_PROBE)
                await writer.drain()
            raw = await asyncio.wait_for(
                reader.read(_MAX_BANNER_LEN),
                timeout=self._banner_timeout,
            )
        except (asyncio.TimeoutError, ConnectionError, OSError):
            return None
        if not raw:
            return None
        return sanitize_banner(raw) or None

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _build_result(state: _HostState, cancelled: bool) -> HostProbeResult:
        if state.open_ports:
            outcome = ProbeOutcome.OPEN_PORTS
        elif state.refused or state.icmp_alive:
            outcome = ProbeOutcome.ALIVE_NO_PORTS
        elif cancelled and (state.skipped or not state.done):
            outcome = ProbeOutcome.CANCELLED
        elif state.unexpected:
            outcome = ProbeOutcome.ERROR
        else:
            outcome = ProbeOutcome.NO_RESPONSE

        return HostProbeResult(
            address=state.address,
            outcome=outcome,
            open_ports=tuple(sorted(state.open_ports, key=lambda r: r.port)),
            refused_ports=tuple(sorted(state.refused)),
            icmp_alive=state.icmp_alive,
            errors=tuple(state.errors),
            attempts=state.attempts,
        )


async def _invoke(callback: HostCallback | None, arg: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Probe callback %r failed", callback)


def sanitize_banner(raw: bytes) -> str:
    """Decode and clean up raw banner bytes."""
    text = raw.decode("utf-8", errors="replace")
    cleaned = []
    for ch in text:
        if ch in ("\n", "\r", "\t"):
            cleaned.append(" ")
        elif ch.isprintable():
            cleaned.append(ch)
    return " ".join("".join(cleaned).split())[:_MAX_BANNER_LEN]
