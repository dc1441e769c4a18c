"""Host reachability checks used when no TCP port answers.

The default checker shells out to the system ``ping`` (one ICMP echo), which
needs no raw-socket privileges. Tests and constrained platforms can plug in
their own ``ReachabilityChecker``.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import sys
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ReachabilityChecker(ABC):
    """Answers "is anything at this address?" within a timeout."""

    @abstractmethod
    async def is_alive(self, address: str, timeout: float) -> bool:
        """Return True if *address* answered within *timeout* seconds.

        Raises
        ------
        OSError:
            If the check itself could not be performed (e.g. no ``ping``
            binary). A host that simply does not answer returns False.
        """


class PingReachabilityChecker(ReachabilityChecker):
    """One ICMP echo via the system ``ping`` command.

    Parameters
    ----------
    ping_path:
        Name or path of the ping binary.
    """

    def __init__(self, ping_path: str = "ping") -> None:
        self._ping_path = ping_path

    def build_command(self, address: str, timeout: float) -> list[str]:
        """Return the argv for a single echo with the platform's wait flag."""
        # Validate before handing anything to a subprocess
        ipaddress.ip_address(address)
        if sys.platform == "darwin":
            wait = str(max(1, int(timeout * 1000)))
        else:
            wait = str(max(1, math.ceil(timeout)))
        return [self._ping_path, "-c", "1", "-W", wait, address]

    async def is_alive(self, address: str, timeout: float) -> bool:
        argv = self.build_command(address, timeout)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=timeout + 0.5)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return False
        logger.debug("ping %s exited with %s", address, returncode)
        return returncode == 0
