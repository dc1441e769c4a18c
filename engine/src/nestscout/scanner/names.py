"""Reverse name lookup for probed hosts (PTR / local resolver)."""

from __future__ import annotations

import asyncio
import logging
import socket

logger = logging.getLogger(__name__)


def clean_hostname(name: str | None, address: str) -> str | None:
    """Strip the trailing dot and ``.local``/``.lan`` suffixes.

    Returns None when the resolver simply echoed the address back.
    """
    if not name:
        return None
    name = name.rstrip(".")
    if not name or name == address:
        return None
    for suffix in (".local", ".lan", ".home", ".localdomain"):
        if name.lower().endswith(suffix):
            name = name[: -len(suffix)]
            break
    return name or None


async def reverse_lookup(address: str, timeout: float = 1.0) -> str | None:
    """Resolve *address* to a hostname, or None if it has none."""
    loop = asyncio.get_running_loop()
    try:
        host, _ = await asyncio.wait_for(
            loop.getnameinfo((address, 0), socket.NI_NAMEREQD),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, OSError):
        return None
    name = clean_hostname(host, address)
    if name:
        logger.debug("Reverse lookup %s -> %s", address, name)
    return name
