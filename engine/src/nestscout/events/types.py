"""Event type constants for the NestScout event bus.

These constants define the canonical event type strings used throughout
the engine. Components publish events using these types, and subscribers
filter on them.
"""

from __future__ import annotations


class EventType:
    """Namespace for event type string constants."""

    # Discovery session events
    DISCOVERY_PROGRESS = "discovery.progress"
    DISCOVERY_PHASE_COMPLETE = "discovery.phase_complete"
    DISCOVERY_COMPLETE = "discovery.complete"

    # Device events
    DEVICE_DISCOVERED = "device.discovered"
    DEVICE_UPDATED = "device.updated"
    DEVICE_EVICTED = "device.evicted"

    # Advisory events
    ANOMALY_FLAGGED = "anomaly.flagged"
