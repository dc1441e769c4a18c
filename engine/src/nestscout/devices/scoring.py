"""Confidence scoring: how likely a record is an unpaired accessory.

Scoring is an ordered tuple of ``ScoringRule`` objects. Each rule looks at
the device (and the known-device roster) and either contributes a weight or
abstains. Contributions are applied in order, so ``reasons`` is a
reproducible audit trail. The final score is clamped to [0, 100].

Default rule order:

1. status flags say "not paired"                +50
2. commissioning service type announced         +45
3. setup hash present                           +35
4. best roster similarity > 0.85                -40
                         in (0.60, 0.85]        -20
                         <= 0.60                +25  (skipped for an empty roster)
5. status flags say "already paired"            -50
6. paired status dominates: remaining score is cancelled
7. probe reachability (audit only, weight 0)
8. manufacturer (audit only, weight 0)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from nestscout.announcements.metadata import ServiceMetadata
from nestscout.devices.records import DiscoveredDevice, Reachability
from nestscout.matching.fuzzy import best_match

SCORE_MIN = 0
SCORE_MAX = 100

DEFINITE_THRESHOLD = 70
LIKELY_THRESHOLD = 40
POSSIBLE_THRESHOLD = 20

STRONG_MATCH = 0.85
WEAK_MATCH = 0.60

COMMISSIONING_SERVICE_TYPES = frozenset({
    "_hap._tcp.local.",
    "_hap._udp.local.",
    "_matterc._udp.local.",
})


class Classification(str, enum.Enum):
    DEFINITE_MATCH = "definite-match"
    LIKELY_MATCH = "likely-match"
    POSSIBLE_MATCH = "possible-match"
    LIKELY_KNOWN = "likely-known"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ScoreReason:
    weight: int
    description: str


@dataclass(frozen=True)
class ConfidenceAssessment:
    score: int
    reasons: tuple[ScoreReason, ...]
    classification: Classification


@dataclass(frozen=True)
class ScoringContext:
    """Everything a rule may look at. Built once per assessment."""

    device: DiscoveredDevice
    metadata: ServiceMetadata
    roster: tuple[str, ...]
    matched_name: str | None
    match_similarity: float


@dataclass(frozen=True)
class ScoringRule:
    """One additive signal.

    ``weigh`` receives the context and the running score and returns the
    weight to add, or None to abstain. ``describe`` renders the reason.
    """

    name: str
    weigh: Callable[[ScoringContext, int], int | None]
    describe: Callable[[ScoringContext, int], str]


def _normalize_service_type(service_type: str) -> str:
    st = service_type.strip().lower()
    if not st.endswith("."):
        st += "."
    if not st.endswith(".local."):
        st = st[:-1] + ".local."
    return st


def _commissioning_types(ctx: ScoringContext) -> list[str]:
    return sorted(
        st
        for st in ctx.metadata.service_types
        if _normalize_service_type(st) in COMMISSIONING_SERVICE_TYPES
    )


def _fuzzy_weight(ctx: ScoringContext, _running: int) -> int | None:
    if not ctx.roster:
        return None
    if ctx.match_similarity > STRONG_MATCH:
        return -40
    if ctx.match_similarity > WEAK_MATCH:
        return -20
    return 25


def _fuzzy_description(ctx: ScoringContext, weight: int) -> str:
    if weight > 0:
        return (
            f"No known device name is similar (best {ctx.match_similarity:.2f})"
        )
    strength = "Strong" if weight <= -40 else "Partial"
    return (
        f"{strength} name match with known device '{ctx.matched_name}' "
        f"(similarity {ctx.match_similarity:.2f})"
    )


def _reachability_description(ctx: ScoringContext, _weight: int) -> str:
    reachability = ctx.device.reachability
    if reachability is Reachability.OPEN_PORTS:
        ports = ", ".join(str(p) for p in ctx.device.open_port_numbers)
        return f"Responded to probing with open ports {ports}"
    if reachability is Reachability.ALIVE_NO_PORTS:
        return "Responded to probing with no open ports"
    return "Did not respond to probing"


DEFAULT_RULES: tuple[ScoringRule, ...] = (
    ScoringRule(
        name="not-paired",
        weigh=lambda ctx, _: 50 if ctx.metadata.not_paired else None,
        describe=lambda ctx, _: "Pairing status flags report the accessory is not paired",
    ),
    ScoringRule(
        name="commissioning-service",
        weigh=lambda ctx, _: 45 if _commissioning_types(ctx) else None,
        describe=lambda ctx, _: (
            "Announces commissioning service " + ", ".join(_commissioning_types(ctx))
        ),
    ),
    ScoringRule(
        name="setup-hash",
        weigh=lambda ctx, _: 35 if ctx.metadata.setup_hash_present else None,
        describe=lambda ctx, _: "Announcement carries a setup hash",
    ),
    ScoringRule(
        name="roster-similarity",
        weigh=_fuzzy_weight,
        describe=_fuzzy_description,
    ),
    ScoringRule(
        name="already-paired",
        weigh=lambda ctx, _: -50 if ctx.metadata.paired else None,
        describe=lambda ctx, _: "Pairing status flags report the accessory is already paired",
    ),
    ScoringRule(
        name="paired-dominates",
        weigh=lambda ctx, running: -running if ctx.metadata.paired and running > 0 else None,
        describe=lambda ctx, _: "Paired status overrides the remaining positive signals",
    ),
    ScoringRule(
        name="reachability",
        weigh=lambda ctx, _: 0 if ctx.device.reachability is not None else None,
        describe=_reachability_description,
    ),
    ScoringRule(
        name="manufacturer",
        weigh=lambda ctx, _: 0 if ctx.device.manufacturer else None,
        describe=lambda ctx, _: f"Manufacturer identified as {ctx.device.manufacturer}",
    ),
)


def classify(score: int, metadata: ServiceMetadata) -> Classification:
    """Map a clamped score (and pairing status) to a classification."""
    if score >= DEFINITE_THRESHOLD:
        return Classification.DEFINITE_MATCH
    if score >= LIKELY_THRESHOLD:
        return Classification.LIKELY_MATCH
    if score >= POSSIBLE_THRESHOLD:
        return Classification.POSSIBLE_MATCH
    if metadata.paired:
        return Classification.LIKELY_KNOWN
    return Classification.UNKNOWN


class ConfidenceScorer:
    """Applies an ordered rule set to a device record.

    Parameters
    ----------
    rules:
        Rules applied in order. Defaults to ``DEFAULT_RULES``.
    """

    def __init__(self, rules: Sequence[ScoringRule] = DEFAULT_RULES) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[ScoringRule, ...]:
        return self._rules

    def assess(
        self, device: DiscoveredDevice, roster: Iterable[str] = ()
    ) -> ConfidenceAssessment:
        """Score one device against the known-device roster. Pure."""
        roster_names = tuple(name for name in roster if name)
        matched, score = best_match(device.display_name, roster_names)
        ctx = ScoringContext(
            device=device,
            metadata=device.service_metadata,
            roster=roster_names,
            matched_name=matched,
            match_similarity=score,
        )

        running = 0
        reasons: list[ScoreReason] = []
        for rule in self._rules:
            weight = rule.weigh(ctx, running)
            if weight is None:
                continue
            running += weight
            reasons.append(ScoreReason(weight=weight, description=rule.describe(ctx, weight)))

        final = max(SCORE_MIN, min(SCORE_MAX, running))
        return ConfidenceAssessment(
            score=final,
            reasons=tuple(reasons),
            classification=classify(final, device.service_metadata),
        )


_DEFAULT_SCORER = ConfidenceScorer()


def assess(device: DiscoveredDevice, roster: Iterable[str] = ()) -> ConfidenceAssessment:
    """Score a device with the default rule set."""
    return _DEFAULT_SCORER.assess(device, roster)
