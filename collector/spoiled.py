from __future__ import annotations

from typing import Dict, Literal, Mapping, Optional, Protocol

from .models import (
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_REJECTED,
    CrawlStatus,
    is_valid_status,
    normalize_status,
)

SpoiledDecision = Literal["DELETE", "IGNORE"]

SPOILED_DELETE: SpoiledDecision = "DELETE"
SPOILED_IGNORE: SpoiledDecision = "IGNORE"

_DECISIONS = (SPOILED_DELETE, SPOILED_IGNORE)

# outcomes of the current run that make a previously good reference "spoiled"
SPOILED_OUTCOMES = frozenset({STATUS_ERROR, STATUS_REJECTED})


def normalize_decision(d: Optional[str]) -> SpoiledDecision:
    s = (d or "").strip().upper()
    if s in _DECISIONS:
        return s  # type: ignore[return-value]
    raise ValueError(f"unknown spoiled decision: {d!r}")


def is_spoiled(prior_status: Optional[str], outcome: Optional[str]) -> bool:
    """True when a previously good reference failed or got rejected this run."""
    return is_valid_status(prior_status) and outcome in SPOILED_OUTCOMES


class SpoiledReferenceStrategizer(Protocol):
    def decide(
        self, prior_status: CrawlStatus, outcome: CrawlStatus = STATUS_ERROR
    ) -> SpoiledDecision:  # pragma: no cover - interface
        ...


class GenericSpoiledReferenceStrategizer:
    """
    Maps the outcome of the current run to a decision:

      ERROR    -> IGNORE  (keep the record, retry next run)
      REJECTED -> DELETE  (a filter now excludes it; treat as removed)

    ``per_prior`` lets a mapping depend on the prior status too, e.g.
    ``{("UNCHANGED", "ERROR"): "DELETE"}``. Anything unmapped gets ``fallback``
    so the strategizer never fails.
    """

    DEFAULT_MAPPINGS: Mapping[str, SpoiledDecision] = {
        STATUS_ERROR: SPOILED_IGNORE,
        STATUS_REJECTED: SPOILED_DELETE,
        STATUS_DELETED: SPOILED_DELETE,
    }

    def __init__(
        self,
        mappings: Optional[Mapping[str, str]] = None,
        *,
        per_prior: Optional[Mapping[tuple, str]] = None,
        fallback: str = SPOILED_DELETE,
    ) -> None:
        merged: Dict[str, SpoiledDecision] = dict(self.DEFAULT_MAPPINGS)
        for outcome, decision in (mappings or {}).items():
            merged[normalize_status(outcome)] = normalize_decision(decision)
        self.mappings = merged
        self.per_prior: Dict[tuple, SpoiledDecision] = {
            (normalize_status(p), normalize_status(o)): normalize_decision(d)
            for (p, o), d in (per_prior or {}).items()
        }
        self.fallback = normalize_decision(fallback)

    def decide(
        self, prior_status: CrawlStatus, outcome: CrawlStatus = STATUS_ERROR
    ) -> SpoiledDecision:
        key = (str(prior_status or "").upper(), str(outcome or "").upper())
        if key in self.per_prior:
            return self.per_prior[key]
        return self.mappings.get(key[1], self.fallback)

    def __repr__(self) -> str:
        return f"GenericSpoiledReferenceStrategizer(mappings={self.mappings!r}, fallback={self.fallback!r})"
