"""Stage 1 of lead sourcing: pick the staged license records most worth verifying."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Final, Protocol

from app.models.records import LicenseRecord
from app.observability.metrics import metrics
from app.services.backoff import BackoffExecutor
from app.services.dispatch.geo import distance_to, round_half_up

logger = logging.getLogger(__name__)

GENERAL_TRADE: Final[str] = "General"
DISQUALIFYING_LICENSE_STATUSES: Final[frozenset[str]] = frozenset({"expired", "inactive", "revoked"})
DEFAULT_AI_MIN_POOL: Final[int] = 5
DEFAULT_AI_CONTEXT_LIMIT: Final[int] = 50


@dataclass(frozen=True)
class SelectionCriteria:
    """What the job needs from a staged lead."""

    job_city: str
    job_state: str
    trade_needed: str
    limit: int = 20
    job_lat: float | None = None
    job_lng: float | None = None


@dataclass(frozen=True)
class RankedChoice:
    """One pick returned by a ranking capability."""

    id: str
    score: int
    reason: str


@dataclass(frozen=True)
class SelectedCandidate:
    record: LicenseRecord
    score: int
    reason: str

    @property
    def id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class SelectionResult:
    selected: list[SelectedCandidate] = field(default_factory=list)
    total_candidates: int = 0
    used_ai: bool = False
    error: str | None = None

    @property
    def top_score(self) -> int:
        return max((item.score for item in self.selected), default=0)


class CandidateRanker(Protocol):
    """Ranking capability; must cope with a bounded candidate list."""

    async def rank(
        self,
        candidates: Sequence[LicenseRecord],
        criteria: SelectionCriteria,
        limit: int,
    ) -> list[RankedChoice]:
        ...


def prefilter_candidates(
    candidates: Sequence[LicenseRecord], criteria: SelectionCriteria
) -> list[LicenseRecord]:
    """Drop records without a city, of another trade or state, or with a dead license."""
    kept: list[LicenseRecord] = []
    for record in candidates:
        if not record.city:
            continue
        if record.trade_type != criteria.trade_needed and record.trade_type != GENERAL_TRADE:
            continue
        if record.state != criteria.job_state:
            continue
        status = (record.license_status or "").lower()
        if status in DISQUALIFYING_LICENSE_STATUSES:
            continue
        kept.append(record)
    return kept


def heuristic_score(record: LicenseRecord, criteria: SelectionCriteria) -> int:
    score = 50.0
    if record.trade_type == criteria.trade_needed:
        score += 30
    elif record.trade_type == GENERAL_TRADE:
        score += 10
    if record.city and record.city.lower() == (criteria.job_city or "").lower():
        score += 20
    if (record.license_status or "").lower() == "active":
        score += 10
    if record.phone:
        score += 5
    distance = distance_to(criteria.job_lat, criteria.job_lng, record.lat, record.lng)
    if distance is not None:
        score -= min(20.0, distance / 2.5)
    return max(0, min(100, round_half_up(score)))


def score_heuristically(
    candidates: Sequence[LicenseRecord], criteria: SelectionCriteria, limit: int
) -> list[SelectedCandidate]:
    """Deterministic scoring used for small pools and whenever AI ranking is unavailable."""
    scored = [
        SelectedCandidate(
            record=record,
            score=heuristic_score(record, criteria),
            reason=(
                f"Trade: {record.trade_type}, City: {record.city}, "
                f"Status: {record.license_status or 'unknown'}"
            ),
        )
        for record in candidates
    ]
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored[:limit]


class LeadSelector:
    """Pre-filters staged records, then ranks them with AI or the heuristic fallback."""

    def __init__(
        self,
        *,
        ranker: CandidateRanker | None = None,
        executor: BackoffExecutor | None = None,
        ai_min_pool: int = DEFAULT_AI_MIN_POOL,
        ai_context_limit: int = DEFAULT_AI_CONTEXT_LIMIT,
    ) -> None:
        self._ranker = ranker
        self._executor = executor or BackoffExecutor()
        self._ai_min_pool = ai_min_pool
        self._ai_context_limit = ai_context_limit

    async def select(
        self, candidates: Sequence[LicenseRecord], criteria: SelectionCriteria
    ) -> SelectionResult:
        if not candidates:
            return SelectionResult(error="No contractors provided")

        filtered = prefilter_candidates(candidates, criteria)
        logger.info(
            "selector.prefiltered",
            extra={"total": len(candidates), "kept": len(filtered), "state": criteria.job_state},
        )
        if not filtered:
            return SelectionResult(
                total_candidates=len(candidates),
                error=(
                    f"No contractors match criteria (trade: {criteria.trade_needed}, "
                    f"state: {criteria.job_state})"
                ),
            )

        ranker = self._ranker
        if ranker is not None and len(filtered) > self._ai_min_pool:
            selected = await self._select_with_ai(ranker, filtered, criteria)
            if selected is not None:
                return SelectionResult(selected=selected, total_candidates=len(candidates), used_ai=True)
            metrics.increment("pipeline.ai_fallback")

        return SelectionResult(
            selected=score_heuristically(filtered, criteria, criteria.limit),
            total_candidates=len(candidates),
        )

    async def _select_with_ai(
        self, ranker: CandidateRanker, filtered: list[LicenseRecord], criteria: SelectionCriteria
    ) -> list[SelectedCandidate] | None:
        context = filtered[: self._ai_context_limit]
        by_id = {record.id: record for record in context}
        try:
            choices = await self._executor.execute(
                lambda: ranker.rank(context, criteria, criteria.limit),
                label="ranker",
            )
        except Exception:
            logger.exception("selector.ai_failed", extra={"state": criteria.job_state})
            return None

        selected: list[SelectedCandidate] = []
        seen: set[str] = set()
        for choice in choices:
            record = by_id.get(choice.id)
            if record is None or choice.id in seen:
                continue
            seen.add(choice.id)
            selected.append(
                SelectedCandidate(record=record, score=max(0, min(100, int(choice.score))), reason=choice.reason)
            )
        if not selected:
            logger.warning("selector.ai_empty", extra={"state": criteria.job_state})
            return None
        return selected[: criteria.limit]
