"""Candidate resolution -- find the best counterpart record in a target system.

Candidates are pooled from one store search per non-empty criterion
(company name, email, domain, first name, last name), de-duplicated by
remote id in discovery order. An empty pool falls back to a bounded scan of
the whole entity type. The best candidate scoring at or above the threshold
wins.

Ties: with the default ``first_seen`` policy the first candidate found with
the maximum score wins. Discovery order depends on the store's search
ordering, so which of several tied candidates is chosen is unspecified.
Callers needing a deterministic choice pass ``tie_break="lowest_remote_id"``.
"""

from __future__ import annotations

from typing import Literal

import structlog

from src.recordsync.matching.scorer import (
    DEFAULT_FIELD_MAP,
    DEFAULT_WEIGHTS,
    CandidateFieldMap,
    ScoringWeights,
    score_candidate,
)
from src.recordsync.records.schemas import (
    CanonicalRecord,
    EntityType,
    MatchCandidate,
    MatchCriteria,
)
from src.recordsync.records.store import RecordStore

logger = structlog.get_logger(__name__)

MATCH_THRESHOLD = 60
CANDIDATE_SEARCH_LIMIT = 100
FALLBACK_SCAN_LIMIT = 5000

TieBreak = Literal["first_seen", "lowest_remote_id"]


class CandidateResolver:
    """Resolve match criteria to the best-scoring record of one entity type.

    Args:
        store: Record store holding the target system's mirrors.
        entity_type: Entity type searched for candidates.
        match_threshold: Minimum score for a candidate to count as a match.
        search_limit: Page size of each per-criterion search.
        fallback_scan_limit: Upper bound of the full scan used when no search hits.
        weights: Scoring rule weights.
        field_map: Candidate field names read by the scorer.
        tie_break: ``first_seen`` (default) or ``lowest_remote_id``.
    """

    def __init__(
        self,
        store: RecordStore,
        entity_type: EntityType,
        match_threshold: int = MATCH_THRESHOLD,
        search_limit: int = CANDIDATE_SEARCH_LIMIT,
        fallback_scan_limit: int = FALLBACK_SCAN_LIMIT,
        weights: ScoringWeights = DEFAULT_WEIGHTS,
        field_map: CandidateFieldMap = DEFAULT_FIELD_MAP,
        tie_break: TieBreak = "first_seen",
    ) -> None:
        self._store = store
        self._entity_type = entity_type
        self._threshold = match_threshold
        self._search_limit = search_limit
        self._fallback_scan_limit = fallback_scan_limit
        self._weights = weights
        self._field_map = field_map
        self._tie_break = tie_break

    @property
    def match_threshold(self) -> int:
        return self._threshold

    async def gather_candidates(self, criteria: MatchCriteria) -> list[CanonicalRecord]:
        """Pool candidates from per-criterion searches, falling back to a bounded scan."""
        pool: dict[str, CanonicalRecord] = {}
        for term in criteria.search_terms():
            hits = await self._store.search(
                self._entity_type, term, limit=self._search_limit, offset=0
            )
            for record in hits:
                pool.setdefault(record.remote_id, record)

        if not pool:
            scanned = await self._store.list_records(
                self._entity_type, limit=self._fallback_scan_limit, offset=0
            )
            logger.debug(
                "resolver.fallback_scan",
                entity_type=self._entity_type.value,
                scanned=len(scanned),
                limit=self._fallback_scan_limit,
            )
            return scanned

        return list(pool.values())

    def _score(self, record: CanonicalRecord, criteria: MatchCriteria) -> MatchCandidate:
        result = score_candidate(record.fields, criteria, self._weights, self._field_map)
        return MatchCandidate(record=record, score=result.score, reasons=result.reasons)

    async def rank(self, criteria: MatchCriteria) -> list[MatchCandidate]:
        """Score every pooled candidate, highest score first (stable for ties)."""
        candidates = await self.gather_candidates(criteria)
        scored = [self._score(record, criteria) for record in candidates]
        return sorted(scored, key=lambda c: c.score, reverse=True)

    async def resolve(self, criteria: MatchCriteria) -> MatchCandidate | None:
        """Return the best candidate scoring at least the threshold, or None.

        Args:
            criteria: Identifying attributes of the record being matched.

        Returns:
            MatchCandidate for the winner, None when nothing reaches the threshold.
        """
        candidates = await self.gather_candidates(criteria)

        best: MatchCandidate | None = None
        for record in candidates:
            candidate = self._score(record, criteria)
            if candidate.score < self._threshold:
                continue
            if best is None or candidate.score > best.score:
                best = candidate
            elif (
                candidate.score == best.score
                and self._tie_break == "lowest_remote_id"
                and candidate.record.remote_id < best.record.remote_id
            ):
                best = candidate

        logger.debug(
            "resolver.resolved",
            entity_type=self._entity_type.value,
            candidates=len(candidates),
            matched=best.record.remote_id if best else None,
            score=best.score if best else None,
        )
        return best
