"""Record linkage -- normalization, additive match scoring and candidate resolution."""

from src.recordsync.matching.normalize import extract_domain, normalize
from src.recordsync.matching.resolver import (
    FALLBACK_SCAN_LIMIT,
    MATCH_THRESHOLD,
    CandidateResolver,
)
from src.recordsync.matching.scorer import (
    CandidateFieldMap,
    MatchScore,
    ScoringWeights,
    score_candidate,
)

__all__ = [
    "normalize",
    "extract_domain",
    "score_candidate",
    "ScoringWeights",
    "CandidateFieldMap",
    "MatchScore",
    "CandidateResolver",
    "MATCH_THRESHOLD",
    "FALLBACK_SCAN_LIMIT",
]
