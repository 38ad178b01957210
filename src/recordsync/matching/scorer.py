"""Deterministic match scoring between a candidate record and match criteria.

Rules are independent and additive; every rule is evaluated for every
candidate. Reasons are reported in rule order:

    exact_email            +100
    exact_company_name     +90  (else partial_company_name +60)
    domain_match           +80
    legal_name_match       +70
    trade_name_match       +70
    person_name_in_vendor  +40

Exports:
    ScoringWeights: Inspectable rule weights.
    CandidateFieldMap: Which candidate field holds name, email, website, legal
        and trade name, so the scorer does not depend on a source's field names.
    MatchScore: Score plus ordered reasons.
    score_candidate: Score one candidate's fields against criteria.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.recordsync.matching.normalize import extract_domain, normalize
from src.recordsync.records.schemas import MatchCriteria

# Partial name containment only counts when both normalized names are longer than this.
PARTIAL_NAME_MIN_LENGTH = 3


class ScoringWeights(BaseModel):
    """Points awarded per rule."""

    exact_email: int = 100
    domain_match: int = 80
    exact_company_name: int = 90
    partial_company_name: int = 60
    legal_name_match: int = 70
    trade_name_match: int = 70
    person_name_in_vendor: int = 40


class CandidateFieldMap(BaseModel):
    """Candidate field names read by the scorer."""

    name: str = "name"
    email: str = "email_address"
    website: str = "website"
    legal_name: str = "legal_name"
    trade_name: str = "trade_name"


class MatchScore(BaseModel):
    """Total score and the reasons that contributed to it."""

    score: int = 0
    reasons: list[str] = Field(default_factory=list)


DEFAULT_WEIGHTS = ScoringWeights()
DEFAULT_FIELD_MAP = CandidateFieldMap()


def _text(fields: dict[str, Any], key: str) -> str | None:
    value = fields.get(key)
    if value is None or value == "":
        return None
    return str(value)


def score_candidate(
    candidate_fields: dict[str, Any],
    criteria: MatchCriteria,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    field_map: CandidateFieldMap = DEFAULT_FIELD_MAP,
) -> MatchScore:
    """Score a candidate record against match criteria.

    Args:
        candidate_fields: The candidate's field dict.
        criteria: Identifying attributes of the record being matched.
        weights: Points per rule.
        field_map: Where to find each attribute in ``candidate_fields``.

    Returns:
        MatchScore with the summed score and reasons in rule order.
    """
    score = 0
    reasons: list[str] = []

    name = _text(candidate_fields, field_map.name)
    email = _text(candidate_fields, field_map.email)
    website = _text(candidate_fields, field_map.website)
    legal_name = _text(candidate_fields, field_map.legal_name)
    trade_name = _text(candidate_fields, field_map.trade_name)

    if criteria.email and email:
        if normalize(criteria.email) == normalize(email):
            score += weights.exact_email
            reasons.append("exact_email")

    norm_company = normalize(criteria.company_name)
    if norm_company and name:
        norm_name = normalize(name)
        if norm_company == norm_name:
            score += weights.exact_company_name
            reasons.append("exact_company_name")
        elif (
            len(norm_company) > PARTIAL_NAME_MIN_LENGTH
            and len(norm_name) > PARTIAL_NAME_MIN_LENGTH
            and (norm_company in norm_name or norm_name in norm_company)
        ):
            score += weights.partial_company_name
            reasons.append("partial_company_name")

    if criteria.domain:
        candidate_domain = extract_domain(website) or extract_domain(email)
        if candidate_domain and criteria.domain == candidate_domain:
            score += weights.domain_match
            reasons.append("domain_match")

    if norm_company:
        if legal_name and norm_company == normalize(legal_name):
            score += weights.legal_name_match
            reasons.append("legal_name_match")

        if trade_name and norm_company == normalize(trade_name):
            score += weights.trade_name_match
            reasons.append("trade_name_match")

    if criteria.first_name and criteria.last_name and name:
        full_name = normalize(f"{criteria.first_name}{criteria.last_name}")
        norm_name = normalize(name)
        if full_name and (full_name == norm_name or full_name in norm_name):
            score += weights.person_name_in_vendor
            reasons.append("person_name_in_vendor")

    return MatchScore(score=score, reasons=reasons)
