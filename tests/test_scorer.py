"""Deterministic scoring tests for score_candidate.

Uses the real scorer (no mocking) since scoring is pure Python.

Covers:
    - Acme scenario: exact company name + domain -> 170
    - every rule individually, with its weight and reason
    - partial name containment and its length floor
    - additivity: total equals the sum of contributing rule weights
    - empty normalized names never produce name matches
    - custom weights and field maps
"""

from __future__ import annotations

from src.recordsync.matching.scorer import (
    CandidateFieldMap,
    ScoringWeights,
    score_candidate,
)
from src.recordsync.records.schemas import MatchCriteria


# -- Helpers ------------------------------------------------------------------


def _criteria(**overrides) -> MatchCriteria:
    return MatchCriteria(**overrides)


# -- Scenarios ----------------------------------------------------------------


class TestScenarios:
    def test_acme_exact_name_and_domain(self) -> None:
        result = score_candidate(
            {"name": "ACME Builders", "website": "https://acme.com"},
            _criteria(company_name="Acme Builders", domain="acme.com"),
        )
        assert result.score == 170
        assert result.reasons == ["exact_company_name", "domain_match"]

    def test_no_overlap_scores_zero(self) -> None:
        result = score_candidate(
            {"name": "Zenith Electric", "website": "zenith.io"},
            _criteria(company_name="Acme Builders", domain="acme.com"),
        )
        assert result.score == 0
        assert result.reasons == []


# -- Individual Rules ---------------------------------------------------------


class TestRules:
    def test_exact_email(self) -> None:
        result = score_candidate({"email_address": "Jane@Acme.com"}, _criteria(email="jane@acme.com"))
        assert result.score == 100
        assert result.reasons == ["exact_email"]

    def test_domain_from_email_when_no_website(self) -> None:
        result = score_candidate({"email_address": "info@acme.com"}, _criteria(domain="acme.com"))
        assert result.score == 80
        assert result.reasons == ["domain_match"]

    def test_website_domain_preferred_over_email(self) -> None:
        result = score_candidate(
            {"website": "https://other.com", "email_address": "info@acme.com"},
            _criteria(domain="acme.com"),
        )
        assert result.score == 0

    def test_partial_company_name(self) -> None:
        result = score_candidate(
            {"name": "Acme Builders Group"}, _criteria(company_name="Acme Builders")
        )
        assert result.score == 60
        assert result.reasons == ["partial_company_name"]

    def test_partial_requires_names_longer_than_three(self) -> None:
        result = score_candidate({"name": "ABC Holdings"}, _criteria(company_name="ABC"))
        assert result.score == 0

    def test_exact_name_excludes_partial(self) -> None:
        result = score_candidate({"name": "Acme"}, _criteria(company_name="ACME"))
        assert result.reasons == ["exact_company_name"]
        assert result.score == 90

    def test_legal_and_trade_names(self) -> None:
        result = score_candidate(
            {"name": "Something Else", "legal_name": "Acme LLC", "trade_name": "acme-llc"},
            _criteria(company_name="Acme, LLC"),
        )
        assert result.reasons == ["legal_name_match", "trade_name_match"]
        assert result.score == 140

    def test_person_name_in_vendor(self) -> None:
        result = score_candidate(
            {"name": "Jane Doe Plumbing"}, _criteria(first_name="Jane", last_name="Doe")
        )
        assert result.score == 40
        assert result.reasons == ["person_name_in_vendor"]

    def test_person_rule_needs_both_names(self) -> None:
        result = score_candidate({"name": "Jane Doe"}, _criteria(first_name="Jane"))
        assert result.score == 0


# -- Properties ---------------------------------------------------------------


class TestProperties:
    def test_score_is_sum_of_reason_weights(self) -> None:
        weights = ScoringWeights()
        result = score_candidate(
            {
                "name": "Jane Doe Co",
                "email_address": "jane@janedoe.com",
                "legal_name": "Jane Doe Co",
            },
            _criteria(
                email="jane@janedoe.com",
                domain="janedoe.com",
                company_name="Jane Doe Co",
                first_name="Jane",
                last_name="Doe",
            ),
        )
        assert result.score == sum(getattr(weights, r) for r in result.reasons)
        assert result.reasons == [
            "exact_email",
            "exact_company_name",
            "domain_match",
            "legal_name_match",
            "person_name_in_vendor",
        ]

    def test_email_and_company_sum(self) -> None:
        result = score_candidate(
            {"name": "Acme Builders", "email_address": "ops@acme.com"},
            _criteria(email="OPS@acme.com", company_name="acme builders"),
        )
        assert result.score == 100 + 90

    def test_punctuation_only_company_never_matches_empty_name(self) -> None:
        result = score_candidate({"name": "!!!"}, _criteria(company_name="..."))
        assert result.score == 0

    def test_missing_candidate_fields_score_zero(self) -> None:
        result = score_candidate({}, _criteria(company_name="Acme", email="a@acme.com", domain="acme.com"))
        assert result.score == 0

    def test_custom_weights_and_field_map(self) -> None:
        result = score_candidate(
            {"display": "Acme Builders"},
            _criteria(company_name="Acme Builders"),
            weights=ScoringWeights(exact_company_name=5),
            field_map=CandidateFieldMap(name="display"),
        )
        assert result.score == 5
