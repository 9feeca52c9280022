from __future__ import annotations

import pytest

from chambers_app.importer.pipeline.reconcile import (
    CLIENT_MATCH_THRESHOLD,
    EntityReconciler,
    MatchKind,
    best_match,
    get_client_threshold,
)
from chambers_app.importer.pipeline.repository import EntityRef, LexRepository, infer_seniority
from chambers_app.importer.pipeline.similarity import (
    TokenSortScorer,
    TrigramScorer,
    get_scorer,
    normalize_entity_name,
)
from chambers_app.models import Client, ClientType, FeeEarner, Seniority, db


class FixedScorer:
    name = "fixed"

    def __init__(self, value):
        self.value = value

    def score(self, left, right):
        return self.value


@pytest.fixture
def reconciler():
    return EntityReconciler(LexRepository(db.session))


def test_normalize_entity_name():
    assert normalize_entity_name("  Acme   Holdings  LTD ") == "acme holdings ltd"
    assert normalize_entity_name(None) == ""


def test_token_sort_scorer_ignores_case_order_and_punctuation():
    scorer = TokenSortScorer()
    assert scorer.score("Smith & Partners", "partners smith") == pytest.approx(1.0)
    assert scorer.score("", "anything") == 0.0
    assert 0.0 <= scorer.score("Acme", "Zenith") < 0.5


def test_trigram_scorer_bounds():
    scorer = TrigramScorer()
    assert scorer.score("Acme Holdings", "acme holdings") == pytest.approx(1.0)
    assert scorer.score("abc", "xyz") == 0.0
    assert scorer.score("", "abc") == 0.0
    assert 0.0 < scorer.score("Jonathan Smith", "Jonathon Smith") < 1.0


def test_get_scorer_by_name():
    assert isinstance(get_scorer(), TokenSortScorer)
    assert isinstance(get_scorer("Trigram"), TrigramScorer)
    with pytest.raises(ValueError):
        get_scorer("soundex")


def test_best_match_requires_score_strictly_above_threshold():
    candidates = [EntityRef(id=1, name="Acme")]
    assert best_match("Acme", candidates, FixedScorer(0.9), 0.9) is None
    match = best_match("Acme", candidates, FixedScorer(0.91), 0.9)
    assert match is not None and match[0].id == 1
    assert best_match("Acme", [], FixedScorer(1.0), 0.5) is None


def test_thresholds_come_from_config(app):
    assert get_client_threshold() == pytest.approx(CLIENT_MATCH_THRESHOLD)
    app.config["RECONCILE_CLIENT_THRESHOLD"] = 0.75
    assert get_client_threshold() == pytest.approx(0.75)


def test_resolve_client_creates_then_matches_exactly(reconciler):
    created = reconciler.resolve_client("Acme Holdings Ltd", ClientType.COMPANY)
    assert created.kind is MatchKind.CREATED

    again = reconciler.resolve_client("  ACME holdings   ltd ", ClientType.COMPANY)
    assert again.kind is MatchKind.EXACT
    assert again.id == created.id
    assert db.session.query(Client).count() == 1


def test_resolve_client_fuzzy_match_within_type_only(reconciler):
    created = reconciler.resolve_client("Acme Holdings Ltd", ClientType.COMPANY)

    fuzzy = reconciler.resolve_client("Acme Holdings Ltd.", ClientType.COMPANY)
    assert fuzzy.kind is MatchKind.FUZZY
    assert fuzzy.id == created.id
    assert fuzzy.score > CLIENT_MATCH_THRESHOLD

    other_type = reconciler.resolve_client("Acme Holdings Ltd", ClientType.SOLICITOR)
    assert other_type.kind is MatchKind.CREATED
    assert other_type.id != created.id


def test_dissimilar_client_is_created(reconciler):
    first = reconciler.resolve_client("Acme Holdings Ltd", ClientType.COMPANY)
    second = reconciler.resolve_client("Acme Ltd", ClientType.COMPANY)
    assert second.kind is MatchKind.CREATED
    assert second.id != first.id


def test_fee_earner_fuzzy_match_and_seniority(reconciler):
    created = reconciler.resolve_fee_earner("John Smith QC")
    assert created.kind is MatchKind.CREATED
    fee_earner = db.session.get(FeeEarner, created.id)
    assert fee_earner.seniority is Seniority.KC

    fuzzy = reconciler.resolve_fee_earner("Jon Smith QC")
    assert fuzzy.kind is MatchKind.FUZZY
    assert fuzzy.id == created.id


def test_blank_names_do_not_match(reconciler):
    assert reconciler.find_client("   ") is None
    assert reconciler.find_fee_earner("") is None


def test_infer_seniority():
    assert infer_seniority("Jane Roe KC") is Seniority.KC
    assert infer_seniority("Jane Roe") is Seniority.JUNIOR
