"""Resolve free-text client and fee-earner names to canonical entities."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from flask import current_app, has_app_context

from chambers_app.models.canonical import ClientType

from .repository import EntityRef, LexRepository
from .similarity import SimilarityScorer, TokenSortScorer, normalize_entity_name

# Clients need a closer match than fee earners.
CLIENT_MATCH_THRESHOLD = 0.90
FEE_EARNER_MATCH_THRESHOLD = 0.80


def get_client_threshold() -> float:
    if has_app_context():
        return float(current_app.config.get("RECONCILE_CLIENT_THRESHOLD", CLIENT_MATCH_THRESHOLD))
    return CLIENT_MATCH_THRESHOLD


def get_fee_earner_threshold() -> float:
    if has_app_context():
        return float(current_app.config.get("RECONCILE_FEE_EARNER_THRESHOLD", FEE_EARNER_MATCH_THRESHOLD))
    return FEE_EARNER_MATCH_THRESHOLD


class MatchKind(str, enum.Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    CREATED = "created"


@dataclass(frozen=True)
class ReconcileResult:
    entity: EntityRef
    kind: MatchKind
    score: float = 1.0

    @property
    def id(self) -> int:
        return self.entity.id


def best_match(
    name: str,
    candidates: list[EntityRef],
    scorer: SimilarityScorer,
    threshold: float,
) -> tuple[EntityRef, float] | None:
    """Return the highest-scoring candidate whose score exceeds ``threshold``."""

    best: tuple[EntityRef, float] | None = None
    for candidate in candidates:
        score = scorer.score(name, candidate.name)
        if best is None or score > best[1]:
            best = (candidate, score)
    if best is None or best[1] <= threshold:
        return None
    return best


class EntityReconciler:
    """Exact-then-fuzzy matcher with conflict-safe creation.

    Instances are scoped to one batch session. Fuzzy candidates are loaded once
    per entity kind and reloaded after this instance creates one, so a
    rolled-back savepoint never leaves a phantom candidate behind.
    """

    def __init__(
        self,
        repository: LexRepository,
        *,
        scorer: SimilarityScorer | None = None,
        client_threshold: float | None = None,
        fee_earner_threshold: float | None = None,
    ) -> None:
        self.repository = repository
        self.scorer = scorer or TokenSortScorer()
        self.client_threshold = client_threshold if client_threshold is not None else get_client_threshold()
        self.fee_earner_threshold = (
            fee_earner_threshold if fee_earner_threshold is not None else get_fee_earner_threshold()
        )
        self._client_candidates: dict[ClientType, list[EntityRef]] = {}
        self._fee_earner_candidates: list[EntityRef] | None = None

    def _clients_of_type(self, client_type: ClientType) -> list[EntityRef]:
        if client_type not in self._client_candidates:
            self._client_candidates[client_type] = self.repository.client_candidates(client_type)
        return self._client_candidates[client_type]

    def _fee_earners(self) -> list[EntityRef]:
        if self._fee_earner_candidates is None:
            self._fee_earner_candidates = self.repository.fee_earner_candidates()
        return self._fee_earner_candidates

    def find_client(self, name: str, client_type: ClientType = ClientType.COMPANY) -> ReconcileResult | None:
        normalized = normalize_entity_name(name)
        if not normalized:
            return None
        exact = self.repository.find_client_exact(normalized, client_type)
        if exact is not None:
            return ReconcileResult(entity=exact, kind=MatchKind.EXACT)
        match = best_match(name, self._clients_of_type(client_type), self.scorer, self.client_threshold)
        if match is None:
            return None
        return ReconcileResult(entity=match[0], kind=MatchKind.FUZZY, score=match[1])

    def resolve_client(self, name: str, client_type: ClientType = ClientType.COMPANY) -> ReconcileResult:
        found = self.find_client(name, client_type)
        if found is not None:
            return found
        created = self.repository.upsert_client(name.strip(), normalize_entity_name(name), client_type)
        self._client_candidates.pop(client_type, None)
        return ReconcileResult(entity=created, kind=MatchKind.CREATED)

    def find_fee_earner(self, name: str) -> ReconcileResult | None:
        normalized = normalize_entity_name(name)
        if not normalized:
            return None
        exact = self.repository.find_fee_earner_exact(normalized)
        if exact is not None:
            return ReconcileResult(entity=exact, kind=MatchKind.EXACT)
        match = best_match(name, self._fee_earners(), self.scorer, self.fee_earner_threshold)
        if match is None:
            return None
        return ReconcileResult(entity=match[0], kind=MatchKind.FUZZY, score=match[1])

    def resolve_fee_earner(self, name: str) -> ReconcileResult:
        found = self.find_fee_earner(name)
        if found is not None:
            return found
        created = self.repository.upsert_fee_earner(name.strip(), normalize_entity_name(name))
        self._fee_earner_candidates = None
        return ReconcileResult(entity=created, kind=MatchKind.CREATED)
