"""Re-enrichment priority of known entities."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List

from ..contracts.config import PriorityConfig
from ..contracts.extraction import Entity


@dataclass(frozen=True, slots=True)
class ScoredEntity:
    entity: Entity
    score: float
    recency: float
    completeness_gap: float
    demand: float


class PriorityScorer:
    """Weighted score in [0, 100].

    Components, each in [0, 1]:

    * recency: ``1 - exp(-gap_days / horizon)`` where the gap is the time since
      ``last_enriched_at``; never-enriched entities score 1.
    * completeness gap: ``1 - mention_count / expected_mentions``, floored at 0.
    * demand: ``log1p(search_demand) / log1p(demand_cap)``, capped at 1.

    The weighted mean is scaled to 100; entities that were never enriched get
    ``new_entity_boost`` points on top. The score is a pure function of the
    entity snapshot and ``now``.
    """

    def __init__(self, config: PriorityConfig | None = None) -> None:
        self.config = config or PriorityConfig()

    def _recency(self, entity: Entity, now: datetime) -> float:
        if entity.last_enriched_at is None:
            return 1.0
        gap_days = max((now - entity.last_enriched_at).total_seconds() / 86400, 0.0)
        return 1.0 - math.exp(-gap_days / self.config.recency_horizon_days)

    def _completeness_gap(self, entity: Entity) -> float:
        coverage = min(max(entity.mention_count, 0) / self.config.expected_mentions, 1.0)
        return 1.0 - coverage

    def _demand(self, entity: Entity) -> float:
        demand = max(entity.search_demand, 0.0)
        return min(math.log1p(demand) / math.log1p(self.config.demand_cap), 1.0)

    def evaluate(self, entity: Entity, now: datetime) -> ScoredEntity:
        cfg = self.config
        recency = self._recency(entity, now)
        gap = self._completeness_gap(entity)
        demand = self._demand(entity)
        total_weight = cfg.recency_weight + cfg.completeness_weight + cfg.demand_weight
        weighted = (
            cfg.recency_weight * recency
            + cfg.completeness_weight * gap
            + cfg.demand_weight * demand
        ) / total_weight
        score = weighted * 100
        if entity.last_enriched_at is None:
            score += cfg.new_entity_boost
        score = round(min(max(score, 0.0), 100.0), 6)
        return ScoredEntity(entity=entity, score=score, recency=recency, completeness_gap=gap, demand=demand)

    def score(self, entity: Entity, now: datetime) -> float:
        return self.evaluate(entity, now).score

    def rank(self, entities: Iterable[Entity], now: datetime) -> List[ScoredEntity]:
        """All entities, highest score first, ties broken by entity key."""

        scored = [self.evaluate(entity, now) for entity in entities]
        return sorted(scored, key=lambda item: (-item.score, item.entity.key))

    def top_k(self, entities: Iterable[Entity], k: int, now: datetime) -> List[ScoredEntity]:
        if k <= 0:
            return []
        return self.rank(entities, now)[:k]
