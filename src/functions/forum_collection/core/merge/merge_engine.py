"""Fold extraction results into the mention/entity store.

Merging is commutative and idempotent: mentions are keyed on
``(source_id, restaurant_key, dish_key)`` and duplicates only widen the
attribute/category sets. Entity aggregates are recomputed from the stored
mentions rather than incremented, so replays leave them unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..contracts.extraction import Entity, ExtractionResult, Mention
from ..db.mention_store import MentionStore, fold_mentions

logger = logging.getLogger(__name__)


@dataclass
class MergeSummary:
    new_mentions: int = 0
    updated_mentions: int = 0
    updated_entities: List[str] = field(default_factory=list)
    skipped_results: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "new_mentions": self.new_mentions,
            "updated_mentions": self.updated_mentions,
            "updated_entities": list(self.updated_entities),
            "skipped_results": self.skipped_results,
        }


def aggregate_entity(key: str, mentions: Iterable[Mention], previous: Optional[Entity] = None) -> Entity:
    """Rebuild an entity from its full mention set.

    ``search_demand`` and ``priority_score`` are not derived from mentions and
    are carried over from ``previous``.
    """
    mentions = list(mentions)
    names = sorted({m.restaurant_name for m in mentions if m.restaurant_name})
    dated = [m.mentioned_at for m in mentions if m.mentioned_at is not None]
    return Entity(
        key=key,
        name=names[0] if names else (previous.name if previous else key),
        mention_count=len(mentions),
        last_enriched_at=max(dated) if dated else (previous.last_enriched_at if previous else None),
        priority_score=previous.priority_score if previous else 0.0,
        search_demand=previous.search_demand if previous else 0.0,
        dish_keys=tuple(sorted({m.dish_key for m in mentions if m.dish_key})),
    )


class MergeEngine:
    """Applies successful extraction results to a :class:`MentionStore`."""

    def __init__(self, store: MentionStore) -> None:
        self._store = store

    @property
    def store(self) -> MentionStore:
        return self._store

    def merge(self, results: Iterable[ExtractionResult]) -> MergeSummary:
        summary = MergeSummary()
        mentions: List[Mention] = []
        for result in results:
            if not result.succeeded:
                summary.skipped_results += 1
                continue
            mentions.extend(result.mentions)

        folded = fold_mentions(mentions)
        if not folded:
            return summary

        created, updated = self._store.upsert_mentions(list(folded.values()))
        summary.new_mentions = created
        summary.updated_mentions = updated

        for restaurant_key in sorted({key[1] for key in folded}):
            previous = self._store.get_entity(restaurant_key)
            entity = aggregate_entity(
                restaurant_key,
                self._store.mentions_for_restaurant(restaurant_key),
                previous,
            )
            if entity != previous:
                self._store.upsert_entity(entity)
                summary.updated_entities.append(restaurant_key)

        logger.debug(
            "Merged %d mentions: %d new, %d updated, %d entities touched",
            len(folded),
            created,
            updated,
            len(summary.updated_entities),
        )
        return summary
