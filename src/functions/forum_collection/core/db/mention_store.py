"""Mention and entity persistence with idempotent upserts."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from postgrest.exceptions import APIError

from src.shared.batch.retry import retry_on_network_error
from ..contracts.extraction import Entity, Mention
from ..errors import StoreError

logger = logging.getLogger(__name__)

MentionKey = Tuple[str, str, str]


def fold_mentions(mentions: Iterable[Mention]) -> Dict[MentionKey, Mention]:
    """Collapse mentions sharing a key; the result does not depend on input order."""

    folded: Dict[MentionKey, Mention] = {}
    for mention in mentions:
        existing = folded.get(mention.key)
        folded[mention.key] = mention if existing is None else existing.combine(mention)
    return folded


class MentionStore(ABC):
    """Upsert API for mentions and entity aggregates."""

    @abstractmethod
    def upsert_mentions(self, mentions: Sequence[Mention]) -> Tuple[int, int]:
        """Insert or fold mentions. Returns ``(created, updated)`` counts."""

    @abstractmethod
    def mentions_for_restaurant(self, restaurant_key: str) -> List[Mention]:
        ...

    @abstractmethod
    def get_entity(self, key: str) -> Optional[Entity]:
        ...

    @abstractmethod
    def upsert_entity(self, entity: Entity) -> None:
        ...

    @abstractmethod
    def list_entities(self) -> List[Entity]:
        ...


class InMemoryMentionStore(MentionStore):
    """Process-local store used by tests and dry runs."""

    def __init__(self) -> None:
        self._mentions: Dict[MentionKey, Mention] = {}
        self._entities: Dict[str, Entity] = {}
        self._lock = threading.Lock()

    def upsert_mentions(self, mentions: Sequence[Mention]) -> Tuple[int, int]:
        created = updated = 0
        with self._lock:
            for key, mention in fold_mentions(mentions).items():
                existing = self._mentions.get(key)
                if existing is None:
                    self._mentions[key] = mention
                    created += 1
                    continue
                combined = existing.combine(mention)
                if combined != existing:
                    self._mentions[key] = combined
                    updated += 1
        return created, updated

    def mentions_for_restaurant(self, restaurant_key: str) -> List[Mention]:
        with self._lock:
            return sorted(
                (m for m in self._mentions.values() if m.restaurant_key == restaurant_key),
                key=lambda m: m.key,
            )

    def get_entity(self, key: str) -> Optional[Entity]:
        with self._lock:
            return self._entities.get(key)

    def upsert_entity(self, entity: Entity) -> None:
        with self._lock:
            self._entities[entity.key] = entity

    def list_entities(self) -> List[Entity]:
        with self._lock:
            return [self._entities[key] for key in sorted(self._entities)]

    def all_mentions(self) -> List[Mention]:
        with self._lock:
            return [self._mentions[key] for key in sorted(self._mentions)]

    def snapshot(self) -> Dict[str, Any]:
        """Comparable view of the whole store."""
        return {
            "mentions": [m.to_row() for m in self.all_mentions()],
            "entities": [e.to_row() for e in self.list_entities()],
        }


class SupabaseMentionStore(MentionStore):
    """Supabase-backed store (``forum_mentions`` / ``forum_entities``)."""

    MENTION_CONFLICT = "source_id,restaurant_key,dish_key"

    def __init__(
        self,
        client: Any,
        *,
        mention_table: str = "forum_mentions",
        entity_table: str = "forum_entities",
        dry_run: bool = False,
    ) -> None:
        self.client = client
        self.mention_table = mention_table
        self.entity_table = entity_table
        self.dry_run = dry_run

    def _execute(self, build_query):
        try:
            return retry_on_network_error(lambda: build_query().execute())
        except APIError as exc:
            raise StoreError(f"Supabase request failed: {exc}") from exc

    def _existing_for(self, source_ids: List[str]) -> Dict[MentionKey, Mention]:
        if not source_ids:
            return {}
        response = self._execute(
            lambda: self.client.table(self.mention_table).select("*").in_("source_id", source_ids)
        )
        rows = getattr(response, "data", None) or []
        existing = [Mention.from_row(row) for row in rows]
        return {mention.key: mention for mention in existing}

    def upsert_mentions(self, mentions: Sequence[Mention]) -> Tuple[int, int]:
        folded = fold_mentions(mentions)
        if not folded:
            return 0, 0
        existing = self._existing_for(sorted({key[0] for key in folded}))

        rows: List[Dict[str, Any]] = []
        created = updated = 0
        for key in sorted(folded):
            mention = folded[key]
            previous = existing.get(key)
            if previous is None:
                created += 1
            else:
                mention = previous.combine(mention)
                if mention == previous:
                    continue
                updated += 1
            rows.append(mention.to_row())

        if not rows:
            return created, updated
        if self.dry_run:
            logger.info("[DRY RUN] Would upsert %d mention rows into %s", len(rows), self.mention_table)
            return created, updated

        self._execute(
            lambda: self.client.table(self.mention_table).upsert(rows, on_conflict=self.MENTION_CONFLICT)
        )
        logger.debug("Upserted %d mention rows (%d new, %d updated)", len(rows), created, updated)
        return created, updated

    def mentions_for_restaurant(self, restaurant_key: str) -> List[Mention]:
        response = self._execute(
            lambda: self.client.table(self.mention_table).select("*").eq("restaurant_key", restaurant_key)
        )
        rows = getattr(response, "data", None) or []
        return sorted((Mention.from_row(row) for row in rows), key=lambda m: m.key)

    def get_entity(self, key: str) -> Optional[Entity]:
        response = self._execute(
            lambda: self.client.table(self.entity_table).select("*").eq("entity_key", key).limit(1)
        )
        rows = getattr(response, "data", None) or []
        return Entity.from_row(rows[0]) if rows else None

    def upsert_entity(self, entity: Entity) -> None:
        if self.dry_run:
            logger.info("[DRY RUN] Would upsert entity %s (%d mentions)", entity.key, entity.mention_count)
            return
        self._execute(
            lambda: self.client.table(self.entity_table).upsert(entity.to_row(), on_conflict="entity_key")
        )

    def list_entities(self) -> List[Entity]:
        response = self._execute(lambda: self.client.table(self.entity_table).select("*"))
        rows = getattr(response, "data", None) or []
        return sorted((Entity.from_row(row) for row in rows), key=lambda e: e.key)
