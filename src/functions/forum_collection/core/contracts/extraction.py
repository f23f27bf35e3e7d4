"""Chunk, outcome, mention and entity records used by dispatch and merge."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .thread import Comment, Post


@dataclass(frozen=True, slots=True)
class Chunk:
    """A bounded, ordered slice of one post's comment tree.

    ``comments`` are in parent-before-child order. When ``extract_from_post``
    is set the post itself is member zero.
    """

    chunk_id: str
    root_id: str
    post: Post
    comments: Tuple[Comment, ...] = ()
    extract_from_post: bool = False

    @property
    def comment_ids(self) -> Tuple[str, ...]:
        return tuple(comment.id for comment in self.comments)

    @property
    def member_ids(self) -> Tuple[str, ...]:
        if self.extract_from_post:
            return (self.post.id,) + self.comment_ids
        return self.comment_ids

    @property
    def size(self) -> int:
        return len(self.comments)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Typed result of an external call: Success | TransientFailure | PermanentFailure."""

    kind: OutcomeKind
    message: str = ""
    category: str = ""
    retry_after: Optional[float] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def transient(cls, message: str, category: str = "unknown_error", retry_after: Optional[float] = None) -> "Outcome":
        return cls(OutcomeKind.TRANSIENT, message=message, category=category, retry_after=retry_after)

    @classmethod
    def permanent(cls, message: str, category: str = "unknown_error") -> "Outcome":
        return cls(OutcomeKind.PERMANENT, message=message, category=category)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


@dataclass(frozen=True, slots=True)
class Mention:
    """One restaurant/dish mention, unique on ``(source_id, restaurant_key, dish_key)``."""

    source_id: str
    source_type: str
    restaurant_key: str
    dish_key: str = ""
    restaurant_name: str = ""
    dish_name: str = ""
    attributes: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    mentioned_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.source_id, self.restaurant_key, self.dish_key)

    def combine(self, other: "Mention") -> "Mention":
        """Fold a duplicate arrival into this mention.

        Attributes and categories are unioned; scalar fields take the smaller
        value so the fold gives the same answer in either order.
        """

        if other.key != self.key:
            raise ValueError(f"Cannot combine mentions with different keys: {self.key} vs {other.key}")
        return replace(
            self,
            source_type=min(self.source_type, other.source_type),
            restaurant_name=_min_non_empty(self.restaurant_name, other.restaurant_name),
            dish_name=_min_non_empty(self.dish_name, other.dish_name),
            attributes=tuple(sorted(set(self.attributes) | set(other.attributes))),
            categories=tuple(sorted(set(self.categories) | set(other.categories))),
            mentioned_at=_min_optional(self.mentioned_at, other.mentioned_at),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "restaurant_key": self.restaurant_key,
            "dish_key": self.dish_key,
            "restaurant_name": self.restaurant_name,
            "dish_name": self.dish_name,
            "attributes": list(self.attributes),
            "categories": list(self.categories),
            "mentioned_at": self.mentioned_at.isoformat() if self.mentioned_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Mention":
        mentioned_at = row.get("mentioned_at")
        if isinstance(mentioned_at, str):
            mentioned_at = datetime.fromisoformat(mentioned_at.replace("Z", "+00:00"))
        return cls(
            source_id=str(row["source_id"]),
            source_type=row.get("source_type") or "comment",
            restaurant_key=row["restaurant_key"],
            dish_key=row.get("dish_key") or "",
            restaurant_name=row.get("restaurant_name") or "",
            dish_name=row.get("dish_name") or "",
            attributes=tuple(sorted(row.get("attributes") or [])),
            categories=tuple(sorted(row.get("categories") or [])),
            mentioned_at=mentioned_at,
        )


def _min_non_empty(left: str, right: str) -> str:
    candidates = [value for value in (left, right) if value]
    return min(candidates) if candidates else ""


def _min_optional(left: Optional[datetime], right: Optional[datetime]) -> Optional[datetime]:
    if left is None:
        return right
    if right is None:
        return left
    return min(left, right)


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    chunk_id: str
    outcome: Outcome
    mentions: Tuple[Mention, ...] = ()
    timing_ms: float = 0.0
    attempts: int = 1
    chunk_size: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome.ok


@dataclass(slots=True)
class Entity:
    """Aggregate of mentions keyed by normalized restaurant name."""

    key: str
    name: str
    mention_count: int = 0
    last_enriched_at: Optional[datetime] = None
    priority_score: float = 0.0
    search_demand: float = 0.0
    dish_keys: Tuple[str, ...] = field(default_factory=tuple)

    def to_row(self) -> Dict[str, Any]:
        return {
            "entity_key": self.key,
            "name": self.name,
            "mention_count": self.mention_count,
            "last_enriched_at": self.last_enriched_at.isoformat() if self.last_enriched_at else None,
            "priority_score": self.priority_score,
            "search_demand": self.search_demand,
            "dish_keys": list(self.dish_keys),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Entity":
        last = row.get("last_enriched_at")
        if isinstance(last, str):
            last = datetime.fromisoformat(last.replace("Z", "+00:00"))
        return cls(
            key=row["entity_key"],
            name=row.get("name") or row["entity_key"],
            mention_count=int(row.get("mention_count") or 0),
            last_enriched_at=last,
            priority_score=float(row.get("priority_score") or 0.0),
            search_demand=float(row.get("search_demand") or 0.0),
            dish_keys=tuple(row.get("dish_keys") or ()),
        )
