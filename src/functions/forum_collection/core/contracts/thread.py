"""Forum thread records: a post and its flat list of comments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Post:
    id: str
    source: str
    title: str = ""
    body: str = ""
    author_ref: Optional[str] = None
    score: int = 0
    created_at: Optional[datetime] = None
    url: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.body}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Post":
        return cls(
            id=str(data["id"]),
            source=str(data.get("source") or data.get("subreddit") or ""),
            title=data.get("title") or "",
            body=data.get("body") or data.get("selftext") or "",
            author_ref=data.get("author_ref") or data.get("author"),
            score=int(data.get("score") or 0),
            created_at=_parse_timestamp(data.get("created_at", data.get("created_utc"))),
            url=data.get("url"),
        )


@dataclass(frozen=True, slots=True)
class Comment:
    id: str
    parent_id: Optional[str]
    body: str = ""
    author_ref: Optional[str] = None
    score: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            id=str(data["id"]),
            parent_id=data.get("parent_id"),
            body=data.get("body") or "",
            author_ref=data.get("author_ref") or data.get("author"),
            score=int(data.get("score") or 0),
            created_at=_parse_timestamp(data.get("created_at", data.get("created_utc"))),
        )


@dataclass(frozen=True, slots=True)
class ForumThread:
    """Result of ``FetchThread(sourceId)``."""

    post: Post
    comments: Tuple[Comment, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForumThread":
        comments: List[Comment] = [Comment.from_dict(item) for item in data.get("comments") or []]
        return cls(post=Post.from_dict(data["post"]), comments=tuple(comments))
