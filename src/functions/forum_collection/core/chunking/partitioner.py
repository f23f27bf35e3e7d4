"""Split a post's comment tree into bounded, ordered chunks.

Each root comment thread (a top-level comment and every descendant) becomes one
candidate chunk, ordered by root score so the most valuable threads go first.
Threads that exceed a budget are cut into consecutive slices of their preorder
walk, which keeps every comment at or after its parent. Budgets cover comment
count and text size; the post travels with every chunk, so its title and body
count towards the text size. Comments whose parent cannot be found are
gathered into a single orphan chunk instead of being dropped.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..contracts.extraction import Chunk
from ..contracts.thread import Comment, Post

logger = logging.getLogger(__name__)

POST_PREFIX = "t3_"
COMMENT_PREFIX = "t1_"


def _strip_prefix(value: str, prefix: str) -> str:
    return value[len(prefix):] if value.startswith(prefix) else value


def _is_post_reference(parent_id: Optional[str], post_id: str) -> bool:
    if parent_id is None or parent_id == "":
        return True
    bare_post = _strip_prefix(post_id, POST_PREFIX)
    return _strip_prefix(parent_id, POST_PREFIX) == bare_post


def _dedupe(comments: Iterable[Comment]) -> List[Comment]:
    seen = set()
    unique: List[Comment] = []
    for comment in comments:
        if comment.id in seen:
            logger.warning("Duplicate comment id %s ignored during partitioning", comment.id)
            continue
        seen.add(comment.id)
        unique.append(comment)
    return unique


def _preorder(start: int, children: Dict[int, List[int]], visited: List[bool]) -> List[int]:
    """Iterative preorder walk over comment indices, children in input order."""

    order: List[int] = []
    stack = [start]
    while stack:
        index = stack.pop()
        if visited[index]:
            continue
        visited[index] = True
        order.append(index)
        # Reversed so the first child is popped first
        stack.extend(reversed(children.get(index, ())))
    return order


def estimate_tokens(char_count: int) -> int:
    """Rough token count for ``char_count`` characters (four characters per token)."""

    if char_count <= 0:
        return 0
    return max(1, char_count // 4)


def context_chars(post: Post) -> int:
    """Characters every chunk of ``post`` carries before any comment is added."""

    return len(post.title) + len(post.body)


def _slices(
    indices: Sequence[int],
    arena: Sequence[Comment],
    size: int,
    max_chars: Optional[int],
    max_tokens: Optional[int],
    base_chars: int,
) -> List[List[int]]:
    """Cut a preorder walk into consecutive runs that fit every budget.

    A comment that is over budget on its own still gets a slice of its own.
    """

    pieces: List[List[int]] = []
    current: List[int] = []
    chars = base_chars
    for position in indices:
        length = len(arena[position].body)
        proposed = chars + length
        if current and (
            len(current) >= size
            or (max_chars is not None and proposed > max_chars)
            or (max_tokens is not None and estimate_tokens(proposed) > max_tokens)
        ):
            pieces.append(current)
            current = []
            chars = base_chars
        current.append(position)
        chars += length
    if current:
        pieces.append(current)
    return pieces


def partition(
    post: Post,
    comments: Sequence[Comment],
    max_chunk_size: int,
    *,
    extract_from_post: bool = True,
    max_chunk_chars: Optional[int] = None,
    max_chunk_tokens: Optional[int] = None,
) -> List[Chunk]:
    """Partition ``comments`` of ``post`` into chunks of at most ``max_chunk_size`` comments.

    Args:
        post: The post the comments belong to; carried on every chunk as context
        comments: Flat comment list with parent references
        max_chunk_size: Maximum number of comments in one chunk
        extract_from_post: Make the post member zero of the first chunk. A post
            without comments then yields a single post-only chunk.
        max_chunk_chars: Character budget per chunk, post title and body included
        max_chunk_tokens: Estimated token budget per chunk, same text as ``max_chunk_chars``

    Returns:
        Chunks in dispatch order. Every input comment (after dropping duplicate
        ids) appears in exactly one chunk.
    """
    if max_chunk_size < 1:
        raise ValueError("max_chunk_size must be >= 1")
    for name, budget in (("max_chunk_chars", max_chunk_chars), ("max_chunk_tokens", max_chunk_tokens)):
        if budget is not None and budget < 1:
            raise ValueError(f"{name} must be >= 1")

    arena = _dedupe(comments)
    if not arena:
        if extract_from_post:
            return [
                Chunk(
                    chunk_id=f"chunk_post_{post.id}",
                    root_id=post.id,
                    post=post,
                    comments=(),
                    extract_from_post=True,
                )
            ]
        return []

    index_by_id: Dict[str, int] = {comment.id: position for position, comment in enumerate(arena)}
    children: Dict[int, List[int]] = {}
    roots: List[int] = []
    orphans: List[int] = []

    for position, comment in enumerate(arena):
        if _is_post_reference(comment.parent_id, post.id):
            roots.append(position)
            continue
        parent = index_by_id.get(comment.parent_id)
        if parent is None:
            parent = index_by_id.get(_strip_prefix(comment.parent_id, COMMENT_PREFIX))
        if parent is None or parent == position:
            orphans.append(position)
            continue
        children.setdefault(parent, []).append(position)

    # Stable: equal scores keep input order
    roots.sort(key=lambda position: -arena[position].score)

    visited = [False] * len(arena)
    groups: List[Tuple[str, str, List[int]]] = []
    for root in roots:
        members = _preorder(root, children, visited)
        root_id = arena[root].id
        groups.append((f"chunk_{root_id}", root_id, members))

    orphan_members: List[int] = []
    for orphan in orphans:
        orphan_members.extend(_preorder(orphan, children, visited))
    # Anything still unvisited sits on a parent cycle; keep it rather than lose it
    leftovers = [position for position, seen in enumerate(visited) if not seen]
    if leftovers:
        logger.warning(
            "Post %s has %d comments on a parent cycle; adding them to the orphan chunk",
            post.id,
            len(leftovers),
        )
        for position in leftovers:
            orphan_members.extend(_preorder(position, children, visited))
    if orphan_members:
        logger.debug("Post %s has %d orphaned comments", post.id, len(orphan_members))
        groups.append((f"chunk_orphaned_{post.id}", post.id, orphan_members))

    base_chars = context_chars(post)
    chunks: List[Chunk] = []
    for base_id, root_id, members in groups:
        pieces = _slices(members, arena, max_chunk_size, max_chunk_chars, max_chunk_tokens, base_chars)
        for part, piece in enumerate(pieces, start=1):
            chunk_id = base_id if part == 1 else f"{base_id}_part{part}"
            chunks.append(
                Chunk(
                    chunk_id=chunk_id,
                    root_id=root_id,
                    post=post,
                    comments=tuple(arena[position] for position in piece),
                    extract_from_post=extract_from_post and not chunks,
                )
            )

    logger.debug(
        "Partitioned post %s: %d comments into %d chunks (max %d)",
        post.id,
        len(arena),
        len(chunks),
        max_chunk_size,
    )
    return chunks


def validate_partition(comments: Sequence[Comment], chunks: Sequence[Chunk]) -> List[str]:
    """Return human readable problems with a partition; empty means it is a strict cover."""

    problems: List[str] = []
    expected = {comment.id for comment in comments}
    counts = Counter(comment_id for chunk in chunks for comment_id in chunk.comment_ids)

    missing = sorted(expected - set(counts))
    if missing:
        problems.append(f"missing comments: {', '.join(missing)}")
    unknown = sorted(set(counts) - expected)
    if unknown:
        problems.append(f"unknown comments: {', '.join(unknown)}")
    duplicated = sorted(comment_id for comment_id, count in counts.items() if count > 1)
    if duplicated:
        problems.append(f"duplicated comments: {', '.join(duplicated)}")
    empty = [chunk.chunk_id for chunk in chunks if not chunk.comments and not chunk.extract_from_post]
    if empty:
        problems.append(f"empty chunks: {', '.join(empty)}")
    chunk_ids = Counter(chunk.chunk_id for chunk in chunks)
    clashes = sorted(chunk_id for chunk_id, count in chunk_ids.items() if count > 1)
    if clashes:
        problems.append(f"duplicate chunk ids: {', '.join(clashes)}")
    return problems


def size_distribution(chunks: Sequence[Chunk]) -> List[int]:
    """Comment counts per chunk, in chunk order."""

    return [chunk.size for chunk in chunks]
