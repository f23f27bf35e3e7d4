"""Prompt builder for mention extraction."""

from __future__ import annotations

import json
from textwrap import dedent
from typing import Dict, List

from ..contracts.extraction import Chunk

MENTION_EXTRACTION_PROMPT_TEMPLATE = dedent(
    """
    You read food discussions from the online community "{source}" and extract every concrete
    restaurant mention, optionally tied to a specific dish.

    **Rules:**
    - Only report restaurants that are named explicitly. Skip chains mentioned only as comparisons.
    - `source_id` must be the id of the post or comment that contains the mention.
    - `dish_name` is empty when no particular dish is discussed.
    - `attributes` are short lowercase descriptors from the text (e.g. "spicy", "cheap", "long wait").
    - `categories` are cuisine or dish categories (e.g. "pizza", "ramen").
    - Do not invent mentions that are not in the text.

    Return JSON only, in this exact shape:

    {{
      "mentions": [
        {{
          "source_id": "abc123",
          "restaurant_name": "Joe's Pizza",
          "dish_name": "plain slice",
          "attributes": ["crispy"],
          "categories": ["pizza"]
        }}
      ]
    }}

    **Discussion:**
    {discussion}
    """
).strip()


def _chunk_payload(chunk: Chunk) -> Dict[str, object]:
    comments: List[Dict[str, object]] = [
        {
            "id": comment.id,
            "parent_id": comment.parent_id,
            "score": comment.score,
            "text": comment.body,
        }
        for comment in chunk.comments
    ]
    return {
        "post": {
            "id": chunk.post.id,
            "title": chunk.post.title,
            "text": chunk.post.body,
            "extract_from_post": chunk.extract_from_post,
        },
        "comments": comments,
    }


def build_mention_extraction_prompt(chunk: Chunk) -> str:
    """Render the extraction prompt for one chunk.

    The post is always included as context; mentions from it are only kept when
    ``chunk.extract_from_post`` is set.
    """
    discussion = json.dumps(_chunk_payload(chunk), ensure_ascii=False, indent=2)
    return MENTION_EXTRACTION_PROMPT_TEMPLATE.format(source=chunk.post.source or "forum", discussion=discussion)
