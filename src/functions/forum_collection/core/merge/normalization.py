"""Canonical keys for entity and dish names."""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize_key(name: str | None) -> str:
    """Lower-case, accent-folded, punctuation-free form of ``name``.

    >>> normalize_key("  Joe's  Pizza! ")
    'joes pizza'
    """
    if not name:
        return ""
    text = unicodedata.normalize("NFKD", name)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = "".join(
        " " if unicodedata.category(ch).startswith("Z") else ch
        for ch in text
        if not unicodedata.category(ch).startswith(("P", "S", "C")) or ch.isspace()
    )
    return _WHITESPACE.sub(" ", text.casefold()).strip()
