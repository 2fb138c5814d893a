"""Name matching and ranking for the search tools."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

EXACT_MATCH_SCORE = 100
PREFIX_MATCH_SCORE = 80
WORD_MATCH_SCORE = 60
SUBSTRING_MATCH_SCORE = 40

ENTITY_TYPES = ("notebooks", "sections", "sectionGroups", "pages")


def match_score(text: str | None, query: str) -> int:
    """Score how well `text` matches `query`, case-insensitively.

    Exact match scores highest, then prefix, then whole-word, then any
    substring. Zero means no match.
    """
    if not text or not query:
        return 0
    normalized_text = text.lower()
    normalized_query = query.lower()

    if normalized_text == normalized_query:
        return EXACT_MATCH_SCORE
    if normalized_text.startswith(normalized_query):
        return PREFIX_MATCH_SCORE
    if re.search(rf"\b{re.escape(normalized_query)}\b", normalized_text):
        return WORD_MATCH_SCORE
    if normalized_query in normalized_text:
        return SUBSTRING_MATCH_SCORE
    return 0


def rank(
    items: Iterable[dict[str, Any]],
    query: str,
    field: str = "displayName",
    limit: int | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Score, filter and sort Graph items by one name field.

    Returns:
        The (possibly limited) annotated matches, best first, and the
        total match count before the limit.
    """
    matches = []
    for item in items:
        score = match_score(item.get(field), query)
        if score > 0:
            matches.append({**item, "_matchScore": score, "_matchedField": field})

    # sorted() is stable, so equal scores keep Graph's order.
    matches = sorted(matches, key=lambda match: match["_matchScore"], reverse=True)
    total = len(matches)
    if limit:
        matches = matches[:limit]
    return matches, total
