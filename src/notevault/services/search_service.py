"""Service for fuzzy searching notes by title and body."""

import logging
from typing import List, Optional

from notevault.models.schema import SearchHit
from notevault.storage.repository_index import RepositoryIndex

logger = logging.getLogger(__name__)

# Scoring weights: every matched character scores, runs and word starts score more
SCORE_MATCH = 16
BONUS_CONSECUTIVE = 16
BONUS_WORD_START = 8
BONUS_FIRST_CHAR = 6
PENALTY_GAP = 3
MAX_GAP_PENALTY = 5

_SEPARATORS = set(" \t\n\r-_/.:,;()[]{}'\"#")


def fuzzy_score(query: str, text: str) -> Optional[int]:
    """Score ``text`` against ``query`` by in-order subsequence matching.

    Matching is case-insensitive unless the query contains an uppercase
    letter. Every query character must appear in ``text`` in order; the
    leftmost match of each character is taken, then the score rewards
    consecutive runs and matches at word starts and penalizes gaps.

    Args:
        query: Characters to find, in order.
        text: Candidate text.

    Returns:
        The score, or None if ``query`` is not a subsequence of ``text``.
    """
    if not query or not text:
        return None

    case_sensitive = any(c.isupper() for c in query)
    haystack = text if case_sensitive else text.lower()
    needle = query if case_sensitive else query.lower()

    score = 0
    position = -1
    for char in needle:
        found = haystack.find(char, position + 1)
        if found < 0:
            return None
        score += SCORE_MATCH
        if found == position + 1 and position >= 0:
            score += BONUS_CONSECUTIVE
        elif position >= 0:
            score -= min(found - position - 1, MAX_GAP_PENALTY) * PENALTY_GAP
        if found == 0:
            score += BONUS_FIRST_CHAR + BONUS_WORD_START
        elif haystack[found - 1] in _SEPARATORS:
            score += BONUS_WORD_START
        position = found
    return max(score, 1)


class SearchService:
    """Stateless fuzzy search over the repository's in-memory text."""

    def __init__(self, index: RepositoryIndex):
        self.index = index

    def search(self, query: str, limit: Optional[int] = None) -> List[SearchHit]:
        """Search every note's title and body.

        A note's score is the better of its title and body scores.
        Encrypted notes are matched on their title only, since their body
        is not available in memory.

        Args:
            query: Fuzzy query; an empty query yields no hits. Whitespace
                is matched like any other character.
            limit: Maximum hits to return; None for all.

        Returns:
            Hits by descending score, ties in folder-then-note order.
        """
        if not query:
            return []

        hits: List[SearchHit] = []
        for note_id, title, body in self.index.iter_searchable():
            candidates = [fuzzy_score(query, title)]
            if body is not None:
                candidates.append(fuzzy_score(query, body))
            scores = [s for s in candidates if s is not None]
            if scores:
                hits.append(SearchHit(note_id, max(scores), title))

        hits.sort(key=lambda hit: (-hit.score, hit.note_id))
        logger.debug(f"Search {query!r} matched {len(hits)} notes")
        return hits[:limit] if limit is not None else hits
