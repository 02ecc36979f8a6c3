"""Wiki-link graph between notes.

Forward edges are parsed from note bodies (``[[Title]]`` markers) and kept
as titles; each (source, title) edge is resolved to a note identity by
exact-title lookup. Backlinks are derived from the resolved forward edges
and are never mutated directly.

Resolution is lazy across the graph: creating, renaming or deleting a note
only marks its title(s) stale, and stale titles are re-resolved on the next
read. A single-note edit therefore costs O(that note's own edges), and a
read costs O(edges that reference a stale title).
"""
import logging
import re
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from notevault.models.schema import NoteId

logger = logging.getLogger(__name__)

# ``[[Title]]``; the title is the shortest run up to the first ``]]`` on the line
WIKI_LINK_PATTERN = re.compile(r"\[\[(.+?)\]\]")

TitleResolver = Callable[[str], Optional[NoteId]]


def extract_links(body: str) -> List[str]:
    """Extract referenced titles from a note body.

    Args:
        body: Note text.

    Returns:
        Titles in order of first occurrence, duplicates included.
    """
    if not body:
        return []
    return WIKI_LINK_PATTERN.findall(body)


def format_wiki_link(title: str) -> str:
    """Format a reference marker to a note title."""
    return f"[[{title}]]"


class LinkGraph:
    """Forward links, resolved targets and derived backlinks keyed by note identity."""

    def __init__(self, resolver: TitleResolver):
        """Initialize the graph.

        Args:
            resolver: Maps a title to the note identity it currently
                resolves to, or None if no note has that title.
        """
        self._resolver = resolver
        # source -> referenced titles, in body order with duplicates
        self._targets: Dict[NoteId, List[str]] = {}
        # source -> distinct title -> resolved target (None = unresolved)
        self._resolved: Dict[NoteId, Dict[str, Optional[NoteId]]] = {}
        # target -> source -> number of distinct titles of source resolving to target
        self._backlinks: Dict[NoteId, Dict[NoteId, int]] = defaultdict(dict)
        # title -> sources that reference it
        self._referrers: Dict[str, Set[NoteId]] = defaultdict(set)
        self._stale_titles: Set[str] = set()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, note_id: NoteId) -> None:
        """Add a note with no outgoing links."""
        self._targets.setdefault(note_id, [])
        self._resolved.setdefault(note_id, {})

    def update_links(self, note_id: NoteId, new_targets: Sequence[str]) -> None:
        """Replace a note's outgoing edges with ``new_targets`` in one step.

        Titles that stay referenced keep their current resolution; removed
        titles drop their backlink contribution; added titles are resolved
        now against the current set of notes.
        """
        self.register(note_id)
        old = self._resolved[note_id]
        wanted = list(dict.fromkeys(new_targets))

        for title in [t for t in old if t not in wanted]:
            self._set_resolution(note_id, title, None)
            del old[title]
            referrers = self._referrers.get(title)
            if referrers is not None:
                referrers.discard(note_id)
                if not referrers:
                    del self._referrers[title]

        for title in wanted:
            if title in old:
                continue
            old[title] = None
            self._referrers[title].add(note_id)
            self._set_resolution(note_id, title, self._resolver(title))

        # Preserve first-occurrence order of the distinct titles
        self._resolved[note_id] = {title: old[title] for title in wanted}
        self._targets[note_id] = list(new_targets)

    def update_from_body(self, note_id: NoteId, body: str) -> None:
        """Re-parse a body and replace the note's outgoing edges."""
        self.update_links(note_id, extract_links(body))

    def remove_note(self, note_id: NoteId, title: Optional[str] = None) -> None:
        """Drop a deleted note's outgoing edges and its backlink entry.

        Edges from other notes that resolved to it are re-resolved on the
        next read (they become unresolved unless another note has the title).
        """
        if note_id in self._resolved:
            self.update_links(note_id, [])
            del self._resolved[note_id]
            del self._targets[note_id]
        self._backlinks.pop(note_id, None)
        if title is not None:
            self.mark_stale(title)

    def note_created(self, title: str) -> None:
        """Record that a note with ``title`` now exists."""
        self.mark_stale(title)

    def note_renamed(self, old_title: str, new_title: str) -> None:
        """Record that a note changed title; markers in other notes are not rewritten."""
        self.mark_stale(old_title)
        self.mark_stale(new_title)

    def mark_stale(self, title: str) -> None:
        """Schedule edges referencing ``title`` for re-resolution on next read."""
        if title in self._referrers:
            self._stale_titles.add(title)

    def clear(self) -> None:
        """Forget every note and edge."""
        self._targets.clear()
        self._resolved.clear()
        self._backlinks.clear()
        self._referrers.clear()
        self._stale_titles.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def backlinks(self, note_id: NoteId) -> Set[NoteId]:
        """Notes whose bodies currently link to ``note_id``."""
        self._refresh()
        return {
            source
            for source, count in self._backlinks.get(note_id, {}).items()
            if count > 0
        }

    def unresolved_targets(self, note_id: NoteId) -> Set[str]:
        """Titles referenced by ``note_id`` that match no existing note."""
        self._refresh()
        return {
            title
            for title, target in self._resolved.get(note_id, {}).items()
            if target is None
        }

    def outgoing(self, note_id: NoteId) -> List[str]:
        """Referenced titles in body order, duplicates included."""
        return list(self._targets.get(note_id, []))

    def resolved_links(self, note_id: NoteId) -> Dict[str, Optional[NoteId]]:
        """Distinct referenced titles and what each resolves to."""
        self._refresh()
        return dict(self._resolved.get(note_id, {}))

    def connection_count(self, note_id: NoteId) -> Tuple[int, int]:
        """(resolved outgoing targets, backlink sources) for a note."""
        self._refresh()
        outgoing = {
            target
            for target in self._resolved.get(note_id, {}).values()
            if target is not None
        }
        return len(outgoing), len(self.backlinks(note_id))

    def find_orphans(self, note_ids: Iterable[NoteId]) -> List[NoteId]:
        """Notes among ``note_ids`` with no resolved link in either direction."""
        self._refresh()
        return [nid for nid in note_ids if self.connection_count(nid) == (0, 0)]

    def __contains__(self, note_id: NoteId) -> bool:
        return note_id in self._resolved

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _refresh(self) -> None:
        """Re-resolve every edge whose title was marked stale."""
        if not self._stale_titles:
            return
        stale, self._stale_titles = self._stale_titles, set()
        changed = 0
        for title in stale:
            target = self._resolver(title)
            for source in self._referrers.get(title, ()):
                if self._resolved[source].get(title) != target:
                    self._set_resolution(source, title, target)
                    changed += 1
        if changed:
            logger.debug(
                f"Re-resolved {changed} link(s) across {len(stale)} stale title(s)"
            )

    def _set_resolution(
        self, source: NoteId, title: str, target: Optional[NoteId]
    ) -> None:
        resolved = self._resolved[source]
        previous = resolved.get(title)
        if previous == target:
            return
        if previous is not None:
            sources = self._backlinks.get(previous)
            if sources is not None and source in sources:
                sources[source] -= 1
                if sources[source] <= 0:
                    del sources[source]
                if not sources:
                    del self._backlinks[previous]
        if target is not None:
            sources = self._backlinks[target]
            sources[source] = sources.get(source, 0) + 1
        resolved[title] = target
