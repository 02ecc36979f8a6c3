"""Service layer for note vault operations.

This is the surface the UI layer calls: every operation either returns
its value or raises a :class:`~notevault.exceptions.NoteVaultError`.
"""

import difflib
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from notevault.exceptions import ErrorCode, NotFoundError
from notevault.models.schema import (
    Color,
    Folder,
    Note,
    NoteId,
    RepositoryStatistics,
    SearchHit,
    Tag,
    Version,
)
from notevault.observability import traced
from notevault.services.search_service import SearchService
from notevault.storage.link_graph import format_wiki_link
from notevault.storage.repository_index import RepositoryIndex

logger = logging.getLogger(__name__)


class VaultService:
    """Service for managing folders, notes, links and versions."""

    def __init__(
        self,
        index: Optional[RepositoryIndex] = None,
        root_dir: Optional[Path] = None,
    ):
        """Initialize the service.

        Args:
            index: Repository index. Created from ``root_dir`` (or the
                configured root) if None.
            root_dir: Repository root, used only when index is None.
        """
        self.index = index if index is not None else RepositoryIndex(root_dir=root_dir)
        self.search_service = SearchService(self.index)

    def close(self) -> None:
        self.index.close()

    @traced("reload")
    def reload(self) -> None:
        """Re-scan the repository from disk."""
        self.index.reload()

    # =========================================================================
    # Folders
    # =========================================================================

    @traced("create_folder")
    def create_folder(self, name: str) -> int:
        return self.index.create_folder(name)

    @traced("rename_folder")
    def rename_folder(self, folder_id: int, new_name: str) -> None:
        self.index.rename_folder(folder_id, new_name)

    @traced("delete_folder")
    def delete_folder(self, folder_id: int) -> int:
        """Delete a folder and every note in it; returns the note count."""
        return self.index.delete_folder(folder_id)

    def list_folders(self) -> List[Folder]:
        return self.index.folders()

    def get_folder_by_name(self, name: str) -> Folder:
        """Get a folder by exact name.

        Raises:
            NotFoundError: If no folder has the name.
        """
        folder_id = self.index.find_folder(name)
        if folder_id is None:
            raise NotFoundError(
                f"Folder '{name}' not found",
                identity=name,
                code=ErrorCode.FOLDER_NOT_FOUND,
            )
        return self.index.get_folder(folder_id)

    # =========================================================================
    # Notes
    # =========================================================================

    @traced("create_note")
    def create_note(
        self, folder_id: int, title: str, body: Optional[str] = None
    ) -> NoteId:
        """Create a note, optionally saving an initial body.

        An initial body is saved like any edit and becomes version 1.
        """
        note_id = self.index.create_note(folder_id, title)
        if body:
            self.index.save_note(note_id, body, message=f"Created: {title[:100]}")
        return note_id

    def get_note(self, note_id: NoteId) -> Note:
        return self.index.get_note(note_id)

    def get_note_by_title(self, folder_id: int, title: str) -> Note:
        """Get a note by exact title within a folder.

        Raises:
            NotFoundError: If the folder has no note with the title.
        """
        note_id = self.index.find_note(folder_id, title)
        if note_id is None:
            raise NotFoundError(
                f"Note '{title}' not found in folder {folder_id}",
                identity=title,
                code=ErrorCode.NOTE_NOT_FOUND,
            )
        return self.index.get_note(note_id)

    def list_notes(self, folder_id: Optional[int] = None) -> List[Note]:
        return self.index.notes(folder_id)

    @traced("read_note")
    def read_note(self, note_id: NoteId, password: Optional[str] = None) -> str:
        """Return a note's plaintext, decrypting it with ``password`` if needed."""
        return self.index.read_note(note_id, password)

    @traced("save_note")
    def save_note(
        self,
        note_id: NoteId,
        body: str,
        password: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Version:
        return self.index.save_note(note_id, body, password, message)

    @traced("rename_note")
    def rename_note(self, note_id: NoteId, new_title: str) -> None:
        self.index.rename_note(note_id, new_title)

    @traced("delete_note")
    def delete_note(self, note_id: NoteId) -> None:
        self.index.delete_note(note_id)

    @traced("toggle_favorite")
    def toggle_favorite(self, note_id: NoteId) -> bool:
        return self.index.toggle_favorite(note_id)

    def favorite_notes(self) -> List[Note]:
        """Favorite notes in folder-then-note order."""
        return [note for note in self.index.notes() if note.favorite]

    @traced("set_encryption")
    def set_encryption(
        self,
        note_id: NoteId,
        password: Optional[str],
        current_password: Optional[str] = None,
    ) -> None:
        """Encrypt (``password``), decrypt (``current_password`` only) or re-key a note."""
        self.index.set_encryption(note_id, password, current_password)

    def encrypt_note(self, note_id: NoteId, password: str) -> None:
        self.set_encryption(note_id, password)

    def decrypt_note(self, note_id: NoteId, password: str) -> None:
        self.set_encryption(note_id, None, current_password=password)

    # =========================================================================
    # Tags
    # =========================================================================

    @traced("create_tag")
    def create_tag(self, name: str, color: Optional[Color] = None) -> int:
        return self.index.create_tag(name, color)

    def list_tags(self) -> List[Tag]:
        return self.index.tags()

    def get_tags_with_counts(self) -> Dict[str, int]:
        """Number of notes carrying each tag, by tag name."""
        counts = {tag.name: 0 for tag in self.index.tags()}
        names = {tag.id: tag.name for tag in self.index.tags()}
        for note in self.index.notes():
            for tag_id in note.tag_ids:
                counts[names[tag_id]] += 1
        return counts

    @traced("delete_tag")
    def delete_tag(self, tag_id: int) -> int:
        return self.index.delete_tag(tag_id)

    @traced("set_tags")
    def set_tags(self, note_id: NoteId, tag_ids: List[int]) -> None:
        self.index.set_tags(note_id, tag_ids)

    def add_tag_to_note(self, note_id: NoteId, tag_id: int) -> None:
        note = self.index.get_note(note_id)
        self.set_tags(note_id, note.tag_ids | {tag_id})

    def remove_tag_from_note(self, note_id: NoteId, tag_id: int) -> None:
        note = self.index.get_note(note_id)
        self.set_tags(note_id, note.tag_ids - {tag_id})

    def notes_with_tag(self, tag_id: int) -> List[Note]:
        """Notes referencing a tag, in folder-then-note order."""
        self.index.get_tag(tag_id)
        return [note for note in self.index.notes() if tag_id in note.tag_ids]

    # =========================================================================
    # Versions
    # =========================================================================

    @traced("list_versions")
    def list_versions(self, note_id: NoteId) -> List[Version]:
        return self.index.list_versions(note_id)

    @traced("restore_version")
    def restore_version(
        self, note_id: NoteId, seq: int, password: Optional[str] = None
    ) -> Version:
        """Restore a version; returns the new version the restore recorded."""
        return self.index.restore_version(note_id, seq, password)

    @traced("diff_versions")
    def diff_versions(
        self,
        note_id: NoteId,
        version_a: int,
        version_b: int,
        password: Optional[str] = None,
    ) -> str:
        """Unified diff between two versions' plaintext.

        Raises:
            NotFoundError: If either version does not belong to the note.
            EncryptionRequiredError: If either version is encrypted and no
                password was given.
        """
        self._require_note(note_id)
        before = self.index.decode_version(note_id, version_a, password)
        after = self.index.decode_version(note_id, version_b, password)
        return "".join(
            difflib.unified_diff(
                before.splitlines(keepends=True),
                after.splitlines(keepends=True),
                fromfile=f"{note_id}@{version_a}",
                tofile=f"{note_id}@{version_b}",
            )
        )

    # =========================================================================
    # Search and links
    # =========================================================================

    @traced("search")
    def search(self, query: str, limit: Optional[int] = None) -> List[SearchHit]:
        return self.search_service.search(query, limit)

    def backlinks(self, note_id: NoteId) -> List[NoteId]:
        """Notes linking to ``note_id``, in folder-then-note order."""
        with self.index.lock:
            self._require_note(note_id)
            return sorted(self.index.link_graph.backlinks(note_id))

    def unresolved_links(self, note_id: NoteId) -> List[str]:
        """Titles ``note_id`` references that no note carries, sorted."""
        with self.index.lock:
            self._require_note(note_id)
            return sorted(self.index.link_graph.unresolved_targets(note_id))

    def outgoing_links(self, note_id: NoteId) -> Dict[str, Optional[NoteId]]:
        """Distinct referenced titles and the note each resolves to."""
        with self.index.lock:
            self._require_note(note_id)
            return self.index.link_graph.resolved_links(note_id)

    def find_orphaned_notes(self) -> List[Note]:
        """Notes with no resolved link in either direction."""
        with self.index.lock:
            notes = self.index.notes()
            orphans = set(self.index.link_graph.find_orphans(n.id for n in notes))
            return [note for note in notes if note.id in orphans]

    def find_central_notes(self, limit: int = 10) -> List[Tuple[Note, int]]:
        """Notes with the most connections (outgoing targets plus backlinks)."""
        with self.index.lock:
            scored = []
            for note in self.index.notes():
                outgoing, incoming = self.index.link_graph.connection_count(note.id)
                if outgoing + incoming:
                    scored.append((note, outgoing + incoming))
        scored.sort(key=lambda item: (-item[1], item[0].id))
        return scored[:limit]

    @staticmethod
    def link_to(title: str) -> str:
        """Reference marker to insert into another note's body."""
        return format_wiki_link(title)

    # =========================================================================
    # Repository-wide
    # =========================================================================

    @traced("statistics")
    def statistics(self) -> RepositoryStatistics:
        with self.index.lock:
            notes = self.index.notes()
            stats = RepositoryStatistics(
                total_folders=len(self.index.folders()),
                total_notes=len(notes),
                total_tags=len(self.index.tags()),
            )
        for note in notes:
            if note.encrypted:
                stats.encrypted_count += 1
            else:
                stats.total_words += len(note.body.split())
                stats.total_chars += len(note.body)
            if note.favorite:
                stats.favorite_count += 1
            if note.damaged:
                stats.damaged_count += 1
        return stats

    @traced("export_snapshot")
    def export_snapshot(self, destination: Optional[Path] = None) -> Path:
        return self.index.export_snapshot(destination)

    # =========================================================================
    # Private helpers
    # =========================================================================

    def _require_note(self, note_id: NoteId) -> None:
        if not self.index.has_note(note_id):
            raise NotFoundError(
                f"Note {note_id} not found",
                identity=note_id,
                code=ErrorCode.NOTE_NOT_FOUND,
            )
