"""In-memory index of folders and notes, backed by files on disk."""

import logging
import os
import random
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from notevault.config import config
from notevault.exceptions import (
    CorruptError,
    DuplicateNameError,
    EncryptionRequiredError,
    ErrorCode,
    IoFailureError,
    NotFoundError,
    ValidationError,
)
from notevault.models.schema import (
    Color,
    Folder,
    Note,
    NoteId,
    Tag,
    Version,
    utc_now,
)
from notevault.storage.content_codec import ContentCodec
from notevault.storage.link_graph import LinkGraph
from notevault.storage.metadata_parser import (
    CONTENT_SUFFIX,
    FOLDER_MARKER,
    FolderMarker,
    MANIFEST_NAME,
    SIDECAR_SUFFIX,
    Manifest,
    MetadataParser,
    NoteSidecar,
)
from notevault.storage.version_store import VersionStore
from notevault.utils import sanitize_filename, unique_stem, validate_folder_name

logger = logging.getLogger(__name__)

_TMP_SUFFIX = ".tmp"


def _sanitize_version_message(title: str, max_length: int = 100) -> str:
    """Sanitize a note title for use in a version message.

    Truncates to a reasonable length and flattens newlines so history
    listings stay one line per version.
    """
    sanitized = title[:max_length]
    return sanitized.replace("\n", " ").replace("\r", " ")


@contextmanager
def _io_guard(operation: str, path: Optional[Path] = None):
    """Translate OSError into IoFailureError."""
    try:
        yield
    except OSError as e:
        raise IoFailureError(
            f"File system error during {operation}",
            operation=operation,
            path=str(path) if path else None,
            original_error=e,
        ) from e


class RepositoryIndex:
    """Authoritative model of the folder/note hierarchy and its files.

    The file system is the source of truth: every mutator writes through
    synchronously before it updates the in-memory maps, and the whole
    index can be reconstructed by :meth:`load`. After each mutation the
    link graph and version store are notified.

    All public methods run under one reentrant lock; the repository
    supports a single logical writer.
    """

    def __init__(
        self,
        root_dir: Optional[Path] = None,
        version_store: Optional[VersionStore] = None,
        codec: Optional[ContentCodec] = None,
    ):
        """Initialize the index and load the repository from disk.

        Args:
            root_dir: Repository root. If None, uses config.root_dir.
            version_store: History backend. If None, opens the SQLite store
                inside the repository root.
            codec: Content codec. If None, uses one with configured KDF cost.
        """
        self.root_dir = (
            config.get_absolute_path(Path(root_dir))
            if root_dir
            else config.get_absolute_path(config.root_dir)
        )
        with _io_guard("open", self.root_dir):
            self.root_dir.mkdir(parents=True, exist_ok=True)

        self._codec = codec or ContentCodec()
        self._parser = MetadataParser()
        self._versions = version_store or VersionStore(
            db_url=config.get_versions_db_url(self.root_dir)
        )
        self._graph = LinkGraph(resolver=self._resolve_title)
        self._lock = threading.RLock()

        self._folders: Dict[int, Folder] = {}
        self._tags: Dict[int, Tag] = {}
        self._titles: Dict[str, Set[NoteId]] = {}
        self._next_folder_slot = 0
        self._next_tag_slot = 0

        logger.info(f"RepositoryIndex initialized: root_dir={self.root_dir}")
        self.load()

    @property
    def link_graph(self) -> LinkGraph:
        return self._graph

    @property
    def version_store(self) -> VersionStore:
        return self._versions

    @property
    def codec(self) -> ContentCodec:
        return self._codec

    @property
    def lock(self) -> threading.RLock:
        """The exclusive-access guard shared by every repository operation."""
        return self._lock

    def close(self) -> None:
        """Release the version store's resources."""
        self._versions.close()

    # =========================================================================
    # Loading
    # =========================================================================

    def load(self) -> None:
        """Rebuild the in-memory index by scanning the repository root.

        Folders without a marker and notes without a sidecar are given
        fresh slots, which are written back so the next scan agrees. A
        note body that cannot be read is replaced by an empty body and
        the note is flagged damaged; the rest of the repository still
        loads.
        """
        with self._lock:
            self._folders.clear()
            self._tags.clear()
            self._titles.clear()
            self._graph.clear()

            manifest = self._read_manifest()
            self._tags = {tag.id: tag for tag in manifest.tags}
            self._next_tag_slot = max(
                [manifest.next_tag_slot] + [t + 1 for t in self._tags]
            )
            self._next_folder_slot = manifest.next_folder_slot

            with _io_guard("load", self.root_dir):
                directories = sorted(
                    p for p in self.root_dir.iterdir()
                    if p.is_dir() and not p.name.startswith(".")
                )

            pending: List[Tuple[Path, FolderMarker, bool]] = []
            for directory in directories:
                marker = self._read_folder_marker(directory)
                pending.append((directory, marker, marker.slot is None))

            # Marked folders keep their slots; unmarked or clashing ones get fresh slots
            taken: Set[int] = set()
            for directory, marker, _ in pending:
                if marker.slot is not None and marker.slot not in taken:
                    taken.add(marker.slot)
            self._next_folder_slot = max([self._next_folder_slot] + [s + 1 for s in taken])

            claimed: Set[int] = set()
            folders: List[Folder] = []
            for directory, marker, unmarked in pending:
                slot = marker.slot
                repaired = unmarked
                if slot is None or slot in claimed:
                    slot = self._next_folder_slot
                    self._next_folder_slot += 1
                    repaired = True
                claimed.add(slot)
                try:
                    folder = Folder(
                        id=slot,
                        name=directory.name,
                        next_note_slot=marker.next_note_slot,
                    )
                except ValueError as e:
                    logger.warning(f"Skipping folder {directory.name!r}: {e}")
                    continue
                self._load_notes(directory, folder)
                folders.append(folder)
                if repaired:
                    self._repair_write(
                        directory / FOLDER_MARKER,
                        self._parser.render_folder_marker(folder).encode("utf-8"),
                    )

            for folder in sorted(folders, key=lambda f: f.id):
                self._folders[folder.id] = folder
                for note in folder.notes.values():
                    self._titles.setdefault(note.title, set()).add(note.id)

            for note in self._iter_notes():
                self._graph.register(note.id)
                if not note.encrypted:
                    self._graph.update_from_body(note.id, note.body)

            if self._next_folder_slot != manifest.next_folder_slot or (
                self._next_tag_slot != manifest.next_tag_slot
            ):
                self._repair_write(
                    self.root_dir / MANIFEST_NAME,
                    self._render_manifest().encode("utf-8"),
                )

            damaged = sum(1 for n in self._iter_notes() if n.damaged)
            logger.info(
                f"Loaded {len(self._folders)} folders, "
                f"{sum(len(f.notes) for f in self._folders.values())} notes, "
                f"{len(self._tags)} tags ({damaged} damaged)"
            )

    def reload(self) -> None:
        """Discard in-memory state and re-scan the file system."""
        self.load()

    def _load_notes(self, directory: Path, folder: Folder) -> None:
        with _io_guard("load", directory):
            for tmp in directory.glob(f".*{_TMP_SUFFIX}"):
                logger.warning(f"Removing leftover temporary file {tmp.name}")
                tmp.unlink()
            content_files = sorted(directory.glob(f"*{CONTENT_SUFFIX}"))
            orphans = [
                p for p in directory.glob(f"*{SIDECAR_SUFFIX}")
                if not p.with_suffix(CONTENT_SUFFIX).exists()
            ]
        for orphan in orphans:
            logger.warning(f"Ignoring sidecar without content file: {orphan.name}")

        loaded: List[Tuple[Note, bool]] = []
        for content_path in content_files:
            try:
                loaded.append(self._load_note(content_path, folder.id))
            except (OSError, ValueError) as e:
                logger.error(f"Cannot load note file {content_path.name}: {e}")

        # Sidecar slots win unless two notes claim the same one
        claimed: Set[int] = set()
        max_slot = max(
            [folder.next_note_slot - 1]
            + [n.id.slot for n, missing in loaded if not missing]
        )
        folder.next_note_slot = max_slot + 1
        fresh: List[Note] = []
        for note, missing in sorted(loaded, key=lambda item: (item[1], item[0].id.slot)):
            if missing or note.id.slot in claimed:
                fresh.append(note)
                continue
            claimed.add(note.id.slot)
            folder.notes[note.id.slot] = note
        for note in fresh:
            note.id = NoteId(folder.id, folder.allocate_slot())
            folder.notes[note.id.slot] = note
            self._repair_write(
                directory / f"{note.file_stem}{SIDECAR_SUFFIX}",
                self._parser.render_sidecar(note).encode("utf-8"),
            )
        folder.notes = dict(sorted(folder.notes.items()))
        if fresh:
            self._repair_write(
                directory / FOLDER_MARKER,
                self._parser.render_folder_marker(folder).encode("utf-8"),
            )

        titles: Dict[str, int] = {}
        for note in folder.notes.values():
            titles[note.title] = titles.get(note.title, 0) + 1
        for title, count in titles.items():
            if count > 1:
                logger.warning(
                    f"Folder {folder.name!r} holds {count} notes titled {title!r}"
                )

    def _load_note(self, content_path: Path, folder_slot: int) -> Tuple[Note, bool]:
        """Load one note; returns the note and whether its slot was missing."""
        stem = content_path.name[: -len(CONTENT_SUFFIX)]
        sidecar_path = content_path.with_suffix(SIDECAR_SUFFIX)
        sidecar = NoteSidecar()
        if sidecar_path.exists():
            try:
                sidecar = self._parser.parse_sidecar(
                    sidecar_path.read_text(encoding="utf-8")
                )
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(
                    f"Unreadable sidecar {sidecar_path.name}, using defaults: {e}"
                )

        raw = content_path.read_bytes()
        note = Note(
            id=NoteId(folder_slot, sidecar.slot if sidecar.slot is not None else 0),
            title=sidecar.title or stem,
            file_stem=stem,
            tag_ids={t for t in sidecar.tag_ids if t in self._tags},
            favorite=sidecar.favorite,
            metadata=sidecar.extra,
        )
        if sidecar.created_at:
            note.created_at = sidecar.created_at
        note.updated_at = sidecar.updated_at or note.created_at

        dropped = sidecar.tag_ids - note.tag_ids
        if dropped:
            logger.warning(f"Note {stem!r} references unknown tags {sorted(dropped)}")

        self._apply_content(note, raw, sidecar.encrypted)
        return note, sidecar.slot is None

    def _apply_content(self, note: Note, raw: bytes, encrypted: bool) -> None:
        """Fill body/ciphertext from file bytes, repairing what can be repaired."""
        if encrypted:
            if self._codec.is_encrypted_blob(raw):
                note.encrypted = True
                note.ciphertext = raw
                note.body = config.encrypted_placeholder
            else:
                self._mark_damaged(note, CorruptError("Malformed encrypted blob"))
            return

        try:
            note.body = self._codec.decode(raw)
        except CorruptError as e:
            if self._codec.is_encrypted_blob(raw):
                logger.warning(
                    f"Note {note.title!r} holds an encrypted blob but is not "
                    "marked encrypted; loading it as encrypted"
                )
                note.encrypted = True
                note.ciphertext = raw
                note.body = config.encrypted_placeholder
            else:
                self._mark_damaged(note, e)

    @staticmethod
    def _mark_damaged(note: Note, error: CorruptError) -> None:
        logger.warning(f"Corrupt body for note {note.title!r}, using empty body: {error}")
        note.body = ""
        note.damaged = True

    def _read_manifest(self) -> Manifest:
        path = self.root_dir / MANIFEST_NAME
        if not path.exists():
            return Manifest()
        try:
            return self._parser.parse_manifest(path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Unreadable manifest, starting with an empty tag table: {e}")
            return Manifest()

    def _read_folder_marker(self, directory: Path) -> FolderMarker:
        path = directory / FOLDER_MARKER
        if path.exists():
            try:
                return self._parser.parse_folder_marker(path.read_text(encoding="utf-8"))
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Unreadable folder marker in {directory.name!r}: {e}")
        return FolderMarker()

    def _repair_write(self, path: Path, data: bytes) -> None:
        try:
            self._write_atomic(path, data)
        except OSError as e:
            logger.warning(f"Could not persist repair of {path.name}: {e}")

    # =========================================================================
    # Reads
    # =========================================================================

    def folders(self) -> List[Folder]:
        """All folders in slot order (copies)."""
        with self._lock:
            return [f.model_copy(deep=True) for f in self._folders.values()]

    def get_folder(self, folder_id: int) -> Folder:
        """Get a folder by slot.

        Raises:
            NotFoundError: If the slot is not a live folder.
        """
        with self._lock:
            return self._folder(folder_id).model_copy(deep=True)

    def find_folder(self, name: str) -> Optional[int]:
        """Slot of the folder named ``name`` (exact match), if any."""
        with self._lock:
            for folder in self._folders.values():
                if folder.name == name:
                    return folder.id
            return None

    def get_note(self, note_id: NoteId) -> Note:
        """Get a note by identity.

        Raises:
            NotFoundError: If the identity is stale.
        """
        with self._lock:
            return self._note(note_id).model_copy(deep=True)

    def has_note(self, note_id: NoteId) -> bool:
        with self._lock:
            folder = self._folders.get(note_id.folder)
            return folder is not None and note_id.slot in folder.notes

    def notes(self, folder_id: Optional[int] = None) -> List[Note]:
        """Notes in folder-then-note insertion order (copies)."""
        with self._lock:
            if folder_id is not None:
                return [
                    n.model_copy(deep=True)
                    for n in self._folder(folder_id).notes.values()
                ]
            return [n.model_copy(deep=True) for n in self._iter_notes()]

    def iter_searchable(self) -> Iterator[Tuple[NoteId, str, Optional[str]]]:
        """Yield (identity, title, body) in folder-then-note order.

        Encrypted notes yield None for the body.
        """
        with self._lock:
            items = [
                (n.id, n.title, None if n.encrypted else n.body)
                for n in self._iter_notes()
            ]
        return iter(items)

    def find_note(self, folder_id: int, title: str) -> Optional[NoteId]:
        """Identity of the note titled ``title`` in a folder, if any."""
        with self._lock:
            note = self._folder(folder_id).find_by_title(title)
            return note.id if note else None

    def find_notes_by_title(self, title: str) -> List[NoteId]:
        """Every note with exactly this title, in folder-then-note order."""
        with self._lock:
            return sorted(self._titles.get(title, ()))

    def note_paths(self, note_id: NoteId) -> Tuple[Path, Path]:
        """(content file, sidecar file) of a note."""
        with self._lock:
            note = self._note(note_id)
            return self._content_path(note), self._sidecar_path(note)

    def tags(self) -> List[Tag]:
        """The tag table in slot order."""
        with self._lock:
            return [self._tags[k] for k in sorted(self._tags)]

    def get_tag(self, tag_id: int) -> Tag:
        with self._lock:
            return self._tag(tag_id)

    def find_tag(self, name: str) -> Optional[int]:
        with self._lock:
            for tag in self._tags.values():
                if tag.name == name:
                    return tag.id
            return None

    def read_note(self, note_id: NoteId, password: Optional[str] = None) -> str:
        """Return a note's plaintext body without changing any state.

        Raises:
            EncryptionRequiredError: If the note is encrypted and no
                password was given.
            InvalidPasswordError: If the password does not decrypt it.
        """
        with self._lock:
            note = self._note(note_id)
            if not note.encrypted:
                return note.body
            if password is None:
                raise EncryptionRequiredError(note_id)
            return self._codec.decode(note.ciphertext, password)

    # =========================================================================
    # Folder mutations
    # =========================================================================

    def create_folder(self, name: str) -> int:
        """Create a folder and its backing directory.

        Returns:
            The new folder's slot.

        Raises:
            DuplicateNameError: If a folder already has this exact name.
        """
        with self._lock:
            self._validate_folder_name(name)
            if any(f.name == name for f in self._folders.values()):
                raise DuplicateNameError(name, "folder")

            folder = Folder(id=self._next_folder_slot, name=name)
            directory = self.root_dir / name
            with _io_guard("create_folder", directory):
                directory.mkdir()
                try:
                    self._write_atomic(
                        directory / FOLDER_MARKER,
                        self._parser.render_folder_marker(folder).encode("utf-8"),
                    )
                    self._next_folder_slot += 1
                    self._write_manifest()
                except OSError:
                    self._next_folder_slot = folder.id
                    shutil.rmtree(directory, ignore_errors=True)
                    raise

            self._folders[folder.id] = folder
            logger.info(f"Created folder {name!r} (slot {folder.id})")
            return folder.id

    def rename_folder(self, folder_id: int, new_name: str) -> None:
        """Rename a folder and its backing directory.

        Raises:
            NotFoundError: If the folder does not exist.
            DuplicateNameError: If another folder already has the name.
        """
        with self._lock:
            folder = self._folder(folder_id)
            self._validate_folder_name(new_name)
            if new_name == folder.name:
                return
            if any(f.name == new_name for f in self._folders.values()):
                raise DuplicateNameError(new_name, "folder")

            source = self.root_dir / folder.name
            target = self.root_dir / new_name
            with _io_guard("rename_folder", target):
                if target.exists():
                    raise FileExistsError(f"{target.name} already exists")
                source.rename(target)
            old_name = folder.name
            folder.name = new_name
            logger.info(f"Renamed folder {old_name!r} -> {new_name!r}")

    def delete_folder(self, folder_id: int) -> int:
        """Delete a folder and, through :meth:`delete_note`, all its notes.

        Returns:
            Number of notes deleted.
        """
        with self._lock:
            folder = self._folder(folder_id)
            note_ids = [note.id for note in folder.notes.values()]
            for note_id in note_ids:
                self.delete_note(note_id)

            directory = self.root_dir / folder.name
            with _io_guard("delete_folder", directory):
                if directory.exists():
                    shutil.rmtree(directory)
            del self._folders[folder_id]
            logger.info(
                f"Deleted folder {folder.name!r} (slot {folder_id}) "
                f"with {len(note_ids)} notes"
            )
            return len(note_ids)

    # =========================================================================
    # Note mutations
    # =========================================================================

    def create_note(self, folder_id: int, title: str) -> NoteId:
        """Create an empty note in a folder.

        Returns:
            The new note's identity.

        Raises:
            NotFoundError: If the folder does not exist.
            DuplicateNameError: If the folder already has a note with this title.
        """
        with self._lock:
            folder = self._folder(folder_id)
            self._validate_title(title)
            if folder.find_by_title(title) is not None:
                raise DuplicateNameError(title, "note")

            directory = self.root_dir / folder.name
            stem = self._allocate_stem(folder, title)
            now = utc_now()
            note = Note(
                id=NoteId(folder.id, folder.next_note_slot),
                title=title,
                body="",
                created_at=now,
                updated_at=now,
                file_stem=stem,
            )

            content_path = self._content_path(note)
            sidecar_path = self._sidecar_path(note)
            with _io_guard("create_note", content_path):
                try:
                    self._write_atomic(content_path, b"")
                    self._write_atomic(
                        sidecar_path,
                        self._parser.render_sidecar(note).encode("utf-8"),
                    )
                    folder.next_note_slot += 1
                    self._write_atomic(
                        directory / FOLDER_MARKER,
                        self._parser.render_folder_marker(folder).encode("utf-8"),
                    )
                except OSError:
                    folder.next_note_slot = note.id.slot
                    for path in (content_path, sidecar_path):
                        path.unlink(missing_ok=True)
                    raise

            folder.notes[note.id.slot] = note
            self._titles.setdefault(title, set()).add(note.id)
            self._graph.register(note.id)
            self._graph.note_created(title)
            logger.info(f"Created note {title!r} as {note.id} in {folder.name!r}")
            return note.id

    def save_note(
        self,
        note_id: NoteId,
        new_body: str,
        password: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Version:
        """Write a new body, record a version and refresh outgoing links.

        Encrypted notes are re-encrypted under ``password``, which must be
        the note's current password. On failure the in-memory note keeps
        its previous body.

        Returns:
            The version recorded for this save.

        Raises:
            NotFoundError: If the identity is stale.
            EncryptionRequiredError: If the note is encrypted and no
                password was given.
            InvalidPasswordError: If the password is not the note's password.
            IoFailureError: If the content or the version could not be written.
        """
        with self._lock:
            note = self._note(note_id)
            if note.encrypted:
                if password is None:
                    raise EncryptionRequiredError(note_id)
                if note.ciphertext is not None:
                    # Authenticates the password before anything is written
                    self._codec.decode(note.ciphertext, password)
                data = self._codec.encode(new_body, password)
            else:
                data = self._codec.encode(new_body)

            updated = note.model_copy()
            updated.updated_at = utc_now()
            content_path = self._content_path(note)
            sidecar_path = self._sidecar_path(note)

            with _io_guard("save_note", content_path):
                previous = content_path.read_bytes() if content_path.exists() else b""
                self._write_atomic(content_path, data)
                try:
                    self._write_atomic(
                        sidecar_path,
                        self._parser.render_sidecar(updated).encode("utf-8"),
                    )
                    version = self._versions.record(
                        note_id,
                        data,
                        message or f"Updated: {_sanitize_version_message(note.title)}",
                        encrypted=note.encrypted,
                    )
                except (OSError, IoFailureError):
                    self._rollback_content(content_path, previous)
                    self._repair_write(
                        sidecar_path,
                        self._parser.render_sidecar(note).encode("utf-8"),
                    )
                    raise

            note.updated_at = updated.updated_at
            note.damaged = False
            if note.encrypted:
                note.ciphertext = data
            else:
                note.body = new_body
                self._graph.update_from_body(note_id, new_body)
            logger.debug(f"Saved note {note_id} (version {version.seq})")
            return version

    def rename_note(self, note_id: NoteId, new_title: str) -> None:
        """Change a note's title and the names of its backing files.

        Markers in other notes are not rewritten; links to the old title
        become unresolved unless another note carries it.

        Raises:
            NotFoundError: If the identity is stale.
            DuplicateNameError: If another note in the folder has the title.
        """
        with self._lock:
            note = self._note(note_id)
            self._validate_title(new_title)
            if new_title == note.title:
                return
            folder = self._folders[note_id.folder]
            existing = folder.find_by_title(new_title)
            if existing is not None and existing.id != note_id:
                raise DuplicateNameError(new_title, "note")

            renamed = note.model_copy()
            renamed.title = new_title
            new_stem = self._allocate_stem(folder, new_title, exclude=note_id)
            renamed.file_stem = new_stem

            old_content, old_sidecar = self._content_path(note), self._sidecar_path(note)
            new_content, new_sidecar = self._content_path(renamed), self._sidecar_path(renamed)
            with _io_guard("rename_note", new_content):
                if new_content != old_content:
                    os.replace(old_content, new_content)
                try:
                    self._write_atomic(
                        new_sidecar,
                        self._parser.render_sidecar(renamed).encode("utf-8"),
                    )
                except OSError:
                    if new_content != old_content:
                        os.replace(new_content, old_content)
                    raise
                if new_sidecar != old_sidecar:
                    old_sidecar.unlink(missing_ok=True)

            old_title = note.title
            self._forget_title(old_title, note_id)
            note.title = new_title
            note.file_stem = new_stem
            self._titles.setdefault(new_title, set()).add(note_id)
            self._graph.note_renamed(old_title, new_title)
            logger.info(f"Renamed note {note_id}: {old_title!r} -> {new_title!r}")

    def delete_note(self, note_id: NoteId) -> None:
        """Delete a note's files, its links and its version history.

        Raises:
            NotFoundError: If the identity is stale.
            IoFailureError: If the files could not be removed, or the
                history could not be dropped (the note is gone either way).
        """
        with self._lock:
            note = self._note(note_id)
            content_path, sidecar_path = self._content_path(note), self._sidecar_path(note)
            with _io_guard("delete_note", content_path):
                content_path.unlink(missing_ok=True)
                sidecar_path.unlink(missing_ok=True)

            del self._folders[note_id.folder].notes[note_id.slot]
            self._forget_title(note.title, note_id)
            self._graph.remove_note(note_id, note.title)
            dropped = self._versions.drop_history(note_id, note.title)
            logger.info(
                f"Deleted note {note.title!r} ({note_id}); "
                f"history: {dropped} versions ({self._versions.retention})"
            )

    def set_tags(self, note_id: NoteId, tag_ids: Iterable[int]) -> None:
        """Replace a note's tag references.

        Raises:
            NotFoundError: If the note or any tag does not exist.
        """
        with self._lock:
            note = self._note(note_id)
            wanted = set(tag_ids)
            for tag_id in wanted:
                self._tag(tag_id)
            self._update_metadata(note, tag_ids=wanted)

    def toggle_favorite(self, note_id: NoteId) -> bool:
        """Flip a note's favorite flag; returns the new value."""
        with self._lock:
            note = self._note(note_id)
            self._update_metadata(note, favorite=not note.favorite)
            return note.favorite

    def set_encryption(
        self,
        note_id: NoteId,
        password: Optional[str],
        current_password: Optional[str] = None,
    ) -> None:
        """Encrypt, decrypt or re-key a note.

        - ``password`` given, note plain: encrypt under ``password``.
        - ``password`` given, note encrypted: re-encrypt under ``password``
          after verifying ``current_password``.
        - ``password`` None: decrypt with ``current_password``.

        Encrypted notes expose no outgoing links: their body is not
        readable without the password, on this run or the next.

        Raises:
            EncryptionRequiredError: If the note is encrypted and
                ``current_password`` is missing, or decryption of a plain
                note is requested.
            InvalidPasswordError: If ``current_password`` is wrong.
        """
        with self._lock:
            note = self._note(note_id)
            if note.encrypted:
                if current_password is None:
                    raise EncryptionRequiredError(note_id)
                plaintext = self._codec.decode(note.ciphertext, current_password)
            elif password is None:
                raise EncryptionRequiredError(
                    note_id, message="Note is not encrypted"
                )
            else:
                plaintext = note.body

            if password is not None:
                data = self._codec.encode(plaintext, password)
            else:
                data = self._codec.encode(plaintext)

            updated = note.model_copy()
            updated.encrypted = password is not None
            content_path = self._content_path(note)
            with _io_guard("set_encryption", content_path):
                previous = content_path.read_bytes()
                self._write_atomic(content_path, data)
                try:
                    self._write_atomic(
                        self._sidecar_path(note),
                        self._parser.render_sidecar(updated).encode("utf-8"),
                    )
                except OSError:
                    self._rollback_content(content_path, previous)
                    raise

            if password is not None:
                note.encrypted = True
                note.ciphertext = data
                note.body = config.encrypted_placeholder
                self._graph.update_links(note_id, [])
                logger.info(f"Encrypted note {note_id}")
            else:
                note.encrypted = False
                note.ciphertext = None
                note.body = plaintext
                self._graph.update_from_body(note_id, plaintext)
                logger.info(f"Decrypted note {note_id}")

    # =========================================================================
    # Versions
    # =========================================================================

    def list_versions(self, note_id: NoteId) -> List[Version]:
        """A live note's versions, oldest first."""
        with self._lock:
            self._note(note_id)
            return self._versions.list(note_id)

    def restore_version(
        self, note_id: NoteId, seq: int, password: Optional[str] = None
    ) -> Version:
        """Make a recorded version the note's current content.

        The restored body is saved like any edit, so it is re-encrypted if
        the note is currently encrypted, and the restore itself becomes a
        new version. Later versions are kept.

        Raises:
            NotFoundError: If the version does not belong to the note.
            EncryptionRequiredError: If the version or the note is
                encrypted and no password was given.
        """
        with self._lock:
            self._note(note_id)
            body = self.decode_version(note_id, seq, password)
            return self.save_note(
                note_id, body, password, message=f"Restored version {seq}"
            )

    def decode_version(
        self, note_id: NoteId, seq: int, password: Optional[str] = None
    ) -> str:
        """Return the plaintext recorded in a version."""
        with self._lock:
            version = self._versions.get(note_id, seq)
            data = self._versions.restore(note_id, seq)
            if version.encrypted:
                if password is None:
                    raise EncryptionRequiredError(
                        note_id, message=f"Version {seq} is encrypted"
                    )
                return self._codec.decode(data, password)
            return self._codec.decode(data)

    # =========================================================================
    # Tag table
    # =========================================================================

    def create_tag(self, name: str, color: Optional[Color] = None) -> int:
        """Add a tag definition; returns the existing slot if the name is taken."""
        with self._lock:
            if not name or not name.strip():
                raise ValidationError("Tag name cannot be empty", field="name")
            existing = self.find_tag(name)
            if existing is not None:
                return existing
            try:
                tag = Tag(
                    id=self._next_tag_slot,
                    name=name,
                    color=color or self._random_color(),
                )
            except ValueError as e:
                raise ValidationError(str(e), field="color", value=color) from e
            self._tags[tag.id] = tag
            self._next_tag_slot += 1
            try:
                with _io_guard("create_tag", self.root_dir / MANIFEST_NAME):
                    self._write_manifest()
            except IoFailureError:
                del self._tags[tag.id]
                self._next_tag_slot = tag.id
                raise
            logger.info(f"Created tag {name!r} (slot {tag.id})")
            return tag.id

    def delete_tag(self, tag_id: int) -> int:
        """Remove a tag definition and every note's reference to it.

        Returns:
            Number of notes that lost the tag.
        """
        with self._lock:
            tag = self._tag(tag_id)
            del self._tags[tag_id]
            try:
                with _io_guard("delete_tag", self.root_dir / MANIFEST_NAME):
                    self._write_manifest()
            except IoFailureError:
                self._tags[tag_id] = tag
                raise

            affected = [n for n in self._iter_notes() if tag_id in n.tag_ids]
            for note in affected:
                self._update_metadata(note, tag_ids=note.tag_ids - {tag_id})
            logger.info(f"Deleted tag {tag.name!r}; removed from {len(affected)} notes")
            return len(affected)

    # =========================================================================
    # Export
    # =========================================================================

    def export_snapshot(self, destination: Optional[Path] = None) -> Path:
        """Copy every folder's content and sidecar files to ``destination``.

        Defaults to a sibling of the root named ``<root><export_suffix>``.
        A previous export at that location is replaced; any other existing
        directory must be empty. The version database is not exported.

        Raises:
            ValidationError: If the destination overlaps the repository root,
                or is a non-empty directory that is not a previous export.
        """
        with self._lock:
            target = (
                Path(destination)
                if destination
                else self.root_dir.with_name(self.root_dir.name + config.export_suffix)
            )
            self._check_export_target(target)
            with _io_guard("export", target):
                if target.exists():
                    shutil.rmtree(target)
                target.mkdir(parents=True)
                self._write_atomic(
                    target / MANIFEST_NAME, self._render_manifest().encode("utf-8")
                )
                for folder in self._folders.values():
                    source_dir = self.root_dir / folder.name
                    folder_dir = target / folder.name
                    folder_dir.mkdir()
                    marker = source_dir / FOLDER_MARKER
                    if marker.exists():
                        shutil.copy2(marker, folder_dir / FOLDER_MARKER)
                    for note in folder.notes.values():
                        for path in (self._content_path(note), self._sidecar_path(note)):
                            if path.exists():
                                shutil.copy2(path, folder_dir / path.name)
            logger.info(f"Exported repository snapshot to {target}")
            return target

    # =========================================================================
    # Private helpers
    # =========================================================================

    def _check_export_target(self, target: Path) -> None:
        root = self.root_dir.resolve()
        resolved = target.resolve()
        if root.is_relative_to(resolved) or resolved.is_relative_to(root):
            raise ValidationError(
                "Export destination cannot contain or lie inside the repository root",
                field="destination",
                value=target,
            )
        if resolved.exists():
            if not resolved.is_dir():
                raise ValidationError(
                    "Export destination is not a directory",
                    field="destination",
                    value=target,
                )
            # Only a previous export (recognized by its manifest) or an empty directory is replaced
            if not (resolved / MANIFEST_NAME).is_file() and any(resolved.iterdir()):
                raise ValidationError(
                    "Export destination is a non-empty directory that is not an export",
                    field="destination",
                    value=target,
                )

    def _folder(self, folder_id: int) -> Folder:
        folder = self._folders.get(folder_id)
        if folder is None:
            raise NotFoundError(
                f"Folder {folder_id} not found",
                identity=folder_id,
                code=ErrorCode.FOLDER_NOT_FOUND,
            )
        return folder

    def _note(self, note_id: NoteId) -> Note:
        folder = self._folders.get(note_id.folder)
        note = folder.notes.get(note_id.slot) if folder else None
        if note is None:
            raise NotFoundError(
                f"Note {note_id} not found",
                identity=note_id,
                code=ErrorCode.NOTE_NOT_FOUND,
            )
        return note

    def _tag(self, tag_id: int) -> Tag:
        tag = self._tags.get(tag_id)
        if tag is None:
            raise NotFoundError(
                f"Tag {tag_id} not found", identity=tag_id, code=ErrorCode.TAG_NOT_FOUND
            )
        return tag

    def _iter_notes(self) -> Iterator[Note]:
        for folder in self._folders.values():
            yield from folder.notes.values()

    def _resolve_title(self, title: str) -> Optional[NoteId]:
        """Lowest (folder slot, note slot) among notes titled ``title``."""
        ids = self._titles.get(title)
        return min(ids) if ids else None

    def _forget_title(self, title: str, note_id: NoteId) -> None:
        ids = self._titles.get(title)
        if ids is not None:
            ids.discard(note_id)
            if not ids:
                del self._titles[title]

    def _content_path(self, note: Note) -> Path:
        folder = self._folders[note.id.folder]
        return self.root_dir / folder.name / f"{note.file_stem}{CONTENT_SUFFIX}"

    def _sidecar_path(self, note: Note) -> Path:
        folder = self._folders[note.id.folder]
        return self.root_dir / folder.name / f"{note.file_stem}{SIDECAR_SUFFIX}"

    def _allocate_stem(
        self, folder: Folder, title: str, exclude: Optional[NoteId] = None
    ) -> str:
        directory = self.root_dir / folder.name
        taken = {n.file_stem for n in folder.notes.values() if n.id != exclude}
        taken |= {
            p.name[: -len(CONTENT_SUFFIX)]
            for p in directory.glob(f"*{CONTENT_SUFFIX}")
        } - (
            {folder.notes[exclude.slot].file_stem} if exclude is not None else set()
        )
        return unique_stem(sanitize_filename(title), taken)

    def _update_metadata(self, note: Note, **changes) -> None:
        updated = note.model_copy(update=changes)
        path = self._sidecar_path(note)
        with _io_guard("update_metadata", path):
            self._write_atomic(path, self._parser.render_sidecar(updated).encode("utf-8"))
        for key, value in changes.items():
            setattr(note, key, value)

    def _render_manifest(self) -> str:
        return self._parser.render_manifest(
            Manifest(
                next_folder_slot=self._next_folder_slot,
                next_tag_slot=self._next_tag_slot,
                tags=self.tags(),
            )
        )

    def _write_manifest(self) -> None:
        self._write_atomic(
            self.root_dir / MANIFEST_NAME, self._render_manifest().encode("utf-8")
        )

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        """Write via a temporary file and rename, so readers see old or new bytes."""
        tmp = path.with_name(f".{path.name}{_TMP_SUFFIX}")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def _rollback_content(self, path: Path, previous: bytes) -> None:
        try:
            self._write_atomic(path, previous)
        except OSError as e:
            logger.error(f"Could not roll back {path.name}; file may be inconsistent: {e}")

    @staticmethod
    def _validate_folder_name(name: str) -> None:
        try:
            validate_folder_name(name)
        except ValueError as e:
            raise ValidationError(str(e), field="name", value=name) from e

    @staticmethod
    def _validate_title(title: str) -> None:
        if not title or not title.strip():
            raise ValidationError("Title cannot be empty", field="title")

    @staticmethod
    def _random_color() -> Color:
        return (
            random.randint(50, 199),
            random.randint(50, 199),
            random.randint(50, 199),
        )
