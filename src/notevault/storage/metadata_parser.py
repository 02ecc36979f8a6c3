"""Parsing and serialization of the repository's YAML bookkeeping files.

Three kinds of files carry structure next to the note content:

- ``<stem>.meta`` sidecar per note: slot, title, timestamps, tag slots,
  favorite and encrypted flags. Unknown keys are preserved on rewrite.
- ``.folder.yaml`` per folder directory: folder slot and next note slot.
- ``.vault.yaml`` at the repository root: next folder slot and tag table.

Sidecars written by the earlier JSON-based format (``created_at``,
``is_encrypted``, ``tags: {tag_indices: [...]}``) are still readable,
since JSON is valid YAML.
"""
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import yaml

from notevault.models.schema import Folder, Note, Tag, ensure_timezone_aware

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".meta"
CONTENT_SUFFIX = ".md"
FOLDER_MARKER = ".folder.yaml"
MANIFEST_NAME = ".vault.yaml"
SCHEMA_VERSION = 1

_SIDECAR_KEYS = {
    "slot", "title", "created", "updated", "tags", "favorite", "encrypted",
    # earlier format
    "created_at", "updated_at", "is_encrypted", "is_favorite",
}


@dataclass
class NoteSidecar:
    """Structured contents of a note's sidecar file."""

    slot: Optional[int] = None
    title: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None
    tag_ids: Set[int] = field(default_factory=set)
    favorite: bool = False
    encrypted: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FolderMarker:
    """Structured contents of a folder's marker file."""

    slot: Optional[int] = None
    next_note_slot: int = 0


@dataclass
class Manifest:
    """Structured contents of the repository manifest."""

    next_folder_slot: int = 0
    next_tag_slot: int = 0
    tags: List[Tag] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION


class MetadataParser:
    """Parses and serializes sidecars, folder markers and the manifest."""

    # ------------------------------------------------------------------
    # Note sidecars
    # ------------------------------------------------------------------

    def parse_sidecar(self, content: str) -> NoteSidecar:
        """Parse a note sidecar.

        Args:
            content: Raw YAML (or legacy JSON) text.

        Returns:
            The parsed sidecar; missing fields keep their defaults.

        Raises:
            ValueError: If the text is not a YAML mapping.
        """
        data = self._load_mapping(content)

        sidecar = NoteSidecar()
        sidecar.slot = self._optional_int(data.get("slot"))
        title = data.get("title")
        sidecar.title = str(title) if title not in (None, "") else None
        sidecar.created_at = self._parse_timestamp(
            data.get("created", data.get("created_at"))
        )
        sidecar.updated_at = self._parse_timestamp(
            data.get("updated", data.get("updated_at"))
        )
        sidecar.tag_ids = self._parse_tag_ids(data.get("tags"))
        sidecar.favorite = bool(data.get("favorite", data.get("is_favorite", False)))
        sidecar.encrypted = bool(data.get("encrypted", data.get("is_encrypted", False)))
        sidecar.extra = {k: v for k, v in data.items() if k not in _SIDECAR_KEYS}
        return sidecar

    def render_sidecar(self, note: Note) -> str:
        """Serialize a note's metadata to sidecar YAML."""
        data: Dict[str, Any] = {
            "slot": note.id.slot,
            "title": note.title,
            "created": note.created_at.isoformat(),
            "updated": note.updated_at.isoformat(),
            "tags": sorted(note.tag_ids),
            "favorite": note.favorite,
            "encrypted": note.encrypted,
        }
        for key, value in note.metadata.items():
            data.setdefault(key, value)
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    # ------------------------------------------------------------------
    # Folder markers
    # ------------------------------------------------------------------

    def parse_folder_marker(self, content: str) -> FolderMarker:
        data = self._load_mapping(content)
        return FolderMarker(
            slot=self._optional_int(data.get("slot")),
            next_note_slot=self._optional_int(data.get("next_note_slot")) or 0,
        )

    def render_folder_marker(self, folder: Folder) -> str:
        return yaml.safe_dump(
            {"slot": folder.id, "next_note_slot": folder.next_note_slot},
            sort_keys=False,
        )

    # ------------------------------------------------------------------
    # Repository manifest
    # ------------------------------------------------------------------

    def parse_manifest(self, content: str) -> Manifest:
        """Parse the repository manifest.

        Tag entries that fail validation are logged and skipped.
        """
        data = self._load_mapping(content)
        manifest = Manifest(
            next_folder_slot=self._optional_int(data.get("next_folder_slot")) or 0,
            next_tag_slot=self._optional_int(data.get("next_tag_slot")) or 0,
            schema_version=self._optional_int(data.get("schema_version")) or SCHEMA_VERSION,
        )
        if manifest.schema_version > SCHEMA_VERSION:
            logger.warning(
                f"Manifest schema version {manifest.schema_version} is newer than "
                f"supported version {SCHEMA_VERSION}; unknown fields are ignored"
            )
        for entry in data.get("tags") or []:
            try:
                manifest.tags.append(
                    Tag(
                        id=entry["id"],
                        name=entry["name"],
                        color=tuple(entry.get("color", (120, 120, 120))),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed tag entry {entry!r}: {e}")
        return manifest

    def render_manifest(self, manifest: Manifest) -> str:
        data = {
            "schema_version": manifest.schema_version,
            "next_folder_slot": manifest.next_folder_slot,
            "next_tag_slot": manifest.next_tag_slot,
            "tags": [
                {"id": tag.id, "name": tag.name, "color": list(tag.color)}
                for tag in manifest.tags
            ],
        }
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load_mapping(content: str) -> Dict[str, Any]:
        if not content.strip():
            return {}
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed YAML: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping, got {type(data).__name__}")
        return data

    @staticmethod
    def _optional_int(value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = int(value)
        except (TypeError, ValueError):
            return None
        return number if number >= 0 else None

    @staticmethod
    def _parse_timestamp(value: Any) -> Optional[datetime.datetime]:
        if value is None:
            return None
        if isinstance(value, datetime.datetime):
            return ensure_timezone_aware(value)
        try:
            return ensure_timezone_aware(datetime.datetime.fromisoformat(str(value)))
        except ValueError:
            logger.warning(f"Ignoring unparseable timestamp {value!r}")
            return None

    @classmethod
    def _parse_tag_ids(cls, value: Any) -> Set[int]:
        if isinstance(value, dict):
            value = value.get("tag_indices", [])
        if not isinstance(value, (list, tuple, set)):
            return set()
        tag_ids = set()
        for item in value:
            tag_id = cls._optional_int(item)
            if tag_id is not None:
                tag_ids.add(tag_id)
        return tag_ids
