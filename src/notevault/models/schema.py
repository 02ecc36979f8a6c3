"""Data models for NoteVault."""

import datetime
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, Field, field_validator

from notevault.utils import validate_folder_name


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    Sidecar files written by older versions of the application carry naive
    ``%Y-%m-%d %H:%M:%S`` timestamps; those are assumed to be UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


@dataclass(frozen=True, order=True)
class NoteId:
    """Stable identity of a note: (folder slot, note slot within the folder).

    Slots are never reused while the note is alive, so the identity survives
    renames and the deletion of sibling notes.
    """

    folder: int
    slot: int

    def __str__(self) -> str:
        return f"{self.folder}:{self.slot}"

    @classmethod
    def parse(cls, value: str) -> "NoteId":
        """Parse the ``folder:slot`` form produced by ``str()``."""
        folder, _, slot = value.partition(":")
        return cls(int(folder), int(slot))


Color = Tuple[int, int, int]


class Tag(BaseModel):
    """A tag definition in the repository-wide tag table."""

    id: int = Field(..., ge=0, description="Slot index in the tag table")
    name: str = Field(..., description="Unique tag name")
    color: Color = Field(default=(120, 120, 120), description="Display color (RGB)")

    model_config = {"validate_assignment": True, "frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is not empty."""
        if not v.strip():
            raise ValueError("Tag name cannot be empty")
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: Color) -> Color:
        """Validate that every channel is a byte."""
        if any(not 0 <= c <= 255 for c in v):
            raise ValueError("Color channels must be between 0 and 255")
        return v

    def __str__(self) -> str:
        """Return string representation of tag."""
        return self.name


class Note(BaseModel):
    """A note in the repository.

    When ``encrypted`` is true, ``body`` holds the placeholder marker and
    ``ciphertext`` (the Content Codec blob) is the authoritative content.
    """

    id: NoteId = Field(..., description="Stable identity of the note")
    title: str = Field(..., description="Title of the note")
    body: str = Field(default="", description="Plaintext body, or placeholder if encrypted")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last saved (UTC)"
    )
    tag_ids: Set[int] = Field(default_factory=set, description="References into the tag table")
    favorite: bool = Field(default=False)
    encrypted: bool = Field(default=False)
    ciphertext: Optional[bytes] = Field(
        default=None, description="Encoded content while the note is encrypted"
    )
    damaged: bool = Field(
        default=False, description="Body could not be read on load and was reset"
    )
    file_stem: str = Field(default="", description="Name of the backing files without extension")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Unknown sidecar keys, preserved on rewrite"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v


class Folder(BaseModel):
    """A folder: a named, ordered collection of notes keyed by slot."""

    id: int = Field(..., ge=0, description="Slot index in the repository")
    name: str = Field(..., description="Folder name, unique among folders")
    notes: Dict[int, Note] = Field(
        default_factory=dict, description="Notes by slot, in insertion order"
    )
    next_note_slot: int = Field(default=0, ge=0)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate that the name is usable as a directory name."""
        return validate_folder_name(v)

    def allocate_slot(self) -> int:
        """Reserve the next note slot."""
        slot = self.next_note_slot
        self.next_note_slot = slot + 1
        return slot

    def find_by_title(self, title: str) -> Optional[Note]:
        for note in self.notes.values():
            if note.title == title:
                return note
        return None


@dataclass(frozen=True)
class Version:
    """Metadata of one recorded snapshot of a note's encoded content.

    Attributes:
        note_id: The note the snapshot belongs to.
        seq: Monotonically increasing sequence number within the note.
        timestamp: When the snapshot was recorded.
        message: Optional human-readable message.
        encrypted: Whether the recorded bytes are a codec ciphertext blob.
        size: Length of the recorded bytes.
    """

    note_id: NoteId
    seq: int
    timestamp: datetime.datetime
    message: Optional[str] = None
    encrypted: bool = False
    size: int = 0


@dataclass(frozen=True)
class SearchHit:
    """A search result with a note identity and its relevance score."""

    note_id: NoteId
    score: int
    title: str


@dataclass
class RepositoryStatistics:
    """Aggregate counts over the whole repository."""

    total_folders: int = 0
    total_notes: int = 0
    total_words: int = 0
    total_chars: int = 0
    encrypted_count: int = 0
    total_tags: int = 0
    favorite_count: int = 0
    damaged_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary representation."""
        return {
            "total_folders": self.total_folders,
            "total_notes": self.total_notes,
            "total_words": self.total_words,
            "total_chars": self.total_chars,
            "encrypted_count": self.encrypted_count,
            "total_tags": self.total_tags,
            "favorite_count": self.favorite_count,
            "damaged_count": self.damaged_count,
        }
