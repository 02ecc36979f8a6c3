"""Append-only version history of note content."""
import datetime
import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from notevault.config import config
from notevault.exceptions import ErrorCode, IoFailureError, NotFoundError
from notevault.models.db_models import DBVersion, get_session_factory, init_db
from notevault.models.schema import NoteId, Version, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class VersionStore:
    """Repository for recorded snapshots of note content.

    Snapshots are stored verbatim (plaintext or codec ciphertext, whatever
    the caller passes) in a SQLite database inside the repository root.
    History is append-only: restoring a snapshot never removes later ones.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        retention: Optional[str] = None,
    ):
        """Initialize the version store.

        Args:
            db_url: SQLAlchemy URL of the history database. If None, uses
                the configured location inside the repository root.
            engine: Pre-configured engine; takes precedence over db_url.
            retention: "discard" or "archive": what :meth:`drop_history`
                does. If None, uses config.version_retention.
        """
        try:
            self.engine = engine if engine is not None else init_db(
                db_url or config.get_versions_db_url()
            )
        except SQLAlchemyError as e:
            raise IoFailureError(
                "Failed to open version store",
                operation="open",
                original_error=e,
            ) from e
        self.session_factory = get_session_factory(self.engine)
        self.retention = retention or config.version_retention

    def close(self) -> None:
        """Release database connections."""
        self.engine.dispose()

    def record(
        self,
        note_id: NoteId,
        content: bytes,
        message: Optional[str] = None,
        encrypted: bool = False,
    ) -> Version:
        """Append a new snapshot for a note.

        Args:
            note_id: The note the snapshot belongs to.
            content: The encoded bytes, stored verbatim.
            message: Optional message, e.g. "Updated: <title>".
            encrypted: Whether ``content`` is a codec ciphertext blob.

        Returns:
            The recorded Version (sequence numbers start at 1).

        Raises:
            IoFailureError: If the snapshot could not be made durable.
        """
        try:
            with self.session_factory() as session:
                last_seq = session.scalar(
                    select(func.max(DBVersion.seq)).where(
                        (DBVersion.folder_slot == note_id.folder)
                        & (DBVersion.note_slot == note_id.slot)
                    )
                )
                db_version = DBVersion(
                    folder_slot=note_id.folder,
                    note_slot=note_id.slot,
                    seq=(last_seq or 0) + 1,
                    content=bytes(content),
                    encrypted=encrypted,
                    message=message,
                    created_at=utc_now(),
                )
                session.add(db_version)
                session.commit()
                version = self._to_model(db_version)
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to record version for note {note_id}",
                operation="record",
                original_error=e,
            ) from e

        logger.debug(f"Recorded version {version.seq} of note {note_id}")
        return version

    def list(self, note_id: NoteId) -> List[Version]:
        """List a note's versions, oldest first.

        Args:
            note_id: The note.

        Returns:
            Versions in recording order (empty if the note has no history).
        """
        try:
            with self.session_factory() as session:
                rows = session.scalars(
                    self._live_query(note_id).order_by(DBVersion.seq)
                ).all()
                return [self._to_model(row) for row in rows]
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to list versions of note {note_id}",
                operation="list",
                original_error=e,
            ) from e

    def get(self, note_id: NoteId, seq: int) -> Version:
        """Get the metadata of one version.

        Raises:
            NotFoundError: If the version does not belong to the note.
        """
        try:
            with self.session_factory() as session:
                return self._to_model(self._get_row(session, note_id, seq))
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to read version {seq} of note {note_id}",
                operation="get",
                original_error=e,
            ) from e

    def latest(self, note_id: NoteId) -> Optional[Version]:
        """Get the most recent version of a note, if any."""
        try:
            with self.session_factory() as session:
                row = session.scalars(
                    self._live_query(note_id).order_by(DBVersion.seq.desc()).limit(1)
                ).first()
                return self._to_model(row) if row else None
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to read versions of note {note_id}",
                operation="latest",
                original_error=e,
            ) from e

    def restore(self, note_id: NoteId, seq: int) -> bytes:
        """Return the bytes recorded in a version, verbatim.

        Decoding or decrypting them is the caller's job; they carry the
        encryption state of the moment they were recorded.

        Raises:
            NotFoundError: If the version does not belong to the note.
        """
        try:
            with self.session_factory() as session:
                return bytes(self._get_row(session, note_id, seq).content)
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to read version {seq} of note {note_id}",
                operation="restore",
                original_error=e,
            ) from e

    def count(self, note_id: NoteId) -> int:
        """Count a note's live versions."""
        try:
            with self.session_factory() as session:
                return session.scalar(
                    select(func.count()).select_from(
                        self._live_query(note_id).subquery()
                    )
                ) or 0
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to count versions of note {note_id}",
                operation="count",
                original_error=e,
            ) from e

    def drop_history(self, note_id: NoteId, title: Optional[str] = None) -> int:
        """Remove a deleted note's history according to the retention policy.

        Under "discard" the rows are deleted; under "archive" they are kept
        but detached from the note, so lookups by the note identity fail
        either way.

        Returns:
            Number of versions discarded or archived.
        """
        if self.retention == "archive":
            return self.archive(note_id, title)
        return self.discard(note_id)

    def discard(self, note_id: NoteId) -> int:
        """Delete every version of a note."""
        try:
            with self.session_factory() as session:
                rows = session.scalars(self._live_query(note_id)).all()
                for row in rows:
                    session.delete(row)
                session.commit()
                return len(rows)
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to discard versions of note {note_id}",
                operation="discard",
                original_error=e,
            ) from e

    def archive(self, note_id: NoteId, title: Optional[str] = None) -> int:
        """Detach every version of a note and keep it for later inspection."""
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(DBVersion)
                    .where(
                        (DBVersion.folder_slot == note_id.folder)
                        & (DBVersion.note_slot == note_id.slot)
                        & DBVersion.archived_at.is_(None)
                    )
                    .values(archived_at=utc_now(), archived_title=title)
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise IoFailureError(
                f"Failed to archive versions of note {note_id}",
                operation="archive",
                original_error=e,
            ) from e

    def archived_titles(self) -> List[str]:
        """Titles of deleted notes whose history was archived."""
        try:
            with self.session_factory() as session:
                return list(
                    session.scalars(
                        select(DBVersion.archived_title)
                        .where(DBVersion.archived_at.is_not(None))
                        .distinct()
                    ).all()
                )
        except SQLAlchemyError as e:
            raise IoFailureError(
                "Failed to list archived histories",
                operation="archived_titles",
                original_error=e,
            ) from e

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _live_query(note_id: NoteId):
        return select(DBVersion).where(
            (DBVersion.folder_slot == note_id.folder)
            & (DBVersion.note_slot == note_id.slot)
            & DBVersion.archived_at.is_(None)
        )

    def _get_row(self, session, note_id: NoteId, seq: int) -> DBVersion:
        row = session.scalars(
            self._live_query(note_id).where(DBVersion.seq == seq)
        ).first()
        if row is None:
            raise NotFoundError(
                f"Version {seq} not found for note {note_id}",
                identity=f"{note_id}@{seq}",
                code=ErrorCode.VERSION_NOT_FOUND,
            )
        return row

    @staticmethod
    def _to_model(row: DBVersion) -> Version:
        timestamp: datetime.datetime = ensure_timezone_aware(row.created_at)
        return Version(
            note_id=NoteId(row.folder_slot, row.note_slot),
            seq=row.seq,
            timestamp=timestamp,
            message=row.message,
            encrypted=bool(row.encrypted),
            size=len(row.content or b""),
        )
