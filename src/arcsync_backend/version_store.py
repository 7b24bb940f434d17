"""
Append-only version history with a "current version" pointer.

Each owner (document or page) has versions numbered 1..N. Numbers are never
reused, and versions are never rewritten apart from attaching their content
reference and OCR output. Publishing a new version and reverting to an old
one both go through ``set_current_version``; creating a version never moves
the pointer by itself.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from .content_store import ContentStore
from .errors import NotFoundError, StorageError
from .records import OwnerRef, VersionRecord
from .utils import new_id, serialize_datetime, utcnow

logger = logging.getLogger(__name__)


class VersionStore:
    """
    Version repository bound to one open transaction.

    Args:
        conn: Connection from ``Database.transaction()``; the caller commits
        content_store: Where version bytes are written and deleted
    """

    def __init__(self, conn: sqlite3.Connection, content_store: ContentStore) -> None:
        self._conn = conn
        self._content = content_store

    def _next_version_number(self, owner: OwnerRef) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(version_number), 0) AS latest FROM versions WHERE owner_kind = ? AND owner_id = ?",
            (owner.kind.value, owner.id),
        ).fetchone()
        return row["latest"] + 1

    def _require_owner(self, owner: OwnerRef) -> None:
        row = self._conn.execute(f"SELECT 1 FROM {owner.table} WHERE id = ?", (owner.id,)).fetchone()
        if row is None:
            raise NotFoundError(f"No {owner.kind.value} found with ID: {owner.id}")

    def _insert_version(
        self,
        owner: OwnerRef,
        version_number: int,
        content: bytes,
        extension: str,
        message: Optional[str],
    ) -> VersionRecord:
        version_id = new_id()
        created_at = utcnow()
        self._conn.execute(
            """
            INSERT INTO versions (id, owner_kind, owner_id, version_number, message, content_reference, created_at)
            VALUES (?, ?, ?, ?, ?, NULL, ?)
            """,
            (version_id, owner.kind.value, owner.id, version_number, message, serialize_datetime(created_at)),
        )

        try:
            reference = self._content.save(content, owner.id, version_id, extension)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Failed to store content for version {version_id}: {exc}") from exc

        try:
            self._conn.execute("UPDATE versions SET content_reference = ? WHERE id = ?", (reference, version_id))
        except sqlite3.Error:
            self._content.delete(reference)
            raise

        return VersionRecord(
            id=version_id,
            owner=owner,
            version_number=version_number,
            message=message,
            content_reference=reference,
            created_at=created_at,
        )

    def create_initial_version(
        self,
        owner: OwnerRef,
        content: bytes,
        extension: str,
        message: Optional[str] = "Initial upload",
    ) -> VersionRecord:
        """
        Create version 1 for a freshly inserted owner and make it current.

        The owner row must have been inserted on the same connection. If the
        content write fails a ``StorageError`` propagates and the caller's
        transaction rolls back the owner together with the version.

        Raises:
            StorageError: The bytes could not be written
            NotFoundError: The owner row does not exist
        """
        self._require_owner(owner)
        version = self._insert_version(owner, 1, content, extension, message)
        try:
            self.set_current_version(owner, version.id)
        except Exception:
            self._content.delete(version.content_reference or "")
            raise
        return version

    def create_version(
        self,
        owner: OwnerRef,
        content: bytes,
        extension: str,
        message: Optional[str] = None,
    ) -> VersionRecord:
        """
        Append a new version with number ``max(existing) + 1``.

        The new version is not made current; call ``set_current_version``.
        """
        self._require_owner(owner)
        version = self._insert_version(owner, self._next_version_number(owner), content, extension, message)
        logger.info("Created version %s (#%d) for %s %s", version.id, version.version_number, owner.kind.value, owner.id)
        return version

    def set_current_version(self, owner: OwnerRef, version_id: str) -> None:
        """
        Point the owner at one of its own versions and touch ``updated_at``.

        Reverting is this call with an older version id; it creates no rows
        and calling it again with the same id changes nothing but the
        timestamp.

        Raises:
            NotFoundError: The version does not belong to the owner
        """
        row = self._conn.execute(
            "SELECT 1 FROM versions WHERE id = ? AND owner_kind = ? AND owner_id = ?",
            (version_id, owner.kind.value, owner.id),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Version {version_id} does not belong to {owner.kind.value} {owner.id}")

        cursor = self._conn.execute(
            f"UPDATE {owner.table} SET current_version_id = ?, updated_at = ? WHERE id = ?",
            (version_id, serialize_datetime(utcnow()), owner.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"No {owner.kind.value} found with ID: {owner.id}")

    def version_exists(self, version_id: str) -> bool:
        """Whether any owner has a version with this id. Checked before a revert."""
        row = self._conn.execute("SELECT 1 FROM versions WHERE id = ?", (version_id,)).fetchone()
        return row is not None

    def get_version(self, version_id: str) -> Optional[VersionRecord]:
        row = self._conn.execute("SELECT * FROM versions WHERE id = ?", (version_id,)).fetchone()
        return VersionRecord.from_row(row) if row else None

    def list_versions(self, owner: OwnerRef) -> List[VersionRecord]:
        """All versions of an owner, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM versions WHERE owner_kind = ? AND owner_id = ? ORDER BY version_number DESC",
            (owner.kind.value, owner.id),
        ).fetchall()
        return [VersionRecord.from_row(row) for row in rows]

    def count_versions(self, owner: OwnerRef) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS total FROM versions WHERE owner_kind = ? AND owner_id = ?",
            (owner.kind.value, owner.id),
        ).fetchone()
        return row["total"]

    def attach_ocr_result(self, version_id: str, ocr_json: str, normalized_text: str) -> None:
        cursor = self._conn.execute(
            "UPDATE versions SET ocr_data = ?, ocr_text_normalized = ? WHERE id = ?",
            (ocr_json, normalized_text, version_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"No version found with ID: {version_id}")

    def delete_owner_versions(self, owner: OwnerRef) -> List[str]:
        """
        Delete every version row of an owner.

        Returns:
            Content references of the deleted rows; the caller removes the
            bytes once the transaction has committed
        """
        rows = self._conn.execute(
            "SELECT content_reference FROM versions WHERE owner_kind = ? AND owner_id = ?",
            (owner.kind.value, owner.id),
        ).fetchall()
        self._conn.execute(
            "DELETE FROM versions WHERE owner_kind = ? AND owner_id = ?",
            (owner.kind.value, owner.id),
        )
        return [row["content_reference"] for row in rows if row["content_reference"]]
