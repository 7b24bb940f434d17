"""
Pages, documents and their versions as seen by one user.

``LibraryService`` is the synchronous side of the application. Each public
method opens exactly one transactional scope, composes the stores inside it
and returns response models. Content bytes that become unreachable because
of a delete are removed only after the scope has committed.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, List, Optional, Sequence, Tuple

from .content_store import ContentStore
from .database import Database
from .errors import NotFoundError, ValidationError
from .models import (
    DocumentDetail,
    DocumentSummary,
    OwnerKind,
    PagedResult,
    PageDetail,
    PageSummary,
    UserStats,
    VersionDetail,
)
from .records import DocumentRecord, OwnerRef, PageRecord, VersionRecord
from .sequencer import Sequencer
from .tags import TagCache, TagReconciler, normalize_tag_names
from .utils import new_id, normalize_search_text, serialize_datetime, utcnow
from .version_store import VersionStore

logger = logging.getLogger(__name__)

DOCUMENT_SORTS = {
    "date_desc": "d.updated_at DESC",
    "date_asc": "d.updated_at ASC",
    "title_asc": "d.title COLLATE NOCASE ASC",
    "title_desc": "d.title COLLATE NOCASE DESC",
}

_DOCUMENT_SELECT = """
    SELECT d.*, (SELECT COUNT(*) FROM pages p WHERE p.document_id = d.id) AS page_count
    FROM documents d
"""


def _check_paging(page_number: int, page_size: int) -> int:
    if page_number < 1 or page_size < 1:
        raise ValidationError("page_number and page_size must be positive.")
    return (page_number - 1) * page_size


def _require_owner(conn: sqlite3.Connection, owner: OwnerRef, user_id: str) -> sqlite3.Row:
    row = conn.execute(
        f"SELECT * FROM {owner.table} WHERE id = ? AND user_id = ?", (owner.id, user_id)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"No {owner.kind.value} found with ID: {owner.id}")
    return row


class LibraryService:
    """
    Synchronous operations on pages and documents.

    Args:
        database: Transaction source
        content_store: Where version bytes live
        tag_cache: Shared cache of all tag names, dropped on tag changes
    """

    def __init__(self, database: Database, content_store: ContentStore, tag_cache: TagCache) -> None:
        self.database = database
        self.content_store = content_store
        self.tag_cache = tag_cache

    def _discard_content(self, references: Iterable[str]) -> None:
        for reference in references:
            self.content_store.delete(reference)

    # --- pages -------------------------------------------------------------

    def _page_detail(self, conn: sqlite3.Connection, page_id: str, user_id: str) -> PageDetail:
        owner = OwnerRef(OwnerKind.PAGE, page_id)
        page = PageRecord.from_row(_require_owner(conn, owner, user_id))
        versions = VersionStore(conn, self.content_store)
        current = versions.get_version(page.current_version_id) if page.current_version_id else None
        return page.to_detail(current, versions.count_versions(owner))

    def create_page(self, user_id: str, title: str, content: bytes, extension: str) -> PageDetail:
        """
        Create an unassigned page whose version 1 is ``content``.

        Raises:
            StorageError: The content could not be stored; no page is created
        """
        page_id = new_id()
        now = serialize_datetime(utcnow())
        version: Optional[VersionRecord] = None
        try:
            with self.database.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO pages (id, user_id, title, document_id, sort_order, current_version_id, created_at, updated_at)
                    VALUES (?, ?, ?, NULL, 0, NULL, ?, ?)
                    """,
                    (page_id, user_id, title, now, now),
                )
                version = VersionStore(conn, self.content_store).create_initial_version(
                    OwnerRef(OwnerKind.PAGE, page_id), content, extension
                )
                detail = self._page_detail(conn, page_id, user_id)
        except Exception:
            if version is not None and version.content_reference:
                self.content_store.delete(version.content_reference)
            raise
        logger.info("Created page %s for user %s", page_id, user_id)
        return detail

    def list_pages(self, user_id: str, page_number: int = 1, page_size: int = 10) -> PagedResult[PageSummary]:
        offset = _check_paging(page_number, page_size)
        with self.database.transaction() as conn:
            total = conn.execute("SELECT COUNT(*) AS total FROM pages WHERE user_id = ?", (user_id,)).fetchone()["total"]
            rows = conn.execute(
                "SELECT * FROM pages WHERE user_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (user_id, page_size, offset),
            ).fetchall()
        return PagedResult[PageSummary](
            items=[PageRecord.from_row(row).to_summary() for row in rows],
            total_count=total,
            page_number=page_number,
            page_size=page_size,
        )

    def list_unassigned_pages(self, user_id: str) -> List[PageSummary]:
        with self.database.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM pages WHERE user_id = ? AND document_id IS NULL ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [PageRecord.from_row(row).to_summary() for row in rows]

    def search_pages(
        self, user_id: str, query: str, page_number: int = 1, page_size: int = 10
    ) -> PagedResult[PageSummary]:
        """
        Pages with any version whose recognised text contains ``query``.

        Whitespace is ignored on both sides, so "hello world" matches text
        recognised as "hello\\nworld".

        Raises:
            ValidationError: The query is blank
        """
        needle = normalize_search_text(query or "")
        if not needle:
            raise ValidationError("Search query cannot be empty.")
        offset = _check_paging(page_number, page_size)

        matching = """
            FROM pages p
            WHERE p.user_id = ? AND EXISTS (
                SELECT 1 FROM versions v
                WHERE v.owner_kind = ? AND v.owner_id = p.id
                AND instr(v.ocr_text_normalized, ?) > 0
            )
        """
        params = (user_id, OwnerKind.PAGE.value, needle)
        with self.database.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS total {matching}", params).fetchone()["total"]
            rows = conn.execute(
                f"SELECT p.* {matching} ORDER BY p.created_at DESC LIMIT ? OFFSET ?",
                (*params, page_size, offset),
            ).fetchall()
        return PagedResult[PageSummary](
            items=[PageRecord.from_row(row).to_summary() for row in rows],
            total_count=total,
            page_number=page_number,
            page_size=page_size,
        )

    def get_page(self, user_id: str, page_id: str) -> PageDetail:
        with self.database.transaction() as conn:
            return self._page_detail(conn, page_id, user_id)

    def rename_page(self, user_id: str, page_id: str, title: str) -> PageDetail:
        with self.database.transaction() as conn:
            _require_owner(conn, OwnerRef(OwnerKind.PAGE, page_id), user_id)
            conn.execute(
                "UPDATE pages SET title = ?, updated_at = ? WHERE id = ?",
                (title, serialize_datetime(utcnow()), page_id),
            )
            return self._page_detail(conn, page_id, user_id)

    def delete_page(self, user_id: str, page_id: str) -> None:
        """Delete a page with all its versions, closing the gap in its document."""
        owner = OwnerRef(OwnerKind.PAGE, page_id)
        with self.database.transaction() as conn:
            page = PageRecord.from_row(_require_owner(conn, owner, user_id))
            if page.document_id is not None:
                Sequencer(conn).detach(page.document_id, user_id, page_id)
            references = VersionStore(conn, self.content_store).delete_owner_versions(owner)
            conn.execute("DELETE FROM pages WHERE id = ?", (page_id,))
        self._discard_content(references)
        logger.info("Deleted page %s and %d stored files", page_id, len(references))

    # --- versions (pages and documents) -----------------------------------

    def list_versions(self, user_id: str, owner: OwnerRef) -> List[VersionDetail]:
        """All versions of a page or document, newest first."""
        with self.database.transaction() as conn:
            row = _require_owner(conn, owner, user_id)
            versions = VersionStore(conn, self.content_store).list_versions(owner)
        return [version.to_detail(row["current_version_id"]) for version in versions]

    def add_version(
        self,
        user_id: str,
        owner: OwnerRef,
        content: bytes,
        extension: str,
        message: Optional[str] = None,
    ) -> VersionDetail:
        """Store a new version and make it current."""
        version: Optional[VersionRecord] = None
        try:
            with self.database.transaction() as conn:
                _require_owner(conn, owner, user_id)
                versions = VersionStore(conn, self.content_store)
                version = versions.create_version(owner, content, extension, message)
                versions.set_current_version(owner, version.id)
        except Exception:
            if version is not None and version.content_reference:
                self.content_store.delete(version.content_reference)
            raise
        return version.to_detail(version.id)

    def revert(self, user_id: str, owner: OwnerRef, target_version_id: str) -> None:
        """
        Make an existing version current again.

        Raises:
            NotFoundError: The owner does not exist for this user, or the
                version is not one of its versions
        """
        with self.database.transaction() as conn:
            _require_owner(conn, owner, user_id)
            versions = VersionStore(conn, self.content_store)
            if not versions.version_exists(target_version_id):
                raise NotFoundError(f"No version found with ID: {target_version_id}")
            versions.set_current_version(owner, target_version_id)
        logger.info("Reverted %s %s to version %s", owner.kind.value, owner.id, target_version_id)

    def read_version_content(self, user_id: str, version_id: str) -> Tuple[bytes, str]:
        """
        Returns:
            The stored bytes and their content reference
        """
        with self.database.transaction() as conn:
            version = VersionStore(conn, self.content_store).get_version(version_id)
            if version is None:
                raise NotFoundError(f"No version found with ID: {version_id}")
            _require_owner(conn, version.owner, user_id)
        if not version.content_reference:
            raise NotFoundError(f"Version {version_id} has no stored content")
        return self.content_store.read(version.content_reference), version.content_reference

    # --- documents ---------------------------------------------------------

    def _load_document(self, conn: sqlite3.Connection, document_id: str, user_id: str) -> DocumentRecord:
        row = conn.execute(f"{_DOCUMENT_SELECT} WHERE d.id = ? AND d.user_id = ?", (document_id, user_id)).fetchone()
        if row is None:
            raise NotFoundError(f"No document found with ID: {document_id}")
        document = DocumentRecord.from_row(row)
        document.tags = TagReconciler(conn).tags_for_document(document_id)
        return document

    def _document_detail(self, conn: sqlite3.Connection, document_id: str, user_id: str) -> DocumentDetail:
        document = self._load_document(conn, document_id, user_id)
        return document.to_detail(Sequencer(conn).pages_in_order(document_id, user_id))

    def create_document(self, user_id: str, title: str, tags: Optional[Sequence[str]] = None) -> DocumentDetail:
        document_id = new_id()
        now = serialize_datetime(utcnow())
        with self.database.transaction() as conn:
            conn.execute(
                "INSERT INTO documents (id, user_id, title, current_version_id, created_at, updated_at) VALUES (?, ?, ?, NULL, ?, ?)",
                (document_id, user_id, title, now, now),
            )
            if tags:
                TagReconciler(conn).reconcile(document_id, tags)
            detail = self._document_detail(conn, document_id, user_id)
        if tags:
            self.tag_cache.invalidate()
        logger.info("Created document %s for user %s", document_id, user_id)
        return detail

    def list_documents(
        self,
        user_id: str,
        page_number: int = 1,
        page_size: int = 10,
        sort_by: str = "date_desc",
        tags: Optional[Sequence[str]] = None,
    ) -> PagedResult[DocumentSummary]:
        """
        One page of the user's documents.

        Args:
            sort_by: One of ``DOCUMENT_SORTS``
            tags: Only documents carrying every one of these tags
        """
        offset = _check_paging(page_number, page_size)
        if sort_by not in DOCUMENT_SORTS:
            raise ValidationError(f"Unknown sort order: {sort_by}. Expected one of {sorted(DOCUMENT_SORTS)}.")

        where = "WHERE d.user_id = ?"
        params: List = [user_id]
        wanted = normalize_tag_names(tags or [])
        if wanted:
            placeholders = ",".join("?" for _ in wanted)
            where += f"""
                AND d.id IN (
                    SELECT dt.document_id FROM document_tags dt
                    JOIN tags t ON t.id = dt.tag_id
                    WHERE t.name IN ({placeholders})
                    GROUP BY dt.document_id
                    HAVING COUNT(DISTINCT t.id) = ?
                )
            """
            params.extend([*wanted, len(set(wanted))])

        with self.database.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS total FROM documents d {where}", params).fetchone()["total"]
            rows = conn.execute(
                f"{_DOCUMENT_SELECT} {where} ORDER BY {DOCUMENT_SORTS[sort_by]} LIMIT ? OFFSET ?",
                (*params, page_size, offset),
            ).fetchall()
            reconciler = TagReconciler(conn)
            documents = [DocumentRecord.from_row(row) for row in rows]
            for document in documents:
                document.tags = reconciler.tags_for_document(document.id)

        return PagedResult[DocumentSummary](
            items=[document.to_summary() for document in documents],
            total_count=total,
            page_number=page_number,
            page_size=page_size,
        )

    def all_tags(self) -> List[str]:
        cached = self.tag_cache.get()
        if cached is not None:
            logger.debug("Tags cache hit.")
            return cached
        logger.info("Tags cache miss. Fetching from database.")
        with self.database.transaction() as conn:
            names = TagReconciler(conn).all_tag_names()
        self.tag_cache.set(names)
        return names

    def user_stats(self, user_id: str) -> UserStats:
        with self.database.transaction() as conn:
            documents = conn.execute("SELECT COUNT(*) AS total FROM documents WHERE user_id = ?", (user_id,)).fetchone()
            pages = conn.execute("SELECT COUNT(*) AS total FROM pages WHERE user_id = ?", (user_id,)).fetchone()
        return UserStats(total_documents=documents["total"], total_pages=pages["total"])

    def get_document(self, user_id: str, document_id: str) -> DocumentDetail:
        with self.database.transaction() as conn:
            return self._document_detail(conn, document_id, user_id)

    def update_document(
        self,
        user_id: str,
        document_id: str,
        title: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> DocumentDetail:
        """
        Apply a partial update.

        ``title`` and ``tags`` left as ``None`` are not touched; ``tags=[]``
        removes every tag.
        """
        with self.database.transaction() as conn:
            self._load_document(conn, document_id, user_id)
            if title is not None:
                conn.execute("UPDATE documents SET title = ? WHERE id = ?", (title, document_id))
            if tags is not None:
                TagReconciler(conn).reconcile(document_id, tags)
            conn.execute(
                "UPDATE documents SET updated_at = ? WHERE id = ?", (serialize_datetime(utcnow()), document_id)
            )
            detail = self._document_detail(conn, document_id, user_id)
        if tags is not None:
            self.tag_cache.invalidate()
        return detail

    def delete_document(self, user_id: str, document_id: str) -> None:
        """
        Delete a document and its own versions.

        Its pages are kept and become unassigned.
        """
        owner = OwnerRef(OwnerKind.DOCUMENT, document_id)
        with self.database.transaction() as conn:
            _require_owner(conn, owner, user_id)
            conn.execute(
                "UPDATE pages SET document_id = NULL, sort_order = 0, updated_at = ? WHERE document_id = ?",
                (serialize_datetime(utcnow()), document_id),
            )
            references = VersionStore(conn, self.content_store).delete_owner_versions(owner)
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        self._discard_content(references)
        logger.info("Deleted document %s", document_id)

    def add_page_to_document(self, user_id: str, document_id: str, page_id: str) -> DocumentDetail:
        with self.database.transaction() as conn:
            Sequencer(conn).append(document_id, user_id, page_id)
            return self._document_detail(conn, document_id, user_id)

    def remove_page_from_document(self, user_id: str, document_id: str, page_id: str) -> DocumentDetail:
        with self.database.transaction() as conn:
            Sequencer(conn).detach(document_id, user_id, page_id)
            return self._document_detail(conn, document_id, user_id)

    def set_page_orders(
        self, user_id: str, document_id: str, assignments: Sequence[Tuple[str, int]]
    ) -> DocumentDetail:
        with self.database.transaction() as conn:
            Sequencer(conn).set_orders(document_id, user_id, assignments)
            conn.execute(
                "UPDATE documents SET updated_at = ? WHERE id = ?", (serialize_datetime(utcnow()), document_id)
            )
            return self._document_detail(conn, document_id, user_id)

    def insert_page_at(self, user_id: str, document_id: str, page_id: str, new_order: int) -> DocumentDetail:
        with self.database.transaction() as conn:
            Sequencer(conn).insert_at(document_id, user_id, page_id, new_order)
            conn.execute(
                "UPDATE documents SET updated_at = ? WHERE id = ?", (serialize_datetime(utcnow()), document_id)
            )
            return self._document_detail(conn, document_id, user_id)
