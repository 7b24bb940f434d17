"""
Page ordering within a document.

Two ways to reorder pages are supported:

- set mode: the caller supplies the target ``order`` of each listed page
- insert mode: one page moves to a position and the rest are renumbered 1..N

Every request is validated in full before anything is written, and all
writes go through ``_apply`` as one batch inside the caller's transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Sequence, Tuple

from .errors import NotFoundError, ValidationError
from .records import PageRecord
from .utils import serialize_datetime, utcnow

logger = logging.getLogger(__name__)


class Sequencer:
    """Page order repository bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def _require_document(self, document_id: str, user_id: str) -> None:
        row = self._conn.execute(
            "SELECT 1 FROM documents WHERE id = ? AND user_id = ?", (document_id, user_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"No document found with ID: {document_id}")

    def pages_in_order(self, document_id: str, user_id: str) -> List[PageRecord]:
        """Pages of a document sorted by order, newest first among equal orders."""
        rows = self._conn.execute(
            """
            SELECT * FROM pages
            WHERE document_id = ? AND user_id = ?
            ORDER BY sort_order ASC, created_at DESC
            """,
            (document_id, user_id),
        ).fetchall()
        return [PageRecord.from_row(row) for row in rows]

    def set_orders(self, document_id: str, user_id: str, assignments: Sequence[Tuple[str, int]]) -> None:
        """
        Overwrite the order of each listed page exactly as given.

        Args:
            assignments: ``(page_id, order)`` pairs; orders start at 1

        Raises:
            ValidationError: Empty input, a repeated page, a repeated order,
                a non-positive order, or a page outside the document
            NotFoundError: The document does not exist for this user
        """
        self._require_document(document_id, user_id)
        if not assignments:
            raise ValidationError("At least one page mapping is required.")

        seen_pages: Dict[str, int] = {}
        seen_orders: Dict[int, str] = {}
        for page_id, order in assignments:
            if order < 1:
                raise ValidationError(f"Order must be a positive integer (page {page_id}).")
            if page_id in seen_pages:
                raise ValidationError(f"Page {page_id} appears more than once.")
            if order in seen_orders:
                raise ValidationError(f"Pages {seen_orders[order]} and {page_id} both request order {order}.")
            seen_pages[page_id] = order
            seen_orders[order] = page_id

        self._apply(document_id, user_id, seen_pages)
        logger.info("Set orders for %d pages of document %s", len(seen_pages), document_id)

    def insert_at(self, document_id: str, user_id: str, page_id: str, new_order: int) -> List[PageRecord]:
        """
        Move one page to ``new_order`` and renumber the document densely.

        Returns:
            The pages in their new order

        Raises:
            NotFoundError: The document does not exist for this user, or the
                page is not part of it
            ValidationError: ``new_order`` is outside ``[1, max_order + 1]``
        """
        self._require_document(document_id, user_id)
        pages = self.pages_in_order(document_id, user_id)
        target = next((page for page in pages if page.id == page_id), None)
        if target is None:
            raise NotFoundError(f"Page {page_id} is not part of document {document_id}")

        max_order = max(page.order for page in pages)
        if new_order < 1 or new_order > max_order + 1:
            raise ValidationError(f"New order must be between 1 and {max_order + 1}.")

        assignments: Dict[str, int] = {}
        position = 1
        for page in pages:
            if page.id == target.id:
                continue
            if position == new_order:
                assignments[target.id] = position
                position += 1
            assignments[page.id] = position
            position += 1
        if target.id not in assignments:
            assignments[target.id] = position

        self._apply(document_id, user_id, assignments)
        logger.info("Moved page %s to position %d in document %s", page_id, new_order, document_id)
        return self.pages_in_order(document_id, user_id)

    def append(self, document_id: str, user_id: str, page_id: str) -> int:
        """
        Attach an unassigned page to the end of a document.

        Returns:
            The order given to the page
        """
        self._require_document(document_id, user_id)
        page = self._conn.execute(
            "SELECT * FROM pages WHERE id = ? AND user_id = ?", (page_id, user_id)
        ).fetchone()
        if page is None:
            raise NotFoundError(f"No page found with ID: {page_id}")
        if page["document_id"] is not None:
            raise ValidationError(f"Page {page_id} already belongs to document {page['document_id']}.")

        row = self._conn.execute(
            "SELECT COALESCE(MAX(sort_order), 0) AS max_order FROM pages WHERE document_id = ?", (document_id,)
        ).fetchone()
        order = row["max_order"] + 1
        now = serialize_datetime(utcnow())
        self._conn.execute(
            "UPDATE pages SET document_id = ?, sort_order = ?, updated_at = ? WHERE id = ?",
            (document_id, order, now, page_id),
        )
        self._conn.execute("UPDATE documents SET updated_at = ? WHERE id = ?", (now, document_id))
        logger.info("Added page %s to document %s at position %d", page_id, document_id, order)
        return order

    def detach(self, document_id: str, user_id: str, page_id: str) -> None:
        """Unassign a page from a document and close the gap it leaves."""
        self._require_document(document_id, user_id)
        pages = self.pages_in_order(document_id, user_id)
        if not any(page.id == page_id for page in pages):
            raise NotFoundError(f"Page {page_id} is not part of document {document_id}")

        now = serialize_datetime(utcnow())
        self._conn.execute(
            "UPDATE pages SET document_id = NULL, sort_order = 0, updated_at = ? WHERE id = ?",
            (now, page_id),
        )
        self._conn.execute("UPDATE documents SET updated_at = ? WHERE id = ?", (now, document_id))
        remaining = [page for page in pages if page.id != page_id]
        if remaining:
            self._apply(document_id, user_id, {page.id: index for index, page in enumerate(remaining, start=1)})

    def _apply(self, document_id: str, user_id: str, assignments: Dict[str, int]) -> None:
        """
        Write ``assignments`` as one batch after checking page ownership.

        Raises:
            ValidationError: A page does not belong to the document and user
        """
        page_ids = list(assignments)
        placeholders = ",".join("?" for _ in page_ids)
        rows = self._conn.execute(
            f"SELECT id FROM pages WHERE document_id = ? AND user_id = ? AND id IN ({placeholders})",
            (document_id, user_id, *page_ids),
        ).fetchall()
        found = {row["id"] for row in rows}
        missing = [page_id for page_id in page_ids if page_id not in found]
        if missing:
            logger.warning("Rejected order update for document %s: foreign pages %s", document_id, missing)
            raise ValidationError(f"Pages do not belong to document {document_id}: {', '.join(missing)}")

        now = serialize_datetime(utcnow())
        self._conn.executemany(
            "UPDATE pages SET sort_order = ?, updated_at = ? WHERE id = ?",
            [(order, now, page_id) for page_id, order in assignments.items()],
        )
