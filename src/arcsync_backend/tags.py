"""
Document tags: name normalization, reconciliation and the known-tags cache.
"""

from __future__ import annotations

import logging
import sqlite3
from threading import Lock
from typing import Iterable, List, Optional

from .utils import new_id

logger = logging.getLogger(__name__)


def normalize_tag_names(names: Iterable[str]) -> List[str]:
    """
    Trim names, drop empty ones and de-duplicate case-sensitively.

    Example:
        >>> normalize_tag_names([" a", "b", "", "a ", "A"])
        ["a", "b", "A"]
    """
    result: List[str] = []
    seen = set()
    for name in names:
        cleaned = (name or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


class TagReconciler:
    """Tag repository bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def reconcile(self, document_id: str, desired: Iterable[str]) -> List[str]:
        """
        Replace a document's tags with ``desired``.

        Existing tag rows are reused; rows are created only for names that
        have none. Associations not in the desired set are removed, so the
        call is a replacement rather than a merge, and repeating it with the
        same names writes nothing.

        Returns:
            The document's tag names after reconciliation, in request order
        """
        names = normalize_tag_names(desired)

        existing = {}
        if names:
            placeholders = ",".join("?" for _ in names)
            rows = self._conn.execute(
                f"SELECT id, name FROM tags WHERE name IN ({placeholders})", names
            ).fetchall()
            existing = {row["name"]: row["id"] for row in rows}

        created = [(new_id(), name) for name in names if name not in existing]
        if created:
            self._conn.executemany("INSERT INTO tags (id, name) VALUES (?, ?)", created)
            existing.update({name: tag_id for tag_id, name in created})
            logger.info("Created %d new tags: %s", len(created), [name for _, name in created])

        wanted_ids = {existing[name] for name in names}
        current_ids = {
            row["tag_id"]
            for row in self._conn.execute(
                "SELECT tag_id FROM document_tags WHERE document_id = ?", (document_id,)
            ).fetchall()
        }

        stale = current_ids - wanted_ids
        missing = wanted_ids - current_ids
        if stale:
            self._conn.executemany(
                "DELETE FROM document_tags WHERE document_id = ? AND tag_id = ?",
                [(document_id, tag_id) for tag_id in stale],
            )
        if missing:
            self._conn.executemany(
                "INSERT INTO document_tags (document_id, tag_id) VALUES (?, ?)",
                [(document_id, tag_id) for tag_id in missing],
            )
        return names

    def tags_for_document(self, document_id: str) -> List[str]:
        rows = self._conn.execute(
            """
            SELECT t.name FROM tags t
            JOIN document_tags dt ON dt.tag_id = t.id
            WHERE dt.document_id = ?
            ORDER BY t.name
            """,
            (document_id,),
        ).fetchall()
        return [row["name"] for row in rows]

    def all_tag_names(self) -> List[str]:
        rows = self._conn.execute("SELECT name FROM tags ORDER BY name").fetchall()
        return [row["name"] for row in rows]


class TagCache:
    """
    Process-wide cache of all known tag names.

    Filled during start-up warm-up and dropped whenever a document's tags
    may have changed; the next reader reloads it.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._names: Optional[List[str]] = None

    def get(self) -> Optional[List[str]]:
        with self._lock:
            return list(self._names) if self._names is not None else None

    def set(self, names: List[str]) -> None:
        with self._lock:
            self._names = list(names)

    def invalidate(self) -> None:
        with self._lock:
            self._names = None
