"""
Internal row representations shared by the stores.

These dataclasses are what the repositories return. They convert to the
Pydantic response models in ``models`` at the HTTP boundary.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .models import (
    DocumentDetail,
    DocumentSummary,
    JobDetail,
    JobStatus,
    JobType,
    OcrResult,
    OwnerKind,
    PageDetail,
    PageSummary,
    VersionDetail,
)
from .utils import deserialize_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnerRef:
    """Address of an entity that owns versions: a document or a page."""

    kind: OwnerKind
    id: str

    @property
    def table(self) -> str:
        return "documents" if self.kind == OwnerKind.DOCUMENT else "pages"


@dataclass
class JobRecord:
    id: str
    type: JobType
    status: JobStatus
    associated_entity_id: str
    parameters: Dict[str, Any]
    submitted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRecord":
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            associated_entity_id=row["associated_entity_id"],
            parameters=json.loads(row["parameters"] or "{}"),
            submitted_at=deserialize_datetime(row["submitted_at"]),  # type: ignore[arg-type]
            started_at=deserialize_datetime(row["started_at"]),
            completed_at=deserialize_datetime(row["completed_at"]),
            error_message=row["error_message"],
        )

    def to_detail(self) -> JobDetail:
        return JobDetail(
            id=self.id,
            type=self.type,
            status=self.status,
            associated_entity_id=self.associated_entity_id,
            submitted_at=self.submitted_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error_message=self.error_message,
        )


@dataclass
class VersionRecord:
    id: str
    owner: OwnerRef
    version_number: int
    message: Optional[str]
    content_reference: Optional[str]
    created_at: datetime
    ocr_data: Optional[str] = None
    ocr_text_normalized: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VersionRecord":
        return cls(
            id=row["id"],
            owner=OwnerRef(OwnerKind(row["owner_kind"]), row["owner_id"]),
            version_number=row["version_number"],
            message=row["message"],
            content_reference=row["content_reference"],
            created_at=deserialize_datetime(row["created_at"]),  # type: ignore[arg-type]
            ocr_data=row["ocr_data"],
            ocr_text_normalized=row["ocr_text_normalized"],
        )

    def ocr_result(self) -> Optional[OcrResult]:
        """Parse the stored recognition result; a corrupt payload is logged, not raised."""
        if not self.ocr_data:
            return None
        try:
            return OcrResult.model_validate_json(self.ocr_data)
        except PydanticValidationError:
            logger.error("Failed to deserialize OCR data for version %s", self.id, exc_info=True)
            return None

    def to_detail(self, current_version_id: Optional[str] = None) -> VersionDetail:
        return VersionDetail(
            id=self.id,
            version_number=self.version_number,
            message=self.message,
            created_at=self.created_at,
            is_current=self.id == current_version_id,
            ocr_result=self.ocr_result(),
        )


@dataclass
class PageRecord:
    id: str
    user_id: str
    title: str
    document_id: Optional[str]
    order: int
    current_version_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PageRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            document_id=row["document_id"],
            order=row["sort_order"],
            current_version_id=row["current_version_id"],
            created_at=deserialize_datetime(row["created_at"]),  # type: ignore[arg-type]
            updated_at=deserialize_datetime(row["updated_at"]),  # type: ignore[arg-type]
        )

    def to_summary(self) -> PageSummary:
        return PageSummary(
            id=self.id,
            title=self.title,
            document_id=self.document_id,
            order=self.order,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_detail(self, current_version: Optional[VersionRecord], total_versions: int) -> PageDetail:
        return PageDetail(
            **self.to_summary().model_dump(),
            current_version=current_version.to_detail(self.current_version_id) if current_version else None,
            total_versions=total_versions,
        )


@dataclass
class DocumentRecord:
    id: str
    user_id: str
    title: str
    current_version_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    tags: List[str] = field(default_factory=list)
    page_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentRecord":
        keys = row.keys()
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            current_version_id=row["current_version_id"],
            created_at=deserialize_datetime(row["created_at"]),  # type: ignore[arg-type]
            updated_at=deserialize_datetime(row["updated_at"]),  # type: ignore[arg-type]
            page_count=row["page_count"] if "page_count" in keys else 0,
        )

    def to_summary(self) -> DocumentSummary:
        return DocumentSummary(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
            page_count=self.page_count,
            tags=self.tags,
        )

    def to_detail(self, pages: List[PageRecord]) -> DocumentDetail:
        return DocumentDetail(
            **self.to_summary().model_dump(),
            current_version_id=self.current_version_id,
            pages=[page.to_summary() for page in pages],
        )
