from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, computed_field

T = TypeVar("T")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    OCR = "ocr"
    STITCH = "stitch"


class OwnerKind(str, Enum):
    DOCUMENT = "document"
    PAGE = "page"


class AppState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"


# --- OCR results -----------------------------------------------------------


class BoundingBox(BaseModel):
    x1: int = 0
    y1: int = 0
    x2: int = 0
    y2: int = 0


class Word(BaseModel):
    text: str
    bbox: BoundingBox = Field(default_factory=BoundingBox)
    confidence: float = 0.0


class TextLine(BaseModel):
    words: List[Word] = Field(default_factory=list)
    bbox: BoundingBox = Field(default_factory=BoundingBox)

    @computed_field  # type: ignore[misc]
    @property
    def text(self) -> str:
        return " ".join(word.text for word in self.words)


class OcrResult(BaseModel):
    lines: List[TextLine] = Field(default_factory=list)
    image_width: int = 0
    image_height: int = 0

    def all_words(self) -> List[str]:
        return [word.text for line in self.lines for word in line.words]


# --- Responses -------------------------------------------------------------


class JobDetail(BaseModel):
    id: str
    type: JobType
    status: JobStatus
    associated_entity_id: str
    submitted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class JobAccepted(BaseModel):
    job_id: str
    message: str


class VersionDetail(BaseModel):
    id: str
    version_number: int
    message: Optional[str] = None
    created_at: datetime
    is_current: bool = False
    ocr_result: Optional[OcrResult] = None


class PageSummary(BaseModel):
    id: str
    title: str
    document_id: Optional[str] = None
    order: int = 0
    created_at: datetime
    updated_at: datetime


class PageDetail(PageSummary):
    current_version: Optional[VersionDetail] = None
    total_versions: int = 0


class DocumentSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    page_count: int = 0
    tags: List[str] = Field(default_factory=list)


class DocumentDetail(DocumentSummary):
    current_version_id: Optional[str] = None
    pages: List[PageSummary] = Field(default_factory=list)


class UserStats(BaseModel):
    total_documents: int
    total_pages: int


class PagedResult(BaseModel, Generic[T]):
    items: List[T]
    total_count: int
    page_number: int
    page_size: int

    @computed_field  # type: ignore[misc]
    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


class AboutInfo(BaseModel):
    server_name: str
    version: str
    state: AppState
    reason: str = ""


# --- Requests --------------------------------------------------------------


class CreateDocumentRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    tags: Optional[List[str]] = None


class UpdateDocumentRequest(BaseModel):
    """Partial update: a field left as ``None`` is not touched."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    tags: Optional[List[str]] = None


class UpdatePageRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class AddPageRequest(BaseModel):
    page_id: str


class RevertRequest(BaseModel):
    target_version_id: str


class PageOrderItem(BaseModel):
    page_id: str
    order: int = Field(ge=1)


class PageReorderSetRequest(BaseModel):
    page_orders: List[PageOrderItem] = Field(min_length=1)


class PageReorderInsertRequest(BaseModel):
    page_id: str
    new_order: int = Field(ge=1)


class StitchJobRequest(BaseModel):
    source_version_ids: List[str]
