from __future__ import annotations

import asyncio
import logging
import mimetypes
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import __version__
from .configuration import env_overrides, make_runtime_config
from .content_store import build_content_store
from .database import Database
from .engines import PillowStitchEngine, TesseractOcrEngine
from .errors import JobStateError, NotFoundError, StorageError, ValidationError
from .job_manager import JobManager
from .library import LibraryService
from .models import (
    AboutInfo,
    AddPageRequest,
    CreateDocumentRequest,
    DocumentDetail,
    DocumentSummary,
    JobAccepted,
    JobDetail,
    OwnerKind,
    PagedResult,
    PageDetail,
    PageReorderInsertRequest,
    PageReorderSetRequest,
    PageSummary,
    RevertRequest,
    StitchJobRequest,
    UpdateDocumentRequest,
    UpdatePageRequest,
    UserStats,
    VersionDetail,
)
from .records import OwnerRef
from .status import ApplicationStatus, warm_up
from .tags import TagCache
from .utils import is_allowed_image, storage_extension

logger = logging.getLogger(__name__)

settings = make_runtime_config(env_overrides())

logging.basicConfig(
    level=str(settings.log_level).upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

database = Database(Path(settings.database_path))
content_store = build_content_store(settings)
tag_cache = TagCache()
app_status = ApplicationStatus()
library = LibraryService(database, content_store, tag_cache)
job_manager = JobManager(
    database,
    content_store,
    TesseractOcrEngine(
        content_store,
        command=settings.ocr.command,
        languages=settings.ocr.languages,
        timeout=settings.ocr.timeout_seconds,
    ),
    PillowStitchEngine(direction=settings.stitch.direction, background=settings.stitch.background),
    list_limit=settings.jobs.list_limit,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    job_manager.start()
    if settings.jobs.recover_on_startup:
        job_manager.recover()
    warmup_task = None
    if settings.warmup.enabled:
        loop = asyncio.get_running_loop()
        warmup_task = loop.run_in_executor(None, warm_up, database, tag_cache, app_status)
    else:
        app_status.mark_ready()
    try:
        yield
    finally:
        if warmup_task is not None:
            await warmup_task
        job_manager.stop()


app = FastAPI(title="ArcSync API", version=__version__, lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found_error(_: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(JobStateError)
async def _job_state_error(_: Request, exc: JobStateError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def _storage_error(_: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Failed to store content."})


def get_library() -> LibraryService:
    return library


def get_job_manager() -> JobManager:
    return job_manager


def get_app_status() -> ApplicationStatus:
    return app_status


def require_ready(status: ApplicationStatus = Depends(get_app_status)) -> None:
    if not status.is_ready():
        raise HTTPException(status_code=503, detail=status.reason)


def current_user(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def _read_image_upload(file: UploadFile) -> bytes:
    if not file.filename:
        raise ValidationError("Uploaded file must have a filename.")
    if not is_allowed_image(file.filename):
        raise ValidationError(f"Unsupported image type: {file.filename}")
    raw = await file.read()
    await file.close()
    if not raw:
        raise ValidationError("Uploaded file is empty.")
    return raw


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/about", response_model=AboutInfo)
def about(status: ApplicationStatus = Depends(get_app_status)) -> AboutInfo:
    return AboutInfo(
        server_name=settings.server_name,
        version=__version__,
        state=status.state,
        reason=status.reason,
    )


router = APIRouter(dependencies=[Depends(require_ready)])


# --- pages -----------------------------------------------------------------


@router.post("/pages", response_model=PageDetail, status_code=201)
async def create_page(
    title: str = Form(..., min_length=1, max_length=200),
    file: UploadFile = File(...),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PageDetail:
    raw = await _read_image_upload(file)
    return await run_in_threadpool(service.create_page, user_id, title, raw, storage_extension(file.filename))


@router.get("/pages", response_model=PagedResult[PageSummary])
def list_pages(
    page_number: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PagedResult[PageSummary]:
    return service.list_pages(user_id, page_number, page_size)


@router.get("/pages/unassigned", response_model=List[PageSummary])
def list_unassigned_pages(
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> List[PageSummary]:
    return service.list_unassigned_pages(user_id)


@router.get("/pages/search", response_model=PagedResult[PageSummary])
def search_pages(
    q: str = Query(""),
    page_number: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PagedResult[PageSummary]:
    return service.search_pages(user_id, q, page_number, page_size)


@router.get("/pages/{page_id}", response_model=PageDetail)
def get_page(
    page_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PageDetail:
    return service.get_page(user_id, page_id)


@router.put("/pages/{page_id}", response_model=PageDetail)
def update_page(
    page_id: str,
    payload: UpdatePageRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PageDetail:
    return service.rename_page(user_id, page_id, payload.title)


@router.delete("/pages/{page_id}", status_code=204)
def delete_page(
    page_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> Response:
    service.delete_page(user_id, page_id)
    return Response(status_code=204)


@router.get("/pages/{page_id}/versions", response_model=List[VersionDetail])
def list_page_versions(
    page_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> List[VersionDetail]:
    return service.list_versions(user_id, OwnerRef(OwnerKind.PAGE, page_id))


@router.post("/pages/{page_id}/versions", response_model=VersionDetail, status_code=201)
async def add_page_version(
    page_id: str,
    file: UploadFile = File(...),
    message: Optional[str] = Form(None),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> VersionDetail:
    raw = await _read_image_upload(file)
    return await run_in_threadpool(
        service.add_version,
        user_id,
        OwnerRef(OwnerKind.PAGE, page_id),
        raw,
        storage_extension(file.filename),
        message,
    )


@router.post("/pages/{page_id}/revert", status_code=204)
def revert_page(
    page_id: str,
    payload: RevertRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> Response:
    service.revert(user_id, OwnerRef(OwnerKind.PAGE, page_id), payload.target_version_id)
    return Response(status_code=204)


# --- documents -------------------------------------------------------------


@router.post("/documents", response_model=DocumentDetail, status_code=201)
def create_document(
    payload: CreateDocumentRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.create_document(user_id, payload.title, payload.tags)


@router.get("/documents", response_model=PagedResult[DocumentSummary])
def list_documents(
    page_number: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    sort_by: str = Query("date_desc"),
    tags: Optional[str] = Query(None, description="Comma-separated tag names; all must match"),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> PagedResult[DocumentSummary]:
    tag_list = [name for name in tags.split(",") if name.strip()] if tags else None
    return service.list_documents(user_id, page_number, page_size, sort_by, tag_list)


@router.get("/documents/tags", response_model=List[str])
def list_tags(
    _: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> List[str]:
    return service.all_tags()


@router.get("/documents/stats", response_model=UserStats)
def user_stats(
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> UserStats:
    return service.user_stats(user_id)


@router.get("/documents/{document_id}", response_model=DocumentDetail)
def get_document(
    document_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.get_document(user_id, document_id)


@router.put("/documents/{document_id}", response_model=DocumentDetail)
def update_document(
    document_id: str,
    payload: UpdateDocumentRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.update_document(user_id, document_id, title=payload.title, tags=payload.tags)


@router.delete("/documents/{document_id}", status_code=204)
def delete_document(
    document_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> Response:
    service.delete_document(user_id, document_id)
    return Response(status_code=204)


@router.post("/documents/{document_id}/pages", response_model=DocumentDetail)
def add_page_to_document(
    document_id: str,
    payload: AddPageRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.add_page_to_document(user_id, document_id, payload.page_id)


@router.delete("/documents/{document_id}/pages/{page_id}", response_model=DocumentDetail)
def remove_page_from_document(
    document_id: str,
    page_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.remove_page_from_document(user_id, document_id, page_id)


@router.put("/documents/{document_id}/pages/order", response_model=DocumentDetail)
def set_page_orders(
    document_id: str,
    payload: PageReorderSetRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    assignments = [(item.page_id, item.order) for item in payload.page_orders]
    return service.set_page_orders(user_id, document_id, assignments)


@router.post("/documents/{document_id}/pages/insert", response_model=DocumentDetail)
def insert_page(
    document_id: str,
    payload: PageReorderInsertRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> DocumentDetail:
    return service.insert_page_at(user_id, document_id, payload.page_id, payload.new_order)


@router.get("/documents/{document_id}/versions", response_model=List[VersionDetail])
def list_document_versions(
    document_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> List[VersionDetail]:
    return service.list_versions(user_id, OwnerRef(OwnerKind.DOCUMENT, document_id))


@router.post("/documents/{document_id}/versions", response_model=VersionDetail, status_code=201)
async def add_document_version(
    document_id: str,
    file: UploadFile = File(...),
    message: Optional[str] = Form(None),
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> VersionDetail:
    raw = await _read_image_upload(file)
    return await run_in_threadpool(
        service.add_version,
        user_id,
        OwnerRef(OwnerKind.DOCUMENT, document_id),
        raw,
        storage_extension(file.filename),
        message,
    )


@router.post("/documents/{document_id}/revert", status_code=204)
def revert_document(
    document_id: str,
    payload: RevertRequest,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> Response:
    service.revert(user_id, OwnerRef(OwnerKind.DOCUMENT, document_id), payload.target_version_id)
    return Response(status_code=204)


# --- versions --------------------------------------------------------------


@router.get("/versions/{version_id}/content")
def version_content(
    version_id: str,
    user_id: str = Depends(current_user),
    service: LibraryService = Depends(get_library),
) -> Response:
    raw, reference = service.read_version_content(user_id, version_id)
    media_type = mimetypes.guess_type(reference)[0] or "application/octet-stream"
    return Response(content=raw, media_type=media_type)


# --- jobs ------------------------------------------------------------------


@router.post("/jobs/ocr/{version_id}", response_model=JobAccepted, status_code=202)
def submit_ocr_job(
    version_id: str,
    user_id: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> JobAccepted:
    record = manager.submit_ocr_job(version_id, user_id)
    return JobAccepted(job_id=record.id, message="OCR job has been queued.")


@router.post("/jobs/stitch/{owner_kind}/{owner_id}", response_model=JobAccepted, status_code=202)
def submit_stitch_job(
    owner_kind: OwnerKind,
    owner_id: str,
    payload: StitchJobRequest,
    user_id: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> JobAccepted:
    record = manager.submit_stitch_job(OwnerRef(owner_kind, owner_id), user_id, payload.source_version_ids)
    return JobAccepted(job_id=record.id, message="Stitch job has been queued.")


@router.get("/jobs", response_model=List[JobDetail])
def list_jobs(
    limit: Optional[int] = Query(None, ge=1, le=500),
    user_id: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> List[JobDetail]:
    return [record.to_detail() for record in manager.list_jobs(limit, user_id=user_id)]


@router.get("/jobs/{job_id}", response_model=JobDetail)
def get_job(
    job_id: str,
    user_id: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> JobDetail:
    return manager.get_job(job_id, user_id=user_id).to_detail()


app.include_router(router)
