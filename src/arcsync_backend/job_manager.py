"""
Job submission and execution for OCR and stitch processing.

This module is the seam between request handlers and the background
Dispatcher:

- Submission validates everything it can synchronously, persists a queued
  job and enqueues a ``WorkItem``; invalid input never produces a job
- Handlers run on the Dispatcher thread, re-read their inputs from the job
  row in a fresh transaction and report failure by raising
- Start-up recovery settles jobs left behind by a previous process

The JobManager class is the only object the HTTP layer talks to for jobs.
"""

from __future__ import annotations

import logging
import sqlite3
from threading import Event
from typing import Dict, List, Optional, Sequence

from .content_store import ContentStore
from .database import Database
from .engines import ImageStitchEngine, TextRecognitionEngine
from .errors import NotFoundError, ProcessingError, ValidationError
from .job_store import JobStore
from .models import JobStatus, JobType, OwnerKind
from .records import JobRecord, OwnerRef, VersionRecord
from .utils import normalize_search_text
from .version_store import VersionStore
from .work_queue import Dispatcher, Handler, WorkItem, WorkQueue

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted by server restart"


def _owner_belongs_to(conn: sqlite3.Connection, owner: OwnerRef, user_id: str) -> bool:
    row = conn.execute(f"SELECT user_id FROM {owner.table} WHERE id = ?", (owner.id,)).fetchone()
    return row is not None and row["user_id"] == user_id


def _require_user_version(conn: sqlite3.Connection, versions: VersionStore, version_id: str, user_id: str) -> VersionRecord:
    version = versions.get_version(version_id)
    if version is None or not _owner_belongs_to(conn, version.owner, user_id):
        raise NotFoundError(f"No version found with ID: {version_id}")
    return version


class JobManager:
    """
    Coordinates job submission, execution and recovery.

    Thread Safety:
        Submission may be called from any request thread. Handlers run only
        on the single Dispatcher thread. All state lives in the database;
        each step opens its own transactional scope.

    Attributes:
        database: Transaction source for every step
        content_store: Where version bytes are read and written
        ocr_engine: Text recognition collaborator
        stitch_engine: Image stitching collaborator
        list_limit: Default number of jobs returned by ``list_jobs``
    """

    def __init__(
        self,
        database: Database,
        content_store: ContentStore,
        ocr_engine: TextRecognitionEngine,
        stitch_engine: ImageStitchEngine,
        queue: Optional[WorkQueue] = None,
        list_limit: int = 50,
    ) -> None:
        self.database = database
        self.content_store = content_store
        self.ocr_engine = ocr_engine
        self.stitch_engine = stitch_engine
        self.list_limit = list_limit
        self.queue = queue or WorkQueue()
        self.dispatcher = Dispatcher(self.queue, database)
        self._handlers: Dict[JobType, Handler] = {
            JobType.OCR: self._run_ocr,
            JobType.STITCH: self._run_stitch,
        }

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.dispatcher.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self.dispatcher.stop(timeout)

    def recover(self) -> Dict[str, int]:
        """
        Settle jobs left behind by a previous process.

        Jobs still ``processing`` were cut off mid-run and are marked failed;
        jobs still ``queued`` never started and are enqueued again.

        Returns:
            Counts of ``failed`` and ``requeued`` jobs
        """
        with self.database.transaction() as conn:
            store = JobStore(conn)
            interrupted = store.ids_with_status(JobStatus.PROCESSING)
            for job_id in interrupted:
                store.mark_failed(job_id, INTERRUPTED_MESSAGE)
            pending = [store.get(job_id) for job_id in store.ids_with_status(JobStatus.QUEUED)]

        for record in pending:
            if record is not None:
                self._enqueue(record)

        if interrupted or pending:
            logger.info("Recovered jobs: %d marked failed, %d requeued.", len(interrupted), len(pending))
        return {"failed": len(interrupted), "requeued": len(pending)}

    def _enqueue(self, record: JobRecord) -> None:
        self.queue.enqueue(WorkItem(record.id, self._handlers[record.type]))
        logger.info("Job %s (%s) queued for %s.", record.id, record.type.value, record.associated_entity_id)

    # --- queries -----------------------------------------------------------

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> JobRecord:
        """
        Raises:
            NotFoundError: Unknown id, or the job was submitted by another user
        """
        with self.database.transaction() as conn:
            record = JobStore(conn).get(job_id)
        if record is None or (user_id is not None and record.parameters.get("user_id") != user_id):
            raise NotFoundError(f"No job found with ID: {job_id}")
        return record

    def list_jobs(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> List[JobRecord]:
        """Most recently submitted jobs first."""
        with self.database.transaction() as conn:
            return JobStore(conn).list_recent(limit or self.list_limit, user_id=user_id)

    # --- submission --------------------------------------------------------

    def submit_ocr_job(self, version_id: str, user_id: str) -> JobRecord:
        """
        Queue text recognition for one version.

        The result is attached to that same version; no new version is made.

        Raises:
            NotFoundError: The version does not exist for this user
        """
        with self.database.transaction() as conn:
            _require_user_version(conn, VersionStore(conn, self.content_store), version_id, user_id)
            record = JobStore(conn).create(
                JobType.OCR,
                version_id,
                {"version_id": version_id, "user_id": user_id},
            )
        self._enqueue(record)
        return record

    def submit_stitch_job(self, owner: OwnerRef, user_id: str, source_version_ids: Sequence[str]) -> JobRecord:
        """
        Queue a stitch of several versions into a new current version of ``owner``.

        The content references of the sources are captured now, so the job
        stitches exactly the bytes that existed at submission time.

        Raises:
            ValidationError: Fewer than two sources
            NotFoundError: The owner or a source version does not exist for
                this user
        """
        if len(source_version_ids) < 2:
            raise ValidationError("At least two sources required")

        with self.database.transaction() as conn:
            if not _owner_belongs_to(conn, owner, user_id):
                raise NotFoundError(f"No {owner.kind.value} found with ID: {owner.id}")
            versions = VersionStore(conn, self.content_store)
            references = []
            for version_id in source_version_ids:
                version = _require_user_version(conn, versions, version_id, user_id)
                if not version.content_reference:
                    raise NotFoundError(f"Version {version_id} has no stored content")
                references.append(version.content_reference)

            record = JobStore(conn).create(
                JobType.STITCH,
                owner.id,
                {
                    "owner_kind": owner.kind.value,
                    "owner_id": owner.id,
                    "user_id": user_id,
                    "source_version_ids": list(source_version_ids),
                    "source_references": references,
                },
            )
        self._enqueue(record)
        return record

    # --- handlers ----------------------------------------------------------

    def _load_parameters(self, job_id: str) -> Dict:
        return self.get_job(job_id).parameters

    def _run_ocr(self, job_id: str, stop_event: Event) -> None:
        version_id = self._load_parameters(job_id)["version_id"]
        with self.database.transaction() as conn:
            version = VersionStore(conn, self.content_store).get_version(version_id)
        if version is None:
            raise ProcessingError(f"Version {version_id} no longer exists")
        if not version.content_reference:
            raise ProcessingError(f"Version {version_id} has no stored content")
        if stop_event.is_set():
            raise ProcessingError("Shutdown requested before OCR started")

        result = self.ocr_engine.recognize(version.content_reference)
        normalized = normalize_search_text("".join(result.all_words()))

        with self.database.transaction() as conn:
            VersionStore(conn, self.content_store).attach_ocr_result(version_id, result.model_dump_json(), normalized)
        logger.info("Stored OCR result for version %s (%d lines).", version_id, len(result.lines))

    def _run_stitch(self, job_id: str, stop_event: Event) -> None:
        parameters = self._load_parameters(job_id)
        owner = OwnerRef(OwnerKind(parameters["owner_kind"]), parameters["owner_id"])

        images = []
        for reference in parameters["source_references"]:
            try:
                images.append(self.content_store.read(reference))
            except NotFoundError as exc:
                raise ProcessingError(f"Source content is missing: {reference}") from exc
        if stop_event.is_set():
            raise ProcessingError("Shutdown requested before stitching started")

        stitched = self.stitch_engine.stitch(images)

        created: Optional[VersionRecord] = None
        try:
            with self.database.transaction() as conn:
                versions = VersionStore(conn, self.content_store)
                created = versions.create_version(
                    owner,
                    stitched,
                    self.stitch_engine.output_extension,
                    message=f"Stitched from {len(images)} versions",
                )
                versions.set_current_version(owner, created.id)
        except Exception:
            if created is not None and created.content_reference:
                self.content_store.delete(created.content_reference)
            raise
        logger.info("Stitch job %s produced version %s for %s %s.", job_id, created.id, owner.kind.value, owner.id)
