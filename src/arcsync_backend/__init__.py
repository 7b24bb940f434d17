"""
ArcSync Backend - REST API for versioned scanned documents

This package provides a FastAPI-based web service for building documents out
of scanned pages. It enables:

- Page uploads with an append-only version history and revert
- Documents that order pages, carry tags and have versions of their own
- Background OCR and image stitching jobs with tracked status
- Full-text search over recognised page text

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - library: Page, document and version operations
    - job_manager: Job submission, execution and start-up recovery
    - work_queue: In-process queue and the single Dispatcher thread
    - version_store, sequencer, tags, job_store: Transaction-bound repositories
    - content_store: Local and S3 storage for version bytes
    - engines: Tesseract OCR and Pillow stitching
    - configuration: Config loading and environment overrides

Usage:
    Run the API server with:
        uvicorn arcsync_backend.main:app --reload --host 0.0.0.0 --port 8000
"""

__version__ = "0.1.0"
