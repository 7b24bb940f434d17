"""
External processing engines used by queued jobs.

- ``TesseractOcrEngine`` runs the ``tesseract`` command line tool and parses
  its TSV output into an ``OcrResult``
- ``PillowStitchEngine`` joins several scans into one image with Pillow

Both raise ``ProcessingError`` subclasses; the Dispatcher turns those into
failed jobs.
"""

from __future__ import annotations

import csv
import io
import logging
import subprocess
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import List, Protocol, Sequence, Tuple

from PIL import Image, ImageColor, UnidentifiedImageError

from .content_store import ContentStore
from .errors import NotFoundError, ProcessingError, StitchFailedError
from .models import BoundingBox, OcrResult, TextLine, Word

logger = logging.getLogger(__name__)


class TextRecognitionEngine(Protocol):
    def recognize(self, reference: str) -> OcrResult:
        ...


class ImageStitchEngine(Protocol):
    output_extension: str

    def stitch(self, ordered_images: Sequence[bytes]) -> bytes:
        ...


# --- OCR -------------------------------------------------------------------

# Tesseract TSV hierarchy levels
_LEVEL_PAGE = 1
_LEVEL_WORD = 5


def _merge_boxes(boxes: Sequence[BoundingBox]) -> BoundingBox:
    return BoundingBox(
        x1=min(box.x1 for box in boxes),
        y1=min(box.y1 for box in boxes),
        x2=max(box.x2 for box in boxes),
        y2=max(box.y2 for box in boxes),
    )


def parse_tesseract_tsv(tsv_text: str) -> OcrResult:
    """
    Build an ``OcrResult`` from ``tesseract ... tsv`` output.

    The page row gives the image size. Word rows with non-empty text are
    grouped into lines by their (block, paragraph, line) numbers, keeping the
    order in which Tesseract reports them. Confidence is scaled to 0..1.
    """
    reader = csv.DictReader(io.StringIO(tsv_text), delimiter="\t", quoting=csv.QUOTE_NONE)
    width = height = 0
    grouped: "OrderedDict[Tuple[int, int, int, int], List[Word]]" = OrderedDict()

    try:
        for row in reader:
            level = int(row["level"])
            left, top = int(row["left"]), int(row["top"])
            box = BoundingBox(x1=left, y1=top, x2=left + int(row["width"]), y2=top + int(row["height"]))
            if level == _LEVEL_PAGE:
                width, height = box.x2, box.y2
                continue
            if level != _LEVEL_WORD:
                continue
            text = (row.get("text") or "").strip()
            if not text:
                continue
            confidence = max(float(row["conf"]), 0.0) / 100.0
            key = (int(row["page_num"]), int(row["block_num"]), int(row["par_num"]), int(row["line_num"]))
            grouped.setdefault(key, []).append(Word(text=text, bbox=box, confidence=confidence))
    except (KeyError, TypeError, ValueError) as exc:
        raise ProcessingError(f"Unreadable OCR output: {exc}") from exc

    lines = [TextLine(words=words, bbox=_merge_boxes([word.bbox for word in words])) for words in grouped.values()]
    return OcrResult(lines=lines, image_width=width, image_height=height)


class TesseractOcrEngine:
    """
    Text recognition through the ``tesseract`` executable.

    Args:
        content_store: Where the image bytes are read from
        command: Executable name or path
        languages: Tesseract language spec, e.g. ``chi_sim+eng``
        timeout: Seconds before the subprocess is killed
    """

    def __init__(
        self,
        content_store: ContentStore,
        command: str = "tesseract",
        languages: str = "eng",
        timeout: float = 120,
    ) -> None:
        self.content_store = content_store
        self.command = command
        self.languages = languages
        self.timeout = timeout

    def recognize(self, reference: str) -> OcrResult:
        try:
            raw = self.content_store.read(reference)
        except NotFoundError as exc:
            raise ProcessingError(f"Image content is missing: {reference}") from exc

        suffix = Path(reference).suffix or ".png"
        with tempfile.TemporaryDirectory(prefix="arcsync-ocr-") as tmp_dir:
            image_path = Path(tmp_dir) / f"input{suffix}"
            image_path.write_bytes(raw)
            cmd = [self.command, str(image_path), "stdout", "-l", self.languages, "tsv"]
            logger.info("Running OCR: %s", " ".join(cmd))
            try:
                completed = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise ProcessingError(f"OCR command not found: {self.command}") from exc
            except subprocess.TimeoutExpired as exc:
                raise ProcessingError(f"OCR timed out after {self.timeout} seconds") from exc

        if completed.returncode != 0:
            detail = (completed.stderr or "").strip() or f"exit code {completed.returncode}"
            raise ProcessingError(f"OCR failed: {detail}")

        result = parse_tesseract_tsv(completed.stdout)
        logger.info("OCR recognised %d lines in %s", len(result.lines), reference)
        return result


# --- Stitching -------------------------------------------------------------


class PillowStitchEngine:
    """
    Concatenates scans into one PNG.

    Images are placed top to bottom (``vertical``) or left to right
    (``horizontal``) on a canvas filled with ``background``; narrower images
    are centred on the cross axis.
    """

    output_extension = ".png"

    def __init__(self, direction: str = "vertical", background: str = "#ffffff") -> None:
        if direction not in {"vertical", "horizontal"}:
            raise ValueError(f"Unknown stitch direction: {direction!r}")
        self.direction = direction
        self.background = ImageColor.getrgb(background)

    def _open_all(self, ordered_images: Sequence[bytes]) -> List[Image.Image]:
        images = []
        for index, raw in enumerate(ordered_images, start=1):
            try:
                with Image.open(io.BytesIO(raw)) as image:
                    images.append(image.convert("RGB"))
            except (UnidentifiedImageError, OSError) as exc:
                raise StitchFailedError(f"source {index} is not a readable image") from exc
        return images

    def stitch(self, ordered_images: Sequence[bytes]) -> bytes:
        if len(ordered_images) < 2:
            raise StitchFailedError("at least two images are required")

        images = self._open_all(ordered_images)
        vertical = self.direction == "vertical"
        if vertical:
            size = (max(image.width for image in images), sum(image.height for image in images))
        else:
            size = (sum(image.width for image in images), max(image.height for image in images))

        canvas = Image.new("RGB", size, self.background)
        offset = 0
        for image in images:
            if vertical:
                canvas.paste(image, ((size[0] - image.width) // 2, offset))
                offset += image.height
            else:
                canvas.paste(image, (offset, (size[1] - image.height) // 2))
                offset += image.width

        buffer = io.BytesIO()
        canvas.save(buffer, format="PNG")
        logger.info("Stitched %d images into %dx%d", len(images), size[0], size[1])
        return buffer.getvalue()
