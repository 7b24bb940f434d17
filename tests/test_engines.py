"""
Tests for the processing engines, the content stores and configuration.
"""

import io

import pytest
from botocore.exceptions import ClientError
from omegaconf.errors import ConfigKeyError
from PIL import Image

from arcsync_backend.configuration import env_overrides, make_runtime_config
from arcsync_backend.content_store import LocalContentStore, S3ContentStore, build_content_store
from arcsync_backend.engines import PillowStitchEngine, TesseractOcrEngine, parse_tesseract_tsv
from arcsync_backend.errors import NotFoundError, ProcessingError, StitchFailedError, StorageError

TSV_HEADER = "level\tpage_num\tblock_num\tpar_num\tline_num\tword_num\tleft\ttop\twidth\theight\tconf\ttext"

SAMPLE_TSV = "\n".join(
    [
        TSV_HEADER,
        "1\t1\t0\t0\t0\t0\t0\t0\t640\t480\t-1\t",
        "2\t1\t1\t0\t0\t0\t10\t10\t300\t60\t-1\t",
        "3\t1\t1\t1\t0\t0\t10\t10\t300\t60\t-1\t",
        "4\t1\t1\t1\t1\t0\t10\t10\t300\t20\t-1\t",
        "5\t1\t1\t1\t1\t1\t10\t10\t80\t20\t96.5\tHello",
        "5\t1\t1\t1\t1\t2\t100\t12\t90\t18\t91\tworld",
        "4\t1\t1\t1\t2\t0\t10\t40\t200\t20\t-1\t",
        "5\t1\t1\t1\t2\t1\t10\t40\t50\t20\t88\t你好",
        "5\t1\t1\t1\t2\t2\t70\t40\t10\t20\t-1\t ",
    ]
)


class TestTesseractTsv:
    """Tests for parse_tesseract_tsv."""

    def test_page_size_and_lines(self):
        result = parse_tesseract_tsv(SAMPLE_TSV)

        assert (result.image_width, result.image_height) == (640, 480)
        assert [line.text for line in result.lines] == ["Hello world", "你好"]

    def test_word_boxes_and_confidence(self):
        first_line = parse_tesseract_tsv(SAMPLE_TSV).lines[0]

        hello = first_line.words[0]
        assert (hello.bbox.x1, hello.bbox.y1, hello.bbox.x2, hello.bbox.y2) == (10, 10, 90, 30)
        assert hello.confidence == pytest.approx(0.965)
        assert (first_line.bbox.x1, first_line.bbox.x2) == (10, 190)

    def test_blank_words_are_skipped(self):
        result = parse_tesseract_tsv(SAMPLE_TSV)
        assert result.all_words() == ["Hello", "world", "你好"]

    def test_header_only_output_is_empty(self):
        result = parse_tesseract_tsv(TSV_HEADER + "\n")
        assert result.lines == []

    def test_garbage_raises_processing_error(self):
        with pytest.raises(ProcessingError):
            parse_tesseract_tsv(TSV_HEADER + "\nnot\ta\tnumber\n")


class TestTesseractEngine:
    def test_missing_command_raises_processing_error(self, content_store, png_bytes):
        reference = content_store.save(png_bytes(), "page", "v1", ".png")
        engine = TesseractOcrEngine(content_store, command="arcsync-test-missing-tesseract")

        with pytest.raises(ProcessingError, match="not found"):
            engine.recognize(reference)

    def test_missing_content_raises_processing_error(self, content_store):
        engine = TesseractOcrEngine(content_store)

        with pytest.raises(ProcessingError, match="missing"):
            engine.recognize("nothing_here.png")


class TestPillowStitch:
    """Tests for PillowStitchEngine."""

    def test_vertical_stitch_dimensions(self, png_bytes):
        engine = PillowStitchEngine()
        output = engine.stitch([png_bytes(20, 10), png_bytes(30, 15, "blue")])

        with Image.open(io.BytesIO(output)) as image:
            assert image.format == "PNG"
            assert image.size == (30, 25)
            assert image.getpixel((0, 0)) == (255, 255, 255)
            assert image.getpixel((15, 20)) == (0, 0, 255)

    def test_horizontal_stitch_dimensions(self, png_bytes):
        engine = PillowStitchEngine(direction="horizontal")
        output = engine.stitch([png_bytes(20, 10), png_bytes(30, 15), png_bytes(5, 5)])

        with Image.open(io.BytesIO(output)) as image:
            assert image.size == (55, 15)

    def test_single_image_is_rejected(self, png_bytes):
        with pytest.raises(StitchFailedError):
            PillowStitchEngine().stitch([png_bytes()])

    def test_unreadable_image_is_rejected(self, png_bytes):
        with pytest.raises(StitchFailedError, match="source 2"):
            PillowStitchEngine().stitch([png_bytes(), b"not an image"])

    def test_unknown_direction(self):
        with pytest.raises(ValueError):
            PillowStitchEngine(direction="diagonal")


class TestLocalContentStore:
    def test_save_read_delete(self, content_store):
        reference = content_store.save(b"bytes", "owner", "version", ".jpg")

        assert reference == "owner_version.jpg"
        assert content_store.read(reference) == b"bytes"

        content_store.delete(reference)
        with pytest.raises(NotFoundError):
            content_store.read(reference)

    def test_empty_content_is_refused(self, content_store):
        with pytest.raises(StorageError):
            content_store.save(b"", "owner", "version", ".png")

    def test_path_traversal_is_refused(self, content_store):
        with pytest.raises(NotFoundError):
            content_store.read("../outside.png")

    def test_deleting_missing_content_is_quiet(self, content_store):
        content_store.delete("never_saved.png")


class FakeS3Client:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body):
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)


class TestS3ContentStore:
    def test_save_read_delete_under_prefix(self):
        client = FakeS3Client()
        store = S3ContentStore("bucket", "content/", client=client)

        reference = store.save(b"bytes", "owner", "version", ".png")

        assert ("bucket", "content/owner_version.png") in client.objects
        assert store.read(reference) == b"bytes"
        store.delete(reference)
        with pytest.raises(NotFoundError):
            store.read(reference)

    def test_bucket_is_required(self):
        with pytest.raises(StorageError):
            S3ContentStore("")


class TestConfiguration:
    def test_defaults(self):
        config = make_runtime_config()

        assert config.storage.backend == "local"
        assert config.ocr.languages == "chi_sim+eng"
        assert config.stitch.direction == "vertical"

    def test_environment_overrides(self):
        overrides = env_overrides(
            {
                "ARCSYNC_STORAGE_BACKEND": "s3",
                "S3_BUCKET_NAME": "scans",
                "ARCSYNC_RECOVER_JOBS": "false",
                "UNRELATED": "ignored",
            }
        )
        config = make_runtime_config(overrides)

        assert config.storage.backend == "s3"
        assert config.storage.s3_bucket == "scans"
        assert config.jobs.recover_on_startup is False

    def test_unknown_keys_are_rejected(self):
        with pytest.raises(ConfigKeyError):
            make_runtime_config({"not_a_setting": 1})

    def test_build_local_store(self, tmp_path):
        config = make_runtime_config({"storage": {"local_path": str(tmp_path / "files")}})
        store = build_content_store(config)

        assert isinstance(store, LocalContentStore)
        assert store.root == tmp_path / "files"

    def test_build_s3_store(self):
        config = make_runtime_config({"storage": {"backend": "s3", "s3_bucket": "scans"}})
        store = build_content_store(config, client=FakeS3Client())

        assert isinstance(store, S3ContentStore)
        assert store.bucket == "scans"
