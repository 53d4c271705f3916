"""Tests for pipeline output utilities."""

from pathlib import Path
import tempfile
import json

from vintner.pipeline.models import BatchItem, ItemStatus, Match, ProcessingResult
from vintner.pipeline.output import append_record, item_record


class TestItemRecord:
    """Tests for item_record() function."""

    def test_record_is_json_safe(self):
        """Test that a formatted item serializes without custom encoders."""
        item = BatchItem.create("1", "dir/A.jpg", source_blob=b"12345").evolve(
            status=ItemStatus.FORMATTED,
            result=ProcessingResult(
                ocr_text="Opus One",
                top_matches=(Match("Opus One 2015", 0.97, "exact"),),
            ).stamped("formatted"),
        )

        rec = item_record(item, run_id="run-1")

        json.dumps(rec)
        assert rec["run_id"] == "run-1"
        assert rec["status"] == "formatted"
        assert rec["normalized_filename"] == "a.jpg"
        assert rec["result"]["top_matches"] == [{"option": "Opus One 2015", "score": 0.97, "reason": "exact"}]
        assert rec["result"]["correction_status"] == "NHR"
        assert "formatted" in rec["result"]["timestamps"]

    def test_blob_is_summarized(self):
        """Test that only the blob size is recorded."""
        rec = item_record(BatchItem.create("1", "a.jpg", source_blob=b"12345"))

        assert rec["source_bytes"] == 5
        assert b"12345" not in json.dumps(rec).encode()

    def test_item_without_result(self):
        """Test that a failed item records its error and no result."""
        item = BatchItem.create("1", "a.jpg").evolve(status=ItemStatus.FAILED, error_message="unreadable")

        rec = item_record(item)

        assert rec["result"] is None
        assert rec["error"] == "unreadable"
        assert rec["source_bytes"] is None


class TestAppendRecord:
    """Tests for append_record() function."""

    def test_append_record_creates_file(self):
        """Test that append_record creates file if it doesn't exist."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / "output.jsonl"

            append_record(output_path, {"item_id": "1", "status": "formatted"})

            assert output_path.exists()

    def test_append_record_creates_parent_dirs(self):
        """Test that append_record creates parent directories."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / "subdir" / "output.jsonl"

            append_record(output_path, {"item_id": "1"})

            assert output_path.exists()
            assert output_path.parent.exists()

    def test_append_record_appends_not_overwrites(self):
        """Test that append_record appends to existing file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / "run.jsonl"

            for item_id in ("1", "2", "3"):
                append_record(output_path, item_record(BatchItem.create(item_id, f"{item_id}.jpg")))

            lines = output_path.read_text(encoding="utf-8").splitlines()

            assert [json.loads(line)["item_id"] for line in lines] == ["1", "2", "3"]

    def test_append_record_keeps_unicode(self):
        """Test that non-ASCII text is written as-is."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / "run.jsonl"

            append_record(output_path, {"ocr_text": "Château Margaux"})

            assert "Château Margaux" in output_path.read_text(encoding="utf-8")
