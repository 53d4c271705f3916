"""Tests for the CSV export."""

import csv
import io
import tempfile
from pathlib import Path

from vintner.pipeline.export import HEADERS, serialize, top3_summary, write_export
from vintner.pipeline.models import BatchItem, ItemStatus, Match, ProcessingResult


def formatted(item_id, filename, **result):
    return BatchItem.create(item_id, filename).evolve(
        status=ItemStatus.FORMATTED, result=ProcessingResult(**result)
    )


def read_rows(text):
    return list(csv.reader(io.StringIO(text)))


class TestSerialize:
    """Tests for serialize() function."""

    def test_header_only_for_empty_batch(self):
        """Test that the header is always written."""
        assert read_rows(serialize([])) == [HEADERS]

    def test_fields_with_commas_quotes_and_newlines_round_trip(self):
        """Test that awkward text survives a CSV reader."""
        item = formatted(
            "1",
            "cellar, left.jpg",
            ocr_text='Château "Grand" Vin,\n2010',
            selected_option="Grand Vin, 2010",
            top_matches=(Match("Grand Vin, 2010", 0.9), Match("Petit Vin", 0.4)),
            match_confidence=0.9,
            needs_review=True,
            validated_gid="gid://shopify/Product/9",
        )

        rows = read_rows(serialize([item]))

        assert rows[1] == [
            "cellar, left.jpg",
            'Château "Grand" Vin,\n2010',
            "Grand Vin, 2010",
            "Grand Vin, 2010 (0.90) | Petit Vin (0.40)",
            "0.9",
            "Yes",
            "gid://shopify/Product/9",
        ]

    def test_missing_values(self):
        """Test that absent result fields export as empty."""
        item = BatchItem.create("1", "a.jpg")

        rows = read_rows(serialize([item]))

        assert rows[1] == ["a.jpg", "", "", "", "", "No", ""]

    def test_nan_confidence_is_empty(self):
        """Test that a NaN confidence is treated as absent."""
        item = formatted("1", "a.jpg", match_confidence=float("nan"))

        assert read_rows(serialize([item]))[1][4] == ""

    def test_row_order_follows_items(self):
        """Test that rows keep collection order."""
        items = [formatted(str(i), f"{i}.jpg") for i in (3, 1, 2)]

        assert [r[0] for r in read_rows(serialize(items))[1:]] == ["3.jpg", "1.jpg", "2.jpg"]


class TestTop3Summary:
    """Tests for top3_summary() function."""

    def test_at_most_three(self):
        """Test that only three matches are summarized."""
        item = formatted("1", "a.jpg", top_matches=tuple(Match(f"m{i}", 0.5) for i in range(5)))

        assert top3_summary(item).count("|") == 2


class TestWriteExport:
    """Tests for write_export() function."""

    def test_writes_file(self):
        """Test that the export lands on disk with parent directories."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "out" / "results.csv"

            write_export([BatchItem.create("1", "a.jpg")], path)

            assert path.exists()
            assert path.read_text(encoding="utf-8").splitlines()[0].startswith('"Filename"')
