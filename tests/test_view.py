"""Tests for item projections and summaries."""

from vintner.pipeline.models import BatchItem, FilterCriteria, ItemStatus, ProcessingResult
from vintner.pipeline.view import project, summarize


def make_items():
    return (
        BatchItem.create("1", "Opus.jpg").evolve(
            status=ItemStatus.FORMATTED,
            result=ProcessingResult(ocr_text="Opus One 2015", final_output="Opus One", approved=True),
        ),
        BatchItem.create("2", "barolo.jpg").evolve(
            status=ItemStatus.FORMATTED,
            result=ProcessingResult(ocr_text="Barolo", needs_review=True),
        ),
        BatchItem.create("3", "blurry.jpg").evolve(status=ItemStatus.FAILED),
        BatchItem.create("4", "latour.jpg").evolve(
            status=ItemStatus.UPLOADED_TO_PUBLISH,
            result=ProcessingResult(ocr_text="Chateau Latour"),
        ),
    )


class TestProject:
    """Tests for project() function."""

    def test_no_criteria_returns_everything(self):
        """Test that an empty filter keeps every item in order."""
        items = make_items()

        assert [i.id for i in project(items)] == ["1", "2", "3", "4"]

    def test_status_filter(self):
        """Test filtering by status equality."""
        visible = project(make_items(), FilterCriteria(status=ItemStatus.FORMATTED))

        assert [i.id for i in visible] == ["1", "2"]

    def test_status_filter_accepts_plain_string(self):
        """Test that a status given as its string value still matches."""
        visible = project(make_items(), FilterCriteria(status="failed"))

        assert [i.id for i in visible] == ["3"]

    def test_needs_review_filter(self):
        """Test that items without a result count as not needing review."""
        items = make_items()

        assert [i.id for i in project(items, FilterCriteria(needs_review=True))] == ["2"]
        assert [i.id for i in project(items, FilterCriteria(needs_review=False))] == ["1", "3", "4"]

    def test_search_is_case_insensitive(self):
        """Test that search covers filename, OCR text and final output."""
        items = make_items()

        assert [i.id for i in project(items, FilterCriteria(search="LATOUR"))] == ["4"]
        assert [i.id for i in project(items, FilterCriteria(search="opus one"))] == ["1"]
        assert [i.id for i in project(items, FilterCriteria(search="blurry"))] == ["3"]

    def test_criteria_combine(self):
        """Test that all set criteria must hold."""
        visible = project(make_items(), FilterCriteria(status=ItemStatus.FORMATTED, search="barolo"))

        assert [i.id for i in visible] == ["2"]

    def test_input_not_mutated(self):
        """Test that projecting leaves the collection untouched."""
        items = make_items()
        before = list(items)

        project(items, FilterCriteria(status=ItemStatus.FAILED))

        assert list(items) == before


class TestSummarize:
    """Tests for summarize() function."""

    def test_counts(self):
        """Test that each bucket is counted once."""
        summary = summarize(make_items())

        assert summary.total == 4
        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.processing == 2
        assert summary.approved == 1
        assert summary.needs_review == 1
        assert summary.percent_complete == 25

    def test_empty(self):
        """Test that an empty batch reports zero progress."""
        assert summarize(()).percent_complete == 0
