"""Tests for result-to-item correlation."""

import logging

from vintner.pipeline.correlation import correlate, find_collisions, key_set


class TestKeySet:
    """Tests for key_set() function."""

    def test_normalizes_and_dedupes(self):
        """Test that names collapse to unique normalized keys."""
        assert key_set(["A/Label.JPG", "label.jpg", None, ""]) == ("label.jpg",)

    def test_keeps_order(self):
        """Test that the first name stays the primary key."""
        assert key_set(["b.jpg", "a.jpg"]) == ("b.jpg", "a.jpg")


class TestCorrelate:
    """Tests for correlate() function."""

    def test_exact_match_ignores_response_order(self):
        """Test that exact keys win over position."""
        report = correlate([("a.jpg",), ("b.jpg",)], [("b.jpg",), ("a.jpg",)])

        assert [(a.item_index, a.result_index, a.exact) for a in report.assignments] == [
            (0, 1, True),
            (1, 0, True),
        ]
        assert report.unmatched_items == []

    def test_any_result_key_matches(self):
        """Test that a renamed result still matches through its original name."""
        report = correlate([("img_1.jpg",)], [("renamed.jpg", "img_1.jpg")])

        assert report.result_for(0) == 0
        assert report.assignments[0].exact

    def test_fallback_uses_first_unconsumed_result(self):
        """Test that unmatched items fall back to response order."""
        report = correlate([("a.jpg",), ("b.jpg",)], [("zzz.jpg",), ("a.jpg",)])

        assert report.result_for(0) == 1
        assert report.result_for(1) == 0
        assert report.fallback_count == 1

    def test_results_never_reused_on_collision(self):
        """Test that two items with one key and three results consume distinct results."""
        items = [("label.jpg",), ("label.jpg",), ("other.jpg",)]
        results = [("label.jpg",), ("nothing.jpg",)]

        report = correlate(items, results)

        used = [a.result_index for a in report.assignments]
        assert len(used) == len(set(used))
        assert len(report.assignments) == min(len(items), len(results))
        assert len(report.unmatched_items) == 1
        assert "label.jpg" in report.collisions

    def test_fewer_results_than_items(self):
        """Test that leftover items are reported unmatched."""
        report = correlate([("a.jpg",), ("b.jpg",), ("c.jpg",)], [("c.jpg",)])

        assert report.result_for(2) == 0
        assert report.unmatched_items == [0, 1]

    def test_more_results_than_items(self):
        """Test that surplus results are reported unused."""
        report = correlate([("a.jpg",)], [("x.jpg",), ("a.jpg",), ("y.jpg",)])

        assert report.result_for(0) == 1
        assert report.unused_results == [0, 2]

    def test_empty_inputs(self):
        """Test that empty collections correlate to nothing."""
        report = correlate([], [])

        assert report.assignments == []
        assert report.unmatched_items == []

    def test_item_without_keys_only_takes_fallback(self):
        """Test that an item with no keys never matches exactly."""
        report = correlate([(), ("a.jpg",)], [("a.jpg",), ("b.jpg",)])

        assert report.result_for(1) == 0
        assert report.result_for(0) == 1
        assert not report.assignments[0].exact

    def test_collision_is_logged(self, caplog):
        """Test that duplicate item keys produce a warning."""
        with caplog.at_level(logging.WARNING, logger="vintner.pipeline.correlation"):
            correlate([("x.jpg",), ("x.jpg",)], [("x.jpg",), ("x.jpg",)], stage="ocr")

        assert any(r.getMessage() == "correlation_collision" for r in caplog.records)


class TestFindCollisions:
    """Tests for find_collisions() function."""

    def test_reports_shared_primary_keys(self):
        """Test that only keys shared by several items are reported."""
        assert find_collisions([("a",), ("b",), ("a",)]) == {"a": [0, 2]}

    def test_no_collisions(self):
        """Test that distinct keys report nothing."""
        assert find_collisions([("a",), ("b",)]) == {}
