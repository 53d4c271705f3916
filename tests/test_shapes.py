"""Tests for upload response normalization."""

import pytest

from vintner.errors import MalformedResponse
from vintner.remote.shapes import (
    normalize_upload_items,
    pad_upload_items,
    parse_upload_response,
)


FILES = ["A.jpg", "B.jpg"]


class TestNormalizeUploadItems:
    """Tests for normalize_upload_items() function."""

    def test_bare_list_of_ids(self):
        """Test that string ids take filenames by position."""
        items = normalize_upload_items(["id-a", "id-b"], FILES)

        assert [(u.id, u.filename) for u in items] == [("id-a", "A.jpg"), ("id-b", "B.jpg")]

    def test_list_of_objects(self):
        """Test that object entries keep their own names and ids."""
        raw = [{"fileId": "1", "name": "B.jpg", "previewUrl": "http://x/b"}, {"uuid": "2", "filename": "A.jpg"}]

        items = normalize_upload_items(raw, FILES)

        assert [(u.id, u.filename) for u in items] == [("1", "B.jpg"), ("2", "A.jpg")]
        assert items[0].preview_url == "http://x/b"

    @pytest.mark.parametrize("key", ["items", "uploads", "files", "data", "results", "files_uploaded"])
    def test_wrapped_lists(self, key):
        """Test that every known wrapper key is unwrapped."""
        items = normalize_upload_items({key: [{"id": "x", "filename": "A.jpg"}]}, FILES)

        assert [u.id for u in items] == ["x"]

    def test_single_object(self):
        """Test that a bare object with an id is one entry."""
        items = normalize_upload_items({"id": 7, "filename": "A.jpg"}, FILES)

        assert [(u.id, u.filename) for u in items] == [("7", "A.jpg")]

    def test_missing_id_is_synthesized(self):
        """Test that entries without an id still get a unique one."""
        items = normalize_upload_items([{"filename": "A.jpg"}, {"filename": "B.jpg"}], FILES)

        assert items[0].id != items[1].id
        assert all(u.id for u in items)

    def test_unrecognised_shape(self):
        """Test that unknown shapes normalize to nothing."""
        assert normalize_upload_items({"ok": True}, FILES) == []
        assert normalize_upload_items("done", FILES) == []


class TestPadUploadItems:
    """Tests for pad_upload_items() function."""

    def test_pads_missing_files(self):
        """Test that files left out of a short response are appended."""
        items = normalize_upload_items([{"id": "1", "filename": "A.jpg"}], FILES)

        padded = pad_upload_items(items, FILES)

        assert [u.filename for u in padded] == ["A.jpg", "B.jpg"]
        assert len({u.id for u in padded}) == 2

    def test_synthesized_ids_do_not_collide(self):
        """Test that padded ids differ from ids synthesized for the response."""
        items = normalize_upload_items([{"filename": "renamed.jpg"}], FILES)

        padded = pad_upload_items(items, FILES)

        assert len(padded) == 2
        assert len({u.id for u in padded}) == 2

    def test_padding_capped_at_shortfall(self):
        """Test that renamed entries do not pull in an extra item per file."""
        items = normalize_upload_items([{"id": "x1", "filename": "server_a.jpg"}], FILES)

        padded = pad_upload_items(items, FILES)

        assert padded[0].id == "x1"
        assert [u.filename for u in padded] == ["server_a.jpg", "A.jpg"]

    def test_complete_response_untouched(self):
        """Test that a full response is returned as-is."""
        items = normalize_upload_items(["a", "b"], FILES)

        assert pad_upload_items(items, FILES) == items


class TestParseUploadResponse:
    """Tests for parse_upload_response() function."""

    def test_raises_when_nothing_recovered(self):
        """Test that an empty result is a malformed response."""
        with pytest.raises(MalformedResponse):
            parse_upload_response({"ok": True}, [])

    def test_pads_when_shape_unknown(self):
        """Test that an unknown shape still yields one entry per file."""
        items = parse_upload_response({"ok": True}, FILES)

        assert [u.filename for u in items] == FILES

    def test_invalid_entry_is_malformed(self):
        """Test that an entry failing validation is a malformed response."""
        with pytest.raises(MalformedResponse):
            parse_upload_response([{"id": "1", "filename": "A.jpg", "previewUrl": 7}], ["A.jpg"])
