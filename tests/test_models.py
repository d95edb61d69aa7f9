"""Tests for the pydantic note models and their normalization rules."""
import datetime
from datetime import timezone

import pytest

from memory_notes.exceptions import ErrorCode, NoteValidationError
from memory_notes.models.schema import (
    DEFAULT_LINK_LABEL,
    Confidence,
    LearningNoteInput,
    NoteLink,
    NoteUpdate,
    clean_links,
    clean_tags,
    parse_confidence,
    utc_timestamp,
)


class TestTimestamps:
    """Tests for the stored timestamp format."""

    def test_fixed_width_utc_format(self):
        dt = datetime.datetime(2024, 5, 1, 12, 30, 45, 123, tzinfo=timezone.utc)
        assert utc_timestamp(dt) == "2024-05-01T12:30:45.000123Z"

    def test_naive_datetime_treated_as_utc(self):
        dt = datetime.datetime(2024, 5, 1, 12, 0, 0)
        assert utc_timestamp(dt) == "2024-05-01T12:00:00.000000Z"

    def test_other_timezone_converted(self):
        tz = timezone(datetime.timedelta(hours=2))
        dt = datetime.datetime(2024, 5, 1, 14, 0, 0, tzinfo=tz)
        assert utc_timestamp(dt) == "2024-05-01T12:00:00.000000Z"


class TestTagsAndLinks:
    """Tests for tag and link cleaning."""

    def test_clean_tags_trims_and_dedupes(self):
        """Duplicates collapse, blanks vanish, first-seen order is kept."""
        assert clean_tags([" bug", "bug", "", "  ", "important", "important "]) == [
            "bug",
            "important",
        ]

    def test_clean_tags_none(self):
        assert clean_tags(None) == []

    def test_link_from_tuple_mapping_and_model(self):
        assert NoteLink.coerce(("PR", " https://x/1 ")) == NoteLink(label="PR", url="https://x/1")
        assert NoteLink.coerce({"url": "https://x/2"}).label == DEFAULT_LINK_LABEL
        link = NoteLink(label="Docs", url="https://x/3")
        assert NoteLink.coerce(link) == link

    def test_blank_label_defaults(self):
        assert NoteLink.coerce(("   ", "https://x")).label == "Link"

    def test_links_without_url_dropped(self):
        links = clean_links([("a", ""), ("b", "   "), ("c", "https://ok")])
        assert links == [NoteLink(label="c", url="https://ok")]


class TestConfidence:
    """Tests for confidence parsing."""

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_missing_defaults_to_likely(self, value):
        assert parse_confidence(value) is Confidence.LIKELY

    def test_case_insensitive(self):
        assert parse_confidence(" Confirmed ") is Confidence.CONFIRMED

    def test_unknown_value_rejected(self):
        with pytest.raises(NoteValidationError) as exc_info:
            parse_confidence("certain")
        assert exc_info.value.code == ErrorCode.INVALID_CONFIDENCE
        assert exc_info.value.field == "confidence"


class TestLearningNoteInput:
    """Tests for create-payload normalization."""

    def _input(self, **overrides):
        fields = {"repo_key": "r", "title": "t", "problem": "p", "solution": "s"}
        fields.update(overrides)
        return LearningNoteInput(**fields)

    @pytest.mark.parametrize("field", ["repo_key", "title", "problem", "solution"])
    @pytest.mark.parametrize("value", [None, "", "   \t"])
    def test_required_fields(self, field, value):
        """Each required field rejects missing and whitespace-only values."""
        with pytest.raises(NoteValidationError) as exc_info:
            self._input(**{field: value}).normalized()
        assert exc_info.value.code == ErrorCode.NOTE_FIELD_REQUIRED
        assert exc_info.value.field == field

    def test_normalized_trims_and_defaults(self):
        clean = self._input(
            title="  Padded  ",
            root_cause="   ",
            applies_when=" when busy ",
            tags=None,
            links=None,
        ).normalized()

        assert clean.title == "Padded"
        assert clean.root_cause is None
        assert clean.applies_when == "when busy"
        assert clean.confidence is Confidence.LIKELY
        assert clean.tags == []
        assert clean.links == []


class TestNoteUpdate:
    """Tests for partial update payloads."""

    def test_only_given_fields_change(self):
        assert NoteUpdate(title=" New ").field_changes() == {"title": "New"}

    def test_empty_string_clears_optional(self):
        assert NoteUpdate(root_cause="").field_changes() == {"root_cause": None}

    def test_blank_required_rejected(self):
        with pytest.raises(NoteValidationError):
            NoteUpdate(solution="  ").field_changes()

    def test_confidence_stored_as_value(self):
        assert NoteUpdate(confidence="HYPOTHESIS").field_changes() == {
            "confidence": "hypothesis"
        }

    def test_is_empty(self):
        assert NoteUpdate().is_empty()
        assert not NoteUpdate(tags=[]).is_empty()
