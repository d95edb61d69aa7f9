"""Data models for the learning-notes store."""

import datetime
from datetime import timezone
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator

from memory_notes.exceptions import ErrorCode, NoteValidationError

DEFAULT_LINK_LABEL = "Link"

REQUIRED_FIELDS = ("repo_key", "title", "problem", "solution")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def utc_timestamp(dt_value: Optional[datetime.datetime] = None) -> str:
    """Format a datetime as the stored ISO-8601 UTC string.

    Fixed width with microseconds, so the strings sort in time order.

    Example:
        >>> utc_timestamp(datetime.datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
        '2024-05-01T12:00:00.000000Z'
    """
    dt_value = dt_value or utc_now()
    if dt_value.tzinfo is None:
        dt_value = dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def clean_optional(value: Optional[str]) -> Optional[str]:
    """Trim an optional text field, mapping blank values to None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def clean_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Trim tag names, drop empty entries and collapse duplicates.

    Order of first appearance is kept. The store's association table
    collapses duplicates on its own, this only avoids redundant statements.
    """
    cleaned: List[str] = []
    for tag in tags or []:
        name = (tag or "").strip()
        if name and name not in cleaned:
            cleaned.append(name)
    return cleaned


class Confidence(str, Enum):
    """How sure the author is that the solution is right."""

    CONFIRMED = "confirmed"
    LIKELY = "likely"
    HYPOTHESIS = "hypothesis"


def parse_confidence(value: Union[str, Confidence, None]) -> Confidence:
    """Resolve a confidence value, defaulting to ``likely``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return Confidence.LIKELY
    if isinstance(value, Confidence):
        return value
    try:
        return Confidence(value.strip().lower())
    except ValueError:
        raise NoteValidationError(
            f"confidence must be one of {[c.value for c in Confidence]}",
            field="confidence",
            value=value,
            code=ErrorCode.INVALID_CONFIDENCE,
        )


class NoteLink(BaseModel):
    """An external reference (PR, ticket, docs page) attached to a note."""

    label: str = Field(default=DEFAULT_LINK_LABEL, description="Display label")
    url: str = Field(..., description="Target URL")

    model_config = {"frozen": True}

    @classmethod
    def coerce(
        cls, value: Union["NoteLink", Tuple[Optional[str], str], Mapping[str, Any]]
    ) -> "NoteLink":
        """Build a link from a NoteLink, a ``(label, url)`` pair or a mapping.

        The label is trimmed and defaulted, the url is trimmed. The url may
        come back empty; callers drop such links.
        """
        if isinstance(value, NoteLink):
            label, url = value.label, value.url
        elif isinstance(value, Mapping):
            label, url = value.get("label"), value.get("url")
        else:
            label, url = value
        label = (label or "").strip() or DEFAULT_LINK_LABEL
        return cls(label=label, url=(url or "").strip())


LinkLike = Union[NoteLink, Tuple[Optional[str], str], Mapping[str, Any]]


def clean_links(links: Optional[Iterable[LinkLike]]) -> List[NoteLink]:
    """Normalize links and drop the ones without a URL."""
    cleaned = [NoteLink.coerce(link) for link in links or []]
    return [link for link in cleaned if link.url]


def require_text(field: str, value: Optional[str]) -> str:
    """Return the trimmed value or raise a validation error if blank."""
    cleaned = (value or "").strip()
    if not cleaned:
        raise NoteValidationError(
            f"{field} is required",
            field=field,
            code=ErrorCode.NOTE_FIELD_REQUIRED,
        )
    return cleaned


class LearningNoteInput(BaseModel):
    """Payload for creating a learning note.

    The model accepts raw caller input; ``normalized()`` applies the
    store's trimming and validation rules and raises NoteValidationError
    on the first required field that is blank.
    """

    repo_key: Optional[str] = None
    title: Optional[str] = None
    problem: Optional[str] = None
    solution: Optional[str] = None
    root_cause: Optional[str] = None
    applies_when: Optional[str] = None
    confidence: Optional[Union[Confidence, str]] = None
    tags: List[str] = Field(default_factory=list)
    links: List[Any] = Field(default_factory=list)

    @field_validator("tags", "links", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else list(v)

    def normalized(self) -> "LearningNoteInput":
        """Return a validated copy with all fields in their stored form."""
        values = {field: require_text(field, getattr(self, field)) for field in REQUIRED_FIELDS}
        return LearningNoteInput(
            **values,
            root_cause=clean_optional(self.root_cause),
            applies_when=clean_optional(self.applies_when),
            confidence=parse_confidence(self.confidence),
            tags=clean_tags(self.tags),
            links=clean_links(self.links),
        )


class NoteUpdate(BaseModel):
    """Partial update of a learning note. ``None`` means "leave unchanged".

    ``root_cause`` and ``applies_when`` can be cleared by passing an empty
    string. ``tags`` and ``links`` replace the existing sets when given.
    """

    repo_key: Optional[str] = None
    title: Optional[str] = None
    problem: Optional[str] = None
    solution: Optional[str] = None
    root_cause: Optional[str] = None
    applies_when: Optional[str] = None
    confidence: Optional[Union[Confidence, str]] = None
    tags: Optional[List[str]] = None
    links: Optional[List[Any]] = None

    def field_changes(self) -> dict:
        """Validated primary-field changes, keyed by column name."""
        changes: dict = {}
        for field in REQUIRED_FIELDS:
            value = getattr(self, field)
            if value is not None:
                changes[field] = require_text(field, value)
        for field in ("root_cause", "applies_when"):
            value = getattr(self, field)
            if value is not None:
                changes[field] = clean_optional(value)
        if self.confidence is not None:
            changes["confidence"] = parse_confidence(self.confidence).value
        return changes

    def is_empty(self) -> bool:
        return not self.field_changes() and self.tags is None and self.links is None


class LearningNote(BaseModel):
    """A stored learning note as read back from the primary table."""

    id: int
    repo_key: str
    title: str
    problem: str
    solution: str
    root_cause: Optional[str] = None
    applies_when: Optional[str] = None
    confidence: Confidence = Confidence.LIKELY
    created_at: str
    updated_at: str
    last_verified_at: Optional[str] = None

    model_config = {"from_attributes": True}


class NoteMeta(BaseModel):
    """Tags (sorted by name) and links (creation order) of a note."""

    tags: List[str] = Field(default_factory=list)
    links: List[NoteLink] = Field(default_factory=list)
