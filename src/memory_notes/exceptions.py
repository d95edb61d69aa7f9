"""Exceptions raised by the learning-notes store.

Every error carries an ``ErrorCode`` and a ``details`` mapping so callers
(a tool layer, the CLI) can report failures without parsing messages.
"""
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Stable numeric identifiers, grouped by failure area."""

    # Notes (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_FIELD_REQUIRED = 1003
    INVALID_CONFIDENCE = 1004

    # Storage (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    INDEX_OUT_OF_SYNC = 4005

    # Search (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration (6xxx)
    CONFIG_INVALID = 6001


def _clip(value: Any, limit: int) -> str:
    return str(value)[:limit]


def _details(**items: Any) -> Dict[str, Any]:
    """Drop empty entries so ``details`` only holds what is known."""
    return {key: value for key, value in items.items() if value not in (None, "")}


class MemoryNotesError(Exception):
    """Base class for every error the store raises.

    Attributes:
        message: Human-readable description.
        code: ``ErrorCode`` for programmatic handling.
        details: Extra context (field names, ids, truncated values).
    """

    default_code = ErrorCode.NOTE_VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form used by the CLI's error output."""
        return {
            "error": type(self).__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        text = f"[{self.code.name}] {self.message}"
        if not self.details:
            return text
        context = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{text} ({context})"


class NoteNotFoundError(MemoryNotesError):
    """A caller asked for a note that does not exist.

    Store reads return None instead; the service and CLI raise this where
    a missing note is an error.
    """

    default_code = ErrorCode.NOTE_NOT_FOUND

    def __init__(self, note_id: int, message: Optional[str] = None):
        self.note_id = note_id
        super().__init__(
            message or f"Learning note {note_id} not found",
            details={"note_id": note_id},
        )


class NoteValidationError(MemoryNotesError):
    """Input was rejected before anything was written."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOTE_VALIDATION_FAILED,
    ):
        self.field = field
        self.value = value
        super().__init__(
            message,
            code=code,
            details=_details(
                field=field,
                value=None if value is None else _clip(value, 100),
            ),
        )


class StorageError(MemoryNotesError):
    """A database operation failed; its transaction was rolled back."""

    default_code = ErrorCode.STORAGE_READ_FAILED

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        original_error: Optional[Exception] = None,
    ):
        self.operation = operation
        self.path = path
        self.original_error = original_error
        super().__init__(
            message,
            code=code,
            details=_details(
                operation=operation,
                # only the file name, never the full location
                path_hint=PurePath(path).name if path else None,
                original_error=_clip(original_error, 200) if original_error else None,
            ),
        )


class SearchError(MemoryNotesError):
    """A full-text query was rejected or could not be run."""

    default_code = ErrorCode.SEARCH_FAILED

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ):
        self.query = query
        super().__init__(
            message, code=code, details=_details(query=_clip(query, 100) if query else None)
        )


class ConfigurationError(MemoryNotesError):
    """A configuration value is unusable."""

    default_code = ErrorCode.CONFIG_INVALID

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ):
        self.config_key = config_key
        super().__init__(message, code=code, details=_details(config_key=config_key))
