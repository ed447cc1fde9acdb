"""
Import error taxonomy.

Structured errors and warnings are stored on jobs and items as plain dicts;
the exception classes carry the same information across service boundaries.
"""
from typing import Any, Dict, List, Optional

ERROR_TYPES = (
    "card_not_found",
    "invalid_format",
    "parsing_error",
    "validation_error",
    "conflict_error",
    "timeout_error",
    "system_error",
)

WARNING_TYPES = (
    "card_variant",
    "missing_metadata",
    "format_assumption",
    "data_loss",
    "performance_warning",
)


def make_error(
    error_type: str,
    message: str,
    *,
    severity: str = "error",
    recoverable: bool = False,
    code: Optional[str] = None,
    line: Optional[int] = None,
    column: Optional[int] = None,
    context: Optional[str] = None,
    suggestions: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Build an ImportError record."""
    if error_type not in ERROR_TYPES:
        raise ValueError(f"Unknown import error type: {error_type}")
    record: Dict[str, Any] = {
        "type": error_type,
        "message": message,
        "severity": severity,
        "recoverable": recoverable,
    }
    if code:
        record["code"] = code
    if line is not None:
        record["line"] = line
    if column is not None:
        record["column"] = column
    if context:
        record["context"] = context
    if suggestions:
        record["suggestions"] = list(suggestions)
    return record


def make_warning(
    warning_type: str,
    message: str,
    *,
    suggestion: Optional[str] = None,
    context: Optional[str] = None,
    impact: str = "low",
) -> Dict[str, Any]:
    """Build an ImportWarning record."""
    if warning_type not in WARNING_TYPES:
        raise ValueError(f"Unknown import warning type: {warning_type}")
    record: Dict[str, Any] = {"type": warning_type, "message": message, "impact": impact}
    if suggestion:
        record["suggestion"] = suggestion
    if context:
        record["context"] = context
    return record


class ImportPipelineError(Exception):
    """Base class for failures raised inside the import pipeline."""

    error_type = "system_error"
    recoverable = False

    def __init__(self, message: str, *, recoverable: Optional[bool] = None,
                 suggestions: Optional[List[str]] = None, context: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if recoverable is not None:
            self.recoverable = recoverable
        self.suggestions = suggestions or []
        self.context = context

    def to_record(self) -> Dict[str, Any]:
        return make_error(
            self.error_type,
            self.message,
            recoverable=self.recoverable,
            suggestions=self.suggestions,
            context=self.context,
        )


class CardNotFoundError(ImportPipelineError):
    error_type = "card_not_found"
    recoverable = True


class InvalidFormatError(ImportPipelineError):
    error_type = "invalid_format"


class ParsingError(ImportPipelineError):
    error_type = "parsing_error"


class ImportValidationError(ImportPipelineError):
    error_type = "validation_error"


class ImportConflictError(ImportPipelineError):
    error_type = "conflict_error"


class ImportTimeoutError(ImportPipelineError):
    error_type = "timeout_error"
    recoverable = True


class ImportSystemError(ImportPipelineError):
    error_type = "system_error"
    recoverable = True


class ImportNotFoundError(ImportPipelineError):
    """Requested job, preview, conflict or rollback does not exist."""

    error_type = "validation_error"


class PreviewExpiredError(ImportPipelineError):
    error_type = "validation_error"


class QueueFullError(ImportPipelineError):
    error_type = "system_error"
    recoverable = True


def error_from_exception(exc: Exception) -> Dict[str, Any]:
    """Convert any exception raised by a pipeline step into an error record."""
    if isinstance(exc, ImportPipelineError):
        return exc.to_record()
    return make_error("system_error", str(exc) or exc.__class__.__name__, recoverable=True)
