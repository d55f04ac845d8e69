"""
ERROR LOGGER - Engine Failure Tracking

Catches and classifies calculation engine failures at occurrence time,
tagging each with:
- Error category (derived from the engine's exception taxonomy)
- Severity
- Card / query context
- Timestamp

Errors are stored per project in {storage_dir}/{prefix}.jsonl
This enables:
1. Spotting cards that repeatedly fail to compile
2. Grouping solver failures by query
3. Pattern detection for recurring permission denials
"""
import json
import logging
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, asdict, field
from enum import Enum

from core.ontology import UserInputError

logger = logging.getLogger("ErrorLogger")


# =============================================================================
# ERROR CATEGORIES
# =============================================================================

class ErrorCategory(str, Enum):
    """Where in the engine an error happened."""
    COMPILATION = "COMPILATION"        # Card/resource could not be turned into facts
    SOLVER_PARSE = "SOLVER_PARSE"      # Malformed program text
    SOLVER_RUNTIME = "SOLVER_RUNTIME"  # Grounding/solving failed or timed out
    PROJECTION = "PROJECTION"          # Answer does not fit the query shape
    CONTRACT = "CONTRACT"              # Zero/multiple results where one was expected
    PERMISSION = "PERMISSION"          # Calculated denial
    TRANSITION = "TRANSITION"          # Illegal workflow transition
    STORE = "STORE"                    # Card store integrity
    IO = "IO"                          # File errors
    UNKNOWN = "UNKNOWN"


class ErrorSeverity(str, Enum):
    CRITICAL = "CRITICAL"    # Engine cannot answer at all
    ERROR = "ERROR"          # Internal inconsistency
    WARNING = "WARNING"      # User facing, caller can fix
    INFO = "INFO"


# =============================================================================
# ERROR RECORD
# =============================================================================

@dataclass
class ErrorRecord:
    """A single error occurrence. Append-only (JSONL)."""
    project: str
    category: str  # ErrorCategory.value
    severity: str  # ErrorSeverity.value
    error_type: str
    message: str
    status_code: int = 500

    card_key: Optional[str] = None
    query: Optional[str] = None
    action: Optional[str] = None

    timestamp: Optional[str] = None
    stack_trace: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()


# =============================================================================
# ERROR CLASSIFIER
# =============================================================================

def classify_error(error: Exception) -> ErrorCategory:
    """
    Classify an error into a category.

    Classification priority:
    1. Exception type name (including base classes)
    2. Error message patterns
    """
    type_patterns = {
        "CompilationError": ErrorCategory.COMPILATION,
        "SolverParseError": ErrorCategory.SOLVER_PARSE,
        "SolverRuntimeError": ErrorCategory.SOLVER_RUNTIME,
        "ResultProjectionError": ErrorCategory.PROJECTION,
        "QueryContractError": ErrorCategory.CONTRACT,
        "PermissionDeniedError": ErrorCategory.PERMISSION,
        "StateTransitionError": ErrorCategory.TRANSITION,
        "CardNotFoundError": ErrorCategory.STORE,
        "ProjectIntegrityError": ErrorCategory.STORE,
        "CardStoreError": ErrorCategory.STORE,
        "OSError": ErrorCategory.IO,
    }
    for cls in type(error).__mro__:
        if cls.__name__ in type_patterns:
            return type_patterns[cls.__name__]

    error_msg = str(error).lower()
    msg_patterns = {
        "parsing failed": ErrorCategory.SOLVER_PARSE,
        "grounding": ErrorCategory.SOLVER_RUNTIME,
        "transition": ErrorCategory.TRANSITION,
    }
    for pattern, category in msg_patterns.items():
        if pattern in error_msg:
            return category

    return ErrorCategory.UNKNOWN


def classify_severity(error: Exception, category: ErrorCategory) -> ErrorSeverity:
    if isinstance(error, UserInputError) or category == ErrorCategory.PERMISSION:
        return ErrorSeverity.WARNING
    if category in (ErrorCategory.SOLVER_PARSE, ErrorCategory.PROJECTION):
        return ErrorSeverity.CRITICAL
    if category == ErrorCategory.UNKNOWN:
        return ErrorSeverity.INFO
    return ErrorSeverity.ERROR


# =============================================================================
# ERROR LOGGER CLASS
# =============================================================================

class ErrorLogger:
    """
    Logs engine errors at occurrence time.

    Storage format: {storage_dir}/{project}.jsonl
    Each line is a JSON-encoded ErrorRecord.
    """

    def __init__(self, storage_dir: str, project: str):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.project = project

        # In-memory buffer for current session
        self._session_errors: List[ErrorRecord] = []

    @property
    def log_path(self) -> Path:
        return self.storage_dir / f"{self.project}.jsonl"

    def log_error(
        self,
        error: Exception,
        card_key: Optional[str] = None,
        query: Optional[str] = None,
        action: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> ErrorRecord:
        """
        Log an error at occurrence time.

        Args:
            error: The exception
            card_key: Card being processed (if applicable)
            query: Named query being run (if applicable)
            action: Guarded action (if applicable)
            extra: Additional context

        Returns:
            The ErrorRecord that was logged
        """
        category = classify_error(error)
        severity = classify_severity(error, category)

        record = ErrorRecord(
            project=self.project,
            category=category.value,
            severity=severity.value,
            error_type=type(error).__name__,
            message=str(error),
            status_code=getattr(error, "status_code", 500),
            card_key=card_key,
            query=query,
            action=action,
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            extra=extra or {}
        )

        self._session_errors.append(record)
        self._write_record(record)

        log_level = {
            ErrorSeverity.CRITICAL.value: logging.CRITICAL,
            ErrorSeverity.ERROR.value: logging.ERROR,
            ErrorSeverity.WARNING.value: logging.WARNING,
            ErrorSeverity.INFO.value: logging.INFO,
        }.get(severity.value, logging.ERROR)

        logger.log(
            log_level,
            f"[{category.value}] {record.message} "
            f"(project={self.project}, card={card_key or 'N/A'})"
        )
        return record

    def _write_record(self, record: ErrorRecord):
        with open(self.log_path, "a") as f:
            f.write(json.dumps(asdict(record)) + "\n")

    def get_session_errors(self) -> List[ErrorRecord]:
        return list(self._session_errors)

    def get_errors(self) -> List[ErrorRecord]:
        """All errors recorded for this project, across sessions."""
        if not self.log_path.exists():
            return []
        errors = []
        with open(self.log_path, "r") as f:
            for line in f:
                if line.strip():
                    errors.append(ErrorRecord(**json.loads(line)))
        return errors

    def get_error_summary(self) -> Dict[str, Any]:
        """
        Returns:
            Dict with counts by category, severity and card
        """
        errors = self.get_errors()
        summary = {
            "project": self.project,
            "total_errors": len(errors),
            "by_category": {},
            "by_severity": {},
            "by_card": {},
        }
        for err in errors:
            summary["by_category"][err.category] = summary["by_category"].get(err.category, 0) + 1
            summary["by_severity"][err.severity] = summary["by_severity"].get(err.severity, 0) + 1
            if err.card_key:
                summary["by_card"][err.card_key] = summary["by_card"].get(err.card_key, 0) + 1
        return summary
