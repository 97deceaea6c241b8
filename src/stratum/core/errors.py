"""Stratum Error System.

Provides structured error handling with:
- Numeric error codes for programmatic handling
- User-friendly messages
- Recovery hints for the CLI
- Context for debugging

Only offline tooling (dataset loading, dataset building, gating) raises these
errors. The runtime engine degrades instead of raising.
"""


from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Numeric error codes organized by category.

    Format: XYYY where X = category, YYY = specific error

    Categories:
        1xxx - Archive storage errors
        3xxx - Provider (embedding / LLM) errors
        4xxx - Dataset errors
        5xxx - Configuration errors
        6xxx - Evaluation / gate errors
    """

    # 1xxx - Storage
    STORAGE_WRITE_FAILED = 1001

    # 3xxx - Providers
    PROVIDER_AUTH_MISSING = 3001
    PROVIDER_UNAVAILABLE = 3002

    # 4xxx - Dataset
    DATASET_NOT_FOUND = 4001
    DATASET_PARSE_ERROR = 4002
    DATASET_INVALID_CASE = 4003
    DATASET_DUPLICATE_ID = 4004
    DATASET_EMPTY = 4005
    DATASET_NO_CANDIDATES = 4006
    DATASET_INVALID_SOURCE = 4007

    # 5xxx - Configuration
    CONFIG_INVALID = 5001

    # 6xxx - Evaluation
    EVAL_SUMMARY_NOT_FOUND = 6001
    EVAL_SUMMARY_INVALID = 6002

    @property
    def category(self) -> str:
        """Get the error category name."""
        prefix = self.value // 1000
        return {
            1: "storage",
            3: "provider",
            4: "dataset",
            5: "config",
            6: "eval",
        }.get(prefix, "unknown")

    @property
    def is_recoverable(self) -> bool:
        """Whether this error type is typically recoverable."""
        non_recoverable = {
            ErrorCode.CONFIG_INVALID,
            ErrorCode.DATASET_DUPLICATE_ID,
            ErrorCode.DATASET_EMPTY,
            ErrorCode.DATASET_NO_CANDIDATES,
        }
        return self not in non_recoverable


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.STORAGE_WRITE_FAILED: "Failed to write {path}: {detail}",

    ErrorCode.PROVIDER_AUTH_MISSING: "No API key configured for {provider}.",
    ErrorCode.PROVIDER_UNAVAILABLE: "Provider '{provider}' is unavailable: {detail}",

    ErrorCode.DATASET_NOT_FOUND: "Dataset not found: {path}",
    ErrorCode.DATASET_PARSE_ERROR: "Invalid JSON in {path} at line {line}: {detail}",
    ErrorCode.DATASET_INVALID_CASE: "Invalid case in {path} at line {line}: {detail}",
    ErrorCode.DATASET_DUPLICATE_ID: "Duplicate case id '{case_id}' in {path} at line {line}.",
    ErrorCode.DATASET_EMPTY: "Dataset {path} contains no cases.",
    ErrorCode.DATASET_NO_CANDIDATES: "No candidate cases could be built: {detail}",
    ErrorCode.DATASET_INVALID_SOURCE: "Invalid generator source {path}: {detail}",

    ErrorCode.CONFIG_INVALID: "Invalid configuration for '{key}': {detail}",

    ErrorCode.EVAL_SUMMARY_NOT_FOUND: "Summary file not found: {path}",
    ErrorCode.EVAL_SUMMARY_INVALID: "Summary file {path} is not valid: {detail}",
}


RECOVERY_HINTS: dict[ErrorCode, list[str]] = {
    ErrorCode.DATASET_NOT_FOUND: [
        "Check the --dataset path",
        "Build a dataset first with 'stratum eval build-dataset'",
    ],
    ErrorCode.DATASET_NO_CANDIDATES: [
        "Lower --min-history or --min-window",
        "Check that <root>/<platform>-data/messages.json exists",
    ],
    ErrorCode.DATASET_INVALID_SOURCE: [
        "Use a built-in pair set: fuzzy or mixed",
        "Each pair needs main, temp, main_reference, messages and five queries",
    ],
    ErrorCode.EVAL_SUMMARY_NOT_FOUND: [
        "Run 'stratum eval run' first",
        "Pass --summary explicitly",
    ],
    ErrorCode.PROVIDER_AUTH_MISSING: [
        "Set the API key environment variable ({var})",
    ],
}


class StratumError(Exception):
    """Base error type for all Stratum errors.

    Example:
        >>> err = StratumError(
        ...     code=ErrorCode.DATASET_EMPTY,
        ...     context={"path": "cases.jsonl"},
        ... )
        >>> print(err)
        [ST-4005] Dataset cases.jsonl contains no cases.
    """

    def __init__(
        self,
        code: ErrorCode,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.context = context or {}
        self.cause = cause
        super().__init__(str(self))

    @property
    def message(self) -> str:
        """Get the formatted user-friendly message."""
        template = ERROR_MESSAGES.get(self.code, "An error occurred: {detail}")
        try:
            return template.format(**self.context)
        except KeyError:
            return template

    @property
    def recovery_hints(self) -> list[str]:
        """Get recovery suggestions for this error."""
        formatted = []
        for hint in RECOVERY_HINTS.get(self.code, []):
            try:
                formatted.append(hint.format(**self.context))
            except KeyError:
                formatted.append(hint)
        return formatted

    @property
    def is_recoverable(self) -> bool:
        return self.code.is_recoverable

    @property
    def category(self) -> str:
        return self.code.category

    @property
    def error_id(self) -> str:
        """Get the error ID string (e.g., 'ST-4005')."""
        return f"ST-{self.code.value}"

    def __str__(self) -> str:
        return f"[{self.error_id}] {self.message}"

    def __repr__(self) -> str:
        return f"StratumError(code={self.code!r}, context={self.context!r})"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict for logging and JSON output."""
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "category": self.category,
            "message": self.message,
            "recoverable": self.is_recoverable,
            "recovery_hints": self.recovery_hints,
            "context": self.context,
        }


# Convenience factory functions

def dataset_error(
    code: ErrorCode,
    path: str = "",
    line: int | None = None,
    detail: str = "",
    cause: Exception | None = None,
    **extra: Any,
) -> StratumError:
    """Create a dataset-related error."""
    return StratumError(
        code=code,
        context={"path": path, "line": line, "detail": detail, **extra},
        cause=cause,
    )


def config_error(
    code: ErrorCode,
    key: str = "",
    detail: str = "",
) -> StratumError:
    """Create a configuration error."""
    return StratumError(
        code=code,
        context={"key": key, "detail": detail},
    )


def summary_error(
    code: ErrorCode,
    path: str,
    detail: str = "",
    cause: Exception | None = None,
) -> StratumError:
    """Create an evaluation summary error."""
    return StratumError(
        code=code,
        context={"path": path, "detail": detail},
        cause=cause,
    )
