"""Core building blocks shared by the context engine and the eval harness."""

from stratum.core.errors import (
    ERROR_MESSAGES,
    RECOVERY_HINTS,
    ErrorCode,
    StratumError,
    config_error,
    dataset_error,
    summary_error,
)
from stratum.core.result import Err, Ok, Result

__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_HINTS",
    "Err",
    "ErrorCode",
    "Ok",
    "Result",
    "StratumError",
    "config_error",
    "dataset_error",
    "summary_error",
]
