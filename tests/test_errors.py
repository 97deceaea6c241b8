"""Tests for the structured error type and result values."""

from stratum.core.errors import ERROR_MESSAGES, RECOVERY_HINTS, ErrorCode, StratumError, dataset_error
from stratum.core.result import Err, Ok


class TestStratumError:
    def test_message_and_id(self) -> None:
        err = StratumError(ErrorCode.DATASET_EMPTY, context={"path": "cases.jsonl"})

        assert str(err) == "[ST-4005] Dataset cases.jsonl contains no cases."
        assert err.category == "dataset"
        assert not err.is_recoverable

    def test_missing_context_keeps_template(self) -> None:
        err = StratumError(ErrorCode.DATASET_NOT_FOUND)
        assert err.message == "Dataset not found: {path}"

    def test_recovery_hints_are_formatted(self) -> None:
        err = StratumError(ErrorCode.PROVIDER_AUTH_MISSING, context={"provider": "anthropic", "var": "ANTHROPIC_API_KEY"})
        assert err.recovery_hints == ["Set the API key environment variable (ANTHROPIC_API_KEY)"]

    def test_to_dict(self) -> None:
        err = dataset_error(ErrorCode.DATASET_PARSE_ERROR, path="x.jsonl", line=3, detail="Expecting value")

        data = err.to_dict()

        assert data["error_id"] == "ST-4002"
        assert data["message"] == "Invalid JSON in x.jsonl at line 3: Expecting value"
        assert data["context"]["line"] == 3


class TestResult:
    def test_unwrap_or(self) -> None:
        assert Ok(5).unwrap_or(0) == 5
        assert Err("missing").unwrap_or(0) == 0
        assert Ok(1).is_ok and not Err("x").is_ok


class TestErrorCodes:
    def test_every_code_has_a_message_and_category(self) -> None:
        for code in ErrorCode:
            assert code in ERROR_MESSAGES
            assert code.category != "unknown"

    def test_hints_only_for_known_codes(self) -> None:
        assert set(RECOVERY_HINTS) <= set(ErrorCode)
