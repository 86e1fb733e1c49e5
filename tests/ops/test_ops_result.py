"""Tests for the operation result envelope."""

from vigil.core.errors import ConfigError, RecoveryError, StateCorruptError, StateStoreError, StepTimeoutError
from vigil.ops.result import OperationResult, PagedResult, error_code


class TestErrorCode:
    def test_specific_codes(self):
        assert error_code(StateCorruptError("bad")) == "STATE_CORRUPT"
        assert error_code(StateStoreError("io")) == "STATE_STORE"
        assert error_code(ConfigError("bad")) == "CONFIG"
        assert error_code(RecoveryError("no")) == "RECOVERY"

    def test_falls_back_to_category(self):
        assert error_code(StepTimeoutError("slow")) == StepTimeoutError("slow").category.value.upper()


class TestOperationResult:
    def test_ok(self):
        result = OperationResult.ok({"a": 1}, exit_code=1)
        assert result.to_dict() == {"success": True, "data": {"a": 1}, "exit_code": 1}

    def test_from_error_keeps_context(self):
        error = StateStoreError("disk full").with_context(path="/state/status.json")
        result = OperationResult.from_error(error)
        assert result.success is False
        d = result.to_dict()
        assert d["error"]["code"] == "STATE_STORE"
        assert d["error"]["details"] == {"path": "/state/status.json"}
        assert "data" not in d

    def test_warnings_serialised(self):
        result = OperationResult.ok({}, warnings=["checkpoint 01J is corrupt"])
        assert result.warnings == ["checkpoint 01J is corrupt"]
        assert result.to_dict()["warnings"] == ["checkpoint 01J is corrupt"]

    def test_no_warnings_key_when_empty(self):
        assert "warnings" not in OperationResult.ok({}).to_dict()

    def test_fail(self):
        result = OperationResult.fail("NOT_FOUND", "missing", retryable=True)
        assert result.error.retryable is True
        assert result.to_dict()["error"]["message"] == "missing"


class TestPagedResult:
    def test_has_more(self):
        page = PagedResult.from_items([1, 2], total=5, limit=2, offset=0)
        assert page.has_more is True
        assert page.to_dict()["total"] == 5

    def test_last_page(self):
        assert PagedResult.from_items([5], total=5, limit=2, offset=4).has_more is False
