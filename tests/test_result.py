from salesbot.services.result import Result


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("https://bot.example.com/media/case.jpg")
        assert result.ok is True
        assert result.value == "https://bot.example.com/media/case.jpg"
        assert result.error is None

    def test_success_with_different_types(self):
        int_result = Result.success(3)
        assert int_result.value == 3

        dict_result = Result.success({"plan_id": "pro_plan"})
        assert dict_result.value == {"plan_id": "pro_plan"}


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("No checkout link for plan pro_plan", "checkout_unavailable")
        assert result.ok is False
        assert result.error == "No checkout link for plan pro_plan"
        assert result.error_code == "checkout_unavailable"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"

    def test_from_exception_keeps_type_name(self):
        result = Result.from_exception(ValueError("bad payload"), "invalid_payload")
        assert result.ok is False
        assert result.error == "ValueError: bad payload"
        assert result.error_code == "invalid_payload"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        result = Result.success("actual value")
        assert result.unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        result = Result.failure("Error", "code")
        assert result.unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        result = Result.success(None)
        assert result.unwrap_or("default") is None


class TestErrorCodes:
    def test_asset_not_found_code(self):
        result = Result.failure("Social proof asset not found: case_x", "asset_not_found")
        assert result.error_code == "asset_not_found"

    def test_signing_unavailable_code(self):
        result = Result.failure("Media signing is not configured", "signing_unavailable")
        assert result.error_code == "signing_unavailable"
