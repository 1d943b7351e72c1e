"""Tests für InputValidator und RequestSanitizer."""

from __future__ import annotations

import pytest

from rpcgate.config import SecurityConfig
from rpcgate.errors import ValidationError
from rpcgate.security.validation import (
    MAX_ARRAY_LENGTH,
    MAX_KEY_LENGTH,
    InputValidator,
    RequestSanitizer,
    expression_depth,
)


@pytest.fixture
def validator() -> InputValidator:
    return InputValidator(max_expression_length=50, max_expression_depth=3, max_resource_size=512)


class TestExpressionDepth:
    @pytest.mark.parametrize(
        ("expression", "depth"),
        [
            ("1 + 2", 0),
            ("(1 + 2)", 1),
            ("f([a, {b: (c)}])", 4),
            ("(a)(b)(c)", 1),
            ("'((((('", 0),
            ('"a \\" (((" + (x)', 1),
        ],
    )
    def test_depth(self, expression: str, depth: int) -> None:
        assert expression_depth(expression) == depth


class TestValidateExpression:
    def test_valid(self, validator: InputValidator) -> None:
        validator.validate_expression("sum([1, 2, 3])")

    def test_empty(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_expression("   ")
        assert exc_info.value.error_code == "EXPRESSION_EMPTY"

    def test_too_long(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_expression("x" * 51)
        assert exc_info.value.error_code == "EXPRESSION_TOO_LONG"

    def test_too_deep(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_expression("((((1))))")
        assert exc_info.value.error_code == "EXPRESSION_TOO_DEEP"

    def test_blacklisted_function(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_expression("EVAL(1)")
        assert exc_info.value.details["function"] == "eval"

    def test_blacklist_can_be_disabled(self) -> None:
        InputValidator(enable_blacklist=False).validate_expression("eval(1)")

    def test_sanitize_expression(self) -> None:
        assert InputValidator.sanitize_expression("  a\r\n+\0bé ") == "a\n+b"


class TestValidateResource:
    def test_valid(self, validator: InputValidator) -> None:
        validator.validate_resource({"a": [1, 2], "b": {"c": "d"}})

    def test_must_be_object(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_resource([1, 2])
        assert exc_info.value.error_code == "RESOURCE_NOT_OBJECT"

    def test_too_large(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_resource({"blob": "x" * 600})
        assert exc_info.value.error_code == "RESOURCE_TOO_LARGE"

    def test_key_too_long(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            InputValidator().validate_resource({"k" * (MAX_KEY_LENGTH + 1): 1})
        assert exc_info.value.error_code == "RESOURCE_KEY_TOO_LONG"

    def test_array_too_long(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            InputValidator().validate_resource({"items": [0] * (MAX_ARRAY_LENGTH + 1)})
        assert exc_info.value.error_code == "RESOURCE_ARRAY_TOO_LONG"

    def test_sanitize_resource(self) -> None:
        cleaned = InputValidator.sanitize_resource({"a": "x\0y\r", "b": ["\ufeffz"], "c": 3})
        assert cleaned == {"a": "xy", "b": ["z"], "c": 3}


class TestValidateArguments:
    def test_none_becomes_empty(self, validator: InputValidator) -> None:
        assert validator.validate_arguments(None) == {}

    def test_returns_sanitized_copy(self, validator: InputValidator) -> None:
        arguments = {"text": "a\0b"}
        assert validator.validate_arguments(arguments) == {"text": "ab"}
        assert arguments == {"text": "a\0b"}

    def test_expression_field_sanitized(self, validator: InputValidator) -> None:
        cleaned = validator.validate_arguments({"expression": "  name\x07.given é ", "note": " keep "})
        assert cleaned == {"expression": "name.given ", "note": " keep "}

    def test_expression_field_checked(self, validator: InputValidator) -> None:
        with pytest.raises(ValidationError):
            validator.validate_arguments({"expression": "system('ls')"})

    def test_from_config(self) -> None:
        validator = InputValidator.from_config(SecurityConfig(expression_fields=["query"]))
        with pytest.raises(ValidationError):
            validator.validate_arguments({"query": "exec(1)"})
        validator.validate_arguments({"expression": "exec(1)"})


class TestRequestSanitizer:
    def test_generic_message_without_details(self) -> None:
        msg = RequestSanitizer.sanitize_error_message(ValueError("/etc/passwd not found"))
        assert msg == RequestSanitizer.GENERIC_MESSAGE

    def test_fallback(self) -> None:
        msg = RequestSanitizer.sanitize_error_message("x", fallback="Authentication failed")
        assert msg == "Authentication failed"

    def test_exposed_details_are_scrubbed(self) -> None:
        error = "Invalid JWT\nAPI key rejected\nline3\nline4"
        msg = RequestSanitizer.sanitize_error_message(error, expose_details=True)
        assert msg == "Invalid token\nauthentication rejected\nline3"

    def test_correlation_ids_are_unique(self) -> None:
        assert RequestSanitizer.create_correlation_id() != RequestSanitizer.create_correlation_id()
