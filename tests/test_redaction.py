"""
Log Redaction Tests
-------------------
Tests for sanitizing run log payloads.
"""

import pytest

from infra.redaction import RedactionPolicy, sanitize_log_data


class TestSanitize:
    """Test sanitize_log_data."""

    def test_sensitive_keys_redacted(self):
        data = {"Authorization": "Bearer abc", "api_key": "k", "refresh_token": "t", "repo": "api"}

        result = sanitize_log_data(data)

        assert result == {
            "Authorization": "[redacted]",
            "api_key": "[redacted]",
            "refresh_token": "[redacted]",
            "repo": "api",
        }

    def test_nested_keys_redacted(self):
        result = sanitize_log_data({"auth": {"password": "hunter2", "user": "ci"}})

        assert result["auth"] == {"password": "[redacted]", "user": "ci"}

    def test_deep_values_truncated(self):
        result = sanitize_log_data({"a": {"b": {"c": {"d": {"e": 1}}}}})

        assert result["a"]["b"]["c"]["d"] == "[truncated]"

    def test_long_strings_cut(self):
        result = sanitize_log_data("x" * 1000, RedactionPolicy(max_string_length=10))

        assert result == "x" * 10

    def test_lists_sampled(self):
        assert sanitize_log_data(list(range(50))) == list(range(10))

    def test_input_not_mutated(self):
        data = {"token": "abc", "rows": [1, 2]}

        sanitize_log_data(data)

        assert data == {"token": "abc", "rows": [1, 2]}

    def test_unknown_objects_stringified(self):
        class Thing:
            def __str__(self):
                return "thing"

        assert sanitize_log_data(Thing()) == "thing"

    def test_custom_patterns(self):
        policy = RedactionPolicy(sensitive_key_patterns=[r"^email$"])

        assert sanitize_log_data({"email": "a@b.c", "token": "t"}, policy) == {
            "email": "[redacted]",
            "token": "t",
        }


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
