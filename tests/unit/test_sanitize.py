"""Unit tests for token scrubbing."""
import httpx
import pytest

from tuneshift.errors import ChatSendFailed
from tuneshift.utils.sanitize import response_body, sanitize_error, scrub_tokens


@pytest.mark.unit
class TestScrubTokens:
    """Test scrub_tokens and friends."""

    def test_drops_token_keys_recursively(self):
        body = {
            "access_token": "secret",
            "nested": {"refreshToken": "secret", "keep": 1},
            "items": [{"id_token": "x", "name": "a"}],
        }

        assert scrub_tokens(body) == {"nested": {"keep": 1}, "items": [{"name": "a"}]}

    def test_redacts_authorization_strings(self):
        assert scrub_tokens("Bearer abc123") == "Bearer [redacted]"
        assert scrub_tokens("header was OAuth xyz") == "header was OAuth [redacted]"

    def test_response_body_scrubs_json(self):
        response = httpx.Response(400, json={"message": "bad", "token": "leak"})

        assert response_body(response) == {"message": "bad"}

    def test_response_body_falls_back_to_text(self):
        response = httpx.Response(500, text="upstream exploded")

        assert response_body(response) == "upstream exploded"

    def test_sanitize_error_with_status_and_body(self):
        error = ChatSendFailed(403, {"message": "forbidden", "access_token": "leak"})

        text = sanitize_error(error)

        assert '"status": 403' in text
        assert "forbidden" in text
        assert "leak" not in text

    def test_sanitize_error_truncates(self):
        text = sanitize_error(RuntimeError("x" * 1000))

        assert len(text) <= 303
        assert text.endswith("...")
