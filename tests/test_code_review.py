# tests/test_code_review.py
"""
Unit tests for the LLM code review service.
"""
import json
from unittest.mock import MagicMock

from openai import OpenAIError

from app.services.code_review import (
    REVIEW_SYSTEM_PROMPT,
    build_review_messages,
    get_code_review,
)


def mock_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create.side_effect = error
    else:
        message = MagicMock()
        message.content = content
        choice = MagicMock()
        choice.message = message
        client.chat.completions.create.return_value = MagicMock(choices=[choice])
    return client


class TestBuildReviewMessages:
    """Test prompt construction."""

    def test_messages(self):
        messages = build_review_messages("print(1)", "python")
        assert messages[0] == {"role": "system", "content": REVIEW_SYSTEM_PROMPT}
        assert messages[1]["role"] == "user"
        assert "Language: python" in messages[1]["content"]
        assert "print(1)" in messages[1]["content"]


class TestGetCodeReview:
    """Test review calls against a mocked OpenAI client."""

    def test_returns_parsed_json(self):
        review = {"bugs": [], "suggestions": [], "summary": "90", "complexity": 1}
        client = mock_client(content=json.dumps(review))

        result = get_code_review("def f(): pass", "python", model="test-model", client=client)

        assert result == review
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"] == build_review_messages("def f(): pass", "python")

    def test_openai_error(self):
        client = mock_client(error=OpenAIError("invalid api key"))

        result = get_code_review("x = 1", client=client)

        assert result["error"] == "invalid api key"
        assert result["suggestion"] == "Check your OPENAI_API_KEY environment variable"

    def test_unparsable_content(self):
        client = mock_client(content="not json")

        result = get_code_review("x = 1", client=client)

        assert result["error"].startswith("Could not parse code review response")
        assert result["suggestion"] == "Retry the request"

    def test_empty_content(self):
        client = mock_client(content=None)

        result = get_code_review("x = 1", client=client)

        assert "error" in result
