# app/services/code_review.py
import json
import logging
from typing import Any, Dict, Optional

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_MODEL = "gpt-5-mini"

REVIEW_SYSTEM_PROMPT = """You are an expert code reviewer. Analyze the code thoroughly and find:
1. Bugs (logic errors, edge cases, race conditions)
2. Security vulnerabilities
3. Performance issues
4. Code quality problems
5. Best practice violations

Return a JSON object with:
- bugs: array of {severity: "high"|"medium"|"low", file, line, description, suggestion}
- suggestions: array of {category, description}
- summary: brief overview of code health (0-100 score)
- complexity: estimated cyclomatic complexity

Be specific about line numbers and provide actionable fixes."""


def build_review_messages(code: str, language: str = "auto") -> list:
    """Chat messages for one review request."""
    return [
        {"role": "system", "content": REVIEW_SYSTEM_PROMPT},
        {"role": "user", "content": f"Language: {language}\n\nCode to review:\n```\n{code}\n```"},
    ]


def get_code_review(
    code: str,
    language: str = "auto",
    api_key: Optional[str] = None,
    model: str = DEFAULT_REVIEW_MODEL,
    client: Optional[OpenAI] = None
) -> Dict[str, Any]:
    """
    Reviews a code snippet with an OpenAI chat model in JSON mode.

    Args:
        code: Source code to review
        language: Language hint, "auto" to let the model guess
        api_key: OpenAI API key (ignored when a client is passed)
        model: Chat model name
        client: Preconfigured OpenAI client

    Returns:
        The model's JSON review as a dict. Failures are returned as
        {"error", "suggestion"} rather than raised.
    """
    try:
        if client is None:
            client = OpenAI(api_key=api_key)

        response = client.chat.completions.create(
            model=model,
            messages=build_review_messages(code, language),
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        return json.loads(content)

    except OpenAIError as e:
        logger.error(f"OpenAI code review failed: {e}")
        return {
            "error": str(e),
            "suggestion": "Check your OPENAI_API_KEY environment variable",
        }
    except (ValueError, TypeError, IndexError) as e:
        logger.error(f"Could not parse code review response: {e}")
        return {
            "error": f"Could not parse code review response: {e}",
            "suggestion": "Retry the request",
        }
