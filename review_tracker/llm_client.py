"""
LLM Client — thin wrapper around any OpenAI-compatible chat endpoint.

Key concepts:
    - System prompt: the model's role and rules (constant per task).
    - User prompt: the actual data (changes per call).
    - Temperature: low for analysis, so repeated runs agree with each other.
    - Structured output: JSON mode, parsed here so callers get a dict.

One call per request, no retry loop. Themes jobs are retried by the queue
(or tomorrow's schedule), not here.
"""

import json
import logging
from typing import Optional

from openai import OpenAI, OpenAIError

from review_tracker.config import LLM_API_KEY, LLM_BASE_URL, LLM_MODEL
from review_tracker.models import AnalyzerError

logger = logging.getLogger(__name__)


def get_client(api_key: Optional[str] = LLM_API_KEY, base_url: str = LLM_BASE_URL) -> OpenAI:
    if not api_key:
        raise AnalyzerError("LLM_API_KEY is not set")
    return OpenAI(api_key=api_key, base_url=base_url)


def call_llm(
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.2,
    model: str = LLM_MODEL,
    expect_json: bool = True,
    client: Optional[OpenAI] = None,
) -> dict | str:
    """
    Send one prompt and return the answer.

    Returns:
        Parsed JSON dict if expect_json=True, raw string otherwise.

    Raises:
        AnalyzerError: the API call failed or the reply wasn't a JSON object.
    """
    client = client or get_client()

    kwargs = {}
    if expect_json:
        kwargs["response_format"] = {"type": "json_object"}
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            **kwargs,
        )
    except OpenAIError as exc:
        raise AnalyzerError(f"LLM request failed: {exc}") from exc

    raw_text = response.choices[0].message.content or ""
    if not expect_json:
        return raw_text

    try:
        parsed = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        logger.warning("LLM did not return valid JSON: %s", raw_text[:500])
        raise AnalyzerError("LLM returned a non-JSON response") from exc
    if not isinstance(parsed, dict):
        raise AnalyzerError("LLM returned JSON that is not an object")
    return parsed
