"""LLM summarization client.

Wraps the OpenAI chat completions API behind a narrow contract:
``summarize(prompt) -> str | None``. Callers treat ``None`` (or an empty
string) as "no summary" and fall back to deterministic text, so API errors
are logged here and never propagated.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from nanami_alarm.errors import SummarizationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"
DEFAULT_TIMEOUT_SECONDS = 60.0

SUMMARY_SYSTEM_PROMPT = """
You are an Expert Summarization Engine specialized in cybersecurity, engineering,
product analysis, and technical documentation.

Summarize long or unstructured input (CVE descriptions, research posts, patch
notes, incident reports, news articles) under these rules:

1) Clarity: rewrite in clean, concise language and drop noise and metadata.
2) Fidelity: never invent facts, vulnerabilities or impacts not in the input.
3) Risk orientation for security content: affected component/product, what the
   issue allows (RCE, info leak, privilege escalation, ...), required conditions
   (authentication, remote reachability) and severity when the input states it.
4) Style: answer in Korean unless the caller asks otherwise, avoid vague
   statements, and when the caller requests JSON output return JSON only.
""".strip()

SEARCH_SYSTEM_PROMPT = """
You are a query interpreter for a CVE search system. Convert the user's natural
language question into a JSON search spec. Rules:
- Output JSON only, no code fences or commentary.
- Never invent CVE ids, versions or products that are not in the question.
- Convert vague time expressions into absolute dates (YYYY-MM-DD) using KST
  (UTC+9) and the current date given in the prompt.
- Map severity words to LOW, MEDIUM, HIGH, CRITICAL. "심각한 것만" means
  CRITICAL and HIGH. Leave severity empty when it is not mentioned.
""".strip()

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class Summarizer(Protocol):
    """Protocol for text-generation collaborators."""

    async def summarize(self, prompt: str) -> str | None:
        """Return generated text, or None when no text could be produced."""
        ...

    async def interpret_search(self, prompt: str) -> str | None:
        """Return a structured search spec for a natural language question."""
        ...


def extract_json_object(text: str | None) -> dict[str, Any]:
    """Extract the first JSON object from an LLM response.

    Tolerates code fences and leading/trailing prose.

    Raises:
        SummarizationError: If the text holds no JSON object.
    """
    if not text:
        raise SummarizationError("empty response")

    cleaned = _CODE_FENCE.sub("", text.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise SummarizationError("no JSON object in response")

    try:
        value = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError as e:
        raise SummarizationError(f"invalid JSON in response: {e}") from e

    if not isinstance(value, dict):
        raise SummarizationError("response JSON is not an object")
    return value


class OpenAISummarizer:
    """Summarizer backed by OpenAI chat completions.

    Example:
        ```python
        summarizer = OpenAISummarizer(api_key="sk-...")
        text = await summarizer.summarize("다음 글을 요약해줘 ...")
        ```
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize the summarizer.

        Args:
            api_key: OpenAI API key.
            model: Chat model name.
            timeout: Request timeout in seconds.
            client: Pre-built client (tests inject a mock here).
        """
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)

    async def _complete(self, system_prompt: str, prompt: str) -> str | None:
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIError as e:
            logger.warning("LLM request failed: %s", e)
            return None

        if not completion.choices:
            return None
        content = completion.choices[0].message.content
        if not content or not content.strip():
            return None
        return content.strip()

    async def summarize(self, prompt: str) -> str | None:
        """Generate a summary for the prompt."""
        return await self._complete(SUMMARY_SYSTEM_PROMPT, prompt)

    async def interpret_search(self, prompt: str) -> str | None:
        """Convert a search question into a JSON search spec."""
        return await self._complete(SEARCH_SYSTEM_PROMPT, prompt)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()


class NullSummarizer:
    """Summarizer used when no API key is configured.

    Always returns None so every source uses its fallback text.
    """

    async def summarize(self, prompt: str) -> str | None:
        return None

    async def interpret_search(self, prompt: str) -> str | None:
        return None

    async def close(self) -> None:
        return None
