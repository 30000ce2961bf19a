"""Integration with Gemini for article summaries."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from bs4 import BeautifulSoup
from google import genai
from google.genai import errors, types

from .articles import truncate_text
from .errors import CollaboratorError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-flash-latest"
DEFAULT_MAX_CHARS = 10000
DEFAULT_PROMPT = """You summarize news articles for a busy reader.
Reply with 3 to 6 short bullet points, one per line, each starting with "- ".
Cover the key facts, the main argument and any important conclusion.
Use plain text only."""

_BULLET_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


class Summarizer(Protocol):
    model: str

    def summarize(self, title: str, text: str) -> str:
        """Return bullet-point text or raise CollaboratorError."""


def sanitize_html(text: Optional[str]) -> str:
    """Remove HTML tags from text."""
    if not text:
        return ""
    return BeautifulSoup(text, "html.parser").get_text()


def to_bullets(text: str) -> str:
    """Normalise model output to one ``- `` bullet per non-empty line."""
    bullets = []
    for line in text.splitlines():
        line = _BULLET_PREFIX.sub("", line).strip()
        if line:
            bullets.append(f"- {line}")
    return "\n".join(bullets)


def build_summary_input(title: str, text: str, max_chars: int) -> str:
    """Prepare the user message for one article."""
    body = truncate_text(text, limit=max_chars)
    return f"Please summarize the following article:\n\nTitle: {title}\n\nContent:\n{body}"


def _kind_for_status(code: Optional[int]) -> str:
    if code in (401, 403):
        return "auth"
    if code == 429:
        return "rate-limit"
    return "api"


@dataclass
class GeminiSummarizer:
    """Summarizer backed by the google-genai client."""

    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    system_prompt: str = DEFAULT_PROMPT
    max_chars: int = DEFAULT_MAX_CHARS
    _client: Any = field(default=None, repr=False)

    def _get_client(self):
        if self._client is None:
            api_key = (
                self.api_key
                or os.environ.get("GOOGLE_API_KEY")
                or os.environ.get("GEMINI_API_KEY")
            )
            if not api_key:
                raise CollaboratorError("auth", "No Gemini API key configured.")
            self._client = genai.Client(api_key=api_key)
        return self._client

    def summarize(self, title: str, text: str) -> str:
        if not text.strip():
            raise CollaboratorError("extraction", "No article text to summarize.")

        client = self._get_client()
        input_text = build_summary_input(title, text, self.max_chars)
        logger.debug("Gemini request payload: %s", input_text)

        contents = [
            types.Content(role="user", parts=[types.Part.from_text(text=input_text)]),
        ]
        config = types.GenerateContentConfig(system_instruction=self.system_prompt)

        response_text = ""
        try:
            # Accumulate the stream into the full reply.
            for chunk in client.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=config,
            ):
                if chunk.text:
                    response_text += chunk.text
        except errors.APIError as exc:
            raise CollaboratorError(
                _kind_for_status(exc.code), exc.message or str(exc), status=exc.code
            ) from exc
        except Exception as exc:  # noqa: BLE001 - transport errors vary by backend
            raise CollaboratorError("network", str(exc)) from exc

        logger.debug("Gemini response text: %s", response_text)
        summary = to_bullets(sanitize_html(response_text))
        if not summary:
            raise CollaboratorError("api", "Gemini returned an empty summary.")
        return summary
