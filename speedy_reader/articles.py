"""Full article retrieval and plain-text extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlparse

import requests
import trafilatura
from bs4 import BeautifulSoup
from newspaper import Article, Config
from newspaper.article import ArticleException

from .errors import CollaboratorError

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
)
DEFAULT_MIN_LENGTH = 200


class CookieSource(Protocol):
    def cookie_header(self, domain: str) -> str:
        """Return a Cookie header value for the domain, or an empty string."""


def clean_text(value: str) -> str:
    """Trim each line and drop blank ones."""
    lines = (line.strip() for line in value.splitlines())
    return "\n".join(line for line in lines if line)


def truncate_text(value: str, limit: int = 1000) -> str:
    """Limit text length to the given number of characters."""
    if len(value) <= limit:
        return value
    logger.debug("Truncating article text to %d characters", limit)
    return value[:limit]


def _extract_with_trafilatura(html: str) -> Optional[str]:
    return trafilatura.extract(html, include_comments=False)


def _extract_with_newspaper(html: str, url: str) -> Optional[str]:
    config = Config()
    config.fetch_images = False
    config.memoize_articles = False

    article = Article(url=url, config=config)
    try:
        article.download(input_html=html)
        article.parse()
    except ArticleException as exc:
        logger.warning("Failed to parse article %s: %s", url, exc)
        return None
    return (article.text or "").strip() or None


def extract_text(html: str, url: str, extractor: str = "trafilatura") -> Optional[str]:
    """Extract readable text, falling back to the page's visible text."""
    try:
        if extractor == "newspaper":
            text = _extract_with_newspaper(html, url)
        else:
            text = _extract_with_trafilatura(html)
    except Exception as exc:  # noqa: BLE001 - extractors raise arbitrary errors
        logger.warning("Unexpected error while extracting %s with %s: %s", url, extractor, exc)
        text = None

    if not text:
        logger.debug("Extractor %s found nothing for %s; using page text", extractor, url)
        text = BeautifulSoup(html, "html.parser").get_text(separator="\n")
    return text


@dataclass
class ContentFetcher:
    """Download an article page (optionally with browser cookies) and extract its text."""

    extractor: str = "trafilatura"
    timeout: float = 30.0
    min_length: int = DEFAULT_MIN_LENGTH
    cookies: Optional[CookieSource] = None

    def _headers(self, url: str) -> dict:
        headers = {"User-Agent": BROWSER_USER_AGENT}
        domain = urlparse(url).hostname
        if self.cookies is not None and domain:
            cookie_header = self.cookies.cookie_header(domain)
            if cookie_header:
                headers["Cookie"] = cookie_header
        return headers

    def download(self, url: str) -> str:
        if not urlparse(url).hostname:
            raise CollaboratorError("extraction", f"Not a fetchable URL: {url!r}")
        try:
            response = requests.get(url, headers=self._headers(url), timeout=self.timeout)
        except requests.RequestException as exc:
            raise CollaboratorError("network", str(exc)) from exc
        if not response.ok:
            raise CollaboratorError(
                "http-status",
                f"HTTP {response.status_code} for {url}",
                status=response.status_code,
            )
        return response.text

    def fetch(self, url: str) -> str:
        """Return the article body as plain text, or raise CollaboratorError."""
        logger.debug("Downloading article content from %s using %s", url, self.extractor)
        html = self.download(url)
        text = clean_text(extract_text(html, url, self.extractor) or "")
        if len(text) < self.min_length:
            raise CollaboratorError(
                "extraction",
                f"Extracted content too short ({len(text)} chars): {url}",
            )
        return text
