"""Feed retrieval, parsing and discovery."""

from __future__ import annotations

import calendar
import logging
import re
import time
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urljoin

import feedparser
import requests
from bs4 import BeautifulSoup

from .errors import FetchError
from .models import FeedConfig, FeedEntry

logger = logging.getLogger(__name__)

USER_AGENT = "speedy-reader/1.0"
FEED_TYPES = ("application/rss+xml", "application/atom+xml")


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert feedparser UTC timestamps to timezone-aware datetimes."""
    if value is None:
        return None
    return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def _download(url: str, timeout: float) -> requests.Response:
    try:
        response = requests.get(
            url, timeout=timeout, headers={"User-Agent": USER_AGENT}
        )
    except requests.RequestException as exc:
        raise FetchError("network", url, str(exc)) from exc

    if not response.ok:
        raise FetchError(
            "http-status",
            url,
            f"HTTP {response.status_code}",
            status=response.status_code,
        )
    return response


def _entry_snippet(entry) -> Optional[str]:
    # Full content first, the summary only as a fallback.
    snippet = None
    content = getattr(entry, "content", None)
    if content:
        try:
            snippet = content[0].get("value")
        except (TypeError, KeyError, IndexError, AttributeError):
            snippet = None
    if not snippet:
        snippet = getattr(entry, "summary", None)
    if not snippet:
        summary_detail = getattr(entry, "summary_detail", None)
        if summary_detail:
            snippet = summary_detail.get("value")
    return _strip_html(snippet) if snippet else None


def parse_entries(feed_url: str, payload: bytes) -> List[FeedEntry]:
    """Parse a feed document into candidate entries."""
    parsed = feedparser.parse(payload)
    if getattr(parsed, "bozo", False) and not parsed.entries:
        raise FetchError(
            "parse", feed_url, str(getattr(parsed, "bozo_exception", "invalid feed"))
        )

    entries: List[FeedEntry] = []
    for entry in parsed.entries:
        link = getattr(entry, "link", None) or ""
        guid = getattr(entry, "id", None)
        title = (getattr(entry, "title", None) or "").strip()
        if not link and not guid and not title:
            logger.debug("Skipping entry without link, id or title in feed '%s'", feed_url)
            continue

        published = None
        for attr in ("published_parsed", "updated_parsed", "created_parsed"):
            published = getattr(entry, attr, None)
            if published:
                break

        entries.append(
            FeedEntry(
                feed_url=feed_url,
                title=title or "Untitled",
                link=link,
                guid=guid,
                published=to_datetime(published),
                summary=_entry_snippet(entry),
            )
        )
    return entries


def fetch_feed_entries(feed: FeedConfig, timeout: float = 30.0) -> List[FeedEntry]:
    """Fetch entries from a single feed, raising FetchError on failure."""
    logger.info("Fetching feed '%s' (%s)", feed.title, feed.url)
    response = _download(feed.url, timeout)
    entries = parse_entries(feed.url, response.content)
    logger.info("Collected %d entries from feed '%s'", len(entries), feed.url)
    return entries


def find_feed_link(html: str, base_url: str) -> Optional[str]:
    """Return the first advertised RSS/Atom link in an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("link"):
        link_type = (link.get("type") or "").lower()
        if link_type in FEED_TYPES and link.get("href"):
            return urljoin(base_url, link["href"])
    return None


def _feed_from_document(url: str, payload: bytes) -> Optional[FeedConfig]:
    parsed = feedparser.parse(payload)
    if not getattr(parsed, "version", "") and not parsed.entries:
        return None
    title = parsed.feed.get("title") if hasattr(parsed, "feed") else None
    return FeedConfig(title=title or "Untitled Feed", url=url)


def discover_feed(url: str, timeout: float = 30.0) -> FeedConfig:
    """Resolve a URL that is either a feed or an HTML page advertising one."""
    response = _download(url, timeout)
    final_url = response.url or url

    feed = _feed_from_document(final_url, response.content)
    if feed:
        return feed

    content_type = response.headers.get("content-type", "")
    body = response.text
    if "html" in content_type or body.lstrip().lower().startswith(("<!", "<html")):
        feed_url = find_feed_link(body, final_url)
        if feed_url:
            logger.info("Discovered feed %s from page %s", feed_url, final_url)
            feed_response = _download(feed_url, timeout)
            feed = _feed_from_document(feed_url, feed_response.content)
            if feed:
                return feed

    raise FetchError("parse", url, "Could not find RSS/Atom feed at this URL")
