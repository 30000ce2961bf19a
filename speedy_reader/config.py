"""Configuration loading and subscription list import/export."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from xml.etree import ElementTree as ET

from .models import FeedConfig

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "speedy-reader.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class DatabaseConfig:
    connection_string: Optional[str] = None


@dataclass
class SummaryConfig:
    model: str = "gemini-flash-latest"
    max_article_length: int = 10000
    prompt: Optional[str] = None


@dataclass
class BookmarkConfig:
    collection: Optional[str] = "News Links"
    tags: List[str] = field(default_factory=lambda: ["rss"])


@dataclass
class ReaderConfig:
    dwell_seconds: float = 2.0
    retention_days: int = 7
    concurrency: int = 5
    job_workers: int = 4
    refresh_interval_minutes: int = 30


@dataclass
class ContentConfig:
    extractor: str = "trafilatura"
    cookies: bool = False
    firefox_dir: Optional[str] = None
    min_length: int = 200


@dataclass
class AppConfig:
    feeds_file: Optional[str] = None
    env_file: Optional[str] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    bookmarks: BookmarkConfig = field(default_factory=BookmarkConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)
    content: ContentConfig = field(default_factory=ContentConfig)


def parse_feeds_config(path: str) -> List[FeedConfig]:
    """Parse an OPML subscription list and return feed definitions."""
    logger.info("Loading feed subscriptions from %s", path)
    tree = ET.parse(path)
    root = tree.getroot()
    body = root.find("body")
    feeds: List[FeedConfig] = []

    def walk(outline: ET.Element, current_category: Optional[str]) -> None:
        title = outline.attrib.get("title") or outline.attrib.get("text")
        feed_url = outline.attrib.get("xmlUrl")
        children = list(outline.findall("outline"))

        if feed_url:
            feeds.append(
                FeedConfig(
                    title=title or feed_url,
                    url=feed_url,
                    category=current_category,
                )
            )
            logger.debug("Registered feed '%s' (category='%s')", feed_url, current_category)
            return

        next_category = title if title else current_category
        for child in children:
            walk(child, next_category)

    if body is None:
        raise ValueError("OPML document is missing the <body> section.")

    for outline in body.findall("outline"):
        walk(outline, None)

    logger.info("Loaded %d feed endpoints from %s", len(feeds), path)
    return feeds


def export_feeds_config(
    feeds: Iterable, path: str, title: str = "speedy-reader subscriptions"
) -> int:
    """Write feeds (anything with ``url`` and ``title``) as OPML 2.0."""
    root = ET.Element("opml", version="2.0")
    head = ET.SubElement(root, "head")
    ET.SubElement(head, "title").text = title
    body = ET.SubElement(root, "body")

    count = 0
    for feed in feeds:
        ET.SubElement(
            body,
            "outline",
            type="rss",
            text=feed.title or feed.url,
            title=feed.title or feed.url,
            xmlUrl=feed.url,
        )
        count += 1

    location = Path(path)
    if location.parent and not location.parent.exists():
        location.parent.mkdir(parents=True, exist_ok=True)
    ET.indent(root)
    ET.ElementTree(root).write(location, encoding="utf-8", xml_declaration=True)
    logger.info("Exported %d feeds to %s", count, location)
    return count


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path).expanduser()
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


def parse_env_config(path: str) -> Dict[str, str]:
    """Parse environment variables from XML."""
    env_vars = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    try:
        tree = ET.parse(path)
        root = tree.getroot()
        for var in root.findall("variable"):
            name = var.attrib.get("name")
            value = var.text
            if name and value:
                env_vars[name] = value.strip()
    except Exception as exc:
        logger.warning("Failed to load environment config: %s", exc)
        raise

    return env_vars


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    tree = ET.parse(config_path)
    root = tree.getroot()
    config = AppConfig()

    feeds_text = root.findtext("feeds")
    if feeds_text and feeds_text.strip():
        config.feeds_file = _resolve_path(config_path, feeds_text.strip())

    env_text = root.findtext("env")
    if env_text and env_text.strip():
        config.env_file = _resolve_path(config_path, env_text.strip())

    # Database
    db_node = root.find("database")
    connection_string = db_node.findtext("connection-string") if db_node is not None else None
    if connection_string and connection_string.strip():
        config.database.connection_string = connection_string.strip()
    else:
        db_path = config_path.parent / DEFAULT_DB_NAME
        config.database.connection_string = f"sqlite:///{db_path}"

    # Logging
    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO")
        log_file = log_node.findtext("file")
        if log_file:
            config.logging.file = _resolve_path(config_path, log_file)

    # Summaries
    summary_node = root.find("summary")
    if summary_node is not None:
        config.summary.model = summary_node.findtext("model", config.summary.model)
        config.summary.max_article_length = int(
            summary_node.findtext("max-article-length", "10000")
        )
        prompt_node = summary_node.find("prompt")
        if prompt_node is not None:
            prompt_file = prompt_node.attrib.get("file")
            if not prompt_file:
                raise ValueError("Prompt element must have a 'file' attribute.")
            full_prompt_path = _resolve_path(config_path, prompt_file)
            try:
                config.summary.prompt = (
                    Path(full_prompt_path).read_text(encoding="utf-8").strip()
                )
            except FileNotFoundError:
                raise ValueError(f"Prompt file not found: {full_prompt_path}")

    # Bookmarks
    bookmarks_node = root.find("bookmarks")
    if bookmarks_node is not None:
        collection = bookmarks_node.findtext("collection")
        if collection is not None:
            config.bookmarks.collection = collection.strip() or None
        tags_node = bookmarks_node.find("tags")
        if tags_node is not None:
            config.bookmarks.tags = [
                tag.text.strip() for tag in tags_node.findall("tag") if tag.text
            ]

    # Reader behaviour
    reader_node = root.find("reader")
    if reader_node is not None:
        reader = config.reader
        reader.dwell_seconds = float(reader_node.findtext("dwell-seconds", "2.0"))
        reader.retention_days = int(reader_node.findtext("retention-days", "7"))
        reader.concurrency = int(reader_node.findtext("concurrency", "5"))
        reader.job_workers = int(reader_node.findtext("job-workers", "4"))
        reader.refresh_interval_minutes = int(
            reader_node.findtext("refresh-interval-minutes", "30")
        )
        if reader.dwell_seconds < 0:
            raise ValueError("dwell-seconds must not be negative.")
        if reader.retention_days <= 0:
            raise ValueError("retention-days must be positive.")
        if reader.concurrency <= 0 or reader.job_workers <= 0:
            raise ValueError("concurrency and job-workers must be positive.")

    # Content extraction
    content_node = root.find("content")
    if content_node is not None:
        content = config.content
        content.extractor = content_node.findtext("extractor", "trafilatura")
        if content.extractor not in ("trafilatura", "newspaper"):
            raise ValueError(f"Unsupported extractor: {content.extractor}")
        content.min_length = int(content_node.findtext("min-length", "200"))
        cookies_node = content_node.find("cookies")
        if cookies_node is not None:
            content.cookies = _flag(cookies_node.attrib.get("enabled"), default=True)
            firefox_dir = cookies_node.attrib.get("firefox-dir")
            if firefox_dir:
                content.firefox_dir = _resolve_path(config_path, firefox_dir)

    return config
