"""Read-only article views and the command surface used by a UI or CLI."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, List, Optional, Union

from .bookmarks import parse_tags
from .config import export_feeds_config, parse_feeds_config
from .db import Store
from .feeds import discover_feed
from .jobs import JobCoordinator
from .lifecycle import LifecycleEngine
from .models import (
    Article,
    ArticleFilter,
    Feed,
    FeedConfig,
    JobKind,
    JobOutcome,
    StartResult,
)
from .reconciler import Reconciler, RefreshReport

logger = logging.getLogger(__name__)


class ArticleListing:
    """Live articles matching a filter, newest first.

    Nothing is loaded until iteration starts, and each new iteration queries
    the store again.
    """

    def __init__(self, store: Store, article_filter: ArticleFilter):
        self._store = store
        self.article_filter = article_filter

    def __iter__(self) -> Iterator[Article]:
        return self._store.iter_articles(self.article_filter)

    def __len__(self) -> int:
        return self._store.count_articles(self.article_filter)


class Reader:
    """Presentation adapter: reads from the store, forwards every write."""

    def __init__(
        self,
        store: Store,
        reconciler: Reconciler,
        lifecycle: LifecycleEngine,
        jobs: JobCoordinator,
        retention: timedelta = timedelta(days=7),
        discover: Callable[[str], FeedConfig] = discover_feed,
    ):
        self._store = store
        self.reconciler = reconciler
        self.lifecycle = lifecycle
        self.jobs = jobs
        self.retention = retention
        self._discover = discover
        self.filter = ArticleFilter.UNREAD
        self.selected: Optional[str] = None

    # Read path

    def articles(self, article_filter: Optional[ArticleFilter] = None) -> ArticleListing:
        return ArticleListing(self._store, ArticleFilter(article_filter or self.filter))

    def article(self, fingerprint: str) -> Optional[Article]:
        """The live article, or None if unknown or deleted."""
        article = self._store.get_article(fingerprint)
        if article is None or article.is_deleted:
            return None
        return article

    def feeds(self) -> List[Feed]:
        return self._store.list_feeds()

    def cycle_filter(self) -> ArticleFilter:
        self.filter = self.filter.cycle()
        self.clear_selection()
        return self.filter

    # Selection drives the auto-read timer

    def select(self, fingerprint: str) -> Optional[Article]:
        if self.selected and self.selected != fingerprint:
            self.lifecycle.view_exit(self.selected)
        article = self.article(fingerprint)
        if article is None:
            self.selected = None
            return None
        self.selected = fingerprint
        self.lifecycle.view_enter(fingerprint)
        return article

    def clear_selection(self) -> None:
        if self.selected:
            self.lifecycle.view_exit(self.selected)
        self.selected = None

    # Lifecycle commands

    def mark_read(self, fingerprint: str) -> bool:
        return self.lifecycle.mark_read(fingerprint)

    def mark_unread(self, fingerprint: str) -> bool:
        return self.lifecycle.mark_unread(fingerprint)

    def toggle_read(self, fingerprint: str) -> bool:
        article = self.article(fingerprint)
        if article is None:
            return False
        if article.is_read:
            return self.lifecycle.mark_unread(fingerprint)
        return self.lifecycle.mark_read(fingerprint)

    def toggle_starred(self, fingerprint: str) -> Optional[bool]:
        return self.lifecycle.toggle_starred(fingerprint)

    def delete(self, fingerprint: str) -> bool:
        if self.selected == fingerprint:
            self.selected = None
        return self.lifecycle.delete(fingerprint)

    def purge(self, now: Optional[datetime] = None) -> int:
        return self.lifecycle.purge_expired(now, self.retention)

    # Background jobs

    def fetch_content(self, fingerprint: str) -> StartResult:
        return self.jobs.start(fingerprint, JobKind.CONTENT_FETCH)

    def summarize(self, fingerprint: str, regenerate: bool = False) -> StartResult:
        return self.jobs.start(fingerprint, JobKind.SUMMARIZE, regenerate=regenerate)

    def bookmark(
        self, fingerprint: str, tags: Union[str, Iterable[str], None] = None
    ) -> StartResult:
        if isinstance(tags, str):
            tags = parse_tags(tags)
        options = {"tags": list(tags)} if tags else {}
        return self.jobs.start(fingerprint, JobKind.BOOKMARK, **options)

    def poll(self) -> List[JobOutcome]:
        return self.jobs.poll_outcomes()

    # Feeds

    def add_feed(self, url: str, title: Optional[str] = None, discover: bool = True) -> Feed:
        if discover and not title:
            found = self._discover(url)
            url, title = found.url, found.title
        return self.reconciler.add_feed(url, title)

    def refresh(self, feeds: Optional[Iterable] = None) -> RefreshReport:
        return self.reconciler.refresh(feeds)

    def import_feeds(self, path: str) -> int:
        return len(self.reconciler.subscribe(parse_feeds_config(path)))

    def export_feeds(self, path: str) -> int:
        return export_feeds_config(self.feeds(), path)

    def close(self) -> None:
        self.clear_selection()
        self.lifecycle.shutdown()
        self.jobs.shutdown(wait=True)
