"""Merge freshly fetched feed entries into the store."""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .db import Store, utcnow
from .errors import FetchError, ReaderError
from .feeds import fetch_feed_entries
from .fingerprint import Fingerprinter, default_fingerprint
from .models import ArticleCandidate, Feed, FeedConfig, FeedEntry, UpsertOutcome

logger = logging.getLogger(__name__)

FeedFetch = Callable[[FeedConfig], List[FeedEntry]]


@dataclass
class FeedReport:
    """Per-feed counts for one refresh cycle."""

    feed_url: str
    inserted: int = 0
    updated: int = 0
    suppressed: int = 0
    expired: int = 0
    failed: int = 0
    error: Optional[str] = None

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.INSERTED:
            self.inserted += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        elif outcome == UpsertOutcome.EXPIRED:
            self.expired += 1
        else:
            self.suppressed += 1


@dataclass
class RefreshReport:
    feeds: List[FeedReport] = field(default_factory=list)

    def for_feed(self, url: str) -> Optional[FeedReport]:
        for report in self.feeds:
            if report.feed_url == url:
                return report
        return None

    @property
    def inserted(self) -> int:
        return sum(report.inserted for report in self.feeds)

    @property
    def updated(self) -> int:
        return sum(report.updated for report in self.feeds)

    @property
    def suppressed(self) -> int:
        return sum(report.suppressed for report in self.feeds)

    @property
    def failed_feeds(self) -> List[FeedReport]:
        return [report for report in self.feeds if report.error]


def to_candidate(entry: FeedEntry, fingerprint: Fingerprinter) -> ArticleCandidate:
    return ArticleCandidate(
        fingerprint=fingerprint(entry),
        feed_url=entry.feed_url,
        title=entry.title,
        link=entry.link,
        guid=entry.guid,
        published=entry.published,
        snippet=entry.summary,
    )


class Reconciler:
    """Refreshes feeds and applies their entries with tombstone suppression."""

    def __init__(
        self,
        store: Store,
        fetch: FeedFetch = fetch_feed_entries,
        fingerprint: Fingerprinter = default_fingerprint,
        concurrency: int = 5,
        horizon: Optional[timedelta] = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.fetch = fetch
        self.fingerprint = fingerprint
        self.concurrency = max(1, concurrency)
        self.horizon = horizon
        self.clock = clock

    def add_feed(self, url: str, title: Optional[str] = None) -> Feed:
        return self.store.upsert_feed(url, title)

    def subscribe(self, feeds: Iterable) -> List[Feed]:
        """Register imported subscriptions; failures are logged per feed."""
        added = []
        for feed in feeds:
            try:
                added.append(self.store.upsert_feed(feed.url, feed.title))
            except ReaderError as exc:
                logger.warning("Failed to add feed %s: %s", feed.url, exc)
        logger.info("Subscribed to %d feeds", len(added))
        return added

    def apply_entries(
        self,
        feed_url: str,
        entries: Iterable[FeedEntry],
        now: Optional[datetime] = None,
        backfill: bool = False,
    ) -> FeedReport:
        """Upsert one feed's entries; per-item store failures are counted, not raised.

        Every entry goes through the tombstone check. Unless ``backfill`` is
        set, entries the store has never seen that were published before the
        retention horizon are counted as expired instead of being stored, so
        purged items are not brought back by a later refresh.
        """
        now = now or self.clock()
        expire_before = None
        if self.horizon and not backfill:
            expire_before = now - self.horizon
        report = FeedReport(feed_url=feed_url)

        for entry in entries:
            candidate = to_candidate(entry, self.fingerprint)
            try:
                outcome = self.store.upsert_article_if_not_tombstoned(
                    candidate, now=now, expire_before=expire_before
                )
            except ReaderError as exc:
                logger.error(
                    "Failed to store entry %s from feed %s: %s",
                    candidate.fingerprint,
                    feed_url,
                    exc,
                )
                report.failed += 1
                continue
            report.count(outcome)

        return report

    def refresh_feed(self, feed: FeedConfig) -> FeedReport:
        known = self.store.get_feed(feed.url)
        # Until a fetch has succeeded once, the feed's back catalogue is stored whole.
        backfill = known is None or known.last_success_at is None
        try:
            entries = self.fetch(feed)
        except FetchError as exc:
            logger.warning("Failed to fetch feed '%s' (%s): %s", feed.title, feed.url, exc)
            self.store.record_feed_fetch(feed.url, error=str(exc))
            return FeedReport(feed_url=feed.url, error=str(exc))

        report = self.apply_entries(feed.url, entries, backfill=backfill)
        self.store.record_feed_fetch(feed.url)
        logger.info(
            "Feed %s: %d inserted, %d updated, %d suppressed, %d expired",
            feed.url,
            report.inserted,
            report.updated,
            report.suppressed,
            report.expired,
        )
        return report

    def refresh(self, feeds: Optional[Iterable] = None) -> RefreshReport:
        """Refresh the given feeds (default: every stored feed) concurrently."""
        if feeds is None:
            feeds = self.store.list_feeds()
        targets = [FeedConfig(title=feed.title, url=feed.url) for feed in feeds]
        result = RefreshReport()
        if not targets:
            logger.info("No feeds to refresh.")
            return result

        def process_feed(feed: FeedConfig) -> FeedReport:
            try:
                return self.refresh_feed(feed)
            except Exception as exc:  # noqa: BLE001 - one feed must not abort the batch
                logger.exception("Failed to process feed %s", feed.url)
                return FeedReport(feed_url=feed.url, error=str(exc))

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency
        ) as executor:
            future_to_feed = {
                executor.submit(process_feed, feed): feed for feed in targets
            }
            for future in concurrent.futures.as_completed(future_to_feed):
                result.feeds.append(future.result())

        logger.info(
            "Refreshed %d feeds: %d new, %d updated, %d suppressed, %d failed",
            len(targets),
            result.inserted,
            result.updated,
            result.suppressed,
            len(result.failed_feeds),
        )
        return result
