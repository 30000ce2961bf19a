"""Assemble the reader from configuration and drive scheduled refreshes."""

from __future__ import annotations

import logging
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from .articles import ContentFetcher
from .bookmarks import RaindropClient
from .config import AppConfig
from .cookies import FirefoxCookieStore
from .db import Store
from .jobs import JobCoordinator
from .lifecycle import LifecycleEngine
from .presentation import Reader
from .reconciler import Reconciler, RefreshReport
from .summaries import DEFAULT_PROMPT, GeminiSummarizer

logger = logging.getLogger(__name__)


def build_reader(config: AppConfig, store: Optional[Store] = None) -> Reader:
    """Create the store, collaborators and engines described by the config."""
    if store is None:
        store = Store.open(config.database.connection_string)

    cookies = None
    if config.content.cookies:
        root = Path(config.content.firefox_dir) if config.content.firefox_dir else None
        cookies = FirefoxCookieStore(root)

    content_fetcher = ContentFetcher(
        extractor=config.content.extractor,
        min_length=config.content.min_length,
        cookies=cookies,
    )
    summarizer = GeminiSummarizer(
        model=config.summary.model,
        system_prompt=config.summary.prompt or DEFAULT_PROMPT,
        max_chars=config.summary.max_article_length,
    )

    bookmarker = None
    token = os.environ.get("RAINDROP_TOKEN")
    if token:
        bookmarker = RaindropClient(token, collection_name=config.bookmarks.collection)
    else:
        logger.info("RAINDROP_TOKEN is not set; bookmarking is disabled.")

    jobs = JobCoordinator(
        store,
        content_fetcher=content_fetcher,
        summarizer=summarizer,
        bookmarker=bookmarker,
        max_workers=config.reader.job_workers,
        default_tags=config.bookmarks.tags,
    )
    lifecycle = LifecycleEngine(store, jobs, dwell_seconds=config.reader.dwell_seconds)
    retention = timedelta(days=config.reader.retention_days)
    reconciler = Reconciler(
        store, concurrency=config.reader.concurrency, horizon=retention
    )
    return Reader(store, reconciler, lifecycle, jobs, retention=retention)


class PeriodicRefresh:
    """Refresh and purge now, then again at a fixed interval until stopped."""

    def __init__(
        self,
        reader: Reader,
        interval_seconds: float,
        on_report: Optional[Callable[[RefreshReport], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("Refresh interval must be positive.")
        self.reader = reader
        self.interval_seconds = interval_seconds
        self.on_report = on_report
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[RefreshReport]:
        """Refresh every feed, then drop articles past the retention horizon."""
        try:
            report = self.reader.refresh()
        except Exception:  # noqa: BLE001 - the next cycle is the retry
            logger.exception("Scheduled refresh failed")
            report = None
        try:
            self.reader.purge()
        except Exception:  # noqa: BLE001 - the next cycle is the retry
            logger.exception("Scheduled purge failed")
        if report is not None and self.on_report is not None:
            self.on_report(report)
        return report

    def _loop(self) -> None:
        self.run_once()
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="speedy-refresh", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stopped; returns True once stopped."""
        return self._stop.wait(timeout)
