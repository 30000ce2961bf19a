import threading
from datetime import datetime, timedelta, timezone

import pytest

from speedy_reader.db import Store
from speedy_reader.models import ArticleCandidate, FeedEntry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeTimer:
    """Stands in for threading.Timer; tests fire it by hand."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


@pytest.fixture
def store(tmp_path):
    """A file-backed SQLite store so worker threads share one database."""
    return Store.open(f"sqlite:///{tmp_path / 'reader.db'}")


@pytest.fixture
def timers():
    created = []

    def factory(interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def make_candidate():
    def _make(fingerprint="f1", feed_url="https://example.com/feed.xml", **overrides):
        values = dict(
            fingerprint=fingerprint,
            feed_url=feed_url,
            title=f"Title {fingerprint}",
            link=f"https://example.com/{fingerprint}",
            guid=fingerprint,
            published=NOW - timedelta(hours=1),
            snippet=f"Snippet for {fingerprint}.",
        )
        values.update(overrides)
        return ArticleCandidate(**values)

    return _make


@pytest.fixture
def make_entry():
    def _make(guid="g1", feed_url="https://example.com/feed.xml", **overrides):
        values = dict(
            feed_url=feed_url,
            title=f"Entry {guid}",
            link=f"https://example.com/posts/{guid}",
            guid=guid,
            published=datetime.now(timezone.utc) - timedelta(hours=1),
            summary="Entry summary.",
        )
        values.update(overrides)
        return FeedEntry(**values)

    return _make


@pytest.fixture
def seeded(store, make_candidate):
    """Store with one feed and one live unread article ``f1``."""
    store.upsert_feed("https://example.com/feed.xml", "Example")
    store.upsert_article_if_not_tombstoned(make_candidate("f1"), now=NOW)
    return store


class Gate:
    """Lets a test hold a fake collaborator call open."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def wait(self, timeout=5):
        self.entered.set()
        assert self.release.wait(timeout), "gate was never released"


@pytest.fixture
def gate():
    return Gate()
