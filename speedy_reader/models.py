"""Shared data models for speedy_reader."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class SummaryState(str, enum.Enum):
    ABSENT = "absent"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class ArticleFilter(str, enum.Enum):
    """Which live articles the reader shows."""

    UNREAD = "unread"
    STARRED = "starred"
    ALL = "all"

    def cycle(self) -> "ArticleFilter":
        order = [ArticleFilter.UNREAD, ArticleFilter.STARRED, ArticleFilter.ALL]
        return order[(order.index(self) + 1) % len(order)]


class UpsertOutcome(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SUPPRESSED = "suppressed"
    EXPIRED = "expired"


class JobKind(str, enum.Enum):
    CONTENT_FETCH = "content-fetch"
    SUMMARIZE = "summarize"
    BOOKMARK = "bookmark"


class StartResult(str, enum.Enum):
    OK = "ok"
    ALREADY_RUNNING = "already-running"
    ARTICLE_DELETED = "article-deleted"


class JobStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISCARDED = "discarded"
    CANCELLED = "cancelled"


@dataclass
class FeedConfig:
    """A subscription: feed URL plus display title."""

    title: str
    url: str
    category: Optional[str] = None


@dataclass
class FeedEntry:
    """Candidate item parsed from one feed fetch."""

    feed_url: str
    title: str
    link: str
    guid: Optional[str] = None
    published: Optional[datetime] = None
    summary: Optional[str] = None


@dataclass
class ArticleCandidate:
    """A feed entry with its fingerprint, ready for the store."""

    fingerprint: str
    feed_url: str
    title: str
    link: str
    guid: Optional[str] = None
    published: Optional[datetime] = None
    snippet: Optional[str] = None


@dataclass
class Feed:
    url: str
    title: str
    last_fetched_at: Optional[datetime] = None
    last_fetch_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Article:
    """Detached snapshot of one stored article."""

    fingerprint: str
    feed_url: str
    title: str
    link: str
    guid: Optional[str] = None
    published: Optional[datetime] = None
    snippet: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    summary_state: SummaryState = SummaryState.ABSENT
    summary_model: Optional[str] = None
    summary_error: Optional[str] = None
    is_read: bool = False
    is_starred: bool = False
    is_deleted: bool = False
    bookmark_id: Optional[str] = None
    last_viewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    feed_title: Optional[str] = None

    @property
    def text(self) -> str:
        """Best available body text: extracted content, else the feed snippet."""
        return self.content or self.snippet or ""


@dataclass
class JobOutcome:
    """Completion report for one background job."""

    fingerprint: str
    kind: JobKind
    status: JobStatus
    detail: Optional[str] = None
    retryable: bool = False
