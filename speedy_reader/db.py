"""Persistent store for feeds, articles and tombstones."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    and_,
    create_engine,
    false,
    func,
    inspect,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import NotFound, RaceDiscarded, TransientIOError
from .models import (
    Article,
    ArticleCandidate,
    ArticleFilter,
    Feed,
    SummaryState,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3
PAGE_SIZE = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class FeedModel(Base):
    """A subscribed feed."""

    __tablename__ = "feeds"

    url = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    last_fetch_error = Column(Text, nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ArticleModel(Base):
    """A cached article, live or tombstoned."""

    __tablename__ = "articles"

    fingerprint = Column(String, primary_key=True)
    feed_url = Column(String, nullable=False, index=True)
    guid = Column(String, nullable=True)
    title = Column(String, nullable=False)
    link = Column(String, nullable=False, server_default="")
    published = Column(DateTime(timezone=True), nullable=True, index=True)
    snippet = Column(Text, nullable=True)
    content = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    summary_state = Column(
        String, nullable=False, server_default=SummaryState.ABSENT.value
    )
    summary_model = Column(String, nullable=True)
    summary_error = Column(Text, nullable=True)
    is_read = Column(Boolean, nullable=False, server_default=text("0"), index=True)
    is_starred = Column(Boolean, nullable=False, server_default=text("0"))
    is_deleted = Column(Boolean, nullable=False, server_default=text("0"))
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    bookmark_id = Column(String, nullable=True)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), default=utcnow)


class SchemaInfo(Base):
    __tablename__ = "schema_info"

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)


def _column_ddl(column, engine: Engine) -> str:
    ddl = f"{column.name} {column.type.compile(dialect=engine.dialect)}"
    default = column.server_default
    if default is not None:
        arg = default.arg
        if isinstance(arg, str):
            ddl += " DEFAULT '" + arg.replace("'", "''") + "'"
        else:
            ddl += f" DEFAULT {arg.text}"
        if not column.nullable:
            ddl += " NOT NULL"
    return ddl


def migrate(engine: Engine) -> None:
    """Bring an existing database up to the current schema.

    Tables are created when absent; columns introduced by later versions are
    added in place so existing rows keep their tombstone and starred flags.
    """
    Base.metadata.create_all(engine)
    inspector = inspect(engine)

    with engine.begin() as conn:
        for table in Base.metadata.sorted_tables:
            existing = {col["name"] for col in inspector.get_columns(table.name)}
            for column in table.columns:
                if column.name in existing:
                    continue
                logger.info("Adding column %s.%s", table.name, column.name)
                conn.execute(
                    text(
                        f"ALTER TABLE {table.name} ADD COLUMN "
                        f"{_column_ddl(column, engine)}"
                    )
                )

        row = conn.execute(select(SchemaInfo.version)).first()
        if row is None:
            conn.execute(SchemaInfo.__table__.insert().values(id=1, version=SCHEMA_VERSION))
        elif row[0] != SCHEMA_VERSION:
            logger.info("Migrated schema from version %s to %s", row[0], SCHEMA_VERSION)
            conn.execute(
                SchemaInfo.__table__.update().values(version=SCHEMA_VERSION)
            )


def init_engine(connection_string: Optional[str]) -> Engine:
    """Initialize the database engine and apply migrations."""
    if not connection_string:
        raise ValueError("A database connection string is required.")

    logger.info("Initializing database connection: %s", connection_string)
    kwargs: dict = {}
    if connection_string.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if connection_string in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(connection_string, **kwargs)
    migrate(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


class _KeyedLocks:
    """One re-entrant lock per key, held in the map only while in use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def __call__(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def _to_feed(row: FeedModel) -> Feed:
    return Feed(
        url=row.url,
        title=row.title,
        last_fetched_at=_as_utc(row.last_fetched_at),
        last_fetch_error=row.last_fetch_error,
        last_success_at=_as_utc(row.last_success_at),
        created_at=_as_utc(row.created_at),
    )


def _to_article(row: ArticleModel, feed_title: Optional[str] = None) -> Article:
    return Article(
        fingerprint=row.fingerprint,
        feed_url=row.feed_url,
        title=row.title,
        link=row.link,
        guid=row.guid,
        published=_as_utc(row.published),
        snippet=row.snippet,
        content=row.content,
        summary=row.summary,
        summary_state=SummaryState(row.summary_state or SummaryState.ABSENT.value),
        summary_model=row.summary_model,
        summary_error=row.summary_error,
        is_read=bool(row.is_read),
        is_starred=bool(row.is_starred),
        is_deleted=bool(row.is_deleted),
        bookmark_id=row.bookmark_id,
        last_viewed_at=_as_utc(row.last_viewed_at),
        created_at=_as_utc(row.created_at),
        last_seen_at=_as_utc(row.last_seen_at),
        feed_title=feed_title,
    )


def _apply_filter(stmt, article_filter: ArticleFilter):
    stmt = stmt.where(ArticleModel.is_deleted.is_(False))
    if article_filter == ArticleFilter.UNREAD:
        stmt = stmt.where(ArticleModel.is_read.is_(False))
    elif article_filter == ArticleFilter.STARRED:
        stmt = stmt.where(ArticleModel.is_starred.is_(True))
    return stmt


def _older_than(published, last_seen, created, cutoff: datetime) -> bool:
    stamps = [_as_utc(v) for v in (published, last_seen) if v is not None]
    reference = max(stamps) if stamps else _as_utc(created)
    return reference is not None and reference < cutoff


def _later(column, value):
    """Rows ordered after ``value`` under ``column DESC NULLS LAST``."""
    if value is None:
        return false()
    return or_(column < value, column.is_(None))


def _same(column, value):
    return column.is_(None) if value is None else column == value


def _after_key(published, created_at, fingerprint):
    return or_(
        _later(ArticleModel.published, published),
        and_(
            _same(ArticleModel.published, published),
            or_(
                _later(ArticleModel.created_at, created_at),
                and_(
                    _same(ArticleModel.created_at, created_at),
                    ArticleModel.fingerprint > fingerprint,
                ),
            ),
        ),
    )


class Store:
    """Durable mapping of fingerprints to articles and URLs to feeds.

    Every mutating call on a fingerprint holds that fingerprint's lock for its
    whole read-check-write, so writes to one article are serialized while
    different articles proceed independently.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self._locks = _KeyedLocks()

    @classmethod
    def open(cls, connection_string: str) -> "Store":
        engine = init_engine(connection_string)
        return cls(get_session_factory(engine))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Storage operation failed: %s", exc)
            raise TransientIOError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _row(session: Session, fingerprint: str) -> ArticleModel:
        row = session.get(ArticleModel, fingerprint)
        if row is None:
            raise NotFound(fingerprint)
        return row

    # Feeds

    def upsert_feed(self, url: str, title: Optional[str] = None) -> Feed:
        with self._locks("feed:" + url), self._session() as session:
            row = session.get(FeedModel, url)
            if row is None:
                row = FeedModel(url=url, title=title or url, created_at=utcnow())
                session.add(row)
                logger.info("Added feed %s", url)
            elif title:
                row.title = title
            session.flush()
            return _to_feed(row)

    def record_feed_fetch(
        self, url: str, error: Optional[str] = None, when: Optional[datetime] = None
    ) -> None:
        """Stamp a fetch attempt; ``error`` is cleared on success."""
        with self._locks("feed:" + url), self._session() as session:
            row = session.get(FeedModel, url)
            if row is None:
                logger.warning("Fetch recorded for unknown feed %s", url)
                return
            row.last_fetched_at = when or utcnow()
            row.last_fetch_error = error
            if error is None:
                row.last_success_at = row.last_fetched_at

    def get_feed(self, url: str) -> Optional[Feed]:
        with self._session() as session:
            row = session.get(FeedModel, url)
            return _to_feed(row) if row else None

    def list_feeds(self) -> List[Feed]:
        with self._session() as session:
            rows = session.execute(
                select(FeedModel).order_by(FeedModel.title, FeedModel.url)
            ).scalars()
            return [_to_feed(row) for row in rows]

    # Articles

    def upsert_article_if_not_tombstoned(
        self,
        candidate: ArticleCandidate,
        now: Optional[datetime] = None,
        expire_before: Optional[datetime] = None,
    ) -> UpsertOutcome:
        """Insert or refresh a fetched article unless it was deleted.

        With ``expire_before`` set, an unknown candidate published earlier than
        that instant is not inserted and ``EXPIRED`` is returned instead.
        Known articles and tombstones are unaffected.
        """
        now = now or utcnow()
        with self._locks(candidate.fingerprint), self._session() as session:
            existing = session.get(ArticleModel, candidate.fingerprint)
            if existing is not None and existing.is_deleted:
                logger.debug("Suppressed tombstoned article %s", candidate.fingerprint)
                return UpsertOutcome.SUPPRESSED

            if existing is None:
                if (
                    expire_before is not None
                    and candidate.published is not None
                    and _as_utc(candidate.published) < _as_utc(expire_before)
                ):
                    logger.debug(
                        "Not storing %s, published %s before %s",
                        candidate.fingerprint,
                        candidate.published,
                        expire_before,
                    )
                    return UpsertOutcome.EXPIRED
                session.add(
                    ArticleModel(
                        fingerprint=candidate.fingerprint,
                        feed_url=candidate.feed_url,
                        guid=candidate.guid,
                        title=candidate.title,
                        link=candidate.link,
                        published=candidate.published,
                        snippet=candidate.snippet,
                        summary_state=SummaryState.ABSENT.value,
                        is_read=False,
                        is_starred=False,
                        is_deleted=False,
                        created_at=now,
                        last_seen_at=now,
                    )
                )
                return UpsertOutcome.INSERTED

            existing.title = candidate.title
            existing.link = candidate.link
            existing.guid = candidate.guid
            if candidate.published:
                existing.published = candidate.published
            if candidate.snippet:
                existing.snippet = candidate.snippet
            existing.last_seen_at = now
            return UpsertOutcome.UPDATED

    def get_article(self, fingerprint: str) -> Optional[Article]:
        """Return the article (live or tombstoned), or None if unknown."""
        with self._session() as session:
            row = session.execute(
                select(ArticleModel, FeedModel.title)
                .outerjoin(FeedModel, FeedModel.url == ArticleModel.feed_url)
                .where(ArticleModel.fingerprint == fingerprint)
            ).first()
            if row is None:
                return None
            return _to_article(row[0], row[1])

    def is_live(self, fingerprint: str) -> bool:
        with self._session() as session:
            row = session.get(ArticleModel, fingerprint)
            return row is not None and not row.is_deleted

    def set_read_state(self, fingerprint: str, is_read: bool) -> bool:
        """Set read-state on a live article; returns whether anything changed."""
        with self._locks(fingerprint), self._session() as session:
            row = self._row(session, fingerprint)
            if row.is_deleted or bool(row.is_read) == is_read:
                return False
            row.is_read = is_read
            return True

    def set_starred(self, fingerprint: str, is_starred: bool) -> bool:
        with self._locks(fingerprint), self._session() as session:
            row = self._row(session, fingerprint)
            if row.is_deleted or bool(row.is_starred) == is_starred:
                return False
            row.is_starred = is_starred
            return True

    def toggle_starred(self, fingerprint: str) -> Optional[bool]:
        """Flip the starred flag; returns the new value, or None if deleted."""
        with self._locks(fingerprint), self._session() as session:
            row = self._row(session, fingerprint)
            if row.is_deleted:
                return None
            row.is_starred = not row.is_starred
            return bool(row.is_starred)

    def set_last_viewed(self, fingerprint: str, when: Optional[datetime] = None) -> bool:
        with self._locks(fingerprint), self._session() as session:
            row = self._row(session, fingerprint)
            if row.is_deleted:
                return False
            row.last_viewed_at = when or utcnow()
            return True

    def soft_delete(self, fingerprint: str, when: Optional[datetime] = None) -> bool:
        """Tombstone an article and clear its job-written fields.

        Idempotent: deleting an already deleted or unknown article succeeds and
        returns False.
        """
        with self._locks(fingerprint), self._session() as session:
            row = session.get(ArticleModel, fingerprint)
            if row is None:
                logger.debug("Delete of unknown article %s treated as done", fingerprint)
                return False
            if row.is_deleted:
                return False
            row.is_deleted = True
            row.deleted_at = when or utcnow()
            row.content = None
            row.summary = None
            row.summary_state = SummaryState.ABSENT.value
            row.summary_model = None
            row.summary_error = None
            row.bookmark_id = None
            row.last_viewed_at = None
            logger.info("Deleted article %s", fingerprint)
            return True

    def _live_row_for_result(self, session: Session, fingerprint: str) -> ArticleModel:
        row = session.get(ArticleModel, fingerprint)
        if row is None:
            raise RaceDiscarded(fingerprint, reason="purged")
        if row.is_deleted:
            raise RaceDiscarded(fingerprint)
        return row

    def mark_summary_pending(self, fingerprint: str) -> None:
        with self._locks(fingerprint), self._session() as session:
            row = self._live_row_for_result(session, fingerprint)
            row.summary_state = SummaryState.PENDING.value
            row.summary_error = None

    def set_summary(
        self,
        fingerprint: str,
        summary: Optional[str] = None,
        model: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Store a summary, or a failure when ``error`` is given.

        Raises RaceDiscarded if the article was deleted first; the deleted
        check and the write happen in one locked transaction.
        """
        with self._locks(fingerprint), self._session() as session:
            row = self._live_row_for_result(session, fingerprint)
            if error is not None:
                row.summary_state = SummaryState.FAILED.value
                row.summary_error = error
                return
            row.summary = summary
            row.summary_model = model
            row.summary_state = SummaryState.READY.value
            row.summary_error = None

    def set_content(self, fingerprint: str, content: str) -> None:
        with self._locks(fingerprint), self._session() as session:
            row = self._live_row_for_result(session, fingerprint)
            row.content = content

    def set_bookmark(self, fingerprint: str, bookmark_id: str) -> None:
        with self._locks(fingerprint), self._session() as session:
            row = self._live_row_for_result(session, fingerprint)
            row.bookmark_id = bookmark_id

    def purge_expired(self, now: datetime, horizon: timedelta) -> int:
        """Physically remove articles older than the horizon.

        Age is measured from the later of publish date and last sighting.
        Starred live articles are kept; tombstones go regardless.
        """
        cutoff = _as_utc(now) - horizon
        purged = 0
        for fingerprint in self._purge_candidates(cutoff):
            with self._locks(fingerprint), self._session() as session:
                row = session.get(ArticleModel, fingerprint)
                if row is None:
                    continue
                if row.is_starred and not row.is_deleted:
                    continue
                # Re-read under the lock: a refresh may have seen it since the scan.
                if not _older_than(
                    row.published, row.last_seen_at, row.created_at, cutoff
                ):
                    continue
                session.delete(row)
                purged += 1

        logger.info("Purged %d expired articles (cutoff %s)", purged, cutoff)
        return purged

    def _purge_candidates(self, cutoff: datetime) -> List[str]:
        with self._session() as session:
            rows = session.execute(
                select(
                    ArticleModel.fingerprint,
                    ArticleModel.published,
                    ArticleModel.last_seen_at,
                    ArticleModel.created_at,
                )
            ).all()
        return [
            fingerprint
            for fingerprint, published, last_seen, created in rows
            if _older_than(published, last_seen, created, cutoff)
        ]

    def iter_articles(
        self, article_filter: ArticleFilter = ArticleFilter.ALL
    ) -> Iterator[Article]:
        """Yield live articles newest first, one page per session.

        Pages are keyed on the last row's sort key rather than an offset, so
        articles that change state or leave the filter mid-walk do not shift
        the remaining ones out of view.
        """
        key = None
        while True:
            stmt = _apply_filter(
                select(ArticleModel, FeedModel.title).outerjoin(
                    FeedModel, FeedModel.url == ArticleModel.feed_url
                ),
                article_filter,
            )
            if key is not None:
                stmt = stmt.where(_after_key(*key))
            stmt = stmt.order_by(
                ArticleModel.published.desc().nulls_last(),
                ArticleModel.created_at.desc().nulls_last(),
                ArticleModel.fingerprint,
            ).limit(PAGE_SIZE)
            with self._session() as session:
                rows = session.execute(stmt).all()
                page = [_to_article(row, title) for row, title in rows]
                if rows:
                    last = rows[-1][0]
                    key = (last.published, last.created_at, last.fingerprint)
            yield from page
            if len(page) < PAGE_SIZE:
                return

    def list_articles(
        self, article_filter: ArticleFilter = ArticleFilter.ALL
    ) -> List[Article]:
        return list(self.iter_articles(article_filter))

    def count_articles(self, article_filter: ArticleFilter = ArticleFilter.ALL) -> int:
        stmt = _apply_filter(select(func.count()).select_from(ArticleModel), article_filter)
        with self._session() as session:
            return session.execute(stmt).scalar_one()
