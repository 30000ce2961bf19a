"""Tests for the persistent store."""

from dataclasses import asdict
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, text

from speedy_reader import db
from speedy_reader.errors import NotFound, RaceDiscarded
from speedy_reader.models import ArticleFilter, SummaryState, UpsertOutcome

from conftest import NOW


def test_upsert_inserts_then_updates(store, make_candidate):
    assert store.upsert_article_if_not_tombstoned(make_candidate("f1"), now=NOW) == (
        UpsertOutcome.INSERTED
    )

    later = NOW + timedelta(hours=2)
    outcome = store.upsert_article_if_not_tombstoned(
        make_candidate("f1", title="Edited title"), now=later
    )

    assert outcome == UpsertOutcome.UPDATED
    article = store.get_article("f1")
    assert article.title == "Edited title"
    assert article.last_seen_at == later
    assert article.created_at == NOW
    assert not article.is_read


def test_refresh_keeps_user_state_and_job_fields(seeded, make_candidate):
    seeded.set_read_state("f1", True)
    seeded.set_starred("f1", True)
    seeded.set_summary("f1", summary="- point", model="m")

    seeded.upsert_article_if_not_tombstoned(make_candidate("f1"), now=NOW)

    article = seeded.get_article("f1")
    assert article.is_read and article.is_starred
    assert article.summary == "- point"


def test_tombstoned_article_is_never_rewritten(seeded, make_candidate):
    seeded.set_starred("f1", True)
    assert seeded.soft_delete("f1") is True
    before = asdict(seeded.get_article("f1"))

    outcome = seeded.upsert_article_if_not_tombstoned(
        make_candidate("f1", title="Remote edit", snippet="changed"),
        now=NOW + timedelta(days=1),
    )

    assert outcome == UpsertOutcome.SUPPRESSED
    assert asdict(seeded.get_article("f1")) == before


def test_expire_before_only_gates_unknown_articles(seeded, make_candidate):
    cutoff = NOW - timedelta(days=7)
    old = NOW - timedelta(days=10)
    seeded.soft_delete("f1")

    assert seeded.upsert_article_if_not_tombstoned(
        make_candidate("f1", published=old), now=NOW, expire_before=cutoff
    ) == UpsertOutcome.SUPPRESSED
    assert seeded.upsert_article_if_not_tombstoned(
        make_candidate("stale", published=old), now=NOW, expire_before=cutoff
    ) == UpsertOutcome.EXPIRED
    assert seeded.get_article("stale") is None
    assert seeded.upsert_article_if_not_tombstoned(
        make_candidate("undated", published=None), now=NOW, expire_before=cutoff
    ) == UpsertOutcome.INSERTED


def test_soft_delete_is_idempotent(seeded):
    assert seeded.soft_delete("f1") is True
    first = asdict(seeded.get_article("f1"))

    assert seeded.soft_delete("f1") is False
    assert asdict(seeded.get_article("f1")) == first


def test_soft_delete_of_unknown_article_succeeds(store):
    assert store.soft_delete("missing") is False


def test_soft_delete_clears_job_fields(seeded):
    seeded.set_content("f1", "full text")
    seeded.set_summary("f1", summary="- point", model="m")
    seeded.set_bookmark("f1", "42")

    seeded.soft_delete("f1")

    article = seeded.get_article("f1")
    assert article.is_deleted
    assert article.content is None
    assert article.summary is None
    assert article.summary_state == SummaryState.ABSENT
    assert article.bookmark_id is None


def test_result_writes_after_delete_are_discarded(seeded):
    seeded.soft_delete("f1")

    with pytest.raises(RaceDiscarded):
        seeded.set_summary("f1", summary="late", model="m")
    with pytest.raises(RaceDiscarded):
        seeded.set_content("f1", "late")
    with pytest.raises(RaceDiscarded):
        seeded.set_bookmark("f1", "7")

    assert seeded.get_article("f1").summary is None


def test_state_changes_on_deleted_article_are_no_ops(seeded):
    seeded.soft_delete("f1")

    assert seeded.set_read_state("f1", True) is False
    assert seeded.toggle_starred("f1") is None
    article = seeded.get_article("f1")
    assert not article.is_read
    assert article.is_deleted


def test_state_changes_on_unknown_article_raise_not_found(store):
    with pytest.raises(NotFound):
        store.set_read_state("nope", True)


def test_read_state_reports_changes_once(seeded):
    assert seeded.set_read_state("f1", True) is True
    assert seeded.set_read_state("f1", True) is False
    assert seeded.set_read_state("f1", False) is True


def test_summary_failure_then_success(seeded):
    seeded.mark_summary_pending("f1")
    assert seeded.get_article("f1").summary_state == SummaryState.PENDING

    seeded.set_summary("f1", error="rate-limit: slow down")
    article = seeded.get_article("f1")
    assert article.summary_state == SummaryState.FAILED
    assert article.summary_error == "rate-limit: slow down"

    seeded.set_summary("f1", summary="- done", model="gemini")
    article = seeded.get_article("f1")
    assert article.summary_state == SummaryState.READY
    assert article.summary_model == "gemini"
    assert article.summary_error is None


def test_purge_respects_starred_and_horizon(store, make_candidate):
    old = NOW - timedelta(days=8)
    for fp in ("old-plain", "old-starred", "old-deleted-starred"):
        store.upsert_article_if_not_tombstoned(make_candidate(fp, published=old), now=old)
    store.upsert_article_if_not_tombstoned(make_candidate("fresh"), now=NOW)
    store.set_starred("old-starred", True)
    store.set_starred("old-deleted-starred", True)
    store.soft_delete("old-deleted-starred")

    purged = store.purge_expired(NOW, timedelta(days=7))

    assert purged == 2
    assert store.get_article("old-plain") is None
    assert store.get_article("old-deleted-starred") is None
    assert store.get_article("old-starred") is not None
    assert store.get_article("fresh") is not None


def test_purge_uses_last_seen_when_item_still_in_feed(store, make_candidate):
    old = NOW - timedelta(days=8)
    store.upsert_article_if_not_tombstoned(
        make_candidate("undated", published=None), now=old
    )
    store.upsert_article_if_not_tombstoned(
        make_candidate("seen-again", published=old), now=old
    )
    store.upsert_article_if_not_tombstoned(
        make_candidate("seen-again", published=old), now=NOW
    )

    store.purge_expired(NOW, timedelta(days=7))

    assert store.get_article("undated") is None
    assert store.get_article("seen-again") is not None


def test_purge_skips_article_seen_after_the_scan(store, make_candidate, monkeypatch):
    old = NOW - timedelta(days=8)
    store.upsert_article_if_not_tombstoned(make_candidate("busy", published=old), now=old)
    scan = store._purge_candidates

    def scan_then_refresh(cutoff):
        found = scan(cutoff)
        store.upsert_article_if_not_tombstoned(
            make_candidate("busy", published=old), now=NOW
        )
        return found

    monkeypatch.setattr(store, "_purge_candidates", scan_then_refresh)

    assert store.purge_expired(NOW, timedelta(days=7)) == 0
    assert store.get_article("busy").last_seen_at == NOW


def test_article_locks_are_dropped_once_released(store, make_candidate):
    with store._locks("f1"):
        with store._locks("f1"):
            assert len(store._locks) == 1
        assert len(store._locks) == 1

    old = NOW - timedelta(days=8)
    for i in range(3):
        store.upsert_article_if_not_tombstoned(
            make_candidate(f"f{i}", published=old), now=old
        )
    store.set_read_state("f0", True)
    store.soft_delete("f1")
    store.purge_expired(NOW, timedelta(days=7))

    assert store.count_articles(ArticleFilter.ALL) == 0
    assert len(store._locks) == 0


def test_list_filters_and_sorts_newest_first(store, make_candidate):
    for hours, fp in ((3, "a"), (1, "b"), (2, "c")):
        store.upsert_article_if_not_tombstoned(
            make_candidate(fp, published=NOW - timedelta(hours=hours)), now=NOW
        )
    store.upsert_article_if_not_tombstoned(make_candidate("d", published=None), now=NOW)
    store.set_read_state("c", True)
    store.set_starred("a", True)
    store.soft_delete("b")

    assert [a.fingerprint for a in store.list_articles(ArticleFilter.ALL)] == ["c", "a", "d"]
    assert [a.fingerprint for a in store.list_articles(ArticleFilter.UNREAD)] == ["a", "d"]
    assert [a.fingerprint for a in store.list_articles(ArticleFilter.STARRED)] == ["a"]
    assert store.count_articles(ArticleFilter.ALL) == 3


def test_iter_articles_pages_through_everything(store, make_candidate, monkeypatch):
    monkeypatch.setattr(db, "PAGE_SIZE", 2)
    for i in range(5):
        store.upsert_article_if_not_tombstoned(
            make_candidate(f"p{i}", published=NOW - timedelta(minutes=i)), now=NOW
        )

    assert [a.fingerprint for a in store.iter_articles()] == [f"p{i}" for i in range(5)]


def test_unread_walk_survives_marking_articles_read(store, make_candidate, monkeypatch):
    monkeypatch.setattr(db, "PAGE_SIZE", 2)
    for i in range(6):
        store.upsert_article_if_not_tombstoned(
            make_candidate(f"f{i}", published=NOW - timedelta(minutes=i)), now=NOW
        )

    visited = []
    for article in store.iter_articles(ArticleFilter.UNREAD):
        visited.append(article.fingerprint)
        store.set_read_state(article.fingerprint, True)

    assert visited == [f"f{i}" for i in range(6)]
    assert store.count_articles(ArticleFilter.UNREAD) == 0


def test_iter_articles_pages_across_ties_and_undated(store, make_candidate, monkeypatch):
    monkeypatch.setattr(db, "PAGE_SIZE", 2)
    for fp in ("a", "b", "c"):
        store.upsert_article_if_not_tombstoned(make_candidate(fp, published=NOW), now=NOW)
    for fp in ("u1", "u2"):
        store.upsert_article_if_not_tombstoned(
            make_candidate(fp, published=None), now=NOW
        )

    assert [a.fingerprint for a in store.iter_articles()] == ["a", "b", "c", "u1", "u2"]


def test_articles_carry_feed_title(seeded):
    assert seeded.get_article("f1").feed_title == "Example"


def test_feed_fetch_is_recorded(store):
    store.upsert_feed("https://example.com/feed.xml", "Example")

    store.record_feed_fetch("https://example.com/feed.xml", error="network: boom", when=NOW)
    feed = store.get_feed("https://example.com/feed.xml")
    assert feed.last_fetch_error == "network: boom"
    assert feed.last_fetched_at == NOW
    assert feed.last_success_at is None

    store.record_feed_fetch("https://example.com/feed.xml", when=NOW)
    feed = store.get_feed("https://example.com/feed.xml")
    assert feed.last_fetch_error is None
    assert feed.last_success_at == NOW


def test_upsert_feed_keeps_title_when_none_given(store):
    store.upsert_feed("https://example.com/feed.xml", "Example")
    store.upsert_feed("https://example.com/feed.xml")

    assert [f.title for f in store.list_feeds()] == ["Example"]


def test_migration_preserves_tombstones_and_stars(tmp_path):
    path = tmp_path / "old.db"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE articles (fingerprint VARCHAR PRIMARY KEY, "
                "feed_url VARCHAR NOT NULL, title VARCHAR NOT NULL, "
                "link VARCHAR NOT NULL DEFAULT '', published DATETIME, "
                "is_read BOOLEAN NOT NULL DEFAULT 0, "
                "is_starred BOOLEAN NOT NULL DEFAULT 0, "
                "is_deleted BOOLEAN NOT NULL DEFAULT 0)"
            )
        )
        conn.execute(
            text(
                "INSERT INTO articles (fingerprint, feed_url, title, link, is_starred, is_deleted) "
                "VALUES ('gone', 'u', 'Deleted', 'l', 0, 1), ('kept', 'u', 'Starred', 'l', 1, 0)"
            )
        )
    engine.dispose()

    store = db.Store.open(f"sqlite:///{path}")

    gone = store.get_article("gone")
    kept = store.get_article("kept")
    assert gone.is_deleted
    assert kept.is_starred and not kept.is_deleted
    assert kept.summary_state == SummaryState.ABSENT
    assert kept.bookmark_id is None

    engine = create_engine(f"sqlite:///{path}")
    with engine.connect() as conn:
        version = conn.execute(text("SELECT version FROM schema_info")).scalar_one()
    assert version == db.SCHEMA_VERSION


def test_init_engine_requires_connection_string():
    with pytest.raises(ValueError):
        db.init_engine(None)
