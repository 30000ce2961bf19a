import pytest

from speedy_reader.errors import CollaboratorError, TransientIOError
from speedy_reader.jobs import JobCoordinator
from speedy_reader.lifecycle import LifecycleEngine
from speedy_reader.models import JobKind, JobStatus, StartResult, SummaryState


class FakeSummarizer:
    model = "fake-model"

    def __init__(self, gate=None, error=None, reply="- the point"):
        self.gate = gate
        self.error = error
        self.reply = reply
        self.calls = []

    def summarize(self, title, text):
        self.calls.append((title, text))
        if self.gate is not None:
            self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class FakeFetcher:
    def __init__(self, text="Full article text. More text.", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.text


class FakeBookmarker:
    def __init__(self, bookmark_id="rd-1"):
        self.bookmark_id = bookmark_id
        self.saved = []

    def save_bookmark(self, url, title=None, excerpt=None, note=None, tags=()):
        self.saved.append(
            dict(url=url, title=title, excerpt=excerpt, note=note, tags=list(tags))
        )
        return self.bookmark_id


@pytest.fixture
def coordinator_for(seeded):
    created = []

    def _make(**collaborators):
        coordinator = JobCoordinator(seeded, **collaborators)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.shutdown(wait=True)


def _finish(coordinator):
    assert coordinator.wait(timeout=5)
    return coordinator.poll_outcomes()


def test_summarize_stores_ready_summary(seeded, coordinator_for):
    summarizer = FakeSummarizer()
    jobs = coordinator_for(summarizer=summarizer)

    assert jobs.start("f1", JobKind.SUMMARIZE) == StartResult.OK
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.SUCCEEDED
    article = seeded.get_article("f1")
    assert article.summary_state == SummaryState.READY
    assert article.summary == "- the point"
    assert article.summary_model == "fake-model"
    assert summarizer.calls == [("Title f1", "Snippet for f1.")]
    assert jobs.running() == []


def test_delete_while_summarizing_wins(seeded, coordinator_for, gate, timers):
    jobs = coordinator_for(summarizer=FakeSummarizer(gate=gate))
    lifecycle = LifecycleEngine(seeded, jobs=jobs, timer_factory=timers)

    jobs.start("f1", JobKind.SUMMARIZE)
    assert gate.entered.wait(5)
    assert seeded.get_article("f1").summary_state == SummaryState.PENDING

    lifecycle.delete("f1")
    gate.release.set()
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.CANCELLED
    article = seeded.get_article("f1")
    assert article.is_deleted
    assert article.summary is None
    assert article.summary_state == SummaryState.ABSENT


def test_result_for_tombstone_is_discarded_without_cancel(
    seeded, coordinator_for, gate
):
    jobs = coordinator_for(summarizer=FakeSummarizer(gate=gate))

    jobs.start("f1", JobKind.SUMMARIZE)
    assert gate.entered.wait(5)
    seeded.soft_delete("f1")
    gate.release.set()
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.DISCARDED
    assert seeded.get_article("f1").summary is None


def test_second_start_of_same_kind_is_rejected(seeded, coordinator_for, gate):
    jobs = coordinator_for(
        summarizer=FakeSummarizer(gate=gate), content_fetcher=FakeFetcher()
    )

    assert jobs.start("f1", JobKind.SUMMARIZE) == StartResult.OK
    assert gate.entered.wait(5)
    assert jobs.start("f1", JobKind.SUMMARIZE) == StartResult.ALREADY_RUNNING
    assert jobs.is_running("f1", JobKind.SUMMARIZE)
    assert jobs.record("f1", JobKind.SUMMARIZE).status == "running"

    gate.release.set()
    outcomes = _finish(jobs)

    assert [o.status for o in outcomes] == [JobStatus.SUCCEEDED]
    assert not jobs.is_running("f1", JobKind.SUMMARIZE)


def test_start_on_deleted_or_unknown_article(seeded, coordinator_for):
    jobs = coordinator_for(summarizer=FakeSummarizer())
    seeded.soft_delete("f1")

    assert jobs.start("f1", JobKind.SUMMARIZE) == StartResult.ARTICLE_DELETED
    assert jobs.start("missing", JobKind.BOOKMARK) == StartResult.ARTICLE_DELETED
    assert jobs.poll_outcomes() == []


def test_summarizer_failure_is_recorded_and_retryable(seeded, coordinator_for):
    jobs = coordinator_for(
        summarizer=FakeSummarizer(error=CollaboratorError("rate-limit", "slow down"))
    )

    jobs.start("f1", JobKind.SUMMARIZE)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.FAILED
    assert outcome.retryable
    article = seeded.get_article("f1")
    assert article.summary_state == SummaryState.FAILED
    assert article.summary_error == "rate-limit: slow down"


def test_cached_summary_is_reused_unless_regenerating(seeded, coordinator_for):
    seeded.set_summary("f1", summary="- old", model="m")
    summarizer = FakeSummarizer(reply="- new")
    jobs = coordinator_for(summarizer=summarizer)

    jobs.start("f1", JobKind.SUMMARIZE)
    (cached,) = _finish(jobs)
    assert cached.detail == "cached"
    assert summarizer.calls == []

    jobs.start("f1", JobKind.SUMMARIZE, regenerate=True)
    (fresh,) = _finish(jobs)
    assert fresh.status == JobStatus.SUCCEEDED
    assert seeded.get_article("f1").summary == "- new"


def test_summarize_fetches_full_text_first(seeded, coordinator_for):
    summarizer = FakeSummarizer()
    fetcher = FakeFetcher(text="The whole story.")
    jobs = coordinator_for(summarizer=summarizer, content_fetcher=fetcher)

    jobs.start("f1", JobKind.SUMMARIZE)
    _finish(jobs)

    assert fetcher.calls == ["https://example.com/f1"]
    assert summarizer.calls == [("Title f1", "The whole story.")]
    assert seeded.get_article("f1").content == "The whole story."


def test_summarize_falls_back_to_snippet_when_extraction_fails(seeded, coordinator_for):
    summarizer = FakeSummarizer()
    fetcher = FakeFetcher(error=CollaboratorError("extraction", "too short"))
    jobs = coordinator_for(summarizer=summarizer, content_fetcher=fetcher)

    jobs.start("f1", JobKind.SUMMARIZE)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.SUCCEEDED
    assert summarizer.calls == [("Title f1", "Snippet for f1.")]
    assert seeded.get_article("f1").content is None


def test_storage_error_mid_summarize_marks_summary_failed(
    seeded, coordinator_for, monkeypatch
):
    def broken_write(fingerprint, content):
        raise TransientIOError("disk I/O error")

    monkeypatch.setattr(seeded, "set_content", broken_write)
    summarizer = FakeSummarizer()
    jobs = coordinator_for(summarizer=summarizer, content_fetcher=FakeFetcher())

    jobs.start("f1", JobKind.SUMMARIZE)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.FAILED
    assert outcome.retryable
    assert summarizer.calls == []
    article = seeded.get_article("f1")
    assert article.summary_state == SummaryState.FAILED
    assert "disk I/O error" in article.summary_error


def test_content_fetch_job_stores_text(seeded, coordinator_for):
    jobs = coordinator_for(content_fetcher=FakeFetcher())

    jobs.start("f1", JobKind.CONTENT_FETCH)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.SUCCEEDED
    assert seeded.get_article("f1").text == "Full article text. More text."


def test_bookmark_uses_summary_as_note_and_marks_read(seeded, coordinator_for):
    seeded.set_summary("f1", summary="- key fact", model="m")
    bookmarker = FakeBookmarker()
    jobs = coordinator_for(bookmarker=bookmarker, default_tags=["rss"])

    jobs.start("f1", JobKind.BOOKMARK)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.SUCCEEDED
    assert bookmarker.saved == [
        dict(
            url="https://example.com/f1",
            title="Title f1",
            excerpt="Snippet for f1.",
            note="- key fact",
            tags=["rss"],
        )
    ]
    article = seeded.get_article("f1")
    assert article.bookmark_id == "rd-1"
    assert article.is_read

    jobs.start("f1", JobKind.BOOKMARK)
    (again,) = _finish(jobs)
    assert again.detail == "already bookmarked"
    assert len(bookmarker.saved) == 1


def test_bookmark_without_summary_uses_first_sentence(seeded, coordinator_for):
    seeded.set_content("f1", "First sentence here. Second one.")
    bookmarker = FakeBookmarker()
    jobs = coordinator_for(bookmarker=bookmarker)

    jobs.start("f1", JobKind.BOOKMARK, tags=["news", "later"])
    _finish(jobs)

    assert bookmarker.saved[0]["note"] == "First sentence here."
    assert bookmarker.saved[0]["tags"] == ["news", "later"]


def test_missing_bookmark_service_fails(seeded, coordinator_for):
    jobs = coordinator_for()

    jobs.start("f1", JobKind.BOOKMARK)
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.FAILED
    assert outcome.detail.startswith("auth:")


def test_explicit_cancel_does_not_leave_summary_pending(seeded, coordinator_for, gate):
    jobs = coordinator_for(summarizer=FakeSummarizer(gate=gate))

    jobs.start("f1", JobKind.SUMMARIZE)
    assert gate.entered.wait(5)
    assert jobs.cancel("f1", JobKind.SUMMARIZE) is True
    assert jobs.record("f1", JobKind.SUMMARIZE).status == "cancelled"
    gate.release.set()
    (outcome,) = _finish(jobs)

    assert outcome.status == JobStatus.CANCELLED
    article = seeded.get_article("f1")
    assert not article.is_deleted
    assert article.summary_state == SummaryState.FAILED
    assert jobs.cancel("f1", JobKind.SUMMARIZE) is False


def test_outcome_callback_receives_every_outcome(seeded):
    received = []
    jobs = JobCoordinator(
        seeded, summarizer=FakeSummarizer(), on_outcome=received.append
    )
    try:
        jobs.start("f1", JobKind.SUMMARIZE)
        assert jobs.wait(timeout=5)
    finally:
        jobs.shutdown()

    assert [outcome.kind for outcome in received] == [JobKind.SUMMARIZE]
