"""Background content-fetch, summarize and bookmark jobs."""

from __future__ import annotations

import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .articles import ContentFetcher
from .bookmarks import Bookmarker, first_sentence
from .db import Store, utcnow
from .errors import CollaboratorError, NotFound, RaceDiscarded, ReaderError
from .models import Article, JobKind, JobOutcome, JobStatus, StartResult, SummaryState
from .summaries import Summarizer

logger = logging.getLogger(__name__)

JobKey = Tuple[str, JobKind]


@dataclass
class JobRecord:
    """Live job bookkeeping; never persisted."""

    fingerprint: str
    kind: JobKind
    started_at: datetime
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def status(self) -> str:
        return "cancelled" if self._cancelled.is_set() else "running"

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()


class JobCoordinator:
    """Runs at most one job per (article, kind) and never writes to a deleted article.

    Jobs check their cancellation flag around every collaborator call; the
    store re-checks the deleted flag inside the same locked transaction as
    each result write.
    """

    def __init__(
        self,
        store: Store,
        content_fetcher: Optional[ContentFetcher] = None,
        summarizer: Optional[Summarizer] = None,
        bookmarker: Optional[Bookmarker] = None,
        max_workers: int = 4,
        default_tags: Iterable[str] = (),
        on_outcome: Optional[Callable[[JobOutcome], None]] = None,
    ):
        self.store = store
        self.content_fetcher = content_fetcher
        self.summarizer = summarizer
        self.bookmarker = bookmarker
        self.default_tags = list(default_tags)
        self.on_outcome = on_outcome
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="speedy-job"
        )
        self._records: Dict[JobKey, JobRecord] = {}
        self._futures: Set[concurrent.futures.Future] = set()
        self._outcomes: "queue.Queue[JobOutcome]" = queue.Queue()
        self._lock = threading.Lock()
        self._handlers = {
            JobKind.CONTENT_FETCH: self._run_content_fetch,
            JobKind.SUMMARIZE: self._run_summarize,
            JobKind.BOOKMARK: self._run_bookmark,
        }

    # Control

    def start(self, fingerprint: str, kind, **options) -> StartResult:
        kind = JobKind(kind)
        if not self.store.is_live(fingerprint):
            logger.info("Not starting %s job: article %s is gone", kind.value, fingerprint)
            return StartResult.ARTICLE_DELETED

        key = (fingerprint, kind)
        with self._lock:
            if key in self._records:
                return StartResult.ALREADY_RUNNING
            record = JobRecord(fingerprint=fingerprint, kind=kind, started_at=utcnow())
            self._records[key] = record
            future = self._executor.submit(self._run, record, options)
            self._futures.add(future)
        future.add_done_callback(self._forget_future)
        logger.debug("Started %s job for %s", kind.value, fingerprint)
        return StartResult.OK

    def _forget_future(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def cancel(self, fingerprint: str, kind) -> bool:
        with self._lock:
            record = self._records.get((fingerprint, JobKind(kind)))
        if record is None:
            return False
        record.cancel()
        logger.info("Cancelled %s job for %s", record.kind.value, fingerprint)
        return True

    def cancel_all(self, fingerprint: str) -> int:
        return sum(1 for kind in JobKind if self.cancel(fingerprint, kind))

    def record(self, fingerprint: str, kind) -> Optional[JobRecord]:
        with self._lock:
            return self._records.get((fingerprint, JobKind(kind)))

    def is_running(self, fingerprint: str, kind) -> bool:
        record = self.record(fingerprint, kind)
        return record is not None and not record.is_cancelled()

    def running(self) -> List[JobRecord]:
        with self._lock:
            return list(self._records.values())

    def poll_outcomes(self) -> List[JobOutcome]:
        """Drain completed job outcomes without blocking."""
        outcomes = []
        while True:
            try:
                outcomes.append(self._outcomes.get_nowait())
            except queue.Empty:
                return outcomes

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has finished; False on timeout."""
        with self._lock:
            pending = list(self._futures)
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        for record in self.running():
            record.cancel()
        self._executor.shutdown(wait=wait)

    # Execution

    def _run(self, record: JobRecord, options: dict) -> JobOutcome:
        fingerprint, kind = record.fingerprint, record.kind
        try:
            outcome = self._handlers[kind](record, **options)
        except RaceDiscarded as exc:
            if exc.reason == "cancelled":
                outcome = JobOutcome(fingerprint, kind, JobStatus.CANCELLED, detail=str(exc))
                self._after_cancel(record)
            else:
                logger.info("Discarded %s result for %s: %s", kind.value, fingerprint, exc)
                outcome = JobOutcome(fingerprint, kind, JobStatus.DISCARDED, detail=str(exc))
        except NotFound as exc:
            logger.info("Discarded %s result for %s: %s", kind.value, fingerprint, exc)
            outcome = JobOutcome(fingerprint, kind, JobStatus.DISCARDED, detail=str(exc))
        except ReaderError as exc:
            logger.warning("%s job for %s failed: %s", kind.value, fingerprint, exc)
            outcome = JobOutcome(
                fingerprint, kind, JobStatus.FAILED, detail=str(exc), retryable=True
            )
        except Exception as exc:  # noqa: BLE001 - a job must never take the process down
            logger.exception("Unexpected error in %s job for %s", kind.value, fingerprint)
            outcome = JobOutcome(fingerprint, kind, JobStatus.FAILED, detail=str(exc))
        finally:
            with self._lock:
                if self._records.get((fingerprint, kind)) is record:
                    del self._records[(fingerprint, kind)]

        self._outcomes.put(outcome)
        if self.on_outcome is not None:
            try:
                self.on_outcome(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("Job outcome callback failed")
        return outcome

    @staticmethod
    def _checkpoint(record: JobRecord) -> None:
        if record.is_cancelled():
            raise RaceDiscarded(record.fingerprint, reason="cancelled")

    def _live_article(self, record: JobRecord) -> Article:
        article = self.store.get_article(record.fingerprint)
        if article is None:
            raise RaceDiscarded(record.fingerprint, reason="purged")
        if article.is_deleted:
            raise RaceDiscarded(record.fingerprint)
        return article

    def _after_cancel(self, record: JobRecord) -> None:
        # An explicit cancel on a live article must not leave the summary stuck pending.
        if record.kind != JobKind.SUMMARIZE:
            return
        article = self.store.get_article(record.fingerprint)
        if article is None or article.is_deleted:
            return
        if article.summary_state == SummaryState.PENDING:
            try:
                self.store.set_summary(
                    record.fingerprint, error="Summary generation cancelled"
                )
            except (RaceDiscarded, NotFound):
                pass

    def _done(self, record: JobRecord, detail: Optional[str] = None) -> JobOutcome:
        logger.info("%s job for %s succeeded", record.kind.value, record.fingerprint)
        return JobOutcome(record.fingerprint, record.kind, JobStatus.SUCCEEDED, detail=detail)

    def _fetch_content(self, record: JobRecord, article: Article) -> str:
        if self.content_fetcher is None:
            raise CollaboratorError("extraction", "No content fetcher configured.")
        self._checkpoint(record)
        text = self.content_fetcher.fetch(article.link)
        self._checkpoint(record)
        self.store.set_content(record.fingerprint, text)
        return text

    def _run_content_fetch(self, record: JobRecord) -> JobOutcome:
        article = self._live_article(record)
        text = self._fetch_content(record, article)
        return self._done(record, detail=f"{len(text)} chars")

    def _run_summarize(self, record: JobRecord, regenerate: bool = False) -> JobOutcome:
        article = self._live_article(record)
        if (
            not regenerate
            and article.summary_state == SummaryState.READY
            and article.summary
        ):
            return self._done(record, detail="cached")

        self.store.mark_summary_pending(record.fingerprint)
        try:
            if self.summarizer is None:
                raise CollaboratorError("auth", "No summarizer configured.")

            text = article.content
            if not text and self.content_fetcher is not None:
                try:
                    text = self._fetch_content(record, article)
                except CollaboratorError as exc:
                    logger.info(
                        "Full text unavailable for %s (%s); using feed snippet",
                        record.fingerprint,
                        exc,
                    )
            text = text or article.snippet or ""

            self._checkpoint(record)
            summary = self.summarizer.summarize(article.title, text)
        except RaceDiscarded:
            raise
        except ReaderError as exc:
            self._checkpoint(record)
            self.store.set_summary(record.fingerprint, error=str(exc))
            raise

        self._checkpoint(record)
        self.store.set_summary(
            record.fingerprint, summary=summary, model=self.summarizer.model
        )
        return self._done(record)

    def _run_bookmark(
        self, record: JobRecord, tags: Optional[Iterable[str]] = None
    ) -> JobOutcome:
        article = self._live_article(record)
        if article.bookmark_id:
            return self._done(record, detail="already bookmarked")
        if self.bookmarker is None:
            raise CollaboratorError("auth", "No bookmark service configured.")

        if article.summary_state == SummaryState.READY and article.summary:
            note = article.summary
        else:
            note = first_sentence(article.text)
        tag_list = list(tags) if tags is not None else list(self.default_tags)

        self._checkpoint(record)
        bookmark_id = self.bookmarker.save_bookmark(
            article.link,
            title=article.title,
            excerpt=first_sentence(article.snippet),
            note=note,
            tags=tag_list,
        )
        self._checkpoint(record)
        self.store.set_bookmark(record.fingerprint, bookmark_id)
        self.store.set_read_state(record.fingerprint, True)
        return self._done(record, detail=bookmark_id)
