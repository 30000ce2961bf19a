"""Error taxonomy shared by the store, reconciler and job coordinator."""

from __future__ import annotations

from typing import Optional


class ReaderError(Exception):
    """Base class for speedy_reader errors."""


class TransientIOError(ReaderError):
    """Storage or network I/O failed; the caller may retry."""


class NotFound(ReaderError):
    """No article with the given fingerprint; treated as already deleted."""

    def __init__(self, fingerprint: str):
        super().__init__(f"Article not found: {fingerprint}")
        self.fingerprint = fingerprint


class RaceDiscarded(ReaderError):
    """A job result arrived after its article was deleted or the job cancelled."""

    def __init__(self, fingerprint: str, reason: str = "deleted"):
        super().__init__(f"Result for {fingerprint} discarded ({reason})")
        self.fingerprint = fingerprint
        self.reason = reason


class CollaboratorError(ReaderError):
    """An external collaborator (fetch, extraction, summarizer, bookmarks) failed."""

    KINDS = (
        "network",
        "http-status",
        "parse",
        "auth",
        "rate-limit",
        "extraction",
        "api",
    )

    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        if kind not in self.KINDS:
            raise ValueError(f"Unknown collaborator error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.status = status

    def __str__(self) -> str:
        return f"{self.kind}: {self.args[0]}"


class FetchError(CollaboratorError):
    """Feed fetch failure for a single feed URL."""

    def __init__(self, kind: str, url: str, message: str, status: Optional[int] = None):
        super().__init__(kind, message, status=status)
        self.url = url
