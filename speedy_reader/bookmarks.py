"""Bookmark delivery via Raindrop.io."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

import requests

from .errors import CollaboratorError

logger = logging.getLogger(__name__)

RAINDROP_API_URL = "https://api.raindrop.io/rest/v1"
DEFAULT_COLLECTION = "News Links"

_SENTENCE_END = re.compile(r"(?<=[.!?])\s")


class Bookmarker(Protocol):
    def save_bookmark(
        self,
        url: str,
        title: Optional[str] = None,
        excerpt: Optional[str] = None,
        note: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> str:
        """Save and return the external bookmark id, or raise CollaboratorError."""


def first_sentence(text: Optional[str], limit: int = 300) -> Optional[str]:
    """Return the first sentence of text, capped at ``limit`` characters."""
    if not text:
        return None
    flat = " ".join(text.split())
    if not flat:
        return None
    sentence = _SENTENCE_END.split(flat, maxsplit=1)[0]
    return sentence[:limit]


def parse_tags(value: Optional[str]) -> list:
    """Split a comma separated tag list."""
    if not value:
        return []
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def _raise_for_response(response: requests.Response) -> None:
    if response.ok:
        return
    status = response.status_code
    if status in (401, 403):
        kind = "auth"
    elif status == 429:
        kind = "rate-limit"
    else:
        kind = "http-status"
    raise CollaboratorError(kind, f"Raindrop API error {status}: {response.text}", status=status)


@dataclass
class RaindropClient:
    """Minimal Raindrop.io client; the target collection id is looked up once."""

    access_token: str
    collection_name: Optional[str] = DEFAULT_COLLECTION
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    _collection_id: Optional[int] = field(default=None, repr=False)
    _collection_resolved: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            return self.session.request(
                method,
                f"{RAINDROP_API_URL}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise CollaboratorError("network", str(exc)) from exc

    def collection_id(self) -> Optional[int]:
        """Id of the configured collection, or None to save to Unsorted."""
        with self._lock:
            if self._collection_resolved:
                return self._collection_id
            if not self.collection_name:
                self._collection_resolved = True
                return None

            response = self._request("GET", "/collections")
            if not response.ok:
                logger.warning("Failed to fetch collections, will save to unsorted")
                return None

            for item in response.json().get("items", []):
                if item.get("title") == self.collection_name:
                    self._collection_id = item.get("_id")
                    break
            else:
                logger.warning(
                    "Collection '%s' not found, will save to unsorted", self.collection_name
                )
            self._collection_resolved = True
            return self._collection_id

    def save_bookmark(
        self,
        url: str,
        title: Optional[str] = None,
        excerpt: Optional[str] = None,
        note: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> str:
        payload = {
            "link": url,
            "title": title,
            "excerpt": excerpt,
            "tags": list(tags),
            "pleaseParse": {},
        }
        if note:
            payload["note"] = note
        collection = self.collection_id()
        if collection is not None:
            payload["collection"] = {"$id": collection}

        response = self._request("POST", "/raindrop", json=payload)
        _raise_for_response(response)

        item = (response.json() or {}).get("item")
        if not item or "_id" not in item:
            raise CollaboratorError("api", "No item returned from Raindrop API")
        logger.info("Saved to Raindrop: %s (id %s)", url, item["_id"])
        return str(item["_id"])
