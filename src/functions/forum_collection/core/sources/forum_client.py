"""
Forum content provider backed by the Reddit OAuth API.

Only boundary concerns live here: authentication, request pacing, and mapping
HTTP failures onto the collection error hierarchy. Nothing here retries; the
job runner decides what to do with each error.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import httpx

from src.shared.batch.retry import is_network_error
from src.shared.utils.config_validator import ConfigurationError, require_env
from ..contracts.thread import Comment, ForumThread, Post
from ..errors import (
    MalformedThreadError,
    SourceError,
    SourceNotFoundError,
    SourceRateLimitError,
    SourceUnavailableError,
)

logger = logging.getLogger(__name__)

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
API_BASE_URL = "https://oauth.reddit.com"
DEFAULT_RETRY_AFTER_SECONDS = 60.0


class ContentProvider(ABC):
    """What the job runner needs from a forum."""

    @abstractmethod
    def list_new_posts(self, source: str, since: Optional[datetime], limit: int) -> List[str]:
        """Post ids newer than ``since``, oldest first."""

    @abstractmethod
    def search_posts(self, source: str, keyword: str, limit: int) -> List[str]:
        """Post ids matching ``keyword`` within ``source``, oldest first."""

    @abstractmethod
    def fetch_thread(self, post_id: str) -> ForumThread:
        """Post plus every comment, flattened with parent references."""


class RateLimiter:
    """Sliding-window request pacing."""

    def __init__(self, max_requests: int = 100, window_seconds: float = 60.0):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        """Block until a request slot is available within the window."""
        while True:
            with self._lock:
                now = time.monotonic()
                cutoff = now - self.window_seconds
                while self.requests and self.requests[0] < cutoff:
                    self.requests.popleft()
                if len(self.requests) < self.max_requests:
                    self.requests.append(now)
                    return
                sleep_time = self.requests[0] - cutoff
            logger.debug("Request window full, sleeping %.2fs", sleep_time)
            time.sleep(max(sleep_time, 0.01))


def flatten_comment_listing(listing: Any) -> List[Comment]:
    """Flatten a nested comment listing into parent-referencing comments.

    Walks with an explicit stack so very deep reply chains are safe. ``more``
    stubs are skipped.
    """
    comments: List[Comment] = []
    if not isinstance(listing, dict):
        raise MalformedThreadError("Comment listing is not an object")
    stack: List[Any] = list(reversed(listing.get("data", {}).get("children", [])))
    while stack:
        node = stack.pop()
        if not isinstance(node, dict) or node.get("kind") != "t1":
            continue
        data = node.get("data") or {}
        if "id" not in data:
            raise MalformedThreadError("Comment without id in listing")
        comments.append(
            Comment(
                id=str(data["id"]),
                parent_id=data.get("parent_id"),
                body=data.get("body") or "",
                author_ref=data.get("author"),
                score=int(data.get("score") or 0),
                created_at=(
                    datetime.fromtimestamp(float(data["created_utc"]), tz=timezone.utc)
                    if data.get("created_utc") is not None
                    else None
                ),
            )
        )
        replies = data.get("replies")
        if isinstance(replies, dict):
            stack.extend(reversed(replies.get("data", {}).get("children", [])))
    return comments


def _post_from_data(data: Dict[str, Any]) -> Post:
    return Post(
        id=str(data["id"]),
        source=data.get("subreddit") or "",
        title=data.get("title") or "",
        body=data.get("selftext") or "",
        author_ref=data.get("author"),
        score=int(data.get("score") or 0),
        created_at=(
            datetime.fromtimestamp(float(data["created_utc"]), tz=timezone.utc)
            if data.get("created_utc") is not None
            else None
        ),
        url=data.get("url"),
    )


class RedditContentProvider(ContentProvider):
    """Reddit script-app client using the client-credentials grant."""

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.Client] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        try:
            self._client_id = client_id or require_env("REDDIT_CLIENT_ID", "Reddit app client id")
            self._client_secret = client_secret or require_env("REDDIT_CLIENT_SECRET", "Reddit app secret")
        except ConfigurationError as exc:
            raise ConfigurationError(f"{exc}\nRequired for forum collection.")
        self._user_agent = user_agent or "forum-collection/1.0"
        self._http = http_client or httpx.Client(timeout=timeout_seconds, headers={"User-Agent": self._user_agent})
        self._rate_limiter = rate_limiter or RateLimiter()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RedditContentProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----------------------------------------------------------------- HTTP

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            response = self._send(
                "POST",
                TOKEN_URL,
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
            )
            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise SourceError("Reddit authentication returned no access token")
            self._token = token
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + float(payload.get("expires_in", 3600)) - 60
            return token

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        self._rate_limiter.acquire()
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise SourceUnavailableError(f"Forum request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            if is_network_error(exc):
                raise SourceUnavailableError(f"Network error calling forum API: {exc}") from exc
            raise SourceError(f"Forum request failed: {exc}") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            try:
                wait = float(retry_after) if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
            except ValueError:
                wait = DEFAULT_RETRY_AFTER_SECONDS
            raise SourceRateLimitError(f"Forum API rate limit hit for {url}", retry_after=wait)
        if response.status_code in (403, 404, 410):
            raise SourceNotFoundError(f"Forum resource unavailable ({response.status_code}): {url}")
        if response.status_code == 401:
            self._token = None
            raise SourceUnavailableError(f"Forum API rejected token (401): {url}")
        if response.status_code >= 500:
            raise SourceUnavailableError(f"Forum API error {response.status_code}: {url}")
        if response.status_code >= 400:
            raise SourceError(f"Forum API error {response.status_code}: {url}")

        remaining = response.headers.get("x-ratelimit-remaining")
        reset = response.headers.get("x-ratelimit-reset")
        if remaining is not None and reset is not None:
            try:
                if float(remaining) < 1:
                    raise SourceRateLimitError("Forum API request budget exhausted", retry_after=float(reset))
            except ValueError:
                logger.debug("Unparseable rate limit headers: %s/%s", remaining, reset)
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        token = self._access_token()
        response = self._send(
            "GET",
            f"{API_BASE_URL}{path}",
            params={**(params or {}), "raw_json": 1},
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedThreadError(f"Forum API returned invalid JSON for {path}") from exc

    # ------------------------------------------------------------ contract

    def _listing_ids(self, payload: Any, since: Optional[datetime] = None) -> List[str]:
        if not isinstance(payload, dict):
            raise MalformedThreadError("Listing payload is not an object")
        posts = []
        for child in payload.get("data", {}).get("children", []):
            data = child.get("data") or {}
            if child.get("kind") != "t3" or "id" not in data:
                continue
            created = float(data.get("created_utc") or 0)
            if since is not None and created <= since.timestamp():
                continue
            posts.append((created, str(data["id"])))
        posts.sort()
        return [post_id for _, post_id in posts]

    def list_new_posts(self, source: str, since: Optional[datetime], limit: int) -> List[str]:
        payload = self._get_json(f"/r/{source}/new", {"limit": min(limit, 100)})
        ids = self._listing_ids(payload, since)
        logger.info("Listed %d new posts in %s", len(ids), source)
        return ids

    def search_posts(self, source: str, keyword: str, limit: int) -> List[str]:
        payload = self._get_json(
            f"/r/{source}/search",
            {"q": keyword, "restrict_sr": 1, "sort": "relevance", "t": "all", "limit": min(limit, 100)},
        )
        ids = self._listing_ids(payload)
        logger.info("Keyword search '%s' in %s returned %d posts", keyword, source, len(ids))
        return ids

    def fetch_thread(self, post_id: str) -> ForumThread:
        bare_id = post_id[3:] if post_id.startswith("t3_") else post_id
        payload = self._get_json(f"/comments/{bare_id}", {"limit": 500, "depth": 50, "sort": "top"})
        if not isinstance(payload, list) or len(payload) < 2:
            raise MalformedThreadError(f"Thread payload for {post_id} is not a [post, comments] pair")
        try:
            post_data = payload[0]["data"]["children"][0]["data"]
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedThreadError(f"Thread payload for {post_id} has no post") from exc
        return ForumThread(post=_post_from_data(post_data), comments=tuple(flatten_comment_listing(payload[1])))
