"""Forum content providers."""

from .forum_client import ContentProvider, RateLimiter, RedditContentProvider, flatten_comment_listing

__all__ = ["ContentProvider", "RateLimiter", "RedditContentProvider", "flatten_comment_listing"]
