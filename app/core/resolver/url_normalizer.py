# app/core/resolver/url_normalizer.py
"""
URL validation and canonicalization.

Pure functions, no I/O. Equivalent surface forms of the same post
(``/reel/X``, ``/reels/X``, ``/p/X?igsh=...``) collapse to one canonical URL
and therefore one cache key.
"""
from __future__ import annotations

import base64
import hashlib
import re
from typing import Iterable

from app.core.resolver.domain import NormalizedRequest, UrlCategory
from app.core.resolver.errors import InvalidUrlError

FALLBACK_KEY_LENGTH = 32

# All path patterns match the first path segment only, so "/stories/p/1/"
# is a story and never a post.
_ROOT = r"^https?://[^/?#]+"
_POST_RE = re.compile(_ROOT + r"/(?:p|reels?)/([A-Za-z0-9_-]+)", re.IGNORECASE)
_STORY_RE = re.compile(_ROOT + r"/stories/([^/?#]+)/([^/?#]+)", re.IGNORECASE)
_KEY_POST_RE = re.compile(_ROOT + r"/(?:p|reels?)/([^/?#]+)", re.IGNORECASE)
_FIRST_SEGMENT_RE = re.compile(_ROOT + r"/([^/?#]+)", re.IGNORECASE)
_HOST_RE = re.compile(r"^https?://(?:www\.)?([^/?#:]+)", re.IGNORECASE)

_SEGMENT_CATEGORIES = {
    "p": UrlCategory.POST,
    "reel": UrlCategory.REEL,
    "reels": UrlCategory.REEL,
    "stories": UrlCategory.STORY,
}


class UrlNormalizer:
    """
    Validates and canonicalizes post/reel/story URLs for a set of hosts.

    Hosts are given without the ``www.`` prefix, e.g. ``("instagram.com",)``.
    """

    def __init__(self, hosts: Iterable[str] = ("instagram.com",)):
        self.hosts = tuple(h.strip().lower() for h in hosts if h and h.strip())
        if not self.hosts:
            raise ValueError("UrlNormalizer requires at least one host")
        host_alt = "|".join(re.escape(h) for h in self.hosts)
        self._valid_re = re.compile(
            rf"^https?://(?:www\.)?(?:{host_alt})/(?:p|reel|reels|stories)/[^/]+(?:/[^/?#]+)?",
            re.IGNORECASE,
        )

    def validate(self, raw: object) -> bool:
        return isinstance(raw, str) and bool(self._valid_re.match(raw.strip()))

    def normalize(self, raw: str) -> str:
        """
        Canonical form of a valid URL. Call validate() first; the result for
        invalid input is unspecified.
        """
        trimmed = raw.strip()
        host = self.domain_of(trimmed)

        post_match = _POST_RE.match(trimmed)
        if post_match:
            return f"https://www.{host}/p/{post_match.group(1)}/"

        story_match = _STORY_RE.match(trimmed)
        if story_match:
            return f"https://www.{host}/stories/{story_match.group(1)}/{story_match.group(2)}/"

        return trimmed

    @staticmethod
    def cache_key(normalized: str) -> str:
        post_match = _KEY_POST_RE.match(normalized)
        if post_match:
            return f"post_{post_match.group(1)}"

        story_match = _STORY_RE.match(normalized)
        if story_match:
            return f"story_{story_match.group(1)}_{story_match.group(2)}"

        # Digest of the whole string: URLs sharing a long prefix still differ
        digest = hashlib.sha256(normalized.encode("utf-8")).digest()
        encoded = base64.urlsafe_b64encode(digest).decode("ascii")
        return f"url_{encoded[:FALLBACK_KEY_LENGTH]}"

    @staticmethod
    def category(normalized: str) -> UrlCategory:
        match = _FIRST_SEGMENT_RE.match(normalized.strip())
        if not match:
            return UrlCategory.UNKNOWN
        return _SEGMENT_CATEGORIES.get(match.group(1).lower(), UrlCategory.UNKNOWN)

    def domain_of(self, url: str) -> str:
        """Host without ``www.``; falls back to the first configured host."""
        match = _HOST_RE.match(url.strip())
        if match:
            return match.group(1).lower()
        return self.hosts[0]

    def build(self, raw: object) -> NormalizedRequest:
        if not self.validate(raw):
            raise InvalidUrlError("Invalid URL. Supported: /p/, /reel(s)/, /stories/.")

        normalized = self.normalize(raw)  # type: ignore[arg-type]
        return NormalizedRequest(
            original_id=raw,  # type: ignore[arg-type]
            normalized_id=normalized,
            cache_key=self.cache_key(normalized),
            category=self.category(normalized),
            domain=self.domain_of(normalized),
        )
