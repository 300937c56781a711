"""
Text normalization and content hashing for feed entries.

The content hash is the exact-match deduplication key. It is computed over
the normalized identity of an entry (title + link, or guid when either is
missing) so that the same article syndicated by several feeds collapses to
one stored row.
"""

from __future__ import annotations

import hashlib
import html
import re
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup

_WS_RE = re.compile(r"\s+")


def clean_text(value: str | None) -> str:
    """Strip HTML tags and entities and collapse whitespace.

    Returns an empty string for None or markup-only input.
    """
    if not value:
        return ""
    if "<" in value and ">" in value:
        value = BeautifulSoup(value, "html.parser").get_text(" ")
    value = html.unescape(value)
    return _WS_RE.sub(" ", value).strip()


def normalize_title(title: str | None) -> str:
    return clean_text(title).casefold()


def normalize_link(link: str | None) -> str:
    """Lowercase scheme and host, drop the fragment, keep path and query verbatim."""
    if not link:
        return ""
    link = link.strip()
    if not link:
        return ""
    parts = urlsplit(link)
    if not parts.scheme or not parts.netloc:
        return link
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, ""))


def content_hash(title: str | None, link: str | None, guid: str | None) -> str:
    """Return the SHA-256 hex digest of an entry's normalized identity.

    Title + link win over guid: feeds mint their own guids for syndicated
    articles, while the title and canonical link stay the same.

    Raises:
        ValueError: if the entry has neither title+link nor a guid
    """
    norm_title = normalize_title(title)
    norm_link = normalize_link(link)
    if norm_title and norm_link:
        key = f"title:{norm_title}|link:{norm_link}"
    else:
        norm_guid = (guid or "").strip()
        if not norm_guid:
            raise ValueError("Entry has no identity: needs title and link, or guid")
        key = f"guid:{norm_guid}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
