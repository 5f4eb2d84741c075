"""Shared helpers for turning fetched web content into model-readable text."""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "application/json,text/plain;q=0.8,*/*;q=0.7"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}

TRUNCATION_MARKER = "\n...[truncated]"

_NON_TEXT_TAGS = ["script", "style", "noscript"]
_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def html_to_text(html: str) -> str:
    """Visible text of an HTML document or fragment, entities decoded."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_NON_TEXT_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    return collapse_whitespace(soup.get_text(" ", strip=True))


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def normalize_url(url: str) -> str:
    """Return *url* without its fragment; unparseable input comes back unchanged."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def normalize_domain(value: str) -> str:
    """Reduce a domain or URL to its host (with port)."""
    value = value.strip()
    if not value:
        raise ValueError("Domain cannot be empty.")
    candidate = value if "://" in value else f"https://{value}"
    try:
        host = urlsplit(candidate).netloc
    except ValueError:
        host = ""
    if host:
        return host
    return re.sub(r"^https?://", "", value).split("/")[0]
