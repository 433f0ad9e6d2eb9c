"""
Link extraction, URL normalization and page identifiers for discovery.
"""
from __future__ import annotations

import posixpath
from typing import List
from urllib.parse import quote, unquote, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup
from bs4.element import Tag

_SKIP_SCHEMES = ("mailto:", "javascript:", "tel:", "data:")


def normalize_url(url: str) -> str:
    """
    Normalize URL to scheme + host + path: lowercase scheme and host,
    collapse ``.``/``..`` segments, drop query and fragment.
    The root path is kept as ``/``; a trailing slash elsewhere is kept.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = unquote(parsed.path or "/")
    norm = posixpath.normpath(path)
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    if path.endswith("/") and not norm.endswith("/"):
        norm += "/"
    if not norm.startswith("/"):
        norm = "/" + norm
    norm = quote(norm, safe="/:@!$&'()*+,;=-._~")
    return urlunparse((scheme, netloc, norm, "", "", ""))


def page_identifier(url: str) -> str:
    """Stable page id derived from the URL path.

    ``https://site/`` -> ``index``; ``https://site/about/team/`` ->
    ``about/team``. Used to pair baseline and after captures.
    """
    path = unquote(urlparse(normalize_url(url)).path).strip("/")
    return path or "index"


def extract_links(page_url: str, html: str) -> List[str]:
    """
    Extract normalized same-host http(s) links from *html*.

    Ignores mailto:, javascript:, tel:, fragment-only links and other hosts.
    Order of first appearance is preserved, duplicates removed.
    """
    soup = BeautifulSoup(html, "html.parser")
    base_netloc = urlparse(page_url).netloc.lower()
    seen: set[str] = set()
    links: List[str] = []
    for tag in soup.find_all("a", href=True):
        if not isinstance(tag, Tag):
            continue
        href_val = tag.get("href")
        if not isinstance(href_val, str):
            continue
        raw = href_val.strip()
        if not raw or raw.startswith("#") or raw.lower().startswith(_SKIP_SCHEMES):
            continue
        absolute = urljoin(page_url, raw)
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or parsed.netloc.lower() != base_netloc:
            continue
        norm = normalize_url(absolute)
        if norm not in seen:
            seen.add(norm)
            links.append(norm)
    return links


__all__ = ["normalize_url", "page_identifier", "extract_links"]
