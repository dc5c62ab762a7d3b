"""RSS/Atom feed fetching and parsing using httpx and feedparser."""

import html
import logging
import re
from datetime import datetime, timezone
from time import struct_time
from urllib.parse import urlparse

import feedparser
import httpx

from rssfeed_relay.models import FeedItem, FetchResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
MAX_DESCRIPTION_CHARS = 300

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml, */*"

_TAG_RE = re.compile(r"<[^>]+>")
_RSS_RE = re.compile(r"<rss[\s\S]*</rss>", re.IGNORECASE)
_ATOM_RE = re.compile(r"<feed[\s\S]*</feed>", re.IGNORECASE)
_PRE_RE = re.compile(r"<pre[^>]*>([\s\S]*?)</pre>", re.IGNORECASE)


class FeedFetchError(Exception):
    """Raised internally when a feed cannot be fetched or parsed."""


def fetch_feed(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.BaseTransport | None = None,
) -> FetchResult:
    """Fetch and parse an RSS or Atom feed from a URL.

    Never raises for network or parse problems; the failure is reported
    in the returned FetchResult instead.

    Args:
        url: The feed URL to fetch.
        timeout: Upper bound in seconds for the HTTP exchange.
        transport: Optional httpx transport (used by tests).

    Returns:
        FetchResult with the feed title and items in feed order.
    """
    try:
        _validate_url(url)
        content = _download(url, timeout, transport)
        return parse_feed_document(content)
    except FeedFetchError as e:
        logger.debug("Fetch failed for %s: %s", url, e)
        return FetchResult.failure(str(e))
    except Exception as e:
        logger.warning("Unexpected error fetching %s: %s", url, e)
        return FetchResult.failure(f"Unexpected error: {e}")


def parse_feed_document(content: str | bytes) -> FetchResult:
    """Parse raw feed text into a FetchResult."""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")

    document = _extract_xml(content)
    if document is None:
        return FetchResult.failure("URL does not point to a valid RSS or Atom feed")

    parsed = feedparser.parse(document)
    if not parsed.feed.get("title") and not parsed.entries:
        return FetchResult.failure("URL does not point to a valid RSS or Atom feed")

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(f"Feed has formatting issues: {parsed.bozo_exception}")

    return FetchResult(
        success=True,
        title=parsed.feed.get("title") or "Untitled Feed",
        items=_extract_items(parsed.entries, warnings),
        warnings=warnings,
    )


def _validate_url(url: str) -> None:
    """Validate that the URL has a valid format."""
    try:
        result = urlparse(url)
    except ValueError:
        raise FeedFetchError("Invalid URL format")
    if not result.scheme or not result.netloc:
        raise FeedFetchError("Invalid URL format")
    if result.scheme not in ("http", "https"):
        raise FeedFetchError("Invalid URL format: only http and https are supported")


def _download(
    url: str, timeout: float, transport: httpx.BaseTransport | None
) -> str:
    headers = {"User-Agent": USER_AGENT, "Accept": ACCEPT}
    try:
        with httpx.Client(
            timeout=timeout,
            headers=headers,
            follow_redirects=True,
            transport=transport,
        ) as client:
            response = client.get(url)
    except httpx.TimeoutException:
        raise FeedFetchError(f"Timed out after {timeout:g}s")
    except httpx.HTTPError as e:
        raise FeedFetchError(f"Could not reach URL: {e}")

    if response.status_code in (401, 403):
        raise FeedFetchError(
            f"HTTP {response.status_code}: feed requires authentication or blocks crawlers"
        )
    if response.status_code >= 400:
        raise FeedFetchError(f"Could not reach URL: HTTP {response.status_code}")
    return response.text


def _extract_xml(content: str) -> str | None:
    """Return the feed document inside ``content``.

    Handles a leading BOM or whitespace, feeds wrapped in an HTML page and
    feeds rendered as escaped text inside a <pre> block.
    """
    text = content.lstrip("\ufeff").lstrip()
    if text.startswith(("<?xml", "<rss", "<feed", "<rdf")):
        return text

    for pattern in (_RSS_RE, _ATOM_RE):
        match = pattern.search(text)
        if match:
            return match.group(0)

    match = _PRE_RE.search(text)
    if match:
        return html.unescape(match.group(1))
    return None


def _extract_items(entries: list, warnings: list[str]) -> list[FeedItem]:
    """Extract FeedItems from feedparser entries, keeping feed order."""
    items = []
    for index, entry in enumerate(entries):
        try:
            link = entry.get("link") or ""
            item_id = entry.get("id") or entry.get("guid") or link or f"item-{index}"

            content = ""
            if entry.get("content"):
                content = str(entry.content[0].get("value", ""))
            summary = entry.get("summary") or entry.get("description") or ""

            items.append(
                FeedItem(
                    id=str(item_id),
                    title=entry.get("title") or "Untitled",
                    link=link,
                    description=_to_text(summary or content)[:MAX_DESCRIPTION_CHARS],
                    published=_parse_date(entry),
                    content=_to_text(content or summary),
                )
            )
        except Exception as e:
            warnings.append(f"Skipping malformed entry: {e}")
            continue
    return items


def _to_text(markup: str) -> str:
    """Strip tags and collapse whitespace."""
    text = html.unescape(_TAG_RE.sub(" ", markup))
    return " ".join(text.split())


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry."""
    for field_name in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field_name)
        if isinstance(time_struct, (struct_time, tuple)) and len(time_struct) >= 6:
            try:
                return datetime(*time_struct[:6], tzinfo=timezone.utc)
            except (ValueError, TypeError, OverflowError):
                continue
    return None
