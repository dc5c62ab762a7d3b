"""Shared test fixtures for RSS Feed Relay tests."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from rssfeed_relay.gateway import GatewayError, InvalidCredentialError
from rssfeed_relay.history import HistoryStore
from rssfeed_relay.models import FeedItem, FetchResult
from rssfeed_relay.router import DeliverySettings, PushRouter
from rssfeed_relay.scheduler import Scheduler
from rssfeed_relay.store import DocumentStore
from rssfeed_relay.subscriptions import SubscriptionStore


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Thu, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the &lt;b&gt;second&lt;/b&gt; article</description>
      <pubDate>Thu, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_NO_ID_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Sparse Feed</title>
    <item>
      <title>Linked only</title>
      <link>https://example.com/linked</link>
    </item>
    <item>
      <title>Nothing at all</title>
    </item>
  </channel>
</rss>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Malformed Feed</title>
    <link>https://example.com</link>
    <item>
      <title>Good Item</title>
      <guid>good-item</guid>
    </item>
    <item>
      <title>Bad Item</title>
      <!-- Missing closing tags intentionally -->
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

SYSTEM_TOKEN = "100:system-token"
OVERRIDE_TOKEN = "200:override-token"
DEPLOYMENT_TOKEN = "300:deployment-token"
REJECTED_TOKEN = "400:rejected-token"


def make_item(item_id: str, title: str | None = None, minutes: int | None = None, **kwargs) -> FeedItem:
    """Build a FeedItem; ``minutes`` sets a publication time relative to a fixed base."""
    published = None
    if minutes is not None:
        published = datetime(2026, 2, 13, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return FeedItem(
        id=item_id,
        title=title or f"Item {item_id}",
        link=kwargs.pop("link", f"https://example.com/{item_id}"),
        published=published,
        **kwargs,
    )


class FakeFetcher:
    """Callable standing in for fetch_feed; returns canned results per URL."""

    def __init__(self):
        self.results: dict[str, FetchResult] = {}
        self.calls: list[str] = []

    def set_items(self, url: str, items: list[FeedItem], title: str = "Test Feed") -> None:
        self.results[url] = FetchResult(success=True, title=title, items=list(items))

    def set_error(self, url: str, error: str) -> None:
        self.results[url] = FetchResult.failure(error)

    def count(self, url: str) -> int:
        return self.calls.count(url)

    def __call__(self, url: str) -> FetchResult:
        self.calls.append(url)
        if url not in self.results:
            return FetchResult.failure("Could not reach URL: HTTP 404")
        return self.results[url]


class FakeGateway:
    """In-memory messaging gateway recording every send."""

    def __init__(self, token: str, sent: list, fail_titles: set[str], rejected: set[str]):
        self.token = token
        self.sent = sent
        self.fail_titles = fail_titles
        self.rejected = rejected
        self.closed = False
        self.identity = None

    async def get_identity(self) -> dict:
        if self.token in self.rejected:
            raise InvalidCredentialError("getMe rejected: Unauthorized")
        self.identity = {"id": int(self.token.split(":")[0]), "username": f"bot{self.token.split(':')[0]}"}
        return self.identity

    async def send_message(self, chat_id, text, *, parse_mode="HTML", disable_web_page_preview=False):
        if any(title in text for title in self.fail_titles):
            raise GatewayError("sendMessage failed: Bad Request")
        self.sent.append({"token": self.token, "chat_id": chat_id, "text": text, "parse_mode": parse_mode})
        return {"message_id": len(self.sent)}

    async def aclose(self) -> None:
        self.closed = True


class FakeGatewayFactory:
    """GatewayFactory double; all gateways share one sent-message log."""

    def __init__(self):
        self.sent: list[dict] = []
        self.fail_titles: set[str] = set()
        self.rejected: set[str] = {REJECTED_TOKEN}
        self.created: list[FakeGateway] = []

    def __call__(self, token: str) -> FakeGateway:
        gateway = FakeGateway(token, self.sent, self.fail_titles, self.rejected)
        self.created.append(gateway)
        return gateway

    def texts(self, chat_id: str | None = None) -> list[str]:
        return [m["text"] for m in self.sent if chat_id is None or m["chat_id"] == chat_id]


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def store(tmp_db_path):
    """A connected document store."""
    document_store = DocumentStore(tmp_db_path)
    document_store.connect()
    yield document_store
    document_store.close()


@pytest.fixture
def history(store):
    return HistoryStore(store)


@pytest.fixture
def subscriptions(store):
    return SubscriptionStore(store)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def gateways():
    return FakeGatewayFactory()


@pytest.fixture
def router(history, gateways):
    return PushRouter(history, gateways, DeliverySettings())


@pytest.fixture
def scheduler(subscriptions, history, router, fetcher, gateways):
    """Scheduler whose minutes last 10ms and whose system bot is attached."""
    router.attach(gateways(SYSTEM_TOKEN))
    return Scheduler(
        subscriptions,
        history,
        router,
        fetch=fetcher,
        fetch_timeout=2.0,
        interval_unit=0.01,
    )


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_no_id_rss_xml():
    """RSS items without guid, one without a link either."""
    return SAMPLE_NO_ID_RSS_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample malformed RSS XML."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
