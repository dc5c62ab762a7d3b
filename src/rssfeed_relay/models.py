"""Data models for RSS Feed Relay."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeywordPolicy:
    """Whitelist/blacklist terms applied to every fetched item."""

    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)
    whitelist_enabled: bool = True
    blacklist_enabled: bool = True


@dataclass
class Subscription:
    """A monitored feed with its own interval, filters and delivery target."""

    url: str
    title: str = "Unknown"
    interval: int = 30
    enabled: bool = True
    keywords: KeywordPolicy = field(default_factory=KeywordPolicy)
    chat_id: str | None = None
    user_id: str | None = None
    use_custom_push: bool = False
    custom_bot_token: str | None = None
    custom_chat_id: str | None = None
    skip_backlog: bool = False
    created_at: datetime = field(default_factory=utc_now)
    # Runtime state, written only by the scheduler
    last_check: datetime | None = None
    last_error: str | None = None
    last_new_count: int = 0
    first_check_pending: bool = True
    id: str | None = None


@dataclass
class FeedItem:
    """A single entry produced by one fetch; not persisted on its own."""

    id: str
    title: str
    link: str = ""
    description: str = ""
    published: datetime | None = None
    content: str = ""


@dataclass
class HistoryRecord:
    """One delivery attempt for a (subscription, item) pair."""

    subscription_id: str
    subscription_title: str
    item: FeedItem
    found_at: datetime = field(default_factory=utc_now)


@dataclass
class FetchResult:
    """Tagged result of fetching and parsing a feed."""

    success: bool
    title: str | None = None
    items: list[FeedItem] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failure(cls, error: str) -> "FetchResult":
        return cls(success=False, error=error)


@dataclass
class FilterResult:
    kept: list[FeedItem]
    dropped: list[FeedItem]


@dataclass
class DeliveryTarget:
    """Resolved delivery target. ``credential`` is None for the system default."""

    credential: str | None
    chat_id: str
    label: str


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    NO_ITEMS = "no_items"
    NO_DESTINATION = "no_destination"
    INVALID_CREDENTIAL = "invalid_credential"
    GATEWAY_NOT_READY = "gateway_not_ready"


@dataclass
class DeliveryOutcome:
    """What the push router did with one batch."""

    status: DeliveryStatus
    target: DeliveryTarget | None = None
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    over_cap: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def deferred(self) -> bool:
        """True when the batch should be offered again on the next tick."""
        return self.status is DeliveryStatus.GATEWAY_NOT_READY


@dataclass
class TickResult:
    """Outcome of one fetch -> filter -> dedup -> route execution."""

    subscription_id: str
    fetch: FetchResult | None = None
    filtered: FilterResult | None = None
    new_items: list[FeedItem] = field(default_factory=list)
    delivery: DeliveryOutcome | None = None
    skipped: str | None = None

    @property
    def ok(self) -> bool:
        return self.skipped is None and self.fetch is not None and self.fetch.success
