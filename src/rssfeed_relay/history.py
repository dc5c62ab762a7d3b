"""Delivery history and seen-item index used for deduplication."""

import copy
import logging
import threading
from collections.abc import Iterable

from rssfeed_relay.models import FeedItem, HistoryRecord, Subscription, utc_now
from rssfeed_relay.store import DocumentStore, StoreError, _dt_to_str, _str_to_dt

logger = logging.getLogger(__name__)

COLLECTION = "history"

DEFAULT_CAPACITY = 200
DEFAULT_SEEN_PER_SUBSCRIPTION = 500


class HistoryStore:
    """Bounded record of delivered items plus a per-subscription seen index.

    The document has two parts: ``records`` (audit trail, newest first,
    capped at ``capacity``) and ``seen`` (item keys per subscription, oldest
    first, capped at ``seen_per_subscription``). Eviction drops the oldest
    entries in both.
    """

    def __init__(
        self,
        store: DocumentStore,
        capacity: int = DEFAULT_CAPACITY,
        seen_per_subscription: int = DEFAULT_SEEN_PER_SUBSCRIPTION,
    ):
        self._store = store
        self.capacity = capacity
        self.seen_per_subscription = seen_per_subscription
        self._lock = threading.Lock()
        self._cache: dict | None = None

    def contains(self, subscription_id: str, item: FeedItem | str) -> bool:
        """Whether ``item`` was already seen for this subscription.

        Matches on item id first, then on link.
        """
        keys = _item_keys(item)
        with self._lock:
            seen = self._document()["seen"].get(subscription_id, [])
            return any(key in seen for key in keys)

    def mark_seen(self, subscription_id: str, items: Iterable[FeedItem]) -> int:
        """Add items to the seen index. Returns how many keys were added."""
        keys = [key for item in items for key in _item_keys(item)]
        if not keys:
            return 0
        with self._lock:
            document = copy.deepcopy(self._document())
            added = self._add_seen(document, subscription_id, keys)
            if added:
                self._commit(document)
        return added

    def record(self, subscription: Subscription, item: FeedItem) -> bool:
        """Record a delivery attempt and mark the item seen.

        Returns False when the (subscription, item) pair was already recorded.
        """
        with self._lock:
            document = copy.deepcopy(self._document())
            self._add_seen(document, subscription.id, _item_keys(item))
            records = document["records"]
            duplicate = any(
                r["subscription_id"] == subscription.id and r["item"]["id"] == item.id
                for r in records
            )
            if not duplicate:
                records.insert(0, {
                    "subscription_id": subscription.id,
                    "subscription_title": subscription.title,
                    "item": item_to_dict(item),
                    "found_at": _dt_to_str(utc_now()),
                })
                del records[self.capacity:]
            else:
                logger.debug("Item %s already recorded for %s", item.id, subscription.id)
            self._commit(document)
        return not duplicate

    def records(self, subscription_id: str | None = None) -> list[HistoryRecord]:
        """Return recorded deliveries, newest first."""
        with self._lock:
            raw = list(self._document()["records"])
        if subscription_id is not None:
            raw = [r for r in raw if r["subscription_id"] == subscription_id]
        return [_dict_to_record(r) for r in raw]

    def forget(self, subscription_id: str) -> None:
        """Drop the seen index of a deleted subscription; audit records stay."""
        with self._lock:
            if subscription_id not in self._document()["seen"]:
                return
            document = copy.deepcopy(self._document())
            del document["seen"][subscription_id]
            self._commit(document)

    def _add_seen(self, document: dict, subscription_id: str, keys: list[str]) -> int:
        seen = document["seen"].setdefault(subscription_id, [])
        added = 0
        for key in keys:
            if key not in seen:
                seen.append(key)
                added += 1
        del seen[: max(0, len(seen) - self.seen_per_subscription)]
        return added

    def _document(self) -> dict:
        if self._cache is None:
            loaded = self._store.load(COLLECTION, {"records": [], "seen": {}})
            if not isinstance(loaded, dict):
                raise StoreError(f"Document '{COLLECTION}' is not an object")
            loaded.setdefault("records", [])
            loaded.setdefault("seen", {})
            self._cache = loaded
        return self._cache

    def _commit(self, document: dict) -> None:
        self._store.save(COLLECTION, document)
        self._cache = document


# --- Helper functions ---


def _item_keys(item: FeedItem | str) -> list[str]:
    if isinstance(item, str):
        return [item]
    keys = [item.id]
    if item.link and item.link != item.id:
        keys.append(item.link)
    return keys


def item_to_dict(item: FeedItem) -> dict:
    return {
        "id": item.id,
        "title": item.title,
        "link": item.link,
        "description": item.description,
        "published": _dt_to_str(item.published),
    }


def _dict_to_record(raw: dict) -> HistoryRecord:
    item = raw.get("item") or {}
    return HistoryRecord(
        subscription_id=raw["subscription_id"],
        subscription_title=raw.get("subscription_title") or "",
        item=FeedItem(
            id=item.get("id", ""),
            title=item.get("title", ""),
            link=item.get("link", ""),
            description=item.get("description", ""),
            published=_str_to_dt(item.get("published")),
        ),
        found_at=_str_to_dt(raw.get("found_at")) or utc_now(),
    )
