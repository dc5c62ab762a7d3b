"""Subscription persistence and configuration validation."""

import copy
import threading
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

from rssfeed_relay.models import KeywordPolicy, Subscription, utc_now
from rssfeed_relay.store import DocumentStore, StoreError, _dt_to_str, _str_to_dt

COLLECTION = "subscriptions"

MIN_INTERVAL = 1
MAX_INTERVAL = 1440

CONFIG_FIELDS = frozenset({
    "url",
    "title",
    "interval",
    "enabled",
    "keywords",
    "chat_id",
    "user_id",
    "use_custom_push",
    "custom_bot_token",
    "custom_chat_id",
    "skip_backlog",
})

# Accepted in update payloads (panels echo whole records back) but never applied.
RUNTIME_FIELDS = frozenset({
    "id",
    "created_at",
    "last_check",
    "last_error",
    "last_new_count",
    "first_check_pending",
})

_KEYWORD_FIELDS = ("whitelist", "blacklist", "whitelist_enabled", "blacklist_enabled")


class ConfigValidationError(ValueError):
    """Raised when subscription configuration is rejected."""


def validate_interval(value: Any) -> int:
    """Return ``value`` as whole minutes, rejecting anything outside [1, 1440]."""
    if isinstance(value, bool):
        raise ConfigValidationError("Interval must be a whole number of minutes")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ConfigValidationError("Interval must be a whole number of minutes")
    if not MIN_INTERVAL <= value <= MAX_INTERVAL:
        raise ConfigValidationError(
            f"Interval must be between {MIN_INTERVAL} and {MAX_INTERVAL} minutes"
        )
    return value


def normalize_terms(terms: Any) -> list[str]:
    """Turn a list (or comma-separated string) of terms into an ordered set."""
    if terms is None:
        return []
    if isinstance(terms, str):
        terms = terms.split(",")
    cleaned = (str(t).strip() for t in terms)
    return list(dict.fromkeys(t for t in cleaned if t))


def validate_config(fields: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """Validate and normalize configuration fields.

    Args:
        fields: Raw configuration values.
        partial: True for updates, where every field is optional.

    Returns:
        A new dict holding only configuration fields.

    Raises:
        ConfigValidationError: On a missing URL, bad interval or unknown field.
    """
    unknown = set(fields) - CONFIG_FIELDS - RUNTIME_FIELDS
    if unknown:
        raise ConfigValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

    clean = {k: v for k, v in fields.items() if k in CONFIG_FIELDS}

    if not partial or "url" in clean:
        url = clean.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ConfigValidationError("URL is required")
        clean["url"] = url.strip()

    if "interval" in clean:
        clean["interval"] = validate_interval(clean["interval"])

    if "keywords" in clean:
        keywords = clean["keywords"]
        if isinstance(keywords, KeywordPolicy):
            keywords = asdict(keywords)
        if keywords is None:
            keywords = {}
        if not isinstance(keywords, dict):
            raise ConfigValidationError("Keywords must be an object")
        policy = {}
        for key in _KEYWORD_FIELDS:
            if key not in keywords:
                continue
            if key.endswith("_enabled"):
                policy[key] = bool(keywords[key])
            else:
                policy[key] = normalize_terms(keywords[key])
        clean["keywords"] = policy

    for key in ("enabled", "use_custom_push", "skip_backlog"):
        if key in clean:
            clean[key] = bool(clean[key])

    for key in ("chat_id", "user_id", "custom_chat_id", "custom_bot_token"):
        if key in clean and clean[key] is not None:
            value = str(clean[key]).strip()
            clean[key] = value or None

    return clean


class SubscriptionStore:
    """Durable record of every subscription, backed by one document.

    Configuration and runtime writes each merge into the current record so
    that neither can overwrite the other.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._lock = threading.Lock()
        self._cache: list[dict] | None = None

    def all(self) -> list[Subscription]:
        with self._lock:
            return [_dict_to_sub(r) for r in self._records()]

    def get(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            for record in self._records():
                if record["id"] == subscription_id:
                    return _dict_to_sub(record)
        return None

    def insert(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription, assigning its id."""
        if subscription.id is None:
            subscription.id = f"feed_{uuid.uuid4().hex[:12]}"
        with self._lock:
            records = copy.deepcopy(self._records())
            records.append(_sub_to_dict(subscription))
            self._commit(records)
        return subscription

    def merge_config(
        self, subscription_id: str, fields: dict[str, Any]
    ) -> Subscription | None:
        """Merge validated configuration fields into a subscription."""

        def apply(record: dict) -> None:
            for key, value in fields.items():
                if key == "keywords":
                    record["keywords"] = {**record.get("keywords", {}), **value}
                else:
                    record[key] = value

        return self._mutate(subscription_id, apply)

    def record_success(
        self, subscription_id: str, when: datetime, new_count: int
    ) -> Subscription | None:
        def apply(record: dict) -> None:
            record["last_check"] = _dt_to_str(when)
            record["last_error"] = None
            record["last_new_count"] = new_count
            record["first_check_pending"] = False

        return self._mutate(subscription_id, apply)

    def record_error(self, subscription_id: str, message: str) -> Subscription | None:
        def apply(record: dict) -> None:
            record["last_error"] = message

        return self._mutate(subscription_id, apply)

    def remove(self, subscription_id: str) -> bool:
        with self._lock:
            records = self._records()
            remaining = [r for r in records if r["id"] != subscription_id]
            if len(remaining) == len(records):
                return False
            self._commit(remaining)
        return True

    def _mutate(
        self, subscription_id: str, apply: Callable[[dict], None]
    ) -> Subscription | None:
        with self._lock:
            records = copy.deepcopy(self._records())
            for record in records:
                if record["id"] == subscription_id:
                    apply(record)
                    self._commit(records)
                    return _dict_to_sub(record)
        return None

    def _records(self) -> list[dict]:
        if self._cache is None:
            loaded = self._store.load(COLLECTION, [])
            if not isinstance(loaded, list):
                raise StoreError(f"Document '{COLLECTION}' is not a list")
            self._cache = loaded
        return self._cache

    def _commit(self, records: list[dict]) -> None:
        self._store.save(COLLECTION, records)
        self._cache = records


# --- Helper functions ---


def _sub_to_dict(sub: Subscription) -> dict:
    """Convert a Subscription to its stored form."""
    record = asdict(sub)
    for key in ("created_at", "last_check"):
        record[key] = _dt_to_str(record[key])
    return record


def _dict_to_sub(record: dict) -> Subscription:
    """Convert a stored record back to a Subscription."""
    keywords = record.get("keywords") or {}
    return Subscription(
        id=record["id"],
        url=record["url"],
        title=record.get("title") or "Unknown",
        interval=record.get("interval") or 30,
        enabled=record.get("enabled", True),
        keywords=KeywordPolicy(
            whitelist=list(keywords.get("whitelist") or []),
            blacklist=list(keywords.get("blacklist") or []),
            whitelist_enabled=keywords.get("whitelist_enabled", True),
            blacklist_enabled=keywords.get("blacklist_enabled", True),
        ),
        chat_id=record.get("chat_id"),
        user_id=record.get("user_id"),
        use_custom_push=record.get("use_custom_push", False),
        custom_bot_token=record.get("custom_bot_token"),
        custom_chat_id=record.get("custom_chat_id"),
        skip_backlog=record.get("skip_backlog", False),
        created_at=_str_to_dt(record.get("created_at")) or utc_now(),
        last_check=_str_to_dt(record.get("last_check")),
        last_error=record.get("last_error"),
        last_new_count=record.get("last_new_count", 0),
        first_check_pending=record.get("first_check_pending", True),
    )


def subscription_to_dict(sub: Subscription) -> dict:
    """JSON-friendly view of a subscription for the admin and command surfaces."""
    return _sub_to_dict(sub)
