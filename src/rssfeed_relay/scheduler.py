"""Per-subscription polling scheduler for RSS Feed Relay."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from rssfeed_relay import keyword_filter
from rssfeed_relay.feed_parser import fetch_feed
from rssfeed_relay.history import HistoryStore
from rssfeed_relay.models import (
    FeedItem,
    FetchResult,
    HistoryRecord,
    KeywordPolicy,
    Subscription,
    TickResult,
    utc_now,
)
from rssfeed_relay.router import PushRouter
from rssfeed_relay.session import BotSession
from rssfeed_relay.subscriptions import SubscriptionStore, validate_config

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 15.0
SECONDS_PER_MINUTE = 60.0

FeedFetcher = Callable[[str], FetchResult]


class SubscriptionNotFound(LookupError):
    """Raised when an operation names a subscription that does not exist."""


class Scheduler:
    """Owns one timer per enabled subscription and runs the check pipeline.

    Every timer firing spawns the fetch -> filter -> dedup -> route pipeline
    as its own task, so a slow feed never holds up a timer or another
    subscription. Executions for the same subscription are serialized by a
    per-subscription lock.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        history: HistoryStore,
        router: PushRouter,
        fetch: FeedFetcher = fetch_feed,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        interval_unit: float = SECONDS_PER_MINUTE,
    ):
        self.subscriptions = subscriptions
        self.history = history
        self.router = router
        self.fetch_timeout = fetch_timeout
        self.interval_unit = interval_unit
        self.session: BotSession | None = None
        self._fetch_feed = fetch
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def timer_ids(self) -> set[str]:
        return set(self._timers)

    # --- Subscription operations ---

    def list_subscriptions(self) -> list[Subscription]:
        """Return every subscription, including disabled ones."""
        return self.subscriptions.all()

    def get(self, subscription_id: str) -> Subscription | None:
        return self.subscriptions.get(subscription_id)

    def add(self, config: dict[str, Any]) -> Subscription:
        """Create a subscription and, when running, start its timer.

        Raises:
            ConfigValidationError: If the URL is missing or the interval is
                outside [1, 1440] minutes.
        """
        fields = validate_config(config)
        keywords = KeywordPolicy(**fields.pop("keywords", {}))
        fields["title"] = fields.get("title") or "Unknown"
        subscription = self.subscriptions.insert(Subscription(keywords=keywords, **fields))

        logger.info("Added subscription [%s] %s", subscription.title, subscription.url)
        if subscription.enabled and self._running:
            self._start_timer(subscription, immediate=True)
        return subscription

    def update(self, subscription_id: str, fields: dict[str, Any]) -> Subscription | None:
        """Merge configuration fields. Returns None if the id is unknown.

        An interval change replaces the timer so the new period applies from
        the next tick; enabling starts a timer, disabling cancels it.
        """
        clean = validate_config(fields, partial=True)
        before = self.subscriptions.get(subscription_id)
        if before is None:
            return None
        after = self.subscriptions.merge_config(subscription_id, clean)
        if after is None:
            return None

        if self._running:
            if not after.enabled:
                self._cancel_timer(subscription_id)
            elif not before.enabled or subscription_id not in self._timers:
                self._start_timer(after, immediate=True)
            elif before.interval != after.interval:
                self._start_timer(after, immediate=False)
        return after

    def delete(self, subscription_id: str) -> bool:
        """Remove a subscription and cancel its timer. Returns True if it existed."""
        removed = self.subscriptions.remove(subscription_id)
        self._cancel_timer(subscription_id)
        if removed:
            self.history.forget(subscription_id)
            self._locks.pop(subscription_id, None)
            logger.info("Deleted subscription %s", subscription_id)
        return removed

    async def refresh_one(self, subscription_id: str) -> TickResult:
        """Check one subscription now, without touching its timer.

        Raises:
            SubscriptionNotFound: If the id is unknown.
        """
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        logger.info("Manual refresh: %s", subscription.title)
        return await self._run_tick(subscription_id, scheduled=False)

    async def refresh_all(self) -> list[TickResult]:
        """Check every enabled subscription concurrently.

        Completes once every check has finished, whatever its outcome.
        """
        ids = [s.id for s in self.subscriptions.all() if s.enabled]
        logger.info("Manual refresh of %d subscription(s)", len(ids))
        return list(
            await asyncio.gather(*(self._run_tick(i, scheduled=False) for i in ids))
        )

    def get_history(self, subscription_id: str | None = None) -> list[HistoryRecord]:
        return self.history.records(subscription_id)

    def record_delivered(self, subscription: Subscription, item: FeedItem) -> bool:
        return self.history.record(subscription, item)

    # --- Lifecycle ---

    def start_all(self, session: BotSession | None = None) -> int:
        """(Re)create a timer for every enabled subscription.

        Each subscription is also checked once right away. Returns the
        number of timers started.
        """
        self.stop_all()
        if session is not None:
            self.session = session
            self.router.attach(session.gateway)

        self._running = True
        started = 0
        for subscription in self.subscriptions.all():
            if subscription.enabled:
                self._start_timer(subscription, immediate=True)
                started += 1
        logger.info("Scheduler started with %d active subscription(s)", started)
        return started

    def stop_all(self) -> None:
        """Cancel every timer. In-flight checks are left to finish."""
        if self._timers:
            logger.info("Stopping %d subscription timer(s)", len(self._timers))
        self._running = False
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    async def aclose(self) -> None:
        """Stop all timers and wait for in-flight checks to complete."""
        self.stop_all()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # --- Timers ---

    def _start_timer(self, subscription: Subscription, immediate: bool) -> None:
        self._cancel_timer(subscription.id)
        if immediate:
            self._spawn(subscription.id)
        self._timers[subscription.id] = asyncio.create_task(
            self._timer_loop(subscription.id, subscription.interval),
            name=f"timer:{subscription.id}",
        )
        logger.info(
            "Scheduled [%s] every %d minute(s)", subscription.title, subscription.interval
        )

    def _cancel_timer(self, subscription_id: str) -> None:
        task = self._timers.pop(subscription_id, None)
        if task is not None:
            task.cancel()

    async def _timer_loop(self, subscription_id: str, interval: int) -> None:
        loop = asyncio.get_running_loop()
        period = interval * self.interval_unit
        deadline = loop.time() + period
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            deadline += period
            self._spawn(subscription_id)

    def _spawn(self, subscription_id: str) -> None:
        if not self._running:
            return
        task = asyncio.create_task(
            self._run_tick(subscription_id, scheduled=True),
            name=f"tick:{subscription_id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # --- Pipeline ---

    async def _run_tick(self, subscription_id: str, scheduled: bool) -> TickResult:
        lock = self._locks.setdefault(subscription_id, asyncio.Lock())
        async with lock:
            try:
                subscription = self.subscriptions.get(subscription_id)
                if subscription is None:
                    logger.warning(
                        "Subscription %s no longer exists, cancelling its timer",
                        subscription_id,
                    )
                    self._cancel_timer(subscription_id)
                    return TickResult(subscription_id, skipped="not found")
                if scheduled and not self._running:
                    logger.info("[%s] Scheduler stopped, skipping check", subscription.title)
                    return TickResult(subscription_id, skipped="stopped")
                if scheduled and not subscription.enabled:
                    logger.info("[%s] Disabled, skipping check", subscription.title)
                    return TickResult(subscription_id, skipped="disabled")
                result = await self._execute(subscription)
                if self.subscriptions.get(subscription_id) is None:
                    # Deleted mid-check; drop the seen keys this tick wrote.
                    self.history.forget(subscription_id)
                return result
            except Exception as e:
                logger.exception("Check failed for subscription %s", subscription_id)
                return TickResult(subscription_id, skipped=f"error: {e}")

    async def _execute(self, subscription: Subscription) -> TickResult:
        """Run fetch -> filter -> dedup -> route on a configuration snapshot."""
        sub_id = subscription.id
        result = TickResult(sub_id)
        logger.info("Checking [%s] %s", subscription.title, subscription.url)

        result.fetch = await self._fetch(subscription.url)
        if not result.fetch.success:
            error = result.fetch.error or "Unknown error"
            logger.warning("[%s] Fetch failed: %s", subscription.title, error)
            self.subscriptions.record_error(sub_id, error)
            return result

        result.filtered = keyword_filter.apply(result.fetch.items, subscription.keywords)
        # Dropped items count as seen so a relaxed policy cannot resurrect them.
        self.history.mark_seen(sub_id, result.filtered.dropped)

        fresh = [i for i in result.filtered.kept if not self.history.contains(sub_id, i)]
        result.new_items = _unique(fresh)

        if not result.new_items:
            logger.info("[%s] No new items", subscription.title)
        elif subscription.skip_backlog and subscription.first_check_pending:
            logger.info(
                "[%s] First check, marking %d item(s) seen without pushing",
                subscription.title, len(result.new_items),
            )
            self.history.mark_seen(sub_id, result.new_items)
        else:
            logger.info("[%s] %d new item(s)", subscription.title, len(result.new_items))
            result.delivery = await self.router.route(subscription, result.new_items)
            if not result.delivery.deferred:
                self.history.mark_seen(sub_id, result.new_items)

        self.subscriptions.record_success(sub_id, utc_now(), len(result.new_items))
        return result

    async def _fetch(self, url: str) -> FetchResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._fetch_feed, url), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            return FetchResult.failure(f"Fetch timed out after {self.fetch_timeout:g}s")
        except Exception as e:
            return FetchResult.failure(f"Fetch failed: {e}")


def _unique(items: list[FeedItem]) -> list[FeedItem]:
    seen: set[str] = set()
    unique = []
    for item in items:
        if item.id not in seen:
            seen.add(item.id)
            unique.append(item)
    return unique
