"""Chat command tools, scoped to the calling chat and user."""

import asyncio
import json

from langchain_core.tools import BaseTool, tool

from rssfeed_relay.feed_parser import fetch_feed
from rssfeed_relay.models import Subscription, TickResult
from rssfeed_relay.scheduler import FeedFetcher, Scheduler
from rssfeed_relay.subscriptions import ConfigValidationError, normalize_terms

DEFAULT_INTERVAL = 30
PREVIEW_ITEMS = 3

KEYWORD_LISTS = ("whitelist", "blacklist")


def build_command_tools(
    scheduler: Scheduler,
    chat_id: str,
    user_id: str | None = None,
    fetch: FeedFetcher = fetch_feed,
    default_interval: int = DEFAULT_INTERVAL,
) -> list[BaseTool]:
    """Create the subscription tools for one chat caller.

    A subscription is visible to the caller when its destination is the
    caller's chat or it was created by the caller's user.

    Args:
        scheduler: Scheduler owning the subscriptions.
        chat_id: Chat the command came from; new subscriptions deliver here.
        user_id: User who sent the command.
        fetch: Feed fetcher used to validate new subscriptions.
        default_interval: Interval in minutes for new subscriptions.

    Returns:
        List of langchain tools.
    """
    chat_id = str(chat_id)
    user_id = str(user_id) if user_id is not None else None

    def visible(sub: Subscription) -> bool:
        return sub.chat_id == chat_id or (user_id is not None and sub.user_id == user_id)

    def find(subscription_id: str) -> Subscription | None:
        sub = scheduler.get(subscription_id)
        return sub if sub is not None and visible(sub) else None

    @tool
    async def subscribe_to_feed(url: str, interval: int = default_interval) -> str:
        """Subscribe this chat to an RSS or Atom feed by URL.

        Args:
            url: The URL of the RSS or Atom feed.
            interval: Minutes between checks (1-1440).
        """
        parsed = await asyncio.to_thread(fetch, url)
        if not parsed.success:
            return _error(parsed.error or "Could not read feed")

        try:
            sub = scheduler.add({
                "url": url,
                "title": parsed.title,
                "interval": interval,
                "chat_id": chat_id,
                "user_id": user_id,
                "enabled": True,
            })
        except ConfigValidationError as e:
            return _error(str(e))

        return json.dumps({
            "status": "subscribed",
            "subscription": _summary(sub),
            "preview": [item.title for item in parsed.items[:PREVIEW_ITEMS]],
        })

    @tool
    async def list_subscriptions() -> str:
        """List this chat's feed subscriptions with their status."""
        subs = [s for s in scheduler.list_subscriptions() if visible(s)]
        return json.dumps({
            "subscriptions": [_summary(s) for s in subs],
            "total": len(subs),
        })

    @tool
    async def unsubscribe(subscription_id: str) -> str:
        """Delete a subscription.

        Args:
            subscription_id: Id of the subscription to delete.
        """
        sub = find(subscription_id)
        if sub is None or not scheduler.delete(sub.id):
            return _not_found(subscription_id)
        return json.dumps({"status": "unsubscribed", "title": sub.title})

    @tool
    async def set_interval(subscription_id: str, minutes: int) -> str:
        """Change how often a subscription is checked.

        Args:
            subscription_id: Id of the subscription.
            minutes: New interval in minutes (1-1440).
        """
        if find(subscription_id) is None:
            return _not_found(subscription_id)
        try:
            sub = scheduler.update(subscription_id, {"interval": minutes})
        except ConfigValidationError as e:
            return _error(str(e))
        if sub is None:
            return _not_found(subscription_id)
        return json.dumps({"status": "updated", "subscription": _summary(sub)})

    @tool
    async def add_keywords(
        subscription_id: str, words: str, list_name: str = "whitelist"
    ) -> str:
        """Add comma-separated keywords to a subscription's whitelist or blacklist.

        Args:
            subscription_id: Id of the subscription.
            words: Comma-separated keywords.
            list_name: "whitelist" or "blacklist".
        """
        return _edit_keywords(subscription_id, words, list_name, add=True)

    @tool
    async def remove_keywords(
        subscription_id: str, words: str, list_name: str = "whitelist"
    ) -> str:
        """Remove comma-separated keywords from a subscription's whitelist or blacklist.

        Args:
            subscription_id: Id of the subscription.
            words: Comma-separated keywords.
            list_name: "whitelist" or "blacklist".
        """
        return _edit_keywords(subscription_id, words, list_name, add=False)

    @tool
    async def set_enabled(subscription_id: str, enabled: bool) -> str:
        """Pause or resume a subscription without deleting it.

        Args:
            subscription_id: Id of the subscription.
            enabled: True to resume checking, False to pause.
        """
        if find(subscription_id) is None:
            return _not_found(subscription_id)
        sub = scheduler.update(subscription_id, {"enabled": enabled})
        if sub is None:
            return _not_found(subscription_id)
        return json.dumps({"status": "enabled" if sub.enabled else "paused", "title": sub.title})

    @tool
    async def refresh_subscriptions(subscription_id: str = "") -> str:
        """Check one subscription, or all of this chat's subscriptions, right now.

        Args:
            subscription_id: Optional id; when empty every visible subscription is checked.
        """
        if subscription_id:
            if find(subscription_id) is None:
                return _not_found(subscription_id)
            results = [await scheduler.refresh_one(subscription_id)]
        else:
            ids = [s.id for s in scheduler.list_subscriptions() if visible(s) and s.enabled]
            results = list(await asyncio.gather(*(scheduler.refresh_one(i) for i in ids)))
        return json.dumps({
            "status": "refreshed",
            "results": [_tick_summary(r) for r in results],
        })

    def _edit_keywords(subscription_id: str, words: str, list_name: str, add: bool) -> str:
        if list_name not in KEYWORD_LISTS:
            return _error("list_name must be 'whitelist' or 'blacklist'")
        sub = find(subscription_id)
        if sub is None:
            return _not_found(subscription_id)

        terms = normalize_terms(words)
        current = getattr(sub.keywords, list_name)
        if add:
            updated = normalize_terms(current + terms)
        else:
            updated = [t for t in current if t not in terms]
        sub = scheduler.update(subscription_id, {"keywords": {list_name: updated}})
        if sub is None:
            return _not_found(subscription_id)
        return json.dumps({
            "status": "updated",
            "whitelist": sub.keywords.whitelist,
            "blacklist": sub.keywords.blacklist,
        })

    return [
        subscribe_to_feed,
        list_subscriptions,
        unsubscribe,
        set_interval,
        add_keywords,
        remove_keywords,
        set_enabled,
        refresh_subscriptions,
    ]


def _summary(sub: Subscription) -> dict:
    return {
        "id": sub.id,
        "title": sub.title,
        "url": sub.url,
        "interval": sub.interval,
        "status": "paused" if not sub.enabled else ("erroring" if sub.last_error else "active"),
        "last_check": sub.last_check.isoformat() if sub.last_check else None,
        **({"last_error": sub.last_error} if sub.last_error else {}),
        "whitelist": sub.keywords.whitelist,
        "blacklist": sub.keywords.blacklist,
    }


def _tick_summary(result: TickResult) -> dict:
    summary = {
        "id": result.subscription_id,
        "new_items": len(result.new_items),
    }
    if result.fetch is not None and not result.fetch.success:
        summary["error"] = result.fetch.error
    if result.delivery is not None:
        summary["delivery"] = result.delivery.status.value
        summary["sent"] = len(result.delivery.sent)
    if result.skipped:
        summary["skipped"] = result.skipped
    return summary


def _error(message: str) -> str:
    return json.dumps({"status": "error", "message": message})


def _not_found(subscription_id: str) -> str:
    return _error(f"No subscription found with id '{subscription_id}'")
