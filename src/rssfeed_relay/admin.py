"""Administrative operations consumed by the web panel's HTTP layer.

Each handler returns a JSON-serializable dict shaped like the panel's API
responses: ``{"success": bool, "data": ...}`` or ``{"success": False,
"error": ...}``.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from rssfeed_relay import keyword_filter
from rssfeed_relay.activity import ActivityLogHandler
from rssfeed_relay.gateway import GatewayFactory
from rssfeed_relay.history import item_to_dict
from rssfeed_relay.models import HistoryRecord, KeywordPolicy, utc_now
from rssfeed_relay.scheduler import FeedFetcher, Scheduler, SubscriptionNotFound
from rssfeed_relay.session import SessionManager
from rssfeed_relay.store import StoreError, _dt_to_str
from rssfeed_relay.subscriptions import (
    ConfigValidationError,
    subscription_to_dict,
    validate_config,
)

logger = logging.getLogger(__name__)


class AdminService:
    """Subscription management for the administrative panel."""

    def __init__(
        self,
        scheduler: Scheduler,
        fetch: FeedFetcher,
        gateway_factory: GatewayFactory,
        sessions: SessionManager | None = None,
        activity: ActivityLogHandler | None = None,
        admin_id: str = "",
        default_interval: int = 30,
    ):
        self.scheduler = scheduler
        self.fetch = fetch
        self.gateway_factory = gateway_factory
        self.sessions = sessions
        self.activity = activity
        self.admin_id = admin_id
        self.default_interval = default_interval

    # --- Subscriptions ---

    async def list_subscriptions(self) -> dict:
        return _guard(lambda: [subscription_to_dict(s) for s in self.scheduler.list_subscriptions()])

    async def create_subscription(self, payload: dict[str, Any], validate_feed: bool = True) -> dict:
        """Validate and add a subscription.

        The feed is fetched first (unless ``validate_feed`` is False) and its
        title used when the payload has none. The destination defaults to the
        admin chat.
        """
        config = dict(payload)
        config.setdefault("interval", self.default_interval)
        try:
            validate_config(config)
        except ConfigValidationError as e:
            return _fail(str(e), status=400)

        if validate_feed:
            result = await asyncio.to_thread(self.fetch, config["url"])
            if not result.success:
                return _fail(result.error or "Could not read feed")
            config["title"] = config.get("title") or result.title

        config["chat_id"] = config.get("chat_id") or self.admin_id or None
        return _guard(lambda: subscription_to_dict(self.scheduler.add(config)))

    async def update_subscription(self, subscription_id: str, payload: dict[str, Any]) -> dict:
        try:
            sub = self.scheduler.update(subscription_id, payload)
        except ConfigValidationError as e:
            return _fail(str(e), status=400)
        except StoreError as e:
            return _fail(f"Store unavailable: {e}", status=500)
        if sub is None:
            return _fail("Subscription not found", status=404)
        return _ok(subscription_to_dict(sub))

    async def delete_subscription(self, subscription_id: str) -> dict:
        try:
            deleted = self.scheduler.delete(subscription_id)
        except StoreError as e:
            return _fail(f"Store unavailable: {e}", status=500)
        if not deleted:
            return _fail("Subscription not found", status=404)
        return {"success": True}

    async def refresh_all(self) -> dict:
        results = await self.scheduler.refresh_all()
        return _ok({
            "checked": len(results),
            "failed": sum(1 for r in results if not r.ok),
        })

    async def refresh_subscription(self, subscription_id: str) -> dict:
        try:
            result = await self.scheduler.refresh_one(subscription_id)
        except SubscriptionNotFound:
            return _fail("Subscription not found", status=404)
        data: dict[str, Any] = {"new_items": len(result.new_items)}
        if result.fetch is not None and not result.fetch.success:
            data["error"] = result.fetch.error
        if result.delivery is not None:
            data["delivery"] = result.delivery.status.value
        return _ok(data)

    async def history(self, subscription_id: str | None = None) -> dict:
        return _guard(lambda: [
            _record_to_dict(r) for r in self.scheduler.get_history(subscription_id)
        ])

    # --- Feeds ---

    async def validate_feed(self, url: str) -> dict:
        if not url:
            return {"valid": False, "error": "URL is required"}
        result = await asyncio.to_thread(self.fetch, url)
        if not result.success:
            return {"valid": False, "error": result.error}
        return {"valid": True, "title": result.title, "item_count": len(result.items)}

    async def preview_feed(self, url: str, keywords: dict | None = None) -> dict:
        """Parse a feed and apply a keyword policy without subscribing."""
        if not url:
            return _fail("URL is required", status=400)
        result = await asyncio.to_thread(self.fetch, url)
        if not result.success:
            return _fail(result.error or "Could not read feed")

        items = result.items
        if keywords:
            policy = KeywordPolicy(
                whitelist=list(keywords.get("whitelist") or []),
                blacklist=list(keywords.get("blacklist") or []),
            )
            items = keyword_filter.apply(items, policy).kept
        return _ok({
            "title": result.title,
            "items": [item_to_dict(i) for i in items],
            "warnings": result.warnings,
        })

    async def scheduled_tasks(self) -> dict:
        """One entry per enabled subscription with last and next run times."""
        tasks = []
        for sub in self.scheduler.list_subscriptions():
            if not sub.enabled:
                continue
            next_run = (
                sub.last_check + timedelta(minutes=sub.interval)
                if sub.last_check
                else utc_now()
            )
            tasks.append({
                "id": f"rss_{sub.id}",
                "name": f"RSS: {sub.title}",
                "interval": sub.interval,
                "last_run": _dt_to_str(sub.last_check),
                "next_run": _dt_to_str(next_run),
                "scheduled": sub.id in self.scheduler.timer_ids,
                "status": "error" if sub.last_error else "active",
                "error": sub.last_error,
            })
        return _ok(tasks)

    # --- Bot ---

    async def test_credential(self, token: str, chat_id: str | None = None) -> dict:
        """Check a bot token and optionally send a test message."""
        if not token:
            return _fail("No bot token provided", status=400)
        gateway = None
        try:
            gateway = self.gateway_factory(token)
            identity = await gateway.get_identity()
            if chat_id:
                await gateway.send_message(
                    chat_id,
                    f"✅ Test message from @{identity.get('username')}",
                    parse_mode=None,
                )
        except Exception as e:
            return _fail(str(e), status=400)
        finally:
            if gateway is not None:
                await gateway.aclose()
        return _ok({
            "username": identity.get("username"),
            "first_name": identity.get("first_name"),
            "message_sent": bool(chat_id),
        })

    async def restart_session(self, token: str | None = None) -> dict:
        if self.sessions is None:
            return _fail("No session manager configured")
        if await self.sessions.restart(token):
            return _ok({"username": self.sessions.session.username})
        return _fail(self.sessions.last_error or "Bot failed to start", status=503)

    async def status(self) -> dict:
        session = self.sessions.session if self.sessions else None
        return _ok({
            "running": self.scheduler.is_running,
            "bot": session.username if session else None,
            "last_error": self.sessions.last_error if self.sessions else None,
            "subscriptions": len(self.scheduler.list_subscriptions()),
            "timers": len(self.scheduler.timer_ids),
        })

    async def recent_logs(self, limit: int = 100, level: str | None = None) -> dict:
        if self.activity is None:
            return _ok([])
        return _ok(self.activity.entries(limit=limit, level=level))


# --- Helper functions ---


def _ok(data: Any) -> dict:
    return {"success": True, "data": data}


def _fail(error: str, status: int = 200) -> dict:
    response: dict[str, Any] = {"success": False, "error": error}
    if status != 200:
        response["status"] = status
    return response


def _guard(action) -> dict:
    """Run ``action``, turning store failures into an error response."""
    try:
        return _ok(action())
    except ConfigValidationError as e:
        return _fail(str(e), status=400)
    except StoreError as e:
        logger.error("Store unavailable: %s", e)
        return _fail(f"Store unavailable: {e}", status=500)


def _record_to_dict(record: HistoryRecord) -> dict:
    return {
        "subscription_id": record.subscription_id,
        "subscription_title": record.subscription_title,
        "item": item_to_dict(record.item),
        "found_at": _dt_to_str(record.found_at),
    }
