"""Entry point for RSS Feed Relay: python -m rssfeed_relay"""

import asyncio
import functools
import logging
import signal

from rssfeed_relay import activity
from rssfeed_relay.admin import AdminService
from rssfeed_relay.config import get_settings
from rssfeed_relay.feed_parser import fetch_feed
from rssfeed_relay.gateway import make_gateway_factory
from rssfeed_relay.history import HistoryStore
from rssfeed_relay.router import PushRouter
from rssfeed_relay.scheduler import Scheduler
from rssfeed_relay.session import SessionManager
from rssfeed_relay.store import DocumentStore
from rssfeed_relay.subscriptions import SubscriptionStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def main() -> None:
    """Initialize the relay and run until interrupted."""
    settings = get_settings()
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    store = DocumentStore(str(settings.db_path))
    store.connect()

    activity_log = activity.install()
    gateway_factory = make_gateway_factory(
        api_base=settings.tg_api_base or None,
        timeout=settings.send_timeout_seconds,
    )
    fetch = functools.partial(fetch_feed, timeout=settings.fetch_timeout_seconds)

    history = HistoryStore(
        store,
        capacity=settings.history_capacity,
        seen_per_subscription=settings.seen_items_per_subscription,
    )
    router = PushRouter(history, gateway_factory, settings.delivery())
    scheduler = Scheduler(
        SubscriptionStore(store),
        history,
        router,
        fetch=fetch,
        fetch_timeout=settings.fetch_timeout_seconds,
    )
    sessions = SessionManager(
        scheduler,
        gateway_factory,
        settings.bot_token,
        attempts=settings.startup_attempts,
        backoff_seconds=settings.startup_backoff_seconds,
    )
    # The HTTP layer mounts this service; it stays usable when the bot is down.
    admin = AdminService(
        scheduler,
        fetch,
        gateway_factory,
        sessions=sessions,
        activity=activity_log,
        admin_id=settings.admin_id,
        default_interval=settings.default_interval,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        if not await sessions.start():
            status = await admin.status()
            logger.error("Bot session unavailable: %s", status["data"]["last_error"])
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await sessions.stop()
        await router.aclose()
        store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
