"""Delivery target resolution and message fan-out for new feed items."""

import asyncio
import html
import logging
from dataclasses import dataclass, replace

from rssfeed_relay.gateway import GatewayFactory, InvalidCredentialError, TelegramGateway
from rssfeed_relay.history import HistoryStore
from rssfeed_relay.models import (
    DeliveryOutcome,
    DeliveryStatus,
    DeliveryTarget,
    FeedItem,
    Subscription,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "📰 <b>{feed_title}</b>\n{title}\n{link}"
DESCRIPTION_LIMIT = 200

LABEL_SUBSCRIPTION = "subscription bot"
LABEL_DEPLOYMENT = "deployment bot"
LABEL_SYSTEM = "system bot"


@dataclass(frozen=True)
class DeliverySettings:
    """Deployment-wide delivery configuration read at the start of each batch."""

    message_template: str = DEFAULT_TEMPLATE
    date_format: str = "%Y/%m/%d %H:%M:%S"
    custom_bot_token: str | None = None
    custom_chat_id: str | None = None
    max_items_per_tick: int = 5
    send_timeout: float = 10.0
    parse_mode: str | None = "HTML"
    disable_web_page_preview: bool = False


def format_message(
    template: str,
    subscription: Subscription,
    item: FeedItem,
    date_format: str = "%Y/%m/%d %H:%M:%S",
    escape: bool = True,
) -> str:
    """Fill the named placeholders of ``template`` for one item.

    Known placeholders: {feed_title}, {title}, {link}, {description}
    (first 200 characters) and {date}. Anything else is left as written.
    """
    date = ""
    if item.published is not None:
        date = item.published.astimezone().strftime(date_format)

    values = {
        "feed_title": subscription.title or "",
        "title": item.title or "",
        "link": item.link or "",
        "description": (item.description or "")[:DESCRIPTION_LIMIT],
        "date": date,
    }
    message = template
    for name, value in values.items():
        if escape:
            value = html.escape(value, quote=False)
        message = message.replace("{" + name + "}", value)
    return message


class PushRouter:
    """Resolves where a subscription's items go and sends them.

    Precedence: the subscription's own override (when switched on and a
    token is present), then the deployment-wide override, then the system
    bot with the subscription's destination. An explicit override that
    fails its handshake never falls back to the system bot.
    """

    def __init__(
        self,
        history: HistoryStore,
        gateway_factory: GatewayFactory,
        settings: DeliverySettings | None = None,
    ):
        self.history = history
        self._factory = gateway_factory
        self.settings = settings or DeliverySettings()
        self._default: TelegramGateway | None = None
        self._overrides: dict[str, TelegramGateway] = {}

    @property
    def is_ready(self) -> bool:
        return self._default is not None

    def attach(self, gateway: TelegramGateway) -> None:
        """Use ``gateway`` as the system default from now on."""
        self._default = gateway

    def detach(self) -> None:
        self._default = None

    def configure(self, settings: DeliverySettings | None = None, **changes) -> None:
        """Replace delivery settings; applies from the next batch."""
        base = settings or self.settings
        self.settings = replace(base, **changes) if changes else base

    def resolve_target(
        self, subscription: Subscription, settings: DeliverySettings | None = None
    ) -> DeliveryTarget | None:
        """Return the delivery target, or None when no destination is known."""
        settings = settings or self.settings

        if subscription.use_custom_push and subscription.custom_bot_token:
            target = DeliveryTarget(
                credential=subscription.custom_bot_token,
                chat_id=subscription.custom_chat_id or subscription.chat_id or "",
                label=LABEL_SUBSCRIPTION,
            )
        elif settings.custom_bot_token:
            target = DeliveryTarget(
                credential=settings.custom_bot_token,
                chat_id=settings.custom_chat_id or subscription.chat_id or "",
                label=LABEL_DEPLOYMENT,
            )
        else:
            target = DeliveryTarget(
                credential=None,
                chat_id=subscription.chat_id or "",
                label=LABEL_SYSTEM,
            )

        return target if target.chat_id else None

    async def route(
        self, subscription: Subscription, items: list[FeedItem]
    ) -> DeliveryOutcome:
        """Deliver up to ``max_items_per_tick`` of ``items``.

        Each send is independent; every attempted item is written to the
        history whether or not the send succeeded.
        """
        if not items:
            return DeliveryOutcome(status=DeliveryStatus.NO_ITEMS)

        settings = self.settings
        target = self.resolve_target(subscription, settings)
        if target is None:
            logger.warning(
                "[%s] No delivery destination, skipping %d item(s)",
                subscription.title, len(items),
            )
            return DeliveryOutcome(status=DeliveryStatus.NO_DESTINATION)

        if target.credential:
            try:
                gateway = await self._override_gateway(target.credential, settings)
            except Exception as e:
                logger.error(
                    "[%s] %s token invalid, skipping %d item(s): %s",
                    subscription.title, target.label, len(items), e,
                )
                return DeliveryOutcome(
                    status=DeliveryStatus.INVALID_CREDENTIAL,
                    target=target,
                    error=str(e),
                )
        elif self._default is None:
            logger.warning(
                "[%s] System bot not ready, deferring %d item(s)",
                subscription.title, len(items),
            )
            return DeliveryOutcome(status=DeliveryStatus.GATEWAY_NOT_READY, target=target)
        else:
            gateway = self._default

        cap = max(1, settings.max_items_per_tick)
        outcome = DeliveryOutcome(
            status=DeliveryStatus.DELIVERED,
            target=target,
            over_cap=[item.id for item in items[cap:]],
        )
        for item in items[:cap]:
            text = format_message(
                settings.message_template,
                subscription,
                item,
                settings.date_format,
                escape=settings.parse_mode == "HTML",
            )
            try:
                await asyncio.wait_for(
                    gateway.send_message(
                        target.chat_id,
                        text,
                        parse_mode=settings.parse_mode,
                        disable_web_page_preview=settings.disable_web_page_preview,
                    ),
                    timeout=settings.send_timeout,
                )
                outcome.sent.append(item.id)
                logger.info("[%s] Pushed: [%s] %s", target.label, subscription.title, item.title)
            except Exception as e:
                outcome.failed.append(item.id)
                logger.error(
                    "[%s] Push failed for [%s] %s: %s",
                    target.label, subscription.title, item.title, str(e) or type(e).__name__,
                )
                if isinstance(e, InvalidCredentialError) and target.credential:
                    await self._evict(target.credential)
            self.history.record(subscription, item)

        if outcome.over_cap:
            logger.info(
                "[%s] %d item(s) over the per-tick cap marked seen without pushing",
                subscription.title, len(outcome.over_cap),
            )
        return outcome

    async def aclose(self) -> None:
        """Close cached override gateways."""
        for token in list(self._overrides):
            await self._evict(token)

    async def _override_gateway(
        self, token: str, settings: DeliverySettings
    ) -> TelegramGateway:
        gateway = self._overrides.get(token)
        if gateway is not None:
            return gateway

        gateway = self._factory(token)
        try:
            await asyncio.wait_for(gateway.get_identity(), timeout=settings.send_timeout)
        except BaseException:
            await gateway.aclose()
            raise
        self._overrides[token] = gateway
        return gateway

    async def _evict(self, token: str) -> None:
        gateway = self._overrides.pop(token, None)
        if gateway is not None:
            await gateway.aclose()
