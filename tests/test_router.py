"""Tests for delivery target resolution and message fan-out."""

import asyncio
from datetime import datetime, timezone

import pytest
from conftest import DEPLOYMENT_TOKEN, OVERRIDE_TOKEN, REJECTED_TOKEN, SYSTEM_TOKEN, make_item

from rssfeed_relay.models import DeliveryStatus, FeedItem, Subscription
from rssfeed_relay.router import (
    LABEL_DEPLOYMENT,
    LABEL_SUBSCRIPTION,
    LABEL_SYSTEM,
    DeliverySettings,
    PushRouter,
    format_message,
)


def _sub(**kwargs):
    kwargs.setdefault("chat_id", "chat-1")
    return Subscription(url="https://example.com/feed", title="Example", id="feed_a", **kwargs)


class TestFormatMessage:
    def test_default_template(self):
        text = format_message(
            "📰 <b>{feed_title}</b>\n{title}\n{link}",
            _sub(),
            make_item("1", "Hello", link="https://example.com/1"),
        )
        assert text == "📰 <b>Example</b>\nHello\nhttps://example.com/1"

    def test_description_truncated(self):
        item = make_item("1", description="x" * 500)
        assert format_message("{description}", _sub(), item) == "x" * 200

    def test_missing_values_become_empty(self):
        item = FeedItem(id="1", title="")
        assert format_message("[{title}|{link}|{date}]", _sub(), item) == "[||]"

    def test_unknown_placeholders_left_verbatim(self):
        assert format_message("{title} {author}", _sub(), make_item("1", "T")) == "T {author}"

    def test_date_uses_format(self):
        item = make_item("1")
        item.published = datetime(2026, 2, 13, 9, 30, tzinfo=timezone.utc)
        expected = item.published.astimezone().strftime("%Y-%m-%d")
        assert format_message("{date}", _sub(), item, date_format="%Y-%m-%d") == expected

    def test_values_escaped_for_html(self):
        item = make_item("1", "Tom & Jerry <3")
        assert format_message("<b>{title}</b>", _sub(), item) == "<b>Tom &amp; Jerry &lt;3</b>"

    def test_no_escape(self):
        item = make_item("1", "Tom & Jerry")
        assert format_message("{title}", _sub(), item, escape=False) == "Tom & Jerry"


class TestResolveTarget:
    def test_system_default(self, router):
        target = router.resolve_target(_sub())
        assert target.credential is None
        assert target.chat_id == "chat-1"
        assert target.label == LABEL_SYSTEM

    def test_subscription_override(self, router):
        target = router.resolve_target(_sub(
            use_custom_push=True, custom_bot_token=OVERRIDE_TOKEN, custom_chat_id="chat-9",
        ))
        assert (target.credential, target.chat_id, target.label) == (
            OVERRIDE_TOKEN, "chat-9", LABEL_SUBSCRIPTION,
        )

    def test_override_switched_off_is_ignored(self, router):
        target = router.resolve_target(_sub(use_custom_push=False, custom_bot_token=OVERRIDE_TOKEN))
        assert target.label == LABEL_SYSTEM

    def test_override_destination_falls_back_to_subscription_chat(self, router):
        target = router.resolve_target(_sub(use_custom_push=True, custom_bot_token=OVERRIDE_TOKEN))
        assert target.chat_id == "chat-1"

    def test_deployment_override(self, router):
        router.configure(custom_bot_token=DEPLOYMENT_TOKEN, custom_chat_id="chat-d")
        target = router.resolve_target(_sub())
        assert (target.credential, target.chat_id, target.label) == (
            DEPLOYMENT_TOKEN, "chat-d", LABEL_DEPLOYMENT,
        )

    def test_subscription_override_beats_deployment(self, router):
        router.configure(custom_bot_token=DEPLOYMENT_TOKEN)
        target = router.resolve_target(_sub(use_custom_push=True, custom_bot_token=OVERRIDE_TOKEN))
        assert target.credential == OVERRIDE_TOKEN

    def test_no_destination(self, router):
        assert router.resolve_target(_sub(chat_id=None)) is None


class TestRoute:
    @pytest.mark.asyncio
    async def test_system_delivery_records_history(self, router, gateways, history):
        router.attach(gateways(SYSTEM_TOKEN))
        items = [make_item("1", "One"), make_item("2", "Two")]

        outcome = await router.route(_sub(), items)

        assert outcome.status is DeliveryStatus.DELIVERED
        assert outcome.sent == ["1", "2"]
        assert [m["token"] for m in gateways.sent] == [SYSTEM_TOKEN, SYSTEM_TOKEN]
        assert gateways.sent[0]["parse_mode"] == "HTML"
        assert {r.item.id for r in history.records()} == {"1", "2"}

    @pytest.mark.asyncio
    async def test_no_items(self, router):
        outcome = await router.route(_sub(), [])
        assert outcome.status is DeliveryStatus.NO_ITEMS

    @pytest.mark.asyncio
    async def test_no_destination(self, router, gateways, history):
        router.attach(gateways(SYSTEM_TOKEN))
        outcome = await router.route(_sub(chat_id=None), [make_item("1")])
        assert outcome.status is DeliveryStatus.NO_DESTINATION
        assert gateways.sent == []
        assert history.records() == []

    @pytest.mark.asyncio
    async def test_gateway_not_ready_defers(self, router, history):
        outcome = await router.route(_sub(), [make_item("1")])
        assert outcome.status is DeliveryStatus.GATEWAY_NOT_READY
        assert outcome.deferred
        assert not history.contains("feed_a", make_item("1"))

    @pytest.mark.asyncio
    async def test_override_used_without_system_bot(self, router, gateways):
        sub = _sub(use_custom_push=True, custom_bot_token=OVERRIDE_TOKEN, custom_chat_id="chat-9")
        outcome = await router.route(sub, [make_item("1")])

        assert outcome.status is DeliveryStatus.DELIVERED
        assert gateways.sent[0]["token"] == OVERRIDE_TOKEN
        assert gateways.sent[0]["chat_id"] == "chat-9"

    @pytest.mark.asyncio
    async def test_invalid_override_never_falls_back(self, router, gateways, history):
        router.attach(gateways(SYSTEM_TOKEN))
        sub = _sub(use_custom_push=True, custom_bot_token=REJECTED_TOKEN)

        outcome = await router.route(sub, [make_item("1"), make_item("2")])

        assert outcome.status is DeliveryStatus.INVALID_CREDENTIAL
        assert "rejected" in outcome.error
        assert gateways.sent == []
        assert history.records() == []
        assert all(g.closed for g in gateways.created if g.token == REJECTED_TOKEN)

    @pytest.mark.asyncio
    async def test_invalid_override_retried_next_batch(self, router, gateways):
        sub = _sub(use_custom_push=True, custom_bot_token=REJECTED_TOKEN)
        await router.route(sub, [make_item("1")])
        gateways.rejected.clear()

        outcome = await router.route(sub, [make_item("2")])
        assert outcome.status is DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_override_gateway_cached(self, router, gateways):
        sub = _sub(use_custom_push=True, custom_bot_token=OVERRIDE_TOKEN)
        await router.route(sub, [make_item("1")])
        await router.route(sub, [make_item("2")])
        assert len([g for g in gateways.created if g.token == OVERRIDE_TOKEN]) == 1

        await router.aclose()
        assert all(g.closed for g in gateways.created if g.token == OVERRIDE_TOKEN)

    @pytest.mark.asyncio
    async def test_failed_send_does_not_stop_batch(self, router, gateways, history):
        router.attach(gateways(SYSTEM_TOKEN))
        gateways.fail_titles.add("Broken")
        items = [make_item("1", "Good one"), make_item("2", "Broken"), make_item("3", "Good two")]

        outcome = await router.route(_sub(), items)

        assert outcome.sent == ["1", "3"]
        assert outcome.failed == ["2"]
        # Failed sends are still recorded so they are not retried forever.
        assert {r.item.id for r in history.records()} == {"1", "2", "3"}

    @pytest.mark.asyncio
    async def test_cap_limits_sends(self, router, gateways, history):
        router.attach(gateways(SYSTEM_TOKEN))
        items = [make_item(str(n)) for n in range(12)]

        outcome = await router.route(_sub(), items)

        assert len(gateways.sent) == 5
        assert outcome.sent == ["0", "1", "2", "3", "4"]
        assert outcome.over_cap == [str(n) for n in range(5, 12)]
        assert len(history.records()) == 5

    @pytest.mark.asyncio
    async def test_slow_send_times_out(self, history, gateways):
        class SlowGateway:
            async def send_message(self, chat_id, text, **kwargs):
                await asyncio.sleep(5)

        router = PushRouter(history, gateways, DeliverySettings(send_timeout=0.05))
        router.attach(SlowGateway())

        outcome = await router.route(_sub(), [make_item("1")])
        assert outcome.failed == ["1"]

    @pytest.mark.asyncio
    async def test_configure_applies_to_next_batch(self, router, gateways):
        router.attach(gateways(SYSTEM_TOKEN))
        router.configure(message_template="NEW: {title}", parse_mode=None)

        await router.route(_sub(), [make_item("1", "A & B")])
        assert gateways.texts() == ["NEW: A & B"]
        assert gateways.sent[0]["parse_mode"] is None
