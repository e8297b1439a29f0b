# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from echo_chat.models.message import MessageStatus
from echo_chat.notifications.bus import EventBus
from echo_chat.notifications.events import (
    ConversationUpdated,
    MessageDelta,
    MessageFinalized,
    to_payload,
)


@pytest.mark.asyncio
async def test_publish_fans_out_to_every_subscriber():
    bus = EventBus()
    a = bus.subscribe()
    b = bus.subscribe()

    bus.publish(ConversationUpdated(conversation_id="conv_1"))

    assert a.drain() == [ConversationUpdated(conversation_id="conv_1")]
    assert b.drain() == [ConversationUpdated(conversation_id="conv_1")]


@pytest.mark.asyncio
async def test_filtered_subscription_only_sees_its_conversation():
    bus = EventBus()
    only_one = bus.subscribe("conv_1")

    bus.publish(ConversationUpdated(conversation_id="conv_2"))
    bus.publish(ConversationUpdated(conversation_id="conv_1"))

    assert only_one.drain() == [ConversationUpdated(conversation_id="conv_1")]


@pytest.mark.asyncio
async def test_closed_subscription_receives_nothing():
    bus = EventBus()
    with bus.subscribe() as sub:
        assert bus.subscriber_count == 1
    assert bus.subscriber_count == 0

    bus.publish(ConversationUpdated(conversation_id="conv_1"))
    assert sub.drain() == []


@pytest.mark.asyncio
async def test_async_iteration_delivers_in_publish_order():
    bus = EventBus()
    sub = bus.subscribe()
    received: list = []

    async def consume() -> None:
        async for notification in sub:
            received.append(notification)
            if len(received) == 2:
                sub.close()

    task = asyncio.create_task(consume())
    bus.publish(MessageDelta("conv_1", "msg_1", "Hel"))
    bus.publish(MessageDelta("conv_1", "msg_1", "lo"))
    await asyncio.wait_for(task, timeout=1)

    assert [n.text_appended for n in received] == ["Hel", "lo"]


def test_payload_is_json_ready_with_type_discriminator():
    payload = to_payload(MessageFinalized(
        conversation_id="conv_1",
        message_id="msg_1",
        status=MessageStatus.FAILED,
        error_kind="network",
        error_detail="No network connection",
    ))
    assert payload == {
        "type": "message_finalized",
        "conversation_id": "conv_1",
        "message_id": "msg_1",
        "status": "failed",
        "error_kind": "network",
        "error_detail": "No network connection",
    }
