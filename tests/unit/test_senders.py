"""Unit tests for channel senders"""

import httpx
import json
import pytest

from dunning_scheduler.config import Settings
from dunning_scheduler.domain.exceptions import ChannelDeliveryError, ConfigurationError
from dunning_scheduler.domain.models import Channel, CreditInfo, DeliveryRequest
from dunning_scheduler.infrastructure.channels.senders import (
    HttpChannelSender,
    StubChannelSender,
    build_channel_senders,
    recipient_for,
)


def _request(channel: Channel = Channel.SMS, recipient: str | None = "+421900000000") -> DeliveryRequest:
    return DeliveryRequest(
        record_id="rec-1",
        credit_id="CR-1",
        borrower_id="B-1",
        channel=channel,
        message="Pay 500 EUR",
        recipient=recipient,
        company_name="Test Lending",
    )


def test_recipient_for_each_channel():
    credit = CreditInfo(credit_id="CR-1", status="active", email="a@b.c", phone="+1", device_token="tok")
    assert recipient_for(Channel.SMS, credit) == "+1"
    assert recipient_for(Channel.AI_CALL, credit) == "+1"
    assert recipient_for(Channel.EMAIL, credit) == "a@b.c"
    assert recipient_for(Channel.PUSH, credit) == "tok"


async def test_stub_sender_accepts_message():
    receipt = await StubChannelSender(Channel.SMS).send(_request())
    assert receipt.channel == Channel.SMS
    assert receipt.provider_message_id.startswith("stub-sms-rec-1-")


async def test_stub_sender_rejects_missing_recipient():
    with pytest.raises(ChannelDeliveryError):
        await StubChannelSender(Channel.EMAIL).send(_request(Channel.EMAIL, recipient=None))


async def test_stub_sender_forced_failure():
    with pytest.raises(ChannelDeliveryError):
        await StubChannelSender(Channel.EMAIL).send(_request(Channel.EMAIL, recipient="fail@example.com"))


async def test_http_sender_posts_to_gateway():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["api_key"] = request.headers.get("x-api-key")
        captured["body"] = json.loads(request.content)
        return httpx.Response(202, json={"id": "gw-42", "status": "queued"})

    sender = HttpChannelSender(
        Channel.EMAIL,
        base_url="http://gateway.test/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )
    receipt = await sender.send(_request(Channel.EMAIL, recipient="jana@example.com"))

    assert receipt.provider_message_id == "gw-42"
    assert captured["url"] == "http://gateway.test/messages/email"
    assert captured["api_key"] == "secret"
    assert captured["body"]["recipient"] == "jana@example.com"
    assert captured["body"]["message"] == "Pay 500 EUR"


async def test_http_sender_maps_server_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, json={"error": "down"}))
    sender = HttpChannelSender(Channel.SMS, base_url="http://gateway.test", api_key="k", transport=transport)

    with pytest.raises(ChannelDeliveryError, match="503"):
        await sender.send(_request())


async def test_http_sender_maps_malformed_response():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"unexpected": True}))
    sender = HttpChannelSender(Channel.SMS, base_url="http://gateway.test", api_key="k", transport=transport)

    with pytest.raises(ChannelDeliveryError):
        await sender.send(_request())


def test_build_channel_senders_covers_every_channel():
    senders = build_channel_senders(Settings(_env_file=None, channel_sender_type="stub"))
    assert set(senders) == set(Channel)

    senders = build_channel_senders(Settings(_env_file=None, channel_sender_type="http"))
    assert all(isinstance(sender, HttpChannelSender) for sender in senders.values())


def test_build_channel_senders_unknown_type():
    with pytest.raises(ConfigurationError):
        build_channel_senders(Settings(_env_file=None, channel_sender_type="carrier-pigeon"))
