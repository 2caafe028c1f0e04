"""Channel senders: stub for local runs, HTTP gateway for production"""

import logging
import httpx
from typing import Dict, Optional, Protocol
from dunning_scheduler.domain.exceptions import ChannelDeliveryError, ConfigurationError
from dunning_scheduler.domain.models import Channel, CreditInfo, DeliveryReceipt, DeliveryRequest
from dunning_scheduler.infrastructure.observability.metrics import delivery_latency_histogram
from dunning_scheduler.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


class ChannelSender(Protocol):
    async def send(self, request: DeliveryRequest) -> DeliveryReceipt: ...


def recipient_for(channel: Channel, credit: CreditInfo) -> Optional[str]:
    """Pick the borrower contact a channel delivers to"""
    if channel in (Channel.SMS, Channel.AI_CALL):
        return credit.phone
    if channel == Channel.EMAIL:
        return credit.email
    if channel == Channel.PUSH:
        return credit.device_token
    raise ConfigurationError(f"Unknown notification channel: {channel}")


class StubChannelSender:
    """Accepts every message with a recipient; targets containing "fail" are rejected"""

    def __init__(self, channel: Channel):
        self.channel = channel

    async def send(self, request: DeliveryRequest) -> DeliveryReceipt:
        if not request.recipient:
            raise ChannelDeliveryError(f"No {self.channel.value} contact for borrower {request.borrower_id}")
        if "fail" in request.recipient.lower():
            raise ChannelDeliveryError(f"Stub {self.channel.value} sender rejected {request.recipient}")

        accepted_at = utc_now()
        message_id = f"stub-{self.channel.value}-{request.record_id}-{int(accepted_at.timestamp())}"
        logger.info(
            "Stub delivery accepted",
            extra={"channel": self.channel.value, "record_id": request.record_id, "provider_message_id": message_id},
        )
        return DeliveryReceipt(
            channel=self.channel,
            provider_message_id=message_id,
            accepted_at=accepted_at,
            raw={"status": "accepted", "stub": True},
        )


class HttpChannelSender:
    """Delivers through the messaging gateway: POST {base_url}/messages/{channel}"""

    def __init__(
        self,
        channel: Channel,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url.strip():
            raise ConfigurationError("Channel gateway URL must not be empty")
        self.channel = channel
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def send(self, request: DeliveryRequest) -> DeliveryReceipt:
        """
        Send one message through the gateway.

        Raises:
            ChannelDeliveryError: Missing recipient, gateway error, or bad response
        """
        if not request.recipient:
            raise ChannelDeliveryError(f"No {self.channel.value} contact for borrower {request.borrower_id}")

        body = {
            "reference": request.record_id,
            "creditId": request.credit_id,
            "recipient": request.recipient,
            "message": request.message,
            "companyName": request.company_name,
            "recipientName": request.borrower_name,
        }
        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"x-api-key": self.api_key},
            transport=self.transport,
        ) as client:
            try:
                with delivery_latency_histogram.labels(channel=self.channel.value).time():
                    response = await client.post(f"{self.base_url}/messages/{self.channel.value}", json=body)
                    response.raise_for_status()
                data = response.json()
                return DeliveryReceipt(
                    channel=self.channel,
                    provider_message_id=str(data["id"]),
                    accepted_at=utc_now(),
                    raw=data,
                )
            except httpx.TimeoutException as e:
                raise ChannelDeliveryError(f"{self.channel.value} gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ChannelDeliveryError(f"{self.channel.value} gateway error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ChannelDeliveryError(f"{self.channel.value} gateway unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise ChannelDeliveryError(f"Invalid {self.channel.value} gateway response: {e}") from e


def build_channel_senders(settings) -> Dict[Channel, ChannelSender]:
    """
    One sender per channel.

    Raises:
        ConfigurationError: Unknown sender type
    """
    if settings.channel_sender_type == "stub":
        return {channel: StubChannelSender(channel) for channel in Channel}
    if settings.channel_sender_type == "http":
        return {
            channel: HttpChannelSender(
                channel,
                base_url=settings.channel_gateway_url,
                api_key=settings.channel_gateway_api_key,
                timeout=settings.http_timeout_seconds,
            )
            for channel in Channel
        }
    raise ConfigurationError(f"Unknown channel sender type: {settings.channel_sender_type}")
