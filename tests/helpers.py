"""Test doubles shared across test modules"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from dunning_scheduler.domain.exceptions import ChannelDeliveryError, UpstreamLookupError
from dunning_scheduler.domain.models import Channel, CreditInfo, DeliveryReceipt, DeliveryRequest

# Wednesday, inside the default 09:00-20:00 window
NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCreditClient:
    """In-memory stand-in for the credit service"""

    def __init__(self):
        self.credits: Dict[str, CreditInfo] = {}
        self.failing: set = set()
        self.status_calls: List[str] = []

    def add(self, credit_id: str, status: str = "active", **contacts) -> CreditInfo:
        info = CreditInfo(
            credit_id=credit_id,
            status=status,
            borrower_name=contacts.get("borrower_name", "Test Borrower"),
            company_name=contacts.get("company_name", "Test Lending"),
            email=contacts.get("email", f"{credit_id.lower()}@example.com"),
            phone=contacts.get("phone", "+421900000000"),
            device_token=contacts.get("device_token", f"device-{credit_id}"),
        )
        self.credits[credit_id] = info
        return info

    async def get_credit(self, credit_id: str) -> CreditInfo:
        if credit_id in self.failing or credit_id not in self.credits:
            raise UpstreamLookupError(f"Credit service error for {credit_id}")
        return self.credits[credit_id]

    async def get_credit_status(self, credit_id: str) -> str:
        self.status_calls.append(credit_id)
        info = await self.get_credit(credit_id)
        return info.status


class RecordingSender:
    """Channel sender that records requests and can be told to fail"""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.sent: List[DeliveryRequest] = []
        self.fail_with: Optional[Exception] = None

    async def send(self, request: DeliveryRequest) -> DeliveryReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(request)
        return DeliveryReceipt(
            channel=self.channel,
            provider_message_id=f"msg-{len(self.sent)}",
            accepted_at=NOW,
            raw={"status": "queued"},
        )

    def fail(self, message: str = "provider unavailable") -> None:
        self.fail_with = ChannelDeliveryError(message)
