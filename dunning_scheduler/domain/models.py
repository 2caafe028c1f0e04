"""Domain models - enums and dataclasses shared by the engine"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    """Collection phase relative to the due date"""

    PREVENTIVE = "preventive"
    EARLY_DELAY = "early_delay"
    MEDIUM_DELAY = "medium_delay"
    LATE_DELAY = "late_delay"


STAGE_ORDER = [Stage.PREVENTIVE, Stage.EARLY_DELAY, Stage.MEDIUM_DELAY, Stage.LATE_DELAY]


class Channel(str, Enum):
    """Delivery medium"""

    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"
    AI_CALL = "ai_call"


class NotificationStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CreditStatus(str, Enum):
    """Loan state as reported by the credit service"""

    ACTIVE = "active"
    OVERDUE = "overdue"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    RESTRUCTURED = "restructured"


# Credit statuses that stop all further reminders
TERMINAL_CREDIT_STATUSES = frozenset(
    {CreditStatus.CLOSED.value, CreditStatus.CANCELLED.value, CreditStatus.RESTRUCTURED.value}
)

ALLOWED_TRANSITIONS = {
    NotificationStatus.SCHEDULED: {
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELLED,
    },
    NotificationStatus.FAILED: {NotificationStatus.SCHEDULED},
    NotificationStatus.SENT: set(),
    NotificationStatus.CANCELLED: set(),
}


def can_transition(current: str, target: str) -> bool:
    """Check a notification status change against the lifecycle"""
    if current == target:
        return True
    return NotificationStatus(target) in ALLOWED_TRANSITIONS[NotificationStatus(current)]


@dataclass
class PlanSnapshot:
    """Plan fields the planner needs, detached from the ORM row"""

    id: Any
    credit_id: str
    borrower_id: str
    due_date: datetime
    amount: Decimal
    currency: str = "EUR"


@dataclass
class CreditInfo:
    """Credit details returned by the main service"""

    credit_id: str
    status: str
    borrower_name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    device_token: Optional[str] = None


@dataclass(frozen=True)
class DeliveryRequest:
    """Everything a channel sender needs for one message"""

    record_id: str
    credit_id: str
    borrower_id: str
    channel: Channel
    message: str
    recipient: Optional[str]
    company_name: Optional[str] = None
    borrower_name: Optional[str] = None


@dataclass(frozen=True)
class DeliveryReceipt:
    """Provider acknowledgement for a delivered message"""

    channel: Channel
    provider_message_id: str
    accepted_at: datetime
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CancellationDetail:
    record_id: str
    status: str
    success: bool
    error: Optional[str] = None


@dataclass
class CancellationResult:
    """Outcome of a cascading cancellation for one credit"""

    total_cancelled: int = 0
    total_failed: int = 0
    details: List[CancellationDetail] = field(default_factory=list)


@dataclass
class StatusCheckResult:
    credit_id: str
    status: Optional[str]
    updated: bool
    notifications_cancelled: int = 0


@dataclass
class SweepItem:
    credit_id: str
    status: str  # new credit status, or "error"
    notifications_cancelled: int = 0
    error: Optional[str] = None


@dataclass
class SweepResult:
    """Summary of one status-poll sweep"""

    total_checked: int = 0
    total_errors: int = 0
    items: List[SweepItem] = field(default_factory=list)


class ExecutionOutcome(str, Enum):
    """What the executor did with a due notification"""

    SENT = "sent"
    SKIPPED = "skipped"
    DEFERRED_WINDOW = "deferred_window"
    DEFERRED_DAILY_CAP = "deferred_daily_cap"
    RETRY_SCHEDULED = "retry_scheduled"
