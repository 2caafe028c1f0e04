"""Message rendering - {{placeholder}} substitution"""

import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping

from dunning_scheduler.domain.models import PlanSnapshot, Stage

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_message(template: str, data: Mapping[str, Any]) -> str:
    """
    Replace every {{key}} occurrence with str(data[key]).

    Placeholders without a matching key are left untouched.
    """

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in data:
            return match.group(0)
        return str(data[key])

    return _PLACEHOLDER.sub(_substitute, template)


def format_amount(amount: Any) -> str:
    """Render a decimal amount without trailing zeros (500.00 -> 500, 12.50 -> 12.5)"""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), "f")


def build_template_data(
    plan: PlanSnapshot,
    stage: Stage,
    day: int,
    auction_days: int = 30,
    auction_base: datetime | None = None,
) -> Dict[str, Any]:
    """
    Collect placeholder values for a plan's message.

    Late delay messages also get remainingDays and auctionDate. The auction
    date is auction_days after the due date unless another base is given.
    """
    data: Dict[str, Any] = {
        "amount": format_amount(plan.amount),
        "currency": plan.currency,
        "creditNumber": plan.credit_id,
    }
    if stage == Stage.LATE_DELAY:
        base = auction_base or plan.due_date
        data["remainingDays"] = auction_days - max(day, 0)
        data["auctionDate"] = (base + timedelta(days=auction_days)).date().isoformat()
    return data
