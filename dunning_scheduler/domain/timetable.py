"""Phase timetable and message catalog

The timetable is a fixed table: phase -> day offsets, (phase, day) -> channels,
(phase, day, channel) -> template key, template key -> template text.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from dunning_scheduler.domain.exceptions import ConfigurationError
from dunning_scheduler.domain.models import Channel, Stage, STAGE_ORDER


@dataclass(frozen=True)
class TimetableEntry:
    """One (phase, day, channel) slot of the timetable"""

    stage: Stage
    day: int
    channel: Channel
    template_key: Optional[str]


class Timetable(BaseModel):
    """Validated timetable configuration"""

    schedule: Dict[Stage, Dict[int, List[Channel]]]
    template_keys: Dict[Stage, Dict[int, Dict[Channel, str]]] = Field(default_factory=dict)
    templates: Dict[str, str] = Field(default_factory=dict)

    def days(self, stage: Stage) -> List[int]:
        return sorted(self.schedule.get(stage, {}).keys())

    def channels(self, stage: Stage, day: int) -> List[Channel]:
        return list(self.schedule.get(stage, {}).get(day, []))

    def template_key(self, stage: Stage, day: int, channel: Channel) -> Optional[str]:
        return self.template_keys.get(stage, {}).get(day, {}).get(channel)

    def template_text(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        return self.templates.get(key)

    def entries(
        self,
        stage: Optional[Stage] = None,
        channels: Optional[Iterable[Channel]] = None,
    ) -> List[TimetableEntry]:
        """
        Expand the table into slots ordered by phase, then day.

        Args:
            stage: Restrict to a single phase
            channels: Restrict to these channels
        """
        allowed = set(channels) if channels else None
        result = []
        for current in STAGE_ORDER:
            if stage is not None and current != stage:
                continue
            for day in self.days(current):
                for channel in self.channels(current, day):
                    if allowed is not None and channel not in allowed:
                        continue
                    result.append(
                        TimetableEntry(
                            stage=current,
                            day=day,
                            channel=channel,
                            template_key=self.template_key(current, day, channel),
                        )
                    )
        return result


_DEFAULT_SCHEDULE = {
    Stage.PREVENTIVE: {
        -5: [Channel.EMAIL],
        -3: [Channel.SMS, Channel.PUSH],
        -1: [Channel.SMS, Channel.EMAIL, Channel.PUSH],
        0: [Channel.SMS, Channel.PUSH, Channel.AI_CALL],
    },
    Stage.EARLY_DELAY: {
        1: [Channel.SMS, Channel.EMAIL],
        3: [Channel.SMS, Channel.PUSH],
        5: [Channel.EMAIL, Channel.AI_CALL],
        7: [Channel.SMS, Channel.EMAIL, Channel.PUSH],
    },
    Stage.MEDIUM_DELAY: {
        8: [Channel.SMS, Channel.AI_CALL],
        10: [Channel.EMAIL, Channel.PUSH],
        12: [Channel.SMS, Channel.EMAIL],
        15: [Channel.SMS, Channel.EMAIL, Channel.AI_CALL],
    },
    Stage.LATE_DELAY: {
        16: [Channel.SMS, Channel.EMAIL],
        20: [Channel.SMS, Channel.AI_CALL],
        25: [Channel.SMS, Channel.EMAIL, Channel.PUSH],
        29: [Channel.SMS, Channel.EMAIL, Channel.AI_CALL],
    },
}

_DEFAULT_TEMPLATES = {
    "preventive.sms": "Reminder: {{amount}} {{currency}} for credit {{creditNumber}} is due soon.",
    "preventive.email": (
        "Dear customer, the payment of {{amount}} {{currency}} for credit {{creditNumber}} "
        "is due soon. Please pay on time to avoid late fees."
    ),
    "preventive.push": "Payment of {{amount}} {{currency}} is due soon for credit {{creditNumber}}.",
    "preventive.due_today.sms": "Today is the due date: {{amount}} {{currency}} for credit {{creditNumber}}.",
    "preventive.due_today.push": "Your payment of {{amount}} {{currency}} is due today.",
    "preventive.due_today.ai_call": (
        "Hello, this is a courtesy call. Your payment of {{amount}} {{currency}} "
        "for credit {{creditNumber}} is due today."
    ),
    "early_delay.sms": "Your payment of {{amount}} {{currency}} for credit {{creditNumber}} is overdue.",
    "early_delay.email": (
        "Dear customer, we have not received {{amount}} {{currency}} for credit {{creditNumber}}. "
        "Please settle the overdue amount as soon as possible."
    ),
    "early_delay.push": "Overdue payment: {{amount}} {{currency}} for credit {{creditNumber}}.",
    "early_delay.ai_call": (
        "Hello, we are calling about credit {{creditNumber}}. "
        "The payment of {{amount}} {{currency}} is overdue."
    ),
    "medium_delay.sms": "Credit {{creditNumber}} is seriously overdue. Pay {{amount}} {{currency}} now.",
    "medium_delay.email": (
        "Dear customer, credit {{creditNumber}} remains unpaid. The outstanding amount is "
        "{{amount}} {{currency}}. Contact us to avoid further collection steps."
    ),
    "medium_delay.push": "Credit {{creditNumber}} is seriously overdue: {{amount}} {{currency}}.",
    "medium_delay.ai_call": (
        "Hello, this is a call about your overdue credit {{creditNumber}}. "
        "Please pay {{amount}} {{currency}} to avoid further collection steps."
    ),
    "late_delay.sms": (
        "Final notice for credit {{creditNumber}}: pay {{amount}} {{currency}} within "
        "{{remainingDays}} days. Pledged goods go to auction on {{auctionDate}}."
    ),
    "late_delay.email": (
        "Dear customer, this is a final notice for credit {{creditNumber}}. Unless "
        "{{amount}} {{currency}} is paid within {{remainingDays}} days, the pledged goods "
        "will be sold at auction on {{auctionDate}}."
    ),
    "late_delay.push": "Final notice: {{remainingDays}} days left before auction on {{auctionDate}}.",
    "late_delay.ai_call": (
        "Hello, this is a final notice about credit {{creditNumber}}. You have "
        "{{remainingDays}} days to pay {{amount}} {{currency}} before the auction on {{auctionDate}}."
    ),
}


def _default_template_keys() -> Dict[Stage, Dict[int, Dict[Channel, str]]]:
    keys: Dict[Stage, Dict[int, Dict[Channel, str]]] = {}
    for stage, days in _DEFAULT_SCHEDULE.items():
        keys[stage] = {}
        for day, channels in days.items():
            suffix = ".due_today" if stage == Stage.PREVENTIVE and day == 0 else ""
            keys[stage][day] = {
                channel: f"{stage.value}{suffix}.{channel.value}" for channel in channels
            }
    return keys


def default_timetable() -> Timetable:
    """Built-in timetable used when no file is configured"""
    return Timetable(
        schedule=_DEFAULT_SCHEDULE,
        template_keys=_default_template_keys(),
        templates=_DEFAULT_TEMPLATES,
    )


def load_timetable(path: Optional[str] = None) -> Timetable:
    """
    Load the timetable from a JSON file, or the built-in one.

    Raises:
        ConfigurationError: File missing, unreadable, or invalid
    """
    if not path:
        return default_timetable()

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return Timetable.model_validate(raw)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid timetable {path}: {e}") from e
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read timetable {path}: {e}") from e
