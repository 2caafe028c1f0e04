"""SQLAlchemy ORM models for plans and notification records"""

import uuid
from datetime import timezone
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, Text, JSON, Index, Uuid, text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from dunning_scheduler.utils.date_utils import utc_now

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always loads as UTC"""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class NotificationPlanRow(Base):
    """Reminder plan for one credit"""

    __tablename__ = "notification_plan"
    __table_args__ = (
        # One live plan per credit
        Index(
            "uq_notification_plan_live_credit",
            "credit_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
        Index("ix_notification_plan_status_check", "status", "last_check_date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    credit_id = Column(String(64), nullable=False, index=True)
    borrower_id = Column(String(64), nullable=False, index=True)
    due_date = Column(UTCDateTime, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(String(16), nullable=False, default="active")
    credit_status = Column(String(16), nullable=False, default="active")
    last_check_date = Column(UTCDateTime, nullable=False, default=utc_now)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    records = relationship("NotificationRecordRow", back_populates="plan")


class NotificationRecordRow(Base):
    """One planned message on one channel"""

    __tablename__ = "notification_record"
    __table_args__ = (
        Index("ix_notification_record_credit_status", "credit_id", "status"),
        Index("ix_notification_record_due", "scheduled_for", "status"),
        Index("ix_notification_record_borrower_sent", "borrower_id", "status", "sent_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id = Column(Uuid, ForeignKey("notification_plan.id"), nullable=False, index=True)
    credit_id = Column(String(64), nullable=False)
    borrower_id = Column(String(64), nullable=False)
    stage = Column(String(16), nullable=False)
    day = Column(Integer, nullable=False)
    channel = Column(String(16), nullable=False)
    message_template_key = Column(String(128), nullable=False)
    message_content = Column(Text, nullable=False)
    scheduled_for = Column(UTCDateTime, nullable=False)
    sent_at = Column(UTCDateTime, nullable=True)
    status = Column(String(16), nullable=False, default="scheduled")
    fail_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    task_id = Column(String(128), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)

    plan = relationship("NotificationPlanRow", back_populates="records")
