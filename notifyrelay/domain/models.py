from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so SQLite test databases share the schema.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class NotificationPreferenceRecord(Base):
    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    channels_enabled_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    # Quiet hours stored as {"start_hour", "end_hour", "timezone"}.
    quiet_hours_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Map of event type to {"max_per_window", "window_minutes"}.
    frequency_limits_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    critical_alerts_bypass: Mapped[bool] = mapped_column(Boolean, default=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null keeps webhook delivery enabled for every event type.
    webhook_event_types_json: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    disabled_event_types_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationTemplateRecord(Base):
    __tablename__ = "notification_templates"
    __table_args__ = (
        UniqueConstraint("event_type", "channel", name="uq_notification_templates_event_channel"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)
    subject_template: Mapped[str] = mapped_column(Text, default="")
    body_template: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeliveryAttemptRecord(Base):
    __tablename__ = "notification_delivery_attempts"
    __table_args__ = (
        # Serve the frequency-limit count without scanning a user's full history.
        Index(
            "ix_notification_delivery_attempts_frequency",
            "user_id",
            "event_type",
            "status",
            "created_at",
        ),
        Index("ix_notification_delivery_attempts_status_created", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    fallback_from: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    recipient: Mapped[str | None] = mapped_column(String, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TestExecutionRecord(Base):
    __tablename__ = "test_executions"
    # Keep pytest from collecting the model by its Test* name.
    __test__ = False
    __table_args__ = (
        Index("ix_test_executions_case_created", "test_case_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    test_case_id: Mapped[str | None] = mapped_column(String, nullable=True)
    test_suite_id: Mapped[str | None] = mapped_column(String, nullable=True)
    suite_execution_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # pass | fail | error | skipped
    result: Mapped[str] = mapped_column(String)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_status: Mapped[str | None] = mapped_column(String, nullable=True)
