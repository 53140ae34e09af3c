from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, TypeDecorator, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


def new_id() -> str:
  return str(uuid.uuid4())


class UtcDateTime(TypeDecorator):
  """Timezone-aware UTC datetimes on every backend (SQLite hands back naive values)."""

  impl = DateTime(timezone=True)
  cache_ok = True

  def process_bind_param(self, value, dialect):
    if value is None:
      return value
    if value.tzinfo is not None:
      value = value.astimezone(timezone.utc)
    if dialect.name == "sqlite":
      return value.replace(tzinfo=None)
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

  def process_result_value(self, value, dialect):
    if value is None:
      return value
    if value.tzinfo is None:
      return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
  pass


# Catalog tables. Owned by the course catalog; this service only reads them.


class Profile(Base):
  __tablename__ = "profiles"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  full_name: Mapped[str] = mapped_column(String, nullable=False, default="")
  role: Mapped[str] = mapped_column(String, nullable=False, default="student")  # student | instructor | admin
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class Course(Base):
  __tablename__ = "courses"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  code: Mapped[str] = mapped_column(String, nullable=False)
  title: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class CourseEnrollment(Base):
  __tablename__ = "course_enrollments"
  __table_args__ = (UniqueConstraint("course_id", "learner_id", name="ux_course_enrollments_course_learner"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  course_id: Mapped[str] = mapped_column(String(36), ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
  learner_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
  enrolled_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class Assessment(Base):
  __tablename__ = "assessments"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  course_id: Mapped[str] = mapped_column(String(36), ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  # assignment | quiz | examination | project | practical | other
  assessment_type: Mapped[str] = mapped_column(String, nullable=False, default="assignment")
  due_date: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False, index=True)
  total_marks: Mapped[int | None] = mapped_column(Integer, nullable=True)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Submission(Base):
  __tablename__ = "submissions"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  assessment_id: Mapped[str] = mapped_column(String(36), ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True)
  learner_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="submitted")  # submitted | graded
  submitted_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  graded_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class NotificationPreference(Base):
  __tablename__ = "notification_preferences"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)
  email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  # Off: no "new assessment" announcements. Deadline reminders still reach the inbox.
  dashboard_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  muted_policy_ids: Mapped[list[str]] = mapped_column(JsonDoc, nullable=False, default=list)
  quiet_hours_start: Mapped[str | None] = mapped_column(String, nullable=True)  # HH:MM
  quiet_hours_end: Mapped[str | None] = mapped_column(String, nullable=True)
  timezone: Mapped[str] = mapped_column(String, nullable=False, default="UTC")
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


# Reminder engine tables.


class ReminderPolicy(Base):
  __tablename__ = "reminder_policies"
  __table_args__ = (
    Index(
      "ux_reminder_policies_active_offset",
      "days_before",
      "hours_before",
      unique=True,
      postgresql_where=text("is_active"),
      sqlite_where=text("is_active"),
    ),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  name: Mapped[str] = mapped_column(String, nullable=False)
  days_before: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  hours_before: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ScheduledReminder(Base):
  __tablename__ = "scheduled_reminders"
  __table_args__ = (
    UniqueConstraint("assessment_id", "learner_id", "policy_id", name="ux_scheduled_reminders_triple"),
    Index("ix_scheduled_reminders_status_fire_at", "status", "fire_at"),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  # Catalog ids are plain references: the catalog may delete rows underneath us.
  assessment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
  learner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
  policy_id: Mapped[str] = mapped_column(String(36), ForeignKey("reminder_policies.id"), nullable=False, index=True)
  fire_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  due_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")  # pending|sent|cancelled|failed
  revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  cancelled_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Notification(Base):
  __tablename__ = "notifications"
  __table_args__ = (
    UniqueConstraint("reminder_id", "reminder_revision", name="ux_notifications_reminder_revision"),
    UniqueConstraint("user_id", "dedupe_key", name="ux_notifications_user_dedupe_key"),
    Index("ix_notifications_user_status", "user_id", "status"),
  )

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  type: Mapped[str] = mapped_column(String, nullable=False, default="reminder")  # reminder | grade | announcement | ...
  channel: Mapped[str] = mapped_column(String, nullable=False, default="dashboard")  # dashboard | email | both
  status: Mapped[str] = mapped_column(String, nullable=False, default="unread")  # unread | read | dismissed
  reference_type: Mapped[str | None] = mapped_column(String, nullable=True)
  reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  reminder_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
  reminder_revision: Mapped[int | None] = mapped_column(Integer, nullable=True)
  meta: Mapped[dict[str, Any]] = mapped_column("metadata", JsonDoc, nullable=False, default=dict)
  dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True)
  email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  email_sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  read_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  dismissed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class DeliveryQueueEntry(Base):
  __tablename__ = "delivery_queue"
  __table_args__ = (Index("ix_delivery_queue_status_next_attempt", "status", "next_attempt_at"),)

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  notification_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("notifications.id"), nullable=True, unique=True)
  reminder_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  recipient_id: Mapped[str] = mapped_column(String(36), nullable=False)
  recipient_email: Mapped[str] = mapped_column(String, nullable=False)
  recipient_name: Mapped[str | None] = mapped_column(String, nullable=True)
  subject: Mapped[str] = mapped_column(String, nullable=False)
  body_text: Mapped[str] = mapped_column(Text, nullable=False)
  body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="pending")  # pending|retry|sending|sent|failed
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
  next_attempt_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)
  last_attempt_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  sent_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False)


class ReminderAuditRecord(Base):
  __tablename__ = "reminder_audit_log"

  id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
  action: Mapped[str] = mapped_column(String, nullable=False, index=True)  # scheduled | sent | cancelled | failed
  reminder_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  assessment_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  learner_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
  details: Mapped[dict[str, Any]] = mapped_column(JsonDoc, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, nullable=False, index=True)
