"""init: catalog read tables and reminder engine

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = False, default_now: bool = False) -> sa.Column:
  kw = {"server_default": sa.text("now()")} if default_now else {}
  return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kw)


def upgrade() -> None:
  op.create_table(
    "profiles",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("email", sa.String(), nullable=True),
    sa.Column("full_name", sa.String(), nullable=False, server_default=""),
    sa.Column("role", sa.String(), nullable=False, server_default="student"),
    _ts("created_at", default_now=True),
  )
  op.create_index("ix_profiles_email", "profiles", ["email"])

  op.create_table(
    "courses",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("code", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    _ts("created_at", default_now=True),
  )

  op.create_table(
    "course_enrollments",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("course_id", sa.String(36), sa.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False),
    sa.Column("learner_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    _ts("enrolled_at", default_now=True),
    sa.UniqueConstraint("course_id", "learner_id", name="ux_course_enrollments_course_learner"),
  )
  op.create_index("ix_course_enrollments_course_id", "course_enrollments", ["course_id"])
  op.create_index("ix_course_enrollments_learner_id", "course_enrollments", ["learner_id"])

  op.create_table(
    "assessments",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("course_id", sa.String(36), sa.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("description", sa.Text(), nullable=False, server_default=""),
    sa.Column("assessment_type", sa.String(), nullable=False, server_default="assignment"),
    _ts("due_date"),
    sa.Column("total_marks", sa.Integer(), nullable=True),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    _ts("created_at", default_now=True),
    _ts("updated_at", default_now=True),
  )
  op.create_index("ix_assessments_course_id", "assessments", ["course_id"])
  op.create_index("ix_assessments_due_date", "assessments", ["due_date"])

  op.create_table(
    "submissions",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("assessment_id", sa.String(36), sa.ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False),
    sa.Column("learner_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("status", sa.String(), nullable=False, server_default="submitted"),
    _ts("submitted_at", default_now=True),
    _ts("graded_at", nullable=True),
  )
  op.create_index("ix_submissions_assessment_id", "submissions", ["assessment_id"])
  op.create_index("ix_submissions_learner_id", "submissions", ["learner_id"])

  op.create_table(
    "notification_preferences",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True),
    sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("dashboard_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("muted_policy_ids", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
    sa.Column("quiet_hours_start", sa.String(), nullable=True),
    sa.Column("quiet_hours_end", sa.String(), nullable=True),
    sa.Column("timezone", sa.String(), nullable=False, server_default="UTC"),
    _ts("updated_at", default_now=True),
  )

  op.create_table(
    "reminder_policies",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("name", sa.String(), nullable=False),
    sa.Column("days_before", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("hours_before", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    _ts("created_at", default_now=True),
    _ts("updated_at", default_now=True),
    sa.CheckConstraint("days_before >= 0", name="ck_reminder_policies_days_before"),
    sa.CheckConstraint("hours_before BETWEEN 0 AND 23", name="ck_reminder_policies_hours_before"),
  )
  op.create_index(
    "ux_reminder_policies_active_offset",
    "reminder_policies",
    ["days_before", "hours_before"],
    unique=True,
    postgresql_where=sa.text("is_active"),
  )

  op.create_table(
    "scheduled_reminders",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("assessment_id", sa.String(36), nullable=False),
    sa.Column("learner_id", sa.String(36), nullable=False),
    sa.Column("policy_id", sa.String(36), sa.ForeignKey("reminder_policies.id"), nullable=False),
    _ts("fire_at"),
    _ts("due_at"),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),  # pending|sent|cancelled|failed
    sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
    _ts("sent_at", nullable=True),
    _ts("cancelled_at", nullable=True),
    sa.Column("cancel_reason", sa.String(), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    _ts("created_at", default_now=True),
    _ts("updated_at", default_now=True),
    sa.UniqueConstraint("assessment_id", "learner_id", "policy_id", name="ux_scheduled_reminders_triple"),
  )
  op.create_index("ix_scheduled_reminders_assessment_id", "scheduled_reminders", ["assessment_id"])
  op.create_index("ix_scheduled_reminders_learner_id", "scheduled_reminders", ["learner_id"])
  op.create_index("ix_scheduled_reminders_policy_id", "scheduled_reminders", ["policy_id"])
  op.create_index("ix_scheduled_reminders_status_fire_at", "scheduled_reminders", ["status", "fire_at"])

  op.create_table(
    "notifications",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("user_id", sa.String(36), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("type", sa.String(), nullable=False, server_default="reminder"),
    sa.Column("channel", sa.String(), nullable=False, server_default="dashboard"),
    sa.Column("status", sa.String(), nullable=False, server_default="unread"),
    sa.Column("reference_type", sa.String(), nullable=True),
    sa.Column("reference_id", sa.String(36), nullable=True),
    sa.Column("reminder_id", sa.String(36), nullable=True),
    sa.Column("reminder_revision", sa.Integer(), nullable=True),
    sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    _ts("email_sent_at", nullable=True),
    _ts("read_at", nullable=True),
    _ts("dismissed_at", nullable=True),
    _ts("expires_at", nullable=True),
    _ts("created_at", default_now=True),
    sa.UniqueConstraint("reminder_id", "reminder_revision", name="ux_notifications_reminder_revision"),
  )
  op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
  op.create_index("ix_notifications_user_status", "notifications", ["user_id", "status"])

  op.create_table(
    "delivery_queue",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("notification_id", sa.String(36), sa.ForeignKey("notifications.id"), nullable=True, unique=True),
    sa.Column("reminder_id", sa.String(36), nullable=True),
    sa.Column("recipient_id", sa.String(36), nullable=False),
    sa.Column("recipient_email", sa.String(), nullable=False),
    sa.Column("recipient_name", sa.String(), nullable=True),
    sa.Column("subject", sa.String(), nullable=False),
    sa.Column("body_text", sa.Text(), nullable=False),
    sa.Column("body_html", sa.Text(), nullable=True),
    sa.Column("status", sa.String(), nullable=False, server_default="pending"),  # pending|retry|sent|failed
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
    _ts("next_attempt_at", default_now=True),
    _ts("last_attempt_at", nullable=True),
    _ts("sent_at", nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    _ts("created_at", default_now=True),
  )
  op.create_index("ix_delivery_queue_reminder_id", "delivery_queue", ["reminder_id"])
  op.create_index("ix_delivery_queue_status_next_attempt", "delivery_queue", ["status", "next_attempt_at"])

  op.create_table(
    "reminder_audit_log",
    sa.Column("id", sa.String(36), primary_key=True, nullable=False),
    sa.Column("action", sa.String(), nullable=False),
    sa.Column("reminder_id", sa.String(36), nullable=True),
    sa.Column("assessment_id", sa.String(36), nullable=True),
    sa.Column("learner_id", sa.String(36), nullable=True),
    sa.Column("details", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    _ts("created_at", default_now=True),
  )
  op.create_index("ix_reminder_audit_log_action", "reminder_audit_log", ["action"])
  op.create_index("ix_reminder_audit_log_reminder_id", "reminder_audit_log", ["reminder_id"])
  op.create_index("ix_reminder_audit_log_assessment_id", "reminder_audit_log", ["assessment_id"])
  op.create_index("ix_reminder_audit_log_learner_id", "reminder_audit_log", ["learner_id"])
  op.create_index("ix_reminder_audit_log_created_at", "reminder_audit_log", ["created_at"])

  reminder_policies = sa.table(
    "reminder_policies",
    sa.column("id", sa.String),
    sa.column("name", sa.String),
    sa.column("days_before", sa.Integer),
    sa.column("hours_before", sa.Integer),
    sa.column("is_active", sa.Boolean),
    sa.column("is_default", sa.Boolean),
  )
  op.bulk_insert(
    reminder_policies,
    [
      {"id": "00000000-0000-4000-8000-000000000007", "name": "7 days before", "days_before": 7, "hours_before": 0, "is_active": True, "is_default": True},
      {"id": "00000000-0000-4000-8000-000000000003", "name": "3 days before", "days_before": 3, "hours_before": 0, "is_active": True, "is_default": True},
      {"id": "00000000-0000-4000-8000-000000000001", "name": "1 day before", "days_before": 1, "hours_before": 0, "is_active": True, "is_default": True},
      {"id": "00000000-0000-4000-8000-000000000006", "name": "6 hours before", "days_before": 0, "hours_before": 6, "is_active": True, "is_default": True},
    ],
  )


def downgrade() -> None:
  op.drop_table("reminder_audit_log")
  op.drop_table("delivery_queue")
  op.drop_table("notifications")
  op.drop_table("scheduled_reminders")
  op.drop_table("reminder_policies")
  op.drop_table("notification_preferences")
  op.drop_table("submissions")
  op.drop_table("assessments")
  op.drop_table("course_enrollments")
  op.drop_table("courses")
  op.drop_table("profiles")
