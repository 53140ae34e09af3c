from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def _parse_dt_utc_require_tz(value: object) -> object:
  if value is None:
    return None
  if isinstance(value, datetime):
    dt = value
  elif isinstance(value, str):
    s = value.strip()
    if not s:
      return None
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
  else:
    return value
  if dt.tzinfo is None or dt.utcoffset() is None:
    raise ValueError("Datetime must include a timezone (e.g. 2026-02-20T00:00:00Z)")
  return dt.astimezone(timezone.utc)


class AssessmentIn(BaseModel):
  id: str = Field(min_length=1, max_length=36)
  courseId: str = Field(min_length=1, max_length=36)
  title: str = Field(default="", max_length=300)
  dueDate: datetime
  isActive: bool = True
  isPublished: bool = True
  courseTitle: str = ""
  assessmentType: Literal["assignment", "quiz", "examination", "project", "practical", "other"] = "assignment"

  @field_validator("dueDate", mode="before")
  @classmethod
  def _due_to_utc(cls, v: object) -> object:
    return _parse_dt_utc_require_tz(v)


class AssessmentUpdatedIn(BaseModel):
  old: AssessmentIn | None = None
  new: AssessmentIn


class AssessmentRefIn(BaseModel):
  assessmentId: str = Field(min_length=1, max_length=36)


class EnrollmentEventIn(BaseModel):
  courseId: str = Field(min_length=1, max_length=36)
  learnerId: str = Field(min_length=1, max_length=36)


class SubmissionEventIn(BaseModel):
  assessmentId: str = Field(min_length=1, max_length=36)
  learnerId: str = Field(min_length=1, max_length=36)


class ReconcileOut(BaseModel):
  scheduled: int
  rescheduled: int
  cancelled: int
  skippedLearners: int


class ScheduledReminderOut(BaseModel):
  id: str
  assessmentId: str
  learnerId: str
  policyId: str
  fireAt: datetime
  dueAt: datetime
  status: str
  revision: int
  sentAt: datetime | None = None
  cancelledAt: datetime | None = None
  cancelReason: str | None = None
  lastError: str | None = None
  createdAt: datetime


class ProcessReminderIn(BaseModel):
  channel: Literal["dashboard", "email", "both"] | None = None


class ProcessReminderOut(BaseModel):
  status: str
  notificationId: str | None = None
  reason: str | None = None


class DispatchRunIn(BaseModel):
  batchSize: int | None = Field(default=None, ge=1, le=500)
  channel: Literal["dashboard", "email", "both"] | None = None


class DispatchRunOut(BaseModel):
  total: int
  sent: int
  skipped: int
  cancelled: int
  failed: int
  notificationIds: list[str]


class DrainRunIn(BaseModel):
  limit: int | None = Field(default=None, ge=1, le=500)


class DrainRunOut(BaseModel):
  total: int
  sent: int
  retried: int
  failed: int


class SweepOut(BaseModel):
  reminders: DispatchRunOut
  delivery: DrainRunOut


class ReminderPolicyIn(BaseModel):
  name: str = Field(min_length=1, max_length=120)
  daysBefore: int = Field(ge=0, le=365)
  hoursBefore: int = Field(default=0, ge=0, le=23)


class ReminderPolicyActiveIn(BaseModel):
  active: bool


class ReminderPolicyOut(BaseModel):
  id: str
  name: str
  daysBefore: int
  hoursBefore: int
  active: bool
  isDefault: bool
  createdAt: datetime


class PolicyRetireOut(BaseModel):
  id: str
  result: Literal["deleted", "deactivated"]


class AuditRecordOut(BaseModel):
  id: str
  action: str
  reminderId: str | None
  assessmentId: str | None
  learnerId: str | None
  details: dict[str, Any]
  createdAt: datetime


class NotificationOut(BaseModel):
  id: str
  userId: str
  title: str
  body: str
  type: str
  channel: str
  status: str
  referenceType: str | None = None
  referenceId: str | None = None
  metadata: dict[str, Any] = {}
  emailSent: bool = False
  emailSentAt: datetime | None = None
  readAt: datetime | None = None
  dismissedAt: datetime | None = None
  expiresAt: datetime | None = None
  createdAt: datetime


class UnreadCountOut(BaseModel):
  unread: int


class MarkAllReadOut(BaseModel):
  updated: int


class NotificationPreferencesOut(BaseModel):
  emailEnabled: bool = True
  dashboardEnabled: bool = True
  mutedPolicyIds: list[str] = []
  quietHoursStart: str | None = None
  quietHoursEnd: str | None = None
  timezone: str = "UTC"


class NotificationPreferencesIn(BaseModel):
  emailEnabled: bool | None = None
  dashboardEnabled: bool | None = None
  mutedPolicyIds: list[str] | None = None
  quietHoursStart: str | None = Field(default=None, max_length=5)
  quietHoursEnd: str | None = Field(default=None, max_length=5)
  timezone: str | None = Field(default=None, max_length=64)


class CalendarEventOut(BaseModel):
  assessmentId: str
  courseId: str
  courseCode: str
  courseTitle: str
  title: str
  assessmentType: str
  dueDate: datetime
  totalMarks: int | None = None
  submissionStatus: Literal["graded", "submitted", "overdue", "pending"]
  isDueSoon: bool
  nextReminderAt: datetime | None = None


class UpcomingDeadlineOut(CalendarEventOut):
  daysUntilDue: int
  timeUntilDue: str
  urgency: Literal["critical", "high", "medium", "low"]


class DeliveryQueueEntryOut(BaseModel):
  id: str
  notificationId: str | None
  reminderId: str | None
  recipientId: str
  recipientEmail: str
  subject: str
  status: str
  attempts: int
  maxAttempts: int
  nextAttemptAt: datetime
  lastAttemptAt: datetime | None = None
  sentAt: datetime | None = None
  errorMessage: str | None = None
  createdAt: datetime
