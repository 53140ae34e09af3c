"""
Read side of the course catalog and the audience directory.

The catalog tables are written by the course management service; the reminder
engine only ever reads them through these helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.models import Assessment, Course, CourseEnrollment, NotificationPreference, Profile, Submission


@dataclass(frozen=True)
class AssessmentInfo:
  id: str
  course_id: str
  title: str
  due_date: datetime
  is_active: bool = True
  is_published: bool = True
  course_title: str = ""
  assessment_type: str = "assignment"

  @property
  def accepting_submissions(self) -> bool:
    return self.is_active and self.is_published


@dataclass(frozen=True)
class LearnerPreferences:
  email_enabled: bool = True
  dashboard_enabled: bool = True
  muted_policy_ids: tuple[str, ...] = ()
  quiet_hours_start: str | None = None
  quiet_hours_end: str | None = None
  timezone: str = "UTC"

  def tzinfo(self) -> ZoneInfo:
    try:
      return ZoneInfo(self.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
      return ZoneInfo("UTC")

  def quiet_window_end(self, now: datetime) -> datetime | None:
    """When `now` falls inside quiet hours, the moment they end; otherwise None."""
    start = parse_hhmm(self.quiet_hours_start)
    end = parse_hhmm(self.quiet_hours_end)
    if start is None or end is None or start == end:
      return None
    local = now.astimezone(self.tzinfo())
    minute = local.hour * 60 + local.minute
    in_window = (start <= minute < end) if start < end else (minute >= start or minute < end)
    if not in_window:
      return None
    end_local = local.replace(hour=end // 60, minute=end % 60, second=0, microsecond=0)
    if end_local <= local:
      end_local = end_local + timedelta(days=1)
    return end_local.astimezone(now.tzinfo)


@dataclass(frozen=True)
class LearnerContact:
  learner_id: str
  email: str | None
  display_name: str
  preferences: LearnerPreferences = field(default_factory=LearnerPreferences)


def parse_hhmm(hhmm: str | None) -> int | None:
  s = (hhmm or "").strip()
  if not s or len(s) != 5 or s[2] != ":":
    return None
  hh, mm = s[:2], s[3:]
  if not (hh.isdigit() and mm.isdigit()):
    return None
  hhi, mmi = int(hh), int(mm)
  if hhi > 23 or mmi > 59:
    return None
  return hhi * 60 + mmi


def assessment_info(a: Assessment, *, course_title: str = "") -> AssessmentInfo:
  return AssessmentInfo(
    id=a.id,
    course_id=a.course_id,
    title=a.title,
    due_date=a.due_date,
    is_active=bool(a.is_active),
    is_published=bool(a.is_published),
    course_title=course_title,
    assessment_type=a.assessment_type,
  )


def preferences_from_row(row: NotificationPreference | None) -> LearnerPreferences:
  if row is None:
    return LearnerPreferences()
  return LearnerPreferences(
    email_enabled=bool(row.email_enabled),
    dashboard_enabled=bool(row.dashboard_enabled),
    muted_policy_ids=tuple(row.muted_policy_ids or ()),
    quiet_hours_start=row.quiet_hours_start,
    quiet_hours_end=row.quiet_hours_end,
    timezone=row.timezone or "UTC",
  )


async def get_enrolled_learners(db: AsyncSession, course_id: str) -> list[str]:
  res = await db.execute(
    select(CourseEnrollment.learner_id).where(CourseEnrollment.course_id == course_id).order_by(CourseEnrollment.enrolled_at.asc())
  )
  return [str(x) for x in res.scalars().all()]


async def is_enrolled(db: AsyncSession, *, course_id: str, learner_id: str) -> bool:
  res = await db.execute(
    select(exists().where(CourseEnrollment.course_id == course_id, CourseEnrollment.learner_id == learner_id))
  )
  return bool(res.scalar())


async def get_assessment(db: AsyncSession, assessment_id: str) -> AssessmentInfo | None:
  res = await db.execute(
    select(Assessment, Course.title).join(Course, Course.id == Assessment.course_id).where(Assessment.id == assessment_id)
  )
  row = res.first()
  if row is None:
    return None
  a, course_title = row
  return assessment_info(a, course_title=course_title or "")


async def list_course_assessments(db: AsyncSession, course_id: str) -> list[AssessmentInfo]:
  res = await db.execute(
    select(Assessment, Course.title)
    .join(Course, Course.id == Assessment.course_id)
    .where(Assessment.course_id == course_id)
    .order_by(Assessment.due_date.asc())
  )
  return [assessment_info(a, course_title=t or "") for a, t in res.all()]


async def has_submitted(db: AsyncSession, learner_id: str, assessment_id: str) -> bool:
  res = await db.execute(
    select(exists().where(Submission.learner_id == learner_id, Submission.assessment_id == assessment_id))
  )
  return bool(res.scalar())


async def submitted_learners(db: AsyncSession, assessment_id: str) -> set[str]:
  res = await db.execute(select(Submission.learner_id).where(Submission.assessment_id == assessment_id))
  return {str(x) for x in res.scalars().all()}


async def get_learner_contact(db: AsyncSession, learner_id: str) -> LearnerContact | None:
  res = await db.execute(
    select(Profile, NotificationPreference)
    .outerjoin(NotificationPreference, NotificationPreference.user_id == Profile.id)
    .where(Profile.id == learner_id)
  )
  row = res.first()
  if row is None:
    return None
  profile, prefs = row
  email = (profile.email or "").strip() or None
  return LearnerContact(
    learner_id=profile.id,
    email=email,
    display_name=(profile.full_name or "").strip() or (email or "Student"),
    preferences=preferences_from_row(prefs),
  )
