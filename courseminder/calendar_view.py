from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.models import Assessment, Course, CourseEnrollment, ScheduledReminder, Submission, utcnow
from courseminder.reminders.templates import deadline_urgency, format_time_until

DUE_SOON_WINDOW = timedelta(hours=72)


@dataclass(frozen=True)
class CalendarEvent:
  assessment_id: str
  course_id: str
  course_code: str
  course_title: str
  title: str
  assessment_type: str
  due_date: datetime
  total_marks: int | None
  submission_status: str  # graded | submitted | overdue | pending
  is_due_soon: bool
  next_reminder_at: datetime | None


@dataclass(frozen=True)
class UpcomingDeadline:
  event: CalendarEvent
  days_until_due: int
  time_until_due: str
  urgency: str


def _submission_status(statuses: set[str], due_date: datetime, now: datetime) -> str:
  if "graded" in statuses:
    return "graded"
  if statuses:
    return "submitted"
  if due_date < now:
    return "overdue"
  return "pending"


async def list_upcoming_calendar_events(
  db: AsyncSession,
  learner_id: str,
  start: datetime,
  end: datetime,
  *,
  now: datetime | None = None,
) -> list[CalendarEvent]:
  now = now or utcnow()
  if end < start:
    return []
  res = await db.execute(
    select(Assessment, Course)
    .join(Course, Course.id == Assessment.course_id)
    .join(CourseEnrollment, CourseEnrollment.course_id == Assessment.course_id)
    .where(
      CourseEnrollment.learner_id == learner_id,
      Assessment.is_active.is_(True),
      Assessment.is_published.is_(True),
      Assessment.due_date >= start,
      Assessment.due_date <= end,
    )
    .order_by(Assessment.due_date.asc(), Assessment.id.asc())
  )
  rows = res.all()
  if not rows:
    return []
  ids = [a.id for a, _ in rows]

  sres = await db.execute(
    select(Submission.assessment_id, Submission.status).where(
      Submission.learner_id == learner_id, Submission.assessment_id.in_(ids)
    )
  )
  statuses: dict[str, set[str]] = {}
  for assessment_id, st in sres.all():
    statuses.setdefault(assessment_id, set()).add(st or "submitted")

  rres = await db.execute(
    select(ScheduledReminder.assessment_id, func.min(ScheduledReminder.fire_at))
    .where(
      ScheduledReminder.learner_id == learner_id,
      ScheduledReminder.assessment_id.in_(ids),
      ScheduledReminder.status == "pending",
      ScheduledReminder.fire_at > now,
    )
    .group_by(ScheduledReminder.assessment_id)
  )
  next_reminder = {aid: fire_at for aid, fire_at in rres.all()}

  events: list[CalendarEvent] = []
  for a, c in rows:
    st = _submission_status(statuses.get(a.id, set()), a.due_date, now)
    left = a.due_date - now
    events.append(
      CalendarEvent(
        assessment_id=a.id,
        course_id=c.id,
        course_code=c.code,
        course_title=c.title,
        title=a.title,
        assessment_type=a.assessment_type,
        due_date=a.due_date,
        total_marks=a.total_marks,
        submission_status=st,
        is_due_soon=st == "pending" and timedelta(0) < left <= DUE_SOON_WINDOW,
        next_reminder_at=next_reminder.get(a.id),
      )
    )
  return events


async def list_upcoming_deadlines(
  db: AsyncSession,
  learner_id: str,
  *,
  days_ahead: int = 14,
  now: datetime | None = None,
) -> list[UpcomingDeadline]:
  now = now or utcnow()
  events = await list_upcoming_calendar_events(db, learner_id, now, now + timedelta(days=max(0, int(days_ahead))), now=now)
  out: list[UpcomingDeadline] = []
  for ev in events:
    if ev.submission_status != "pending":
      continue
    left = ev.due_date - now
    out.append(
      UpcomingDeadline(
        event=ev,
        days_until_due=max(0, left.days),
        time_until_due=format_time_until(ev.due_date, now),
        urgency=deadline_urgency(left),
      )
    )
  return out


def _ics_escape(s: str) -> str:
  return s.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def build_calendar_ics(events: list[CalendarEvent], *, now: datetime | None = None) -> bytes:
  dtstamp = (now or utcnow()).strftime("%Y%m%dT%H%M%SZ")
  lines = [
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "PRODID:-//CourseMinder//EN",
    "CALSCALE:GREGORIAN",
    "METHOD:PUBLISH",
  ]
  for ev in events:
    due = ev.due_date.strftime("%Y%m%dT%H%M%SZ")
    summary = f"{ev.course_code}: {ev.title}".replace("\n", " ").strip()
    desc = f"{ev.assessment_type.title()} for {ev.course_title}. Status: {ev.submission_status}."
    lines += [
      "BEGIN:VEVENT",
      f"UID:{ev.assessment_id}@courseminder.local",
      f"DTSTAMP:{dtstamp}",
      f"SUMMARY:{_ics_escape(summary)}",
      f"DTSTART:{due}",
      f"DTEND:{due}",
      f"DESCRIPTION:{_ics_escape(desc)}",
      "END:VEVENT",
    ]
  lines += ["END:VCALENDAR", ""]
  return "\r\n".join(lines).encode("utf-8")
