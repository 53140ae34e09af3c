from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.calendar_view import CalendarEvent, build_calendar_ics, list_upcoming_calendar_events, list_upcoming_deadlines
from courseminder.deps import Subject, ensure_self_or_staff, get_clock, get_current_subject, get_db
from courseminder.schemas import CalendarEventOut, UpcomingDeadlineOut

router = APIRouter(prefix="/calendar", tags=["calendar"])


def _aware(value: datetime, name: str) -> datetime:
  if value.tzinfo is None or value.utcoffset() is None:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{name} must include a timezone")
  return value.astimezone(timezone.utc)


def _event_fields(ev: CalendarEvent) -> dict:
  return {
    "assessmentId": ev.assessment_id,
    "courseId": ev.course_id,
    "courseCode": ev.course_code,
    "courseTitle": ev.course_title,
    "title": ev.title,
    "assessmentType": ev.assessment_type,
    "dueDate": ev.due_date,
    "totalMarks": ev.total_marks,
    "submissionStatus": ev.submission_status,
    "isDueSoon": ev.is_due_soon,
    "nextReminderAt": ev.next_reminder_at,
  }


async def _events(
  db: AsyncSession, subject: Subject, learner_id: str | None, start: datetime, end: datetime, now: datetime
) -> list[CalendarEvent]:
  learner = learner_id or subject.id
  ensure_self_or_staff(subject, learner)
  return await list_upcoming_calendar_events(db, learner, _aware(start, "start"), _aware(end, "end"), now=now)


@router.get("/events", response_model=list[CalendarEventOut])
async def calendar_events(
  start: datetime,
  end: datetime,
  learnerId: str | None = None,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> list[CalendarEventOut]:
  events = await _events(db, subject, learnerId, start, end, clock())
  return [CalendarEventOut(**_event_fields(ev)) for ev in events]


@router.get("/events.ics")
async def calendar_ics(
  start: datetime,
  end: datetime,
  learnerId: str | None = None,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> Response:
  now = clock()
  events = await _events(db, subject, learnerId, start, end, now)
  return Response(
    content=build_calendar_ics(events, now=now),
    media_type="text/calendar; charset=utf-8",
    headers={"Content-Disposition": 'attachment; filename="deadlines.ics"'},
  )


@router.get("/upcoming", response_model=list[UpcomingDeadlineOut])
async def upcoming_deadlines(
  daysAhead: int = Query(default=14, ge=0, le=365),
  learnerId: str | None = None,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> list[UpcomingDeadlineOut]:
  learner = learnerId or subject.id
  ensure_self_or_staff(subject, learner)
  rows = await list_upcoming_deadlines(db, learner, days_ahead=daysAhead, now=clock())
  return [
    UpcomingDeadlineOut(
      **_event_fields(d.event),
      daysUntilDue=d.days_until_due,
      timeUntilDue=d.time_until_due,
      urgency=d.urgency,
    )
    for d in rows
  ]
