from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from courseminder.calendar_view import (
  CalendarEvent,
  build_calendar_ics,
  list_upcoming_calendar_events,
  list_upcoming_deadlines,
)
from courseminder.reminders import reconciler
from conftest import DUE, NOW, STAFF, as_user
from factories import enroll, make_assessment, make_course, make_learner, submit


def utc(*args) -> datetime:
  return datetime(*args, tzinfo=timezone.utc)


async def _term(db):
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  essay = await make_assessment(db, course, title="Essay 1")
  quiz = await make_assessment(db, course, title="Quiz, week 2", due=utc(2026, 2, 12, 9), assessment_type="quiz")
  lab = await make_assessment(db, course, title="Lab 1", due=utc(2026, 2, 9))
  graded = await make_assessment(db, course, title="Reading log", due=utc(2026, 2, 15))
  await make_assessment(db, course, title="Hidden draft", due=utc(2026, 2, 16), published=False)
  await submit(db, graded, learner, at=utc(2026, 2, 8), status="graded")
  await reconciler.on_assessment_created(db, essay.id, now=NOW)
  await db.commit()
  return course, learner, essay, quiz, lab, graded


@pytest.mark.anyio
async def test_events_carry_submission_status(db) -> None:
  _, learner, essay, quiz, lab, graded = await _term(db)

  events = await list_upcoming_calendar_events(db, learner.id, utc(2026, 2, 1), utc(2026, 3, 1), now=NOW)

  by_title = {e.title: e for e in events}
  assert list(by_title) == ["Lab 1", "Quiz, week 2", "Reading log", "Essay 1"]
  assert by_title["Lab 1"].submission_status == "overdue"
  assert by_title["Reading log"].submission_status == "graded"
  assert by_title["Essay 1"].submission_status == "pending"
  assert by_title["Quiz, week 2"].is_due_soon is True
  assert by_title["Essay 1"].is_due_soon is False
  assert by_title["Essay 1"].next_reminder_at == utc(2026, 2, 13)
  assert by_title["Quiz, week 2"].next_reminder_at is None


@pytest.mark.anyio
async def test_events_for_unenrolled_learner_or_empty_range(db) -> None:
  _, learner, *_ = await _term(db)
  stranger = await make_learner(db, email="eve@example.edu", name="Eve")
  assert await list_upcoming_calendar_events(db, stranger.id, utc(2026, 2, 1), utc(2026, 3, 1), now=NOW) == []
  assert await list_upcoming_calendar_events(db, learner.id, utc(2026, 3, 1), utc(2026, 2, 1), now=NOW) == []


@pytest.mark.anyio
async def test_upcoming_deadlines_only_open_work(db) -> None:
  _, learner, *_ = await _term(db)
  rows = await list_upcoming_deadlines(db, learner.id, days_ahead=14, now=NOW)
  assert [(d.event.title, d.urgency) for d in rows] == [("Quiz, week 2", "medium"), ("Essay 1", "low")]
  assert rows[0].days_until_due == 1
  assert rows[0].time_until_due == "1 day, 21 hours"

  assert [d.event.title for d in await list_upcoming_deadlines(db, learner.id, days_ahead=3, now=NOW)] == ["Quiz, week 2"]


def test_ics_escapes_text_fields() -> None:
  ev = CalendarEvent(
    assessment_id="a1",
    course_id="c1",
    course_code="CS101",
    course_title="Intro; Computing",
    title="Quiz, week 2",
    assessment_type="quiz",
    due_date=DUE,
    total_marks=10,
    submission_status="pending",
    is_due_soon=False,
    next_reminder_at=None,
  )
  body = build_calendar_ics([ev], now=NOW).decode()
  assert body.startswith("BEGIN:VCALENDAR\r\n")
  assert "SUMMARY:CS101: Quiz\\, week 2\r\n" in body
  assert "DTSTART:20260220T000000Z\r\n" in body
  assert "DESCRIPTION:Quiz for Intro\\; Computing. Status: pending.\r\n" in body
  assert body.endswith("END:VCALENDAR\r\n")


@pytest.mark.anyio
async def test_calendar_api(db, client, clock) -> None:
  _, learner, *_ = await _term(db)
  me = as_user(learner.id)
  params = {"start": "2026-02-01T00:00:00Z", "end": "2026-03-01T00:00:00Z"}

  r = await client.get("/calendar/events", headers=me, params=params)
  assert r.status_code == 200
  assert [e["submissionStatus"] for e in r.json()] == ["overdue", "pending", "graded", "pending"]

  r = await client.get("/calendar/events.ics", headers=me, params=params)
  assert r.status_code == 200
  assert r.headers["content-type"].startswith("text/calendar")
  assert r.text.count("BEGIN:VEVENT") == 4

  r = await client.get("/calendar/upcoming", headers=me, params={"daysAhead": 14})
  assert [d["title"] for d in r.json()] == ["Quiz, week 2", "Essay 1"]
  assert r.json()[0]["urgency"] == "medium"

  # Naive datetimes are ambiguous.
  r = await client.get("/calendar/events", headers=me, params={"start": "2026-02-01T00:00:00", "end": "2026-03-01T00:00:00"})
  assert r.status_code == 422

  other = as_user("another-student")
  assert (await client.get("/calendar/upcoming", headers=other, params={"learnerId": learner.id})).status_code == 403
  assert (await client.get("/calendar/upcoming", headers=STAFF, params={"learnerId": learner.id})).status_code == 200

  clock.advance(days=30)
  assert (await client.get("/calendar/upcoming", headers=me)).json() == []
