from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select, update

from courseminder.models import Assessment, Notification, ScheduledReminder
from courseminder.reminders import reconciler
from courseminder.reminders.dispatcher import dispatch_reminder, process_due_reminders, process_reminder
from courseminder.reminders.selector import list_due_reminders
from conftest import NOW
from factories import (
  audit_actions,
  enroll,
  make_assessment,
  make_course,
  make_learner,
  notifications_for,
  policy_by_offset,
  queue_entries,
  reminders_for,
  set_prefs,
  submit,
)


def utc(*args) -> datetime:
  return datetime(*args, tzinfo=timezone.utc)


FIRST_FIRE = utc(2026, 2, 13, 0, 5)


async def _scheduled(db, **prefs):
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  if prefs:
    await set_prefs(db, learner, **prefs)
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  await db.commit()
  return course, learner, a


@pytest.mark.anyio
async def test_selector_returns_only_fired_reminders(db) -> None:
  _, learner, a = await _scheduled(db)
  due = await list_due_reminders(db, now=FIRST_FIRE)
  assert len(due) == 1
  assert due[0].fire_at == utc(2026, 2, 13)
  assert due[0].learner_id == learner.id
  assert await list_due_reminders(db, now=utc(2026, 2, 12, 23, 59)) == []


@pytest.mark.anyio
async def test_selector_orders_oldest_first_and_respects_batch(db) -> None:
  await _scheduled(db)
  due = await list_due_reminders(db, now=utc(2026, 2, 19, 19), batch_size=10)
  assert [r.fire_at for r in due] == [utc(2026, 2, 13), utc(2026, 2, 17), utc(2026, 2, 19), utc(2026, 2, 19, 18)]
  assert len(await list_due_reminders(db, now=utc(2026, 2, 19, 19), batch_size=2)) == 2
  assert await list_due_reminders(db, now=utc(2026, 2, 19, 19), batch_size=0) == []


@pytest.mark.anyio
async def test_selector_excludes_submitted_learners(db) -> None:
  course, learner, a = await _scheduled(db)
  await submit(db, a, learner, at=utc(2026, 2, 12))
  assert await list_due_reminders(db, now=FIRST_FIRE) == []


@pytest.mark.anyio
async def test_dispatch_creates_unread_notification_and_queues_email(db) -> None:
  _, learner, a = await _scheduled(db)
  [r] = await list_due_reminders(db, now=FIRST_FIRE)

  outcome = await dispatch_reminder(db, r.id, now=FIRST_FIRE)

  assert outcome.status == "sent"
  [n] = await notifications_for(db, learner.id)
  assert n.id == outcome.notification_id
  assert n.status == "unread"
  assert n.title == "Assessment due in 7 days"
  assert "Essay 1" in n.body
  assert n.reference_id == a.id
  assert n.expires_at == a.due_date
  assert n.meta["daysBefore"] == 7
  assert n.meta["urgency"] == "low"

  [entry] = await queue_entries(db)
  assert entry.notification_id == n.id
  assert entry.attempts == 0
  assert entry.status == "pending"
  assert entry.recipient_email == "ada@example.edu"
  assert entry.next_attempt_at == FIRST_FIRE

  [row] = [x for x in await reminders_for(db, a.id) if x.id == r.id]
  assert row.status == "sent"
  assert row.sent_at == FIRST_FIRE
  sent = [x for x in await audit_actions(db, reminder_id=r.id) if x.action == "sent"]
  assert len(sent) == 1
  assert sent[0].details["notificationId"] == n.id


@pytest.mark.anyio
async def test_dispatch_without_email_skips_queue(db) -> None:
  _, learner, a = await _scheduled(db, email_enabled=False)
  [r] = await list_due_reminders(db, now=FIRST_FIRE)
  assert (await dispatch_reminder(db, r.id, now=FIRST_FIRE)).status == "sent"
  assert len(await notifications_for(db, learner.id)) == 1
  assert await queue_entries(db) == []


@pytest.mark.anyio
async def test_dashboard_channel_never_queues_email(db) -> None:
  _, learner, a = await _scheduled(db)
  [r] = await list_due_reminders(db, now=FIRST_FIRE)
  assert (await dispatch_reminder(db, r.id, now=FIRST_FIRE, channel="dashboard")).status == "sent"
  assert await queue_entries(db) == []


@pytest.mark.anyio
async def test_unknown_channel_is_rejected(db) -> None:
  _, _, _ = await _scheduled(db)
  [r] = await list_due_reminders(db, now=FIRST_FIRE)
  with pytest.raises(ValueError):
    await dispatch_reminder(db, r.id, now=FIRST_FIRE, channel="pigeon")


@pytest.mark.anyio
async def test_process_reminder_is_at_most_once(db) -> None:
  _, learner, a = await _scheduled(db)
  [r] = await list_due_reminders(db, now=FIRST_FIRE)

  first = await process_reminder(db, r.id, now=FIRST_FIRE)
  second = await process_reminder(db, r.id, now=FIRST_FIRE)

  assert first is not None
  assert second is None
  assert len(await notifications_for(db, learner.id)) == 1


@pytest.mark.anyio
async def test_dispatch_before_fire_time_is_skipped(db) -> None:
  _, learner, a = await _scheduled(db)
  r = (await reminders_for(db, a.id))[0]
  outcome = await dispatch_reminder(db, r.id, now=NOW)
  assert (outcome.status, outcome.reason) == ("skipped", "not_due")
  assert await notifications_for(db, learner.id) == []


@pytest.mark.anyio
async def test_dispatch_rechecks_submission(db) -> None:
  _, learner, a = await _scheduled(db)
  r = (await reminders_for(db, a.id))[0]
  # Submitted but the reconciler never heard about it.
  await submit(db, a, learner, at=utc(2026, 2, 12))
  await db.commit()

  outcome = await dispatch_reminder(db, r.id, now=FIRST_FIRE)

  assert (outcome.status, outcome.reason) == ("cancelled", "submission_received")
  assert await notifications_for(db, learner.id) == []
  assert (await reminders_for(db, a.id))[0].status == "cancelled"


@pytest.mark.anyio
async def test_muted_policy_cancels_instead_of_sending(db) -> None:
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  week = await policy_by_offset(db, 7)
  await set_prefs(db, learner, muted_policy_ids=[week.id])
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  await db.commit()

  [r] = await list_due_reminders(db, now=FIRST_FIRE)
  outcome = await dispatch_reminder(db, r.id, now=FIRST_FIRE)

  assert (outcome.status, outcome.reason) == ("cancelled", "policy_muted")
  assert await notifications_for(db, learner.id) == []


@pytest.mark.anyio
async def test_quiet_hours_defer_email_but_not_notification(db) -> None:
  _, learner, a = await _scheduled(db, quiet_hours_start="22:00", quiet_hours_end="07:00", timezone="UTC")
  [r] = await list_due_reminders(db, now=FIRST_FIRE)

  assert (await dispatch_reminder(db, r.id, now=FIRST_FIRE)).status == "sent"

  assert len(await notifications_for(db, learner.id)) == 1
  [entry] = await queue_entries(db)
  assert entry.next_attempt_at == utc(2026, 2, 13, 7)


@pytest.mark.anyio
async def test_urgent_wording_for_hour_offsets(db) -> None:
  _, learner, a = await _scheduled(db)
  now = utc(2026, 2, 19, 18, 1)
  r = (await reminders_for(db, a.id))[-1]
  # Only the 6h reminder is dispatched here.
  outcome = await dispatch_reminder(db, r.id, now=now)

  assert outcome.status == "sent"
  [n] = await notifications_for(db, learner.id)
  assert n.title == "URGENT: assessment due in 6 hours"
  assert n.meta["urgency"] == "critical"
  [entry] = await queue_entries(db)
  assert entry.subject == "URGENT: Assessment due in 6 hours: Essay 1"


@pytest.mark.anyio
async def test_missing_assessment_marks_failed(db) -> None:
  _, learner, a = await _scheduled(db)
  three_day = (await reminders_for(db, a.id))[1]
  # Rollback on failure expires ORM instances; keep plain ids.
  reminder_id, learner_id = three_day.id, learner.id
  # The catalog dropped the assessment without telling us.
  await db.execute(delete(Assessment).where(Assessment.id == a.id))
  await db.commit()

  outcome = await dispatch_reminder(db, reminder_id, now=utc(2026, 2, 17, 0, 5))

  assert outcome.status == "failed"
  row = (
    await db.execute(
      select(ScheduledReminder).where(ScheduledReminder.id == reminder_id).execution_options(populate_existing=True)
    )
  ).scalar_one()
  assert row.status == "failed"
  assert "no longer exists" in (row.last_error or "")
  failed = [x for x in await audit_actions(db, reminder_id=reminder_id) if x.action == "failed"]
  assert len(failed) == 1
  assert await notifications_for(db, learner_id) == []


@pytest.mark.anyio
async def test_missing_policy_fails_one_row_only(db) -> None:
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  other = await make_learner(db, email="grace@example.edu", name="Grace Hopper")
  await enroll(db, course, other)
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  await db.commit()

  # Orphan one learner's reminder onto a policy id that does not exist.
  [victim] = [r for r in await reminders_for(db, a.id, other.id) if r.fire_at == utc(2026, 2, 13)]
  await db.execute(update(ScheduledReminder).where(ScheduledReminder.id == victim.id).values(policy_id="no-such-policy"))
  learner_id, other_id = learner.id, other.id
  await db.commit()

  summary = await process_due_reminders(db, now=FIRST_FIRE)

  assert summary.total == 2
  assert summary.sent == 1
  assert summary.failed == 1
  assert len(await notifications_for(db, learner_id)) == 1
  assert await notifications_for(db, other_id) == []


@pytest.mark.anyio
async def test_run_summary_counts(db) -> None:
  _, learner, a = await _scheduled(db)
  summary = await process_due_reminders(db, now=utc(2026, 2, 17, 0, 5))
  assert summary.as_dict()["total"] == 2
  assert summary.sent == 2
  assert len(summary.notification_ids) == 2

  again = await process_due_reminders(db, now=utc(2026, 2, 17, 0, 6))
  assert again.total == 0


@pytest.mark.anyio
async def test_concurrent_dispatchers_send_once(file_session_factory) -> None:
  async with file_session_factory() as s:
    course = await make_course(s)
    learner = await make_learner(s)
    await enroll(s, course, learner)
    a = await make_assessment(s, course)
    await reconciler.on_assessment_created(s, a.id, now=NOW)
    await s.commit()
    [r] = await list_due_reminders(s, now=FIRST_FIRE)
    reminder_id, learner_id = r.id, learner.id

  async def worker():
    async with file_session_factory() as s:
      return await dispatch_reminder(s, reminder_id, now=FIRST_FIRE)

  outcomes = await asyncio.gather(worker(), worker())

  assert [o.status for o in outcomes].count("sent") == 1
  async with file_session_factory() as s:
    q = select(Notification).where(Notification.user_id == learner_id, Notification.type == "reminder")
    notes = (await s.execute(q)).scalars().all()
    assert len(notes) == 1
    status = (await s.execute(select(ScheduledReminder.status).where(ScheduledReminder.id == reminder_id))).scalar_one()
    assert status == "sent"

