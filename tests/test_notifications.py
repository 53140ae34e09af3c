from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from courseminder.errors import InvalidTransitionError, NotFoundError, PreferenceValidationError
from courseminder.models import Notification
from courseminder.notifications import preferences as prefs
from courseminder.notifications import service as inbox
from courseminder.reminders import reconciler
from courseminder.reminders.dispatcher import process_due_reminders
from conftest import DUE, NOW, as_user
from factories import enroll, make_assessment, make_course, make_learner, policy_by_offset

SENT_AT = datetime(2026, 2, 13, 0, 5, tzinfo=timezone.utc)


async def _notification(db, user_id: str, *, title: str = "Assessment due in 7 days", expires_at=DUE, created_at=SENT_AT) -> Notification:
  n = Notification(
    user_id=user_id,
    title=title,
    body="Reminder",
    type="reminder",
    channel="dashboard",
    status="unread",
    expires_at=expires_at,
    created_at=created_at,
  )
  db.add(n)
  await db.flush()
  return n


@pytest.mark.anyio
async def test_lifecycle_unread_read_dismissed(db) -> None:
  learner = await make_learner(db)
  n = await _notification(db, learner.id)
  assert await inbox.unread_count(db, user_id=learner.id, now=SENT_AT) == 1

  read = await inbox.mark_read(db, user_id=learner.id, notification_id=n.id, now=SENT_AT)
  assert read.status == "read"
  assert read.read_at == SENT_AT
  assert await inbox.unread_count(db, user_id=learner.id, now=SENT_AT) == 0

  # Reading twice is harmless.
  assert (await inbox.mark_read(db, user_id=learner.id, notification_id=n.id, now=SENT_AT)).read_at == SENT_AT

  gone = await inbox.dismiss(db, user_id=learner.id, notification_id=n.id, now=SENT_AT + timedelta(hours=1))
  assert gone.status == "dismissed"
  assert await inbox.list_notifications(db, user_id=learner.id, now=SENT_AT) == []

  with pytest.raises(InvalidTransitionError):
    await inbox.mark_read(db, user_id=learner.id, notification_id=n.id, now=SENT_AT)
  assert (await inbox.dismiss(db, user_id=learner.id, notification_id=n.id, now=SENT_AT)).status == "dismissed"


@pytest.mark.anyio
async def test_unread_can_be_dismissed_directly(db) -> None:
  learner = await make_learner(db)
  n = await _notification(db, learner.id)
  assert (await inbox.dismiss(db, user_id=learner.id, notification_id=n.id, now=SENT_AT)).status == "dismissed"
  assert await inbox.unread_count(db, user_id=learner.id, now=SENT_AT) == 0


@pytest.mark.anyio
async def test_other_users_notifications_are_invisible(db) -> None:
  ada = await make_learner(db)
  grace = await make_learner(db, email="grace@example.edu", name="Grace Hopper")
  n = await _notification(db, ada.id)
  with pytest.raises(NotFoundError):
    await inbox.mark_read(db, user_id=grace.id, notification_id=n.id, now=SENT_AT)
  with pytest.raises(NotFoundError):
    await inbox.dismiss(db, user_id=grace.id, notification_id=n.id, now=SENT_AT)


@pytest.mark.anyio
async def test_expired_notifications_drop_out_of_inbox(db) -> None:
  learner = await make_learner(db)
  await _notification(db, learner.id, title="old", expires_at=SENT_AT + timedelta(hours=1))
  await _notification(db, learner.id, title="fresh", expires_at=None, created_at=SENT_AT + timedelta(minutes=1))
  later = SENT_AT + timedelta(hours=2)

  assert [n.title for n in await inbox.list_notifications(db, user_id=learner.id, now=later)] == ["fresh"]
  assert len(await inbox.list_notifications(db, user_id=learner.id, now=later, include_expired=True)) == 2
  assert await inbox.unread_count(db, user_id=learner.id, now=later) == 1


@pytest.mark.anyio
async def test_mark_all_read(db) -> None:
  learner = await make_learner(db)
  for i in range(3):
    await _notification(db, learner.id, title=f"n{i}")
  assert await inbox.mark_all_read(db, user_id=learner.id, now=SENT_AT) == 3
  assert await inbox.mark_all_read(db, user_id=learner.id, now=SENT_AT) == 0


@pytest.mark.anyio
async def test_preferences_default_and_partial_update(db) -> None:
  learner = await make_learner(db)
  p = await prefs.get_preferences(db, learner.id)
  assert (p.email_enabled, p.dashboard_enabled, p.timezone) == (True, True, "UTC")

  week = await policy_by_offset(db, 7)
  p = await prefs.update_preferences(db, learner.id, {"email_enabled": False, "muted_policy_ids": [week.id]})
  assert p.email_enabled is False
  assert p.muted_policy_ids == (week.id,)

  p = await prefs.update_preferences(db, learner.id, {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00"})
  assert (p.quiet_hours_start, p.quiet_hours_end) == ("22:00", "07:00")
  assert p.email_enabled is False


@pytest.mark.anyio
@pytest.mark.parametrize(
  "changes",
  [
    {"timezone": "Mars/Olympus_Mons"},
    {"quiet_hours_start": "25:00", "quiet_hours_end": "07:00"},
    {"quiet_hours_start": "22:00"},
    {"muted_policy_ids": ["no-such-policy"]},
    {"sms_enabled": True},
  ],
)
async def test_preferences_reject_invalid_values(db, changes) -> None:
  learner = await make_learner(db)
  with pytest.raises(PreferenceValidationError):
    await prefs.update_preferences(db, learner.id, changes)


@pytest.mark.anyio
async def test_inbox_api_flow(db, client, clock) -> None:
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  await db.commit()
  await process_due_reminders(db, now=SENT_AT)
  clock.set(SENT_AT + timedelta(minutes=10))
  me = as_user(learner.id)

  r = await client.get("/notifications", headers=me)
  assert r.status_code == 200
  item, announcement = r.json()
  assert item["status"] == "unread"
  assert item["title"] == "Assessment due in 7 days"
  assert item["metadata"]["assessmentTitle"] == "Essay 1"
  assert (announcement["type"], announcement["title"]) == ("announcement", "New assessment: Essay 1")
  assert [n["id"] for n in (await client.get("/notifications", headers=me, params={"type": "reminder"})).json()] == [item["id"]]
  assert (await client.get("/notifications/unread-count", headers=me)).json() == {"unread": 2}

  r = await client.post(f"/notifications/{item['id']}/read", headers=me)
  assert r.status_code == 200
  assert r.json()["status"] == "read"
  assert (await client.get("/notifications/unread-count", headers=me)).json() == {"unread": 1}

  r = await client.post(f"/notifications/{item['id']}/dismiss", headers=me)
  assert r.json()["status"] == "dismissed"
  assert [n["id"] for n in (await client.get("/notifications", headers=me)).json()] == [announcement["id"]]
  assert len((await client.get("/notifications?status=dismissed", headers=me)).json()) == 1

  r = await client.post(f"/notifications/{item['id']}/read", headers=me)
  assert r.status_code == 409
  assert r.json()["detail"]["code"] == "INVALID_TRANSITION"

  r = await client.post(f"/notifications/{item['id']}/read", headers=as_user("someone-else"))
  assert r.status_code == 404


@pytest.mark.anyio
async def test_inbox_requires_identity(client) -> None:
  assert (await client.get("/notifications")).status_code == 401
  assert (await client.get("/notifications", headers={"X-User-Id": "u1", "X-User-Role": "janitor"})).status_code == 403


@pytest.mark.anyio
async def test_preferences_api(db, client) -> None:
  learner = await make_learner(db)
  await db.commit()
  me = as_user(learner.id)

  r = await client.get("/notifications/preferences", headers=me)
  assert r.status_code == 200
  assert r.json()["emailEnabled"] is True

  r = await client.patch(
    "/notifications/preferences",
    headers=me,
    json={"emailEnabled": False, "quietHoursStart": "21:30", "quietHoursEnd": "06:45", "timezone": "Europe/London"},
  )
  assert r.status_code == 200
  body = r.json()
  assert body["emailEnabled"] is False
  assert (body["quietHoursStart"], body["quietHoursEnd"], body["timezone"]) == ("21:30", "06:45", "Europe/London")

  r = await client.patch("/notifications/preferences", headers=me, json={"timezone": "Nowhere/Special"})
  assert r.status_code == 422
  assert r.json()["detail"]["code"] == "PREFERENCES_INVALID"
  assert (await client.get("/notifications/preferences", headers=me)).json()["timezone"] == "Europe/London"
