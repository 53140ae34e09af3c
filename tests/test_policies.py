from __future__ import annotations

import pytest

from courseminder.errors import NotFoundError, PolicyConflictError, PolicyValidationError
from courseminder.reminders import policies, reconciler
from conftest import ADMIN, NOW, STAFF, as_user
from factories import enroll, make_assessment, make_course, make_learner, policy_by_offset, reminders_for


@pytest.mark.anyio
async def test_defaults_are_seeded_once(db) -> None:
  rows = await policies.list_policies(db)
  assert [(p.days_before, p.hours_before) for p in rows] == [(7, 0), (3, 0), (1, 0), (0, 6)]
  assert all(p.is_default for p in rows)
  assert await policies.ensure_default_policies(db) == 0


@pytest.mark.anyio
@pytest.mark.parametrize(
  "name,days,hours",
  [("", 1, 0), ("zero", 0, 0), ("negative", -1, 0), ("too many hours", 0, 24)],
)
async def test_invalid_offsets_are_rejected(db, name, days, hours) -> None:
  with pytest.raises(PolicyValidationError):
    await policies.create_policy(db, name=name, days_before=days, hours_before=hours)


@pytest.mark.anyio
async def test_duplicate_active_offset_conflicts(db) -> None:
  with pytest.raises(PolicyConflictError):
    await policies.create_policy(db, name="Another week out", days_before=7, hours_before=0)
  p = await policies.create_policy(db, name="Two weeks", days_before=14, hours_before=0)
  assert p.is_active is True
  assert p.is_default is False


@pytest.mark.anyio
async def test_deactivating_cancels_pending_and_stops_new_schedules(db) -> None:
  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  week = await policy_by_offset(db, 7)

  await policies.set_policy_active(db, week.id, active=False, now=NOW)

  rows = await reminders_for(db, a.id)
  [weekly] = [r for r in rows if r.policy_id == week.id]
  assert (weekly.status, weekly.cancel_reason) == ("cancelled", "policy_deactivated")
  assert sum(1 for r in rows if r.status == "pending") == 3

  b = await make_assessment(db, course, title="Essay 2")
  res = await reconciler.on_assessment_created(db, b.id, now=NOW)
  assert res.scheduled == 3

  # The offset is free again, but reactivating the old one then clashes.
  await policies.create_policy(db, name="Week out (new)", days_before=7, hours_before=0)
  with pytest.raises(PolicyConflictError):
    await policies.set_policy_active(db, week.id, active=True, now=NOW)


@pytest.mark.anyio
async def test_retire_deletes_unused_and_deactivates_referenced(db) -> None:
  unused = await policies.create_policy(db, name="Two weeks", days_before=14, hours_before=0)
  assert await policies.retire_policy(db, unused.id, now=NOW) == "deleted"
  with pytest.raises(NotFoundError):
    await policies.get_policy(db, unused.id)

  course = await make_course(db)
  learner = await make_learner(db)
  await enroll(db, course, learner)
  a = await make_assessment(db, course)
  await reconciler.on_assessment_created(db, a.id, now=NOW)
  day = await policy_by_offset(db, 1)
  assert await policies.retire_policy(db, day.id, now=NOW) == "deactivated"
  assert (await policies.get_policy(db, day.id)).is_active is False


@pytest.mark.anyio
async def test_policy_api_requires_admin(db, client) -> None:
  r = await client.get("/reminders/policies", headers=as_user("s1"))
  assert r.status_code == 200
  assert len(r.json()) == 4

  body = {"name": "Two weeks", "daysBefore": 14}
  assert (await client.post("/reminders/policies", headers=STAFF, json=body)).status_code == 403
  r = await client.post("/reminders/policies", headers=ADMIN, json=body)
  assert r.status_code == 201
  created = r.json()
  assert (created["daysBefore"], created["hoursBefore"], created["active"]) == (14, 0, True)

  r = await client.post("/reminders/policies", headers=ADMIN, json=body)
  assert r.status_code == 409
  assert r.json()["detail"]["code"] == "POLICY_CONFLICT"

  r = await client.post("/reminders/policies", headers=ADMIN, json={"name": "Nothing", "daysBefore": 0, "hoursBefore": 0})
  assert r.status_code == 422

  r = await client.patch(f"/reminders/policies/{created['id']}", headers=ADMIN, json={"active": False})
  assert r.json()["active"] is False
  assert len((await client.get("/reminders/policies?activeOnly=true", headers=ADMIN)).json()) == 4

  r = await client.delete(f"/reminders/policies/{created['id']}", headers=ADMIN)
  assert r.json() == {"id": created["id"], "result": "deleted"}
  assert (await client.delete(f"/reminders/policies/{created['id']}", headers=ADMIN)).status_code == 404
