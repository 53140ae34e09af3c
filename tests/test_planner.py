from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from courseminder.reminders.planner import PolicyOffset, plan_reminders

DEFAULTS = [
  PolicyOffset(policy_id="p7d", days_before=7, hours_before=0),
  PolicyOffset(policy_id="p3d", days_before=3, hours_before=0),
  PolicyOffset(policy_id="p1d", days_before=1, hours_before=0),
  PolicyOffset(policy_id="p6h", days_before=0, hours_before=6),
]
DUE = datetime(2026, 2, 20, tzinfo=timezone.utc)


def test_default_policies_produce_expected_fire_times() -> None:
  now = datetime(2026, 2, 10, 12, tzinfo=timezone.utc)
  planned = plan_reminders(DUE, DEFAULTS, now)
  assert [(p.policy_id, p.fire_at) for p in planned] == [
    ("p7d", datetime(2026, 2, 13, tzinfo=timezone.utc)),
    ("p3d", datetime(2026, 2, 17, tzinfo=timezone.utc)),
    ("p1d", datetime(2026, 2, 19, tzinfo=timezone.utc)),
    ("p6h", datetime(2026, 2, 19, 18, tzinfo=timezone.utc)),
  ]


def test_only_future_fire_times_are_kept() -> None:
  # Every offset is checked against several "now" values between creation and the due date.
  for hours_left in (240, 170, 168, 100, 72, 30, 24, 7, 6, 1):
    now = DUE - timedelta(hours=hours_left)
    planned = {p.policy_id: p.fire_at for p in plan_reminders(DUE, DEFAULTS, now)}
    for policy in DEFAULTS:
      fire_at = DUE - policy.offset
      if fire_at > now:
        assert planned[policy.policy_id] == fire_at
      else:
        assert policy.policy_id not in planned


def test_fire_time_equal_to_now_is_excluded() -> None:
  now = datetime(2026, 2, 13, tzinfo=timezone.utc)
  planned = plan_reminders(DUE, DEFAULTS, now)
  assert "p7d" not in {p.policy_id for p in planned}
  assert len(planned) == 3


@pytest.mark.parametrize("due", [DUE, DUE - timedelta(days=1)])
def test_due_date_not_in_future_yields_nothing(due: datetime) -> None:
  assert plan_reminders(due, DEFAULTS, DUE) == []


def test_no_policies_yields_nothing() -> None:
  assert plan_reminders(DUE, [], datetime(2026, 1, 1, tzinfo=timezone.utc)) == []


def test_combined_day_and_hour_offset() -> None:
  policy = PolicyOffset(policy_id="mix", days_before=1, hours_before=12)
  planned = plan_reminders(DUE, [policy], datetime(2026, 2, 1, tzinfo=timezone.utc))
  assert planned[0].fire_at == datetime(2026, 2, 18, 12, tzinfo=timezone.utc)


def test_non_utc_inputs_are_compared_as_instants() -> None:
  plus_two = timezone(timedelta(hours=2))
  due_local = datetime(2026, 2, 20, 2, 0, tzinfo=plus_two)  # same instant as DUE
  planned = plan_reminders(due_local, DEFAULTS[:1], datetime(2026, 2, 10, tzinfo=timezone.utc))
  assert planned[0].fire_at == datetime(2026, 2, 13, tzinfo=timezone.utc)


def test_duplicate_policy_ids_planned_once() -> None:
  planned = plan_reminders(DUE, [DEFAULTS[0], DEFAULTS[0]], datetime(2026, 2, 1, tzinfo=timezone.utc))
  assert len(planned) == 1


def test_naive_datetimes_rejected() -> None:
  with pytest.raises(ValueError):
    plan_reminders(datetime(2026, 2, 20), DEFAULTS, datetime(2026, 2, 1, tzinfo=timezone.utc))
