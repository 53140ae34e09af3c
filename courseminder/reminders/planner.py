from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable


@dataclass(frozen=True)
class PolicyOffset:
  policy_id: str
  days_before: int
  hours_before: int
  name: str = ""

  @property
  def offset(self) -> timedelta:
    return timedelta(days=self.days_before, hours=self.hours_before)


@dataclass(frozen=True)
class PlannedReminder:
  policy_id: str
  fire_at: datetime


def _require_aware(value: datetime, name: str) -> None:
  if value.tzinfo is None or value.utcoffset() is None:
    raise ValueError(f"{name} must be timezone-aware")


def plan_reminders(due_date: datetime, policies: Iterable[PolicyOffset], now: datetime) -> list[PlannedReminder]:
  """
  Absolute fire times for one (assessment, learner) pair.

  Offsets whose fire time is not strictly after `now` are dropped, so a due date
  at or before `now` yields nothing. Output is ordered by fire time.
  """
  _require_aware(due_date, "due_date")
  _require_aware(now, "now")
  if due_date <= now:
    return []

  planned: list[PlannedReminder] = []
  seen: set[str] = set()
  for p in policies:
    if p.policy_id in seen:
      continue
    seen.add(p.policy_id)
    fire_at = due_date - p.offset
    if fire_at > now:
      planned.append(PlannedReminder(policy_id=p.policy_id, fire_at=fire_at))
  planned.sort(key=lambda r: (r.fire_at, r.policy_id))
  return planned
