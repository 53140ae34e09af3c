from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.audit import write_reminder_audit
from courseminder.models import ScheduledReminder

TERMINAL_STATUSES = ("sent", "cancelled", "failed")


async def cancel_reminder(
  db: AsyncSession,
  r: ScheduledReminder,
  *,
  reason: str,
  now: datetime,
  details: dict[str, Any] | None = None,
) -> bool:
  """Conditional pending -> cancelled transition. Returns False if another writer got there first."""
  res = await db.execute(
    update(ScheduledReminder)
    .where(
      ScheduledReminder.id == r.id,
      ScheduledReminder.status == "pending",
      ScheduledReminder.revision == r.revision,
    )
    .values(status="cancelled", cancelled_at=now, cancel_reason=reason, updated_at=now)
  )
  if res.rowcount == 0:
    return False
  await write_reminder_audit(
    db,
    action="cancelled",
    reminder_id=r.id,
    assessment_id=r.assessment_id,
    learner_id=r.learner_id,
    details={"reason": reason, "revision": r.revision, "fireAt": r.fire_at, **(details or {})},
    now=now,
  )
  return True


async def cancel_pending_reminders(db: AsyncSession, *conditions, reason: str, now: datetime) -> int:
  res = await db.execute(select(ScheduledReminder).where(ScheduledReminder.status == "pending", *conditions))
  cancelled = 0
  for r in res.scalars().all():
    if await cancel_reminder(db, r, reason=reason, now=now):
      cancelled += 1
  return cancelled


async def mark_reminder_failed(
  db: AsyncSession,
  *,
  reminder_id: str,
  revision: int | None,
  assessment_id: str | None,
  learner_id: str | None,
  error: str,
  now: datetime,
) -> bool:
  conds = [ScheduledReminder.id == reminder_id, ScheduledReminder.status == "pending"]
  if revision is not None:
    conds.append(ScheduledReminder.revision == revision)
  res = await db.execute(
    update(ScheduledReminder)
    .where(*conds)
    .values(status="failed", last_error=error[:2000], updated_at=now)
  )
  if res.rowcount == 0:
    return False
  await write_reminder_audit(
    db,
    action="failed",
    reminder_id=reminder_id,
    assessment_id=assessment_id,
    learner_id=learner_id,
    details={"stage": "dispatch", "error": error[:500], "revision": revision},
    now=now,
  )
  return True
