from __future__ import annotations

from datetime import datetime

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.errors import NotFoundError, PolicyConflictError, PolicyValidationError
from courseminder.log import get_logger
from courseminder.models import ReminderPolicy, ScheduledReminder, utcnow
from courseminder.reminders.planner import PolicyOffset
from courseminder.reminders.state import cancel_pending_reminders

logger = get_logger("reminders.policies")

DEFAULT_POLICIES: tuple[tuple[str, int, int], ...] = (
  ("7 days before", 7, 0),
  ("3 days before", 3, 0),
  ("1 day before", 1, 0),
  ("6 hours before", 0, 6),
)


def validate_policy(*, name: str, days_before: int, hours_before: int) -> str:
  clean = (name or "").strip()
  if not clean:
    raise PolicyValidationError("Policy name is required")
  if len(clean) > 120:
    raise PolicyValidationError("Policy name is too long")
  if int(days_before) < 0:
    raise PolicyValidationError("daysBefore must be >= 0")
  if not 0 <= int(hours_before) <= 23:
    raise PolicyValidationError("hoursBefore must be between 0 and 23")
  if int(days_before) == 0 and int(hours_before) == 0:
    raise PolicyValidationError("A reminder offset of zero would fire at the due date itself")
  return clean


def to_offset(p: ReminderPolicy) -> PolicyOffset:
  return PolicyOffset(policy_id=p.id, days_before=int(p.days_before), hours_before=int(p.hours_before), name=p.name)


async def list_policies(db: AsyncSession, *, active_only: bool = False) -> list[ReminderPolicy]:
  q = select(ReminderPolicy)
  if active_only:
    q = q.where(ReminderPolicy.is_active.is_(True))
  q = q.order_by(ReminderPolicy.days_before.desc(), ReminderPolicy.hours_before.desc(), ReminderPolicy.created_at.asc())
  res = await db.execute(q)
  return list(res.scalars().all())


async def active_policy_offsets(db: AsyncSession) -> list[PolicyOffset]:
  return [to_offset(p) for p in await list_policies(db, active_only=True)]


async def _active_offset_taken(db: AsyncSession, *, days_before: int, hours_before: int, exclude_id: str | None = None) -> bool:
  conds = [
    ReminderPolicy.is_active.is_(True),
    ReminderPolicy.days_before == days_before,
    ReminderPolicy.hours_before == hours_before,
  ]
  if exclude_id:
    conds.append(ReminderPolicy.id != exclude_id)
  res = await db.execute(select(exists().where(*conds)))
  return bool(res.scalar())


async def create_policy(db: AsyncSession, *, name: str, days_before: int, hours_before: int, is_default: bool = False) -> ReminderPolicy:
  clean = validate_policy(name=name, days_before=days_before, hours_before=hours_before)
  if await _active_offset_taken(db, days_before=int(days_before), hours_before=int(hours_before)):
    raise PolicyConflictError(f"An active policy already fires {days_before}d {hours_before}h before the due date")
  p = ReminderPolicy(name=clean, days_before=int(days_before), hours_before=int(hours_before), is_active=True, is_default=is_default)
  db.add(p)
  await db.flush()
  return p


async def get_policy(db: AsyncSession, policy_id: str) -> ReminderPolicy:
  res = await db.execute(select(ReminderPolicy).where(ReminderPolicy.id == policy_id))
  p = res.scalar_one_or_none()
  if not p:
    raise NotFoundError("Reminder policy not found")
  return p


async def set_policy_active(db: AsyncSession, policy_id: str, *, active: bool, now: datetime | None = None) -> ReminderPolicy:
  now = now or utcnow()
  p = await get_policy(db, policy_id)
  if bool(p.is_active) == active:
    return p
  if active:
    if await _active_offset_taken(db, days_before=p.days_before, hours_before=p.hours_before, exclude_id=p.id):
      raise PolicyConflictError("Another active policy already uses this offset")
    p.is_active = True
    p.updated_at = now
    await db.flush()
    return p

  p.is_active = False
  p.updated_at = now
  await db.flush()
  cancelled = await cancel_pending_reminders(
    db, ScheduledReminder.policy_id == p.id, reason="policy_deactivated", now=now
  )
  logger.info(f"Deactivated reminder policy {p.id} ({p.name}); cancelled {cancelled} pending reminders")
  return p


async def retire_policy(db: AsyncSession, policy_id: str, *, now: datetime | None = None) -> str:
  """Delete an unreferenced policy; a policy that schedules point at is only deactivated."""
  p = await get_policy(db, policy_id)
  res = await db.execute(select(exists().where(ScheduledReminder.policy_id == p.id)))
  if bool(res.scalar()):
    await set_policy_active(db, p.id, active=False, now=now)
    return "deactivated"
  await db.delete(p)
  await db.flush()
  return "deleted"


async def ensure_default_policies(db: AsyncSession) -> int:
  created = 0
  for name, days, hours in DEFAULT_POLICIES:
    res = await db.execute(
      select(exists().where(ReminderPolicy.days_before == days, ReminderPolicy.hours_before == hours))
    )
    if bool(res.scalar()):
      continue
    db.add(ReminderPolicy(name=name, days_before=days, hours_before=hours, is_active=True, is_default=True))
    created += 1
  if created:
    await db.flush()
  return created
