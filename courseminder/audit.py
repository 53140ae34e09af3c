from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.models import ReminderAuditRecord, utcnow

AUDIT_ACTIONS = ("scheduled", "sent", "cancelled", "failed")


async def write_reminder_audit(
  db: AsyncSession,
  *,
  action: str,
  reminder_id: str | None = None,
  assessment_id: str | None = None,
  learner_id: str | None = None,
  details: dict[str, Any] | None = None,
  now: datetime | None = None,
) -> None:
  if action not in AUDIT_ACTIONS:
    raise ValueError(f"Unknown audit action: {action}")
  rec = ReminderAuditRecord(
    action=action,
    reminder_id=reminder_id,
    assessment_id=assessment_id,
    learner_id=learner_id,
    details=jsonable_encoder(details or {}),
    created_at=now or utcnow(),
  )
  db.add(rec)


async def list_reminder_history(
  db: AsyncSession,
  *,
  learner_id: str | None = None,
  assessment_id: str | None = None,
  reminder_id: str | None = None,
  action: str | None = None,
  limit: int = 50,
) -> list[ReminderAuditRecord]:
  q = select(ReminderAuditRecord)
  if learner_id:
    q = q.where(ReminderAuditRecord.learner_id == learner_id)
  if assessment_id:
    q = q.where(ReminderAuditRecord.assessment_id == assessment_id)
  if reminder_id:
    q = q.where(ReminderAuditRecord.reminder_id == reminder_id)
  if action:
    q = q.where(ReminderAuditRecord.action == action)
  q = q.order_by(ReminderAuditRecord.created_at.desc(), ReminderAuditRecord.id.desc()).limit(max(1, min(int(limit), 200)))
  res = await db.execute(q)
  return list(res.scalars().all())
