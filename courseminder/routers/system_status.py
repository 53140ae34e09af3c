from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.config import settings
from courseminder.deps import Subject, get_db, require_admin
from courseminder.metrics import sweep_metrics
from courseminder.models import DeliveryQueueEntry, ScheduledReminder

router = APIRouter(prefix="/admin/system-status", tags=["admin"])


async def _counts_by_status(db: AsyncSession, model) -> dict[str, int]:
  res = await db.execute(select(model.status, func.count()).group_by(model.status))
  return {str(st): int(n) for st, n in res.all()}


@router.get("")
async def system_status(_: Subject = Depends(require_admin), db: AsyncSession = Depends(get_db)) -> dict:
  return {
    "version": settings.app_version,
    "sweeperEnabled": settings.reminder_sweep_enabled,
    "sweepIntervalSeconds": settings.reminder_sweep_interval_seconds,
    "emailTransport": settings.email_transport,
    "scheduledReminders": await _counts_by_status(db, ScheduledReminder),
    "deliveryQueue": await _counts_by_status(db, DeliveryQueueEntry),
    "metrics": sweep_metrics.snapshot(),
  }
