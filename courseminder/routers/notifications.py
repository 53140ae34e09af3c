from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.catalog import LearnerPreferences
from courseminder.deps import Subject, get_clock, get_current_subject, get_db
from courseminder.models import Notification
from courseminder.notifications import preferences as prefs_service
from courseminder.notifications import service as inbox
from courseminder.schemas import (
  MarkAllReadOut,
  NotificationOut,
  NotificationPreferencesIn,
  NotificationPreferencesOut,
  UnreadCountOut,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])

_PREF_FIELDS = {
  "emailEnabled": "email_enabled",
  "dashboardEnabled": "dashboard_enabled",
  "mutedPolicyIds": "muted_policy_ids",
  "quietHoursStart": "quiet_hours_start",
  "quietHoursEnd": "quiet_hours_end",
  "timezone": "timezone",
}


def _notification_out(n: Notification) -> NotificationOut:
  return NotificationOut(
    id=n.id,
    userId=n.user_id,
    title=n.title,
    body=n.body,
    type=n.type,
    channel=n.channel,
    status=n.status,
    referenceType=n.reference_type,
    referenceId=n.reference_id,
    metadata=n.meta or {},
    emailSent=bool(n.email_sent),
    emailSentAt=n.email_sent_at,
    readAt=n.read_at,
    dismissedAt=n.dismissed_at,
    expiresAt=n.expires_at,
    createdAt=n.created_at,
  )


def _prefs_out(p: LearnerPreferences) -> NotificationPreferencesOut:
  return NotificationPreferencesOut(
    emailEnabled=p.email_enabled,
    dashboardEnabled=p.dashboard_enabled,
    mutedPolicyIds=list(p.muted_policy_ids),
    quietHoursStart=p.quiet_hours_start,
    quietHoursEnd=p.quiet_hours_end,
    timezone=p.timezone,
  )


@router.get("", response_model=list[NotificationOut])
async def list_notifications(
  status_: str | None = Query(default=None, alias="status", pattern="^(unread|read|dismissed)$"),
  type_: str | None = Query(default=None, alias="type"),
  includeExpired: bool = False,
  limit: int = Query(default=50, ge=1, le=200),
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> list[NotificationOut]:
  rows = await inbox.list_notifications(
    db,
    user_id=subject.id,
    status=status_,
    type_=type_,
    include_expired=includeExpired,
    now=clock(),
    limit=limit,
  )
  return [_notification_out(n) for n in rows]


@router.get("/unread-count", response_model=UnreadCountOut)
async def unread_count(
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> UnreadCountOut:
  return UnreadCountOut(unread=await inbox.unread_count(db, user_id=subject.id, now=clock()))


@router.post("/read-all", response_model=MarkAllReadOut)
async def mark_all_read(
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> MarkAllReadOut:
  updated = await inbox.mark_all_read(db, user_id=subject.id, now=clock())
  await db.commit()
  return MarkAllReadOut(updated=updated)


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
  notification_id: str,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> NotificationOut:
  n = await inbox.mark_read(db, user_id=subject.id, notification_id=notification_id, now=clock())
  await db.commit()
  return _notification_out(n)


@router.post("/{notification_id}/dismiss", response_model=NotificationOut)
async def dismiss(
  notification_id: str,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> NotificationOut:
  n = await inbox.dismiss(db, user_id=subject.id, notification_id=notification_id, now=clock())
  await db.commit()
  return _notification_out(n)


@router.get("/preferences", response_model=NotificationPreferencesOut)
async def get_preferences(
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesOut:
  return _prefs_out(await prefs_service.get_preferences(db, subject.id))


@router.patch("/preferences", response_model=NotificationPreferencesOut)
async def update_preferences(
  payload: NotificationPreferencesIn,
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
) -> NotificationPreferencesOut:
  changes = {_PREF_FIELDS[k]: getattr(payload, k) for k in payload.model_fields_set if k in _PREF_FIELDS}
  prefs = await prefs_service.update_preferences(db, subject.id, changes)
  await db.commit()
  return _prefs_out(prefs)
