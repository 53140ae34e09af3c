from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.errors import InvalidTransitionError, NotFoundError
from courseminder.models import Notification, utcnow

NOTIFICATION_STATUSES = ("unread", "read", "dismissed")


def _not_expired(now: datetime):
  return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


def _insert(db: AsyncSession):
  if db.get_bind().dialect.name == "postgresql":
    return postgresql.insert(Notification)
  return sqlite.insert(Notification)


async def notify_once(
  db: AsyncSession,
  *,
  user_id: str,
  dedupe_key: str,
  title: str,
  body: str,
  type_: str,
  reference_type: str | None = None,
  reference_id: str | None = None,
  meta: dict[str, Any] | None = None,
  expires_at: datetime | None = None,
  now: datetime | None = None,
) -> str | None:
  """Dashboard notification, at most one per (user, dedupe_key). Returns the new id, or None if it already existed."""
  now = now or utcnow()
  stmt = (
    _insert(db)
    .values(
      user_id=user_id,
      title=title,
      body=body,
      type=type_,
      channel="dashboard",
      status="unread",
      reference_type=reference_type,
      reference_id=reference_id,
      meta=meta or {},
      dedupe_key=dedupe_key,
      expires_at=expires_at,
      created_at=now,
    )
    .on_conflict_do_nothing(index_elements=["user_id", "dedupe_key"])
    .returning(Notification.id)
  )
  return (await db.execute(stmt)).scalar_one_or_none()


async def list_notifications(
  db: AsyncSession,
  *,
  user_id: str,
  status: str | None = None,
  type_: str | None = None,
  include_expired: bool = False,
  include_dismissed: bool = False,
  now: datetime | None = None,
  limit: int = 50,
) -> list[Notification]:
  now = now or utcnow()
  q = select(Notification).where(Notification.user_id == user_id)
  if status:
    q = q.where(Notification.status == status)
  elif not include_dismissed:
    q = q.where(Notification.status != "dismissed")
  if type_:
    q = q.where(Notification.type == type_)
  if not include_expired:
    q = q.where(_not_expired(now))
  q = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(max(1, min(int(limit), 200)))
  res = await db.execute(q)
  return list(res.scalars().all())


async def unread_count(db: AsyncSession, *, user_id: str, now: datetime | None = None) -> int:
  now = now or utcnow()
  res = await db.execute(
    select(func.count()).select_from(Notification).where(
      Notification.user_id == user_id,
      Notification.status == "unread",
      _not_expired(now),
    )
  )
  return int(res.scalar() or 0)


async def _owned(db: AsyncSession, *, user_id: str, notification_id: str) -> Notification:
  res = await db.execute(select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id))
  n = res.scalar_one_or_none()
  if not n:
    raise NotFoundError("Notification not found")
  return n


async def mark_read(db: AsyncSession, *, user_id: str, notification_id: str, now: datetime | None = None) -> Notification:
  now = now or utcnow()
  n = await _owned(db, user_id=user_id, notification_id=notification_id)
  if n.status == "read":
    return n
  if n.status == "dismissed":
    raise InvalidTransitionError("Dismissed notifications cannot be marked read")
  await db.execute(
    update(Notification)
    .where(Notification.id == n.id, Notification.status == "unread")
    .values(status="read", read_at=now)
  )
  await db.refresh(n)
  return n


async def mark_all_read(db: AsyncSession, *, user_id: str, now: datetime | None = None) -> int:
  now = now or utcnow()
  res = await db.execute(
    update(Notification)
    .where(Notification.user_id == user_id, Notification.status == "unread")
    .values(status="read", read_at=now)
  )
  return int(res.rowcount or 0)


async def dismiss(db: AsyncSession, *, user_id: str, notification_id: str, now: datetime | None = None) -> Notification:
  now = now or utcnow()
  n = await _owned(db, user_id=user_id, notification_id=notification_id)
  if n.status == "dismissed":
    return n
  await db.execute(
    update(Notification)
    .where(Notification.id == n.id, Notification.status.in_(["unread", "read"]))
    .values(status="dismissed", dismissed_at=now)
  )
  await db.refresh(n)
  return n
