from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.delivery.queue import drain_delivery_queue, list_queue_entries
from courseminder.delivery.transport import EmailTransport, transport_for
from courseminder.deps import Subject, get_clock, get_db, require_staff
from courseminder.models import DeliveryQueueEntry
from courseminder.schemas import DeliveryQueueEntryOut, DrainRunIn, DrainRunOut

router = APIRouter(prefix="/delivery", tags=["delivery"])


def get_transport() -> EmailTransport:
  return transport_for()


def _entry_out(e: DeliveryQueueEntry) -> DeliveryQueueEntryOut:
  return DeliveryQueueEntryOut(
    id=e.id,
    notificationId=e.notification_id,
    reminderId=e.reminder_id,
    recipientId=e.recipient_id,
    recipientEmail=e.recipient_email,
    subject=e.subject,
    status=e.status,
    attempts=int(e.attempts or 0),
    maxAttempts=int(e.max_attempts or 0),
    nextAttemptAt=e.next_attempt_at,
    lastAttemptAt=e.last_attempt_at,
    sentAt=e.sent_at,
    errorMessage=e.error_message,
    createdAt=e.created_at,
  )


@router.get("/queue", response_model=list[DeliveryQueueEntryOut])
async def queue_entries(
  status_: str | None = Query(default=None, alias="status"),
  recipientId: str | None = None,
  limit: int = Query(default=100, ge=1, le=500),
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
) -> list[DeliveryQueueEntryOut]:
  rows = await list_queue_entries(db, status=status_, recipient_id=recipientId, limit=limit)
  return [_entry_out(e) for e in rows]


@router.post("/drain", response_model=DrainRunOut)
async def drain(
  payload: DrainRunIn | None = None,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
  transport: EmailTransport = Depends(get_transport),
) -> DrainRunOut:
  limit = payload.limit if payload else None
  summary = await drain_delivery_queue(db, now=clock(), limit=limit, transport=transport)
  return DrainRunOut(**summary.as_dict())
