from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.audit import write_reminder_audit
from courseminder.config import settings
from courseminder.delivery.transport import EmailTransport, OutboundEmail, transport_for
from courseminder.errors import DeliveryError
from courseminder.log import get_logger
from courseminder.models import DeliveryQueueEntry, Notification, ScheduledReminder, utcnow

logger = get_logger("delivery.queue")

# A `sending` entry holds a lease until next_attempt_at; once that passes it is drainable again.
DRAINABLE_STATUSES = ("pending", "retry", "sending")


@dataclass
class DrainSummary:
  total: int = 0
  sent: int = 0
  retried: int = 0
  failed: int = 0

  def as_dict(self) -> dict[str, int]:
    return asdict(self)


def backoff_delay(attempts: int, *, base_seconds: int | None = None, max_seconds: int | None = None) -> timedelta:
  """Delay before the next try after `attempts` failed ones: base, 2*base, 4*base, ... capped."""
  base = int(base_seconds if base_seconds is not None else settings.delivery_backoff_base_seconds)
  cap = int(max_seconds if max_seconds is not None else settings.delivery_backoff_max_seconds)
  seconds = base * (2 ** max(0, int(attempts) - 1))
  return timedelta(seconds=min(seconds, cap))


def lease_expiry(now: datetime) -> datetime:
  return now + timedelta(seconds=max(1, int(settings.delivery_lease_seconds)))


async def list_queue_entries(
  db: AsyncSession,
  *,
  status: str | None = None,
  recipient_id: str | None = None,
  limit: int = 100,
) -> list[DeliveryQueueEntry]:
  q = select(DeliveryQueueEntry)
  if status:
    q = q.where(DeliveryQueueEntry.status == status)
  if recipient_id:
    q = q.where(DeliveryQueueEntry.recipient_id == recipient_id)
  q = q.order_by(DeliveryQueueEntry.created_at.desc()).limit(max(1, min(int(limit), 500)))
  res = await db.execute(q)
  return list(res.scalars().all())


async def _audit_context(db: AsyncSession, entry: DeliveryQueueEntry) -> tuple[str | None, str | None]:
  if not entry.reminder_id:
    return None, None
  res = await db.execute(
    select(ScheduledReminder.assessment_id, ScheduledReminder.learner_id).where(ScheduledReminder.id == entry.reminder_id)
  )
  row = res.first()
  if row is None:
    return None, entry.recipient_id
  return row[0], row[1]


async def _audit_failed(db: AsyncSession, entry: DeliveryQueueEntry, *, attempt: int, error: str, now: datetime) -> None:
  assessment_id, learner_id = await _audit_context(db, entry)
  await write_reminder_audit(
    db,
    action="failed",
    reminder_id=entry.reminder_id,
    assessment_id=assessment_id,
    learner_id=learner_id or entry.recipient_id,
    details={
      "stage": "delivery",
      "deliveryQueueId": entry.id,
      "notificationId": entry.notification_id,
      "attempts": attempt,
      "error": error[:500],
    },
    now=now,
  )


async def _deliver_one(db: AsyncSession, entry: DeliveryQueueEntry, transport: EmailTransport, now: datetime) -> str:
  attempt = int(entry.attempts or 0) + 1
  reclaimed = entry.status == "sending"
  claim = await db.execute(
    update(DeliveryQueueEntry)
    .where(
      DeliveryQueueEntry.id == entry.id,
      DeliveryQueueEntry.status.in_(DRAINABLE_STATUSES),
      DeliveryQueueEntry.attempts == entry.attempts,
      DeliveryQueueEntry.attempts < DeliveryQueueEntry.max_attempts,
      DeliveryQueueEntry.next_attempt_at <= now,
    )
    .values(status="sending", attempts=attempt, last_attempt_at=now, next_attempt_at=lease_expiry(now))
  )
  if claim.rowcount == 0:
    return "skipped"
  # The attempt and lease are committed before the transport runs, so a crash mid-send still counts.
  await db.commit()
  if reclaimed:
    logger.bind(queue_id=entry.id).warning(f"Reclaimed expired delivery lease, attempt {attempt}")

  msg = OutboundEmail(
    to_address=entry.recipient_email,
    to_name=entry.recipient_name,
    subject=entry.subject,
    text=entry.body_text,
    html=entry.body_html,
  )
  try:
    await transport.send(msg)
  except DeliveryError as e:
    return await _record_failure(db, entry, attempt=attempt, error=e.message, permanent=e.permanent, now=now)
  except Exception as e:
    logger.bind(queue_id=entry.id).exception(f"Transport {transport.name} raised unexpectedly")
    return await _record_failure(db, entry, attempt=attempt, error=f"{type(e).__name__}: {e}", permanent=False, now=now)

  await db.execute(
    update(DeliveryQueueEntry).where(DeliveryQueueEntry.id == entry.id).values(status="sent", sent_at=now, error_message=None)
  )
  if entry.notification_id:
    await db.execute(
      update(Notification).where(Notification.id == entry.notification_id).values(email_sent=True, email_sent_at=now)
    )
  await db.commit()
  logger.bind(queue_id=entry.id).info(f"Delivered email to {entry.recipient_email} on attempt {attempt}")
  return "sent"


async def _record_failure(
  db: AsyncSession,
  entry: DeliveryQueueEntry,
  *,
  attempt: int,
  error: str,
  permanent: bool,
  now: datetime,
) -> str:
  log = logger.bind(queue_id=entry.id)
  if permanent or attempt >= int(entry.max_attempts):
    await db.execute(
      update(DeliveryQueueEntry).where(DeliveryQueueEntry.id == entry.id).values(status="failed", error_message=error[:2000])
    )
    await _audit_failed(db, entry, attempt=attempt, error=error, now=now)
    await db.commit()
    log.error(f"Email to {entry.recipient_email} failed permanently after {attempt} attempt(s): {error}")
    return "failed"

  next_at = now + backoff_delay(attempt)
  await db.execute(
    update(DeliveryQueueEntry)
    .where(DeliveryQueueEntry.id == entry.id)
    .values(status="retry", next_attempt_at=next_at, error_message=error[:2000])
  )
  await db.commit()
  log.warning(f"Email to {entry.recipient_email} failed (attempt {attempt}), retrying at {next_at.isoformat()}: {error}")
  return "retried"


async def _fail_exhausted_leases(db: AsyncSession, now: datetime) -> int:
  """Entries whose lease ran out on their final attempt are not sent again."""
  res = await db.execute(
    select(DeliveryQueueEntry)
    .where(
      DeliveryQueueEntry.status == "sending",
      DeliveryQueueEntry.next_attempt_at <= now,
      DeliveryQueueEntry.attempts >= DeliveryQueueEntry.max_attempts,
    )
    .execution_options(populate_existing=True)
  )
  failed = 0
  for entry in res.scalars().all():
    error = "Delivery lease expired on the final attempt"
    upd = await db.execute(
      update(DeliveryQueueEntry)
      .where(
        DeliveryQueueEntry.id == entry.id,
        DeliveryQueueEntry.status == "sending",
        DeliveryQueueEntry.attempts == entry.attempts,
      )
      .values(status="failed", error_message=error)
    )
    if upd.rowcount == 0:
      continue
    await _audit_failed(db, entry, attempt=int(entry.attempts), error=error, now=now)
    await db.commit()
    logger.bind(queue_id=entry.id).error(f"Email to {entry.recipient_email} abandoned: {error}")
    failed += 1
  return failed


async def drain_delivery_queue(
  db: AsyncSession,
  *,
  now: datetime | None = None,
  limit: int | None = None,
  transport: EmailTransport | None = None,
) -> DrainSummary:
  now = now or utcnow()
  transport = transport or transport_for()
  summary = DrainSummary()
  summary.failed = await _fail_exhausted_leases(db, now)
  summary.total = summary.failed

  res = await db.execute(
    select(DeliveryQueueEntry.id)
    .where(
      DeliveryQueueEntry.status.in_(DRAINABLE_STATUSES),
      DeliveryQueueEntry.next_attempt_at <= now,
      DeliveryQueueEntry.attempts < DeliveryQueueEntry.max_attempts,
    )
    .order_by(DeliveryQueueEntry.next_attempt_at.asc(), DeliveryQueueEntry.created_at.asc())
    .limit(max(1, int(limit or settings.delivery_batch_size)))
  )
  ids = list(res.scalars().all())
  summary.total += len(ids)
  for entry_id in ids:
    try:
      entry = await db.get(DeliveryQueueEntry, entry_id, populate_existing=True)
      if entry is None:
        continue
      outcome = await _deliver_one(db, entry, transport, now)
    except Exception:
      # One bad entry must not stop the batch.
      logger.bind(queue_id=entry_id).exception(f"Unexpected error draining delivery queue entry {entry_id}")
      await db.rollback()
      summary.failed += 1
      continue
    if outcome == "sent":
      summary.sent += 1
    elif outcome == "retried":
      summary.retried += 1
    elif outcome == "failed":
      summary.failed += 1
  if summary.total:
    logger.info(f"Drained delivery queue: {summary.as_dict()}")
  return summary
