from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder import catalog
from courseminder.audit import write_reminder_audit
from courseminder.config import settings
from courseminder.log import get_logger
from courseminder.models import DeliveryQueueEntry, Notification, ReminderPolicy, ScheduledReminder, utcnow
from courseminder.reminders.policies import to_offset
from courseminder.reminders.selector import list_due_reminders
from courseminder.reminders.state import cancel_reminder, mark_reminder_failed
from courseminder.reminders.templates import render_reminder

logger = get_logger("reminders.dispatcher")

CHANNELS = ("dashboard", "email", "both")


class DispatchAborted(Exception):
  """The reminder cannot be dispatched and must be marked failed."""


@dataclass(frozen=True)
class DispatchOutcome:
  status: str  # sent | skipped | cancelled | failed
  notification_id: str | None = None
  reason: str | None = None


@dataclass
class DispatchRunSummary:
  total: int = 0
  sent: int = 0
  skipped: int = 0
  cancelled: int = 0
  failed: int = 0
  notification_ids: list[str] = field(default_factory=list)

  def as_dict(self) -> dict:
    return {
      "total": self.total,
      "sent": self.sent,
      "skipped": self.skipped,
      "cancelled": self.cancelled,
      "failed": self.failed,
      "notificationIds": list(self.notification_ids),
    }


def _normalize_channel(channel: str | None) -> str:
  ch = (channel or settings.reminder_default_channel or "both").strip().lower()
  if ch not in CHANNELS:
    raise ValueError(f"Unknown delivery channel: {channel}")
  return ch


async def _skip_reason(db: AsyncSession, r: ScheduledReminder, a: catalog.AssessmentInfo, now: datetime) -> str | None:
  if await catalog.has_submitted(db, r.learner_id, r.assessment_id):
    return "submission_received"
  if not a.accepting_submissions:
    return "assessment_inactive"
  if a.due_date <= now:
    return "past_due"
  if r.due_at != a.due_date:
    return "due_date_changed"
  if not await catalog.is_enrolled(db, course_id=a.course_id, learner_id=r.learner_id):
    return "not_enrolled"
  return None


async def dispatch_reminder(
  db: AsyncSession,
  reminder_id: str,
  *,
  channel: str | None = None,
  now: datetime | None = None,
  app_url: str | None = None,
) -> DispatchOutcome:
  now = now or utcnow()
  ch = _normalize_channel(channel)

  res = await db.execute(select(ScheduledReminder).where(ScheduledReminder.id == reminder_id))
  r = res.scalar_one_or_none()
  if r is None or r.status != "pending":
    return DispatchOutcome("skipped", reason="not_pending")
  if r.fire_at > now:
    return DispatchOutcome("skipped", reason="not_due")

  # Rollback expires ORM state, so keep plain copies for the failure path.
  rid, revision, assessment_id, learner_id = r.id, r.revision, r.assessment_id, r.learner_id
  log = logger.bind(reminder_id=rid)

  try:
    a = await catalog.get_assessment(db, assessment_id)
    if a is None:
      raise DispatchAborted(f"Assessment {assessment_id} no longer exists")
    reason = await _skip_reason(db, r, a, now)
    if reason:
      cancelled = await cancel_reminder(db, r, reason=reason, now=now)
      await db.commit()
      return DispatchOutcome("cancelled" if cancelled else "skipped", reason=reason)

    pres = await db.execute(select(ReminderPolicy).where(ReminderPolicy.id == r.policy_id))
    policy = pres.scalar_one_or_none()
    if policy is None:
      raise DispatchAborted(f"Reminder policy {r.policy_id} no longer exists")
    contact = await catalog.get_learner_contact(db, learner_id)
    if contact is None:
      raise DispatchAborted(f"Learner {learner_id} not found in directory")
    if policy.id in contact.preferences.muted_policy_ids:
      cancelled = await cancel_reminder(db, r, reason="policy_muted", now=now)
      await db.commit()
      return DispatchOutcome("cancelled" if cancelled else "skipped", reason="policy_muted")

    rendered = render_reminder(assessment=a, policy=to_offset(policy), learner=contact, app_url=app_url or settings.app_url)
  except DispatchAborted as e:
    await db.rollback()
    return await _fail(db, rid, revision, assessment_id, learner_id, str(e), now)
  except Exception as e:
    log.exception(f"Rendering reminder {rid} failed")
    await db.rollback()
    return await _fail(db, rid, revision, assessment_id, learner_id, f"{type(e).__name__}: {e}", now)

  wants_email = ch in ("email", "both")
  email_allowed = wants_email and bool(contact.email) and contact.preferences.email_enabled

  try:
    claim = await db.execute(
      update(ScheduledReminder)
      .where(
        ScheduledReminder.id == rid,
        ScheduledReminder.status == "pending",
        ScheduledReminder.revision == revision,
      )
      .values(status="sent", sent_at=now, last_error=None, updated_at=now)
    )
    if claim.rowcount == 0:
      await db.rollback()
      return DispatchOutcome("skipped", reason="lost_race")

    n = Notification(
      user_id=learner_id,
      title=rendered.title,
      body=rendered.body,
      type="reminder",
      channel=ch,
      status="unread",
      reference_type="assessment",
      reference_id=assessment_id,
      reminder_id=rid,
      reminder_revision=revision,
      meta=rendered.metadata,
      expires_at=a.due_date,
      created_at=now,
    )
    db.add(n)
    await db.flush()

    queued_id = None
    if email_allowed:
      entry = DeliveryQueueEntry(
        notification_id=n.id,
        reminder_id=rid,
        recipient_id=learner_id,
        recipient_email=contact.email,
        recipient_name=contact.display_name,
        subject=rendered.email_subject,
        body_text=rendered.email_text,
        body_html=rendered.email_html,
        status="pending",
        attempts=0,
        max_attempts=max(1, int(settings.delivery_max_attempts)),
        next_attempt_at=contact.preferences.quiet_window_end(now) or now,
        created_at=now,
      )
      db.add(entry)
      await db.flush()
      queued_id = entry.id

    await write_reminder_audit(
      db,
      action="sent",
      reminder_id=rid,
      assessment_id=assessment_id,
      learner_id=learner_id,
      details={
        "notificationId": n.id,
        "deliveryQueueId": queued_id,
        "channel": ch,
        "emailQueued": queued_id is not None,
        "revision": revision,
        "urgency": rendered.urgency,
      },
      now=now,
    )
    notification_id = n.id
    await db.commit()
  except IntegrityError:
    # A concurrent dispatcher already created the notification for this revision.
    await db.rollback()
    return DispatchOutcome("skipped", reason="lost_race")
  except Exception as e:
    log.exception(f"Persisting dispatch of reminder {rid} failed")
    await db.rollback()
    return await _fail(db, rid, revision, assessment_id, learner_id, f"{type(e).__name__}: {e}", now)

  log.info(f"Reminder {rid} sent to {learner_id} (email queued: {queued_id is not None})")
  return DispatchOutcome("sent", notification_id=notification_id)


async def _fail(
  db: AsyncSession,
  rid: str,
  revision: int,
  assessment_id: str,
  learner_id: str,
  error: str,
  now: datetime,
) -> DispatchOutcome:
  marked = await mark_reminder_failed(
    db,
    reminder_id=rid,
    revision=revision,
    assessment_id=assessment_id,
    learner_id=learner_id,
    error=error,
    now=now,
  )
  await db.commit()
  logger.bind(reminder_id=rid).warning(f"Reminder {rid} failed: {error}")
  return DispatchOutcome("failed" if marked else "skipped", reason=error)


async def process_reminder(
  db: AsyncSession,
  reminder_id: str,
  *,
  channel: str | None = None,
  now: datetime | None = None,
) -> str | None:
  outcome = await dispatch_reminder(db, reminder_id, channel=channel, now=now)
  return outcome.notification_id


async def process_due_reminders(
  db: AsyncSession,
  *,
  now: datetime | None = None,
  batch_size: int | None = None,
  channel: str | None = None,
) -> DispatchRunSummary:
  now = now or utcnow()
  summary = DispatchRunSummary()
  due = await list_due_reminders(db, now=now, batch_size=batch_size or settings.reminder_batch_size)
  ids = [r.id for r in due]
  summary.total = len(ids)
  for rid in ids:
    try:
      outcome = await dispatch_reminder(db, rid, channel=channel, now=now)
    except Exception:
      # One bad row must not stop the batch.
      logger.bind(reminder_id=rid).exception(f"Unexpected error dispatching reminder {rid}")
      await db.rollback()
      summary.failed += 1
      continue
    if outcome.status == "sent":
      summary.sent += 1
      summary.notification_ids.append(outcome.notification_id)
    elif outcome.status == "cancelled":
      summary.cancelled += 1
    elif outcome.status == "failed":
      summary.failed += 1
    else:
      summary.skipped += 1
  if summary.total:
    logger.info(
      f"Processed {summary.total} due reminders: sent={summary.sent} cancelled={summary.cancelled} "
      f"failed={summary.failed} skipped={summary.skipped}"
    )
  return summary
