from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder import catalog
from courseminder.audit import write_reminder_audit
from courseminder.catalog import AssessmentInfo
from courseminder.log import get_logger
from courseminder.models import Assessment, ScheduledReminder, utcnow
from courseminder.notifications.service import notify_once
from courseminder.reminders.planner import PolicyOffset, plan_reminders
from courseminder.reminders.policies import active_policy_offsets
from courseminder.reminders.state import cancel_pending_reminders
from courseminder.reminders.templates import render_new_assessment

logger = get_logger("reminders.reconciler")

# Cancellations that an assessment update is allowed to undo.
_REARMABLE_CANCEL_REASONS = {"assessment_inactive", "due_date_changed"}


@dataclass
class ReconcileResult:
  scheduled: int = 0
  rescheduled: int = 0
  cancelled: int = 0
  skipped_learners: int = 0

  def add(self, other: "ReconcileResult") -> None:
    self.scheduled += other.scheduled
    self.rescheduled += other.rescheduled
    self.cancelled += other.cancelled
    self.skipped_learners += other.skipped_learners

  def as_dict(self) -> dict[str, int]:
    return asdict(self)


def _upsert_insert(db: AsyncSession):
  if db.get_bind().dialect.name == "postgresql":
    return postgresql.insert(ScheduledReminder)
  return sqlite.insert(ScheduledReminder)


def _is_stale(r: ScheduledReminder, due_date: datetime) -> bool:
  if r.due_at != due_date:
    return True
  return r.status == "cancelled" and (r.cancel_reason or "") in _REARMABLE_CANCEL_REASONS


async def _reconcile_pair(
  db: AsyncSession,
  *,
  assessment: AssessmentInfo,
  learner_id: str,
  policies: list[PolicyOffset],
  now: datetime,
  rearm: bool,
) -> ReconcileResult:
  result = ReconcileResult()
  planned = plan_reminders(assessment.due_date, policies, now)
  if not planned:
    return result

  existing: dict[str, ScheduledReminder] = {}
  if rearm:
    res = await db.execute(
      select(ScheduledReminder).where(
        ScheduledReminder.assessment_id == assessment.id,
        ScheduledReminder.learner_id == learner_id,
      )
    )
    existing = {r.policy_id: r for r in res.scalars().all()}

  for item in planned:
    row = existing.get(item.policy_id)
    if row is None:
      stmt = (
        _upsert_insert(db)
        .values(
          assessment_id=assessment.id,
          learner_id=learner_id,
          policy_id=item.policy_id,
          fire_at=item.fire_at,
          due_at=assessment.due_date,
          status="pending",
          revision=1,
          created_at=now,
          updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["assessment_id", "learner_id", "policy_id"])
        .returning(ScheduledReminder.id)
      )
      reminder_id = (await db.execute(stmt)).scalar_one_or_none()
      if reminder_id is None:
        continue
      await write_reminder_audit(
        db,
        action="scheduled",
        reminder_id=reminder_id,
        assessment_id=assessment.id,
        learner_id=learner_id,
        details={"policyId": item.policy_id, "fireAt": item.fire_at, "dueDate": assessment.due_date, "revision": 1},
        now=now,
      )
      result.scheduled += 1
      continue

    if not _is_stale(row, assessment.due_date):
      continue
    prev_status, prev_revision = row.status, row.revision
    res = await db.execute(
      update(ScheduledReminder)
      .where(
        ScheduledReminder.id == row.id,
        ScheduledReminder.revision == prev_revision,
        ScheduledReminder.status == prev_status,
      )
      .values(
        status="pending",
        fire_at=item.fire_at,
        due_at=assessment.due_date,
        revision=prev_revision + 1,
        sent_at=None,
        cancelled_at=None,
        cancel_reason=None,
        last_error=None,
        updated_at=now,
      )
    )
    if res.rowcount == 0:
      continue
    await write_reminder_audit(
      db,
      action="scheduled",
      reminder_id=row.id,
      assessment_id=assessment.id,
      learner_id=learner_id,
      details={
        "policyId": item.policy_id,
        "fireAt": item.fire_at,
        "dueDate": assessment.due_date,
        "revision": prev_revision + 1,
        "previousStatus": prev_status,
        "reason": "assessment_updated",
      },
      now=now,
    )
    result.rescheduled += 1
  return result


async def _resolve(db: AsyncSession, assessment: AssessmentInfo | str) -> AssessmentInfo | None:
  if isinstance(assessment, AssessmentInfo):
    return assessment
  return await catalog.get_assessment(db, assessment)


async def _announce_new_assessment(db: AsyncSession, a: AssessmentInfo, learner_ids: list[str], *, now: datetime) -> int:
  """One "new assessment" inbox item per learner; learners who turned the dashboard off are skipped."""
  announced = 0
  for learner_id in learner_ids:
    contact = await catalog.get_learner_contact(db, learner_id)
    if contact is not None and not contact.preferences.dashboard_enabled:
      continue
    rendered = render_new_assessment(assessment=a, learner=contact)
    notification_id = await notify_once(
      db,
      user_id=learner_id,
      dedupe_key=f"assessment.created:{a.id}",
      title=rendered.title,
      body=rendered.body,
      type_="announcement",
      reference_type="assessment",
      reference_id=a.id,
      meta=rendered.metadata,
      expires_at=a.due_date,
      now=now,
    )
    if notification_id:
      announced += 1
  return announced


async def on_assessment_created(
  db: AsyncSession,
  assessment: AssessmentInfo | str,
  *,
  now: datetime | None = None,
) -> ReconcileResult:
  now = now or utcnow()
  result = ReconcileResult()
  a = await _resolve(db, assessment)
  if a is None or not a.accepting_submissions or a.due_date <= now:
    return result

  submitted = await catalog.submitted_learners(db, a.id)
  open_learners: list[str] = []
  for learner_id in await catalog.get_enrolled_learners(db, a.course_id):
    if learner_id in submitted:
      result.skipped_learners += 1
      continue
    open_learners.append(learner_id)
  announced = await _announce_new_assessment(db, a, open_learners, now=now)

  policies = await active_policy_offsets(db)
  if policies:
    for learner_id in open_learners:
      result.add(await _reconcile_pair(db, assessment=a, learner_id=learner_id, policies=policies, now=now, rearm=False))
  logger.info(f"Assessment {a.id} created: scheduled {result.scheduled} reminders, announced to {announced} learners")
  return result


async def on_enrollment_created(
  db: AsyncSession,
  course_id: str,
  learner_id: str,
  *,
  now: datetime | None = None,
) -> ReconcileResult:
  now = now or utcnow()
  result = ReconcileResult()
  policies = await active_policy_offsets(db)
  if not policies:
    return result
  for a in await catalog.list_course_assessments(db, course_id):
    if not a.accepting_submissions or a.due_date <= now:
      continue
    if await catalog.has_submitted(db, learner_id, a.id):
      result.skipped_learners += 1
      continue
    result.add(await _reconcile_pair(db, assessment=a, learner_id=learner_id, policies=policies, now=now, rearm=False))
  logger.info(f"Learner {learner_id} enrolled in course {course_id}: scheduled {result.scheduled} reminders")
  return result


async def on_submission_recorded(
  db: AsyncSession,
  assessment_id: str,
  learner_id: str,
  *,
  now: datetime | None = None,
) -> ReconcileResult:
  now = now or utcnow()
  cancelled = await cancel_pending_reminders(
    db,
    ScheduledReminder.assessment_id == assessment_id,
    ScheduledReminder.learner_id == learner_id,
    reason="submission_received",
    now=now,
  )
  if cancelled:
    logger.info(f"Submission for assessment {assessment_id} by {learner_id}: cancelled {cancelled} reminders")
  return ReconcileResult(cancelled=cancelled)


def _schedule_changed(old: AssessmentInfo | None, new: AssessmentInfo) -> bool:
  if old is None:
    return True
  if old.due_date != new.due_date:
    return True
  return not old.accepting_submissions and new.accepting_submissions


async def on_assessment_updated(
  db: AsyncSession,
  old: AssessmentInfo | None,
  new: AssessmentInfo | str,
  *,
  now: datetime | None = None,
) -> ReconcileResult:
  now = now or utcnow()
  result = ReconcileResult()
  a = await _resolve(db, new)
  if a is None:
    return result

  if not a.accepting_submissions:
    result.cancelled = await cancel_pending_reminders(
      db, ScheduledReminder.assessment_id == a.id, reason="assessment_inactive", now=now
    )
    logger.info(f"Assessment {a.id} no longer accepting submissions: cancelled {result.cancelled} reminders")
    return result
  if not _schedule_changed(old, a):
    return result

  # Anything still pending against an older due date is void.
  result.cancelled = await cancel_pending_reminders(
    db,
    ScheduledReminder.assessment_id == a.id,
    ScheduledReminder.due_at != a.due_date,
    reason="due_date_changed",
    now=now,
  )
  if a.due_date <= now:
    return result
  policies = await active_policy_offsets(db)
  if not policies:
    return result

  submitted = await catalog.submitted_learners(db, a.id)
  for learner_id in await catalog.get_enrolled_learners(db, a.course_id):
    if learner_id in submitted:
      result.skipped_learners += 1
      continue
    result.add(await _reconcile_pair(db, assessment=a, learner_id=learner_id, policies=policies, now=now, rearm=True))
  logger.info(
    f"Assessment {a.id} updated: cancelled {result.cancelled}, rescheduled {result.rescheduled}, new {result.scheduled}"
  )
  return result


async def on_assessment_deleted(db: AsyncSession, assessment_id: str, *, now: datetime | None = None) -> ReconcileResult:
  now = now or utcnow()
  cancelled = await cancel_pending_reminders(
    db, ScheduledReminder.assessment_id == assessment_id, reason="assessment_deleted", now=now
  )
  await db.execute(delete(ScheduledReminder).where(ScheduledReminder.assessment_id == assessment_id))
  logger.info(f"Assessment {assessment_id} deleted: removed its reminders ({cancelled} were pending)")
  return ReconcileResult(cancelled=cancelled)


async def backfill_reminders(db: AsyncSession, *, now: datetime | None = None) -> ReconcileResult:
  """Schedule missing reminders for every open assessment. Existing rows are left alone."""
  now = now or utcnow()
  result = ReconcileResult()
  res = await db.execute(
    select(Assessment.id).where(
      Assessment.is_active.is_(True),
      Assessment.is_published.is_(True),
      Assessment.due_date > now,
    )
  )
  for assessment_id in res.scalars().all():
    result.add(await on_assessment_created(db, assessment_id, now=now))
  logger.info(f"Backfill complete: scheduled {result.scheduled} reminders")
  return result
