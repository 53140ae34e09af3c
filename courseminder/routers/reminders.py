from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.audit import list_reminder_history
from courseminder.delivery.queue import drain_delivery_queue
from courseminder.delivery.transport import EmailTransport
from courseminder.deps import Subject, ensure_self_or_staff, get_clock, get_current_subject, get_db, require_admin, require_staff
from courseminder.models import ReminderAuditRecord, ReminderPolicy, ScheduledReminder
from courseminder.reminders import policies as policy_catalog
from courseminder.reminders.dispatcher import dispatch_reminder, process_due_reminders
from courseminder.reminders.reconciler import backfill_reminders
from courseminder.reminders.selector import list_due_reminders
from courseminder.routers.delivery import get_transport
from courseminder.schemas import (
  AuditRecordOut,
  DispatchRunIn,
  DispatchRunOut,
  DrainRunOut,
  PolicyRetireOut,
  ProcessReminderIn,
  ProcessReminderOut,
  ReconcileOut,
  ReminderPolicyActiveIn,
  ReminderPolicyIn,
  ReminderPolicyOut,
  ScheduledReminderOut,
  SweepOut,
)

router = APIRouter(prefix="/reminders", tags=["reminders"])


def _reminder_out(r: ScheduledReminder) -> ScheduledReminderOut:
  return ScheduledReminderOut(
    id=r.id,
    assessmentId=r.assessment_id,
    learnerId=r.learner_id,
    policyId=r.policy_id,
    fireAt=r.fire_at,
    dueAt=r.due_at,
    status=r.status,
    revision=int(r.revision or 1),
    sentAt=r.sent_at,
    cancelledAt=r.cancelled_at,
    cancelReason=r.cancel_reason,
    lastError=r.last_error,
    createdAt=r.created_at,
  )


def _policy_out(p: ReminderPolicy) -> ReminderPolicyOut:
  return ReminderPolicyOut(
    id=p.id,
    name=p.name,
    daysBefore=int(p.days_before),
    hoursBefore=int(p.hours_before),
    active=bool(p.is_active),
    isDefault=bool(p.is_default),
    createdAt=p.created_at,
  )


def _audit_out(a: ReminderAuditRecord) -> AuditRecordOut:
  return AuditRecordOut(
    id=a.id,
    action=a.action,
    reminderId=a.reminder_id,
    assessmentId=a.assessment_id,
    learnerId=a.learner_id,
    details=a.details or {},
    createdAt=a.created_at,
  )


@router.get("/due", response_model=list[ScheduledReminderOut])
async def due_reminders(
  batchSize: int = Query(default=50, ge=1, le=500),
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> list[ScheduledReminderOut]:
  rows = await list_due_reminders(db, now=clock(), batch_size=batchSize)
  return [_reminder_out(r) for r in rows]


@router.post("/{reminder_id}/process", response_model=ProcessReminderOut)
async def process_one(
  reminder_id: str,
  payload: ProcessReminderIn | None = None,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ProcessReminderOut:
  channel = payload.channel if payload else None
  outcome = await dispatch_reminder(db, reminder_id, channel=channel, now=clock())
  return ProcessReminderOut(status=outcome.status, notificationId=outcome.notification_id, reason=outcome.reason)


@router.post("/run", response_model=DispatchRunOut)
async def run_due(
  payload: DispatchRunIn | None = None,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> DispatchRunOut:
  payload = payload or DispatchRunIn()
  summary = await process_due_reminders(db, now=clock(), batch_size=payload.batchSize, channel=payload.channel)
  return DispatchRunOut(**summary.as_dict())


@router.post("/sweep", response_model=SweepOut)
async def sweep(
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
  transport: EmailTransport = Depends(get_transport),
) -> SweepOut:
  now = clock()
  dispatched = await process_due_reminders(db, now=now)
  drained = await drain_delivery_queue(db, now=now, transport=transport)
  return SweepOut(reminders=DispatchRunOut(**dispatched.as_dict()), delivery=DrainRunOut(**drained.as_dict()))


@router.get("/scheduled", response_model=list[ScheduledReminderOut])
async def scheduled_reminders(
  learnerId: str | None = None,
  assessmentId: str | None = None,
  status_: str | None = Query(default=None, alias="status"),
  limit: int = Query(default=100, ge=1, le=500),
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
) -> list[ScheduledReminderOut]:
  if not subject.is_staff:
    learnerId = subject.id
  q = select(ScheduledReminder)
  if learnerId:
    q = q.where(ScheduledReminder.learner_id == learnerId)
  if assessmentId:
    q = q.where(ScheduledReminder.assessment_id == assessmentId)
  if status_:
    q = q.where(ScheduledReminder.status == status_)
  q = q.order_by(ScheduledReminder.fire_at.asc(), ScheduledReminder.id.asc()).limit(limit)
  res = await db.execute(q)
  return [_reminder_out(r) for r in res.scalars().all()]


@router.get("/history", response_model=list[AuditRecordOut])
async def reminder_history(
  learnerId: str | None = None,
  assessmentId: str | None = None,
  reminderId: str | None = None,
  action: str | None = None,
  limit: int = Query(default=50, ge=1, le=200),
  subject: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
) -> list[AuditRecordOut]:
  if not subject.is_staff:
    learnerId = subject.id
  elif learnerId:
    ensure_self_or_staff(subject, learnerId)
  rows = await list_reminder_history(
    db,
    learner_id=learnerId,
    assessment_id=assessmentId,
    reminder_id=reminderId,
    action=action,
    limit=limit,
  )
  return [_audit_out(a) for a in rows]


@router.post("/backfill", response_model=ReconcileOut)
async def backfill(
  _: Subject = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  res = await backfill_reminders(db, now=clock())
  await db.commit()
  return ReconcileOut(
    scheduled=res.scheduled, rescheduled=res.rescheduled, cancelled=res.cancelled, skippedLearners=res.skipped_learners
  )


@router.get("/policies", response_model=list[ReminderPolicyOut])
async def list_policies(
  activeOnly: bool = False,
  _: Subject = Depends(get_current_subject),
  db: AsyncSession = Depends(get_db),
) -> list[ReminderPolicyOut]:
  return [_policy_out(p) for p in await policy_catalog.list_policies(db, active_only=activeOnly)]


@router.post("/policies", response_model=ReminderPolicyOut, status_code=201)
async def create_policy(
  payload: ReminderPolicyIn,
  _: Subject = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
) -> ReminderPolicyOut:
  p = await policy_catalog.create_policy(db, name=payload.name, days_before=payload.daysBefore, hours_before=payload.hoursBefore)
  await db.commit()
  return _policy_out(p)


@router.patch("/policies/{policy_id}", response_model=ReminderPolicyOut)
async def set_policy_active(
  policy_id: str,
  payload: ReminderPolicyActiveIn,
  _: Subject = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReminderPolicyOut:
  p = await policy_catalog.set_policy_active(db, policy_id, active=payload.active, now=clock())
  await db.commit()
  return _policy_out(p)


@router.delete("/policies/{policy_id}", response_model=PolicyRetireOut)
async def retire_policy(
  policy_id: str,
  _: Subject = Depends(require_admin),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> PolicyRetireOut:
  result = await policy_catalog.retire_policy(db, policy_id, now=clock())
  await db.commit()
  return PolicyRetireOut(id=policy_id, result=result)
