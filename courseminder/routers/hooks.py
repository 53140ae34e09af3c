from __future__ import annotations

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.catalog import AssessmentInfo
from courseminder.deps import Subject, get_clock, get_db, require_staff
from courseminder.reminders import reconciler
from courseminder.reminders.reconciler import ReconcileResult
from courseminder.schemas import (
  AssessmentIn,
  AssessmentRefIn,
  AssessmentUpdatedIn,
  EnrollmentEventIn,
  ReconcileOut,
  SubmissionEventIn,
)

router = APIRouter(prefix="/hooks", tags=["hooks"])


def _assessment(payload: AssessmentIn) -> AssessmentInfo:
  return AssessmentInfo(
    id=payload.id,
    course_id=payload.courseId,
    title=payload.title,
    due_date=payload.dueDate,
    is_active=payload.isActive,
    is_published=payload.isPublished,
    course_title=payload.courseTitle,
    assessment_type=payload.assessmentType,
  )


def _out(r: ReconcileResult) -> ReconcileOut:
  return ReconcileOut(
    scheduled=r.scheduled,
    rescheduled=r.rescheduled,
    cancelled=r.cancelled,
    skippedLearners=r.skipped_learners,
  )


@router.post("/assessment-created", response_model=ReconcileOut)
async def assessment_created(
  payload: AssessmentIn,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  res = await reconciler.on_assessment_created(db, _assessment(payload), now=clock())
  await db.commit()
  return _out(res)


@router.post("/assessment-updated", response_model=ReconcileOut)
async def assessment_updated(
  payload: AssessmentUpdatedIn,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  old = _assessment(payload.old) if payload.old else None
  res = await reconciler.on_assessment_updated(db, old, _assessment(payload.new), now=clock())
  await db.commit()
  return _out(res)


@router.post("/enrollment-created", response_model=ReconcileOut)
async def enrollment_created(
  payload: EnrollmentEventIn,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  res = await reconciler.on_enrollment_created(db, payload.courseId, payload.learnerId, now=clock())
  await db.commit()
  return _out(res)


@router.post("/submission-recorded", response_model=ReconcileOut)
async def submission_recorded(
  payload: SubmissionEventIn,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  res = await reconciler.on_submission_recorded(db, payload.assessmentId, payload.learnerId, now=clock())
  await db.commit()
  return _out(res)


@router.post("/assessment-deleted", response_model=ReconcileOut)
async def assessment_deleted(
  payload: AssessmentRefIn,
  _: Subject = Depends(require_staff),
  db: AsyncSession = Depends(get_db),
  clock: Callable[[], datetime] = Depends(get_clock),
) -> ReconcileOut:
  res = await reconciler.on_assessment_deleted(db, payload.assessmentId, now=clock())
  await db.commit()
  return _out(res)
