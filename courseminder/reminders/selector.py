from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.models import Assessment, CourseEnrollment, ScheduledReminder, Submission, utcnow


async def list_due_reminders(db: AsyncSession, *, now: datetime | None = None, batch_size: int = 50) -> list[ScheduledReminder]:
  """
  Pending reminders whose fire time has passed, oldest first.

  Only reminders for assessments that are still open (active, published, due in the
  future), for learners still enrolled and not yet submitted, are returned. Read-only.
  """
  if int(batch_size) <= 0:
    return []
  now = now or utcnow()
  submitted = exists().where(
    Submission.assessment_id == ScheduledReminder.assessment_id,
    Submission.learner_id == ScheduledReminder.learner_id,
  )
  enrolled = exists().where(
    CourseEnrollment.course_id == Assessment.course_id,
    CourseEnrollment.learner_id == ScheduledReminder.learner_id,
  )
  res = await db.execute(
    select(ScheduledReminder)
    .join(Assessment, Assessment.id == ScheduledReminder.assessment_id)
    .where(
      ScheduledReminder.status == "pending",
      ScheduledReminder.fire_at <= now,
      and_(Assessment.is_active.is_(True), Assessment.is_published.is_(True)),
      Assessment.due_date > now,
      enrolled,
      ~submitted,
    )
    .order_by(ScheduledReminder.fire_at.asc(), ScheduledReminder.id.asc())
    .limit(int(batch_size))
  )
  return list(res.scalars().all())
