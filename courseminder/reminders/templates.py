from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from courseminder.catalog import AssessmentInfo, LearnerContact
from courseminder.reminders.planner import PolicyOffset


@dataclass(frozen=True)
class RenderedReminder:
  title: str
  body: str
  urgency: str
  email_subject: str
  email_text: str
  email_html: str
  metadata: dict[str, Any] = field(default_factory=dict)


def deadline_urgency(time_left: timedelta) -> str:
  hours = time_left.total_seconds() / 3600
  if hours <= 6:
    return "critical"
  if hours <= 24:
    return "high"
  if hours <= 72:
    return "medium"
  return "low"


def _plural(n: int, unit: str) -> str:
  return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def offset_phrase(days: int, hours: int) -> str:
  parts = []
  if days:
    parts.append(_plural(days, "day"))
  if hours:
    parts.append(_plural(hours, "hour"))
  return " and ".join(parts) or "0 hours"


def format_time_until(due_date: datetime, now: datetime) -> str:
  delta = due_date - now
  if delta.total_seconds() <= 0:
    return "Overdue"
  days = delta.days
  hours = delta.seconds // 3600
  minutes = (delta.seconds % 3600) // 60
  if days > 0:
    return f"{_plural(days, 'day')}, {_plural(hours, 'hour')}" if hours else _plural(days, "day")
  if hours > 0:
    return f"{_plural(hours, 'hour')}, {_plural(minutes, 'minute')}" if minutes else _plural(hours, "hour")
  return _plural(max(1, minutes), "minute")


def format_due_date(due_date: datetime, learner: LearnerContact | None) -> str:
  tz = learner.preferences.tzinfo() if learner else None
  local = due_date.astimezone(tz) if tz else due_date
  return f"{local:%a %d %b %Y, %H:%M} {local.tzname() or 'UTC'}"


def submit_link(app_url: str, assessment_id: str) -> str:
  return f"{app_url.rstrip('/')}/dashboard?assessment={assessment_id}"


@dataclass(frozen=True)
class RenderedAnnouncement:
  title: str
  body: str
  metadata: dict[str, Any] = field(default_factory=dict)


def render_new_assessment(*, assessment: AssessmentInfo, learner: LearnerContact | None) -> RenderedAnnouncement:
  course = assessment.course_title or "your course"
  return RenderedAnnouncement(
    title=f"New assessment: {assessment.title}",
    body=f"Due on {format_due_date(assessment.due_date, learner)} for {course}.",
    metadata={
      "notificationType": "new_assessment",
      "assessmentTitle": assessment.title,
      "courseTitle": assessment.course_title,
      "dueDate": assessment.due_date.isoformat(),
    },
  )


def render_reminder(
  *,
  assessment: AssessmentInfo,
  policy: PolicyOffset,
  learner: LearnerContact | None,
  app_url: str,
) -> RenderedReminder:
  days, hours = int(policy.days_before), int(policy.hours_before)
  phrase = offset_phrase(days, hours)
  urgent = days == 0
  due_text = format_due_date(assessment.due_date, learner)
  course = assessment.course_title or "your course"

  if urgent:
    title = f"URGENT: assessment due in {phrase}"
    body = f'URGENT: "{assessment.title}" for {course} is due in {phrase} on {due_text}.'
  elif days == 1 and hours == 0:
    title = "Assessment due tomorrow"
    body = f'Reminder: "{assessment.title}" for {course} is due tomorrow on {due_text}.'
  else:
    title = f"Assessment due in {phrase}"
    body = f'Reminder: "{assessment.title}" for {course} is due in {phrase} on {due_text}.'

  subject = f"{'URGENT: ' if urgent else ''}Assessment due in {phrase}: {assessment.title}"
  link = submit_link(app_url, assessment.id)
  greeting = f"Hi {learner.display_name}," if learner else "Hi,"
  email_text = f"{greeting}\n\n{body}\n\nSubmit your work: {link}\n"
  email_html = (
    f"<p>{html.escape(greeting)}</p>"
    f"<p>{html.escape(body)}</p>"
    f'<p><a href="{html.escape(link, quote=True)}">Submit assessment</a></p>'
  )
  metadata = {
    "assessmentTitle": assessment.title,
    "courseTitle": assessment.course_title,
    "dueDate": assessment.due_date.isoformat(),
    "daysBefore": days,
    "hoursBefore": hours,
    "policyId": policy.policy_id,
    "urgency": deadline_urgency(policy.offset),
  }
  return RenderedReminder(
    title=title,
    body=body,
    urgency=metadata["urgency"],
    email_subject=subject,
    email_text=email_text,
    email_html=email_html,
    metadata=metadata,
  )
