from __future__ import annotations

from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.catalog import LearnerPreferences, parse_hhmm, preferences_from_row
from courseminder.errors import PreferenceValidationError
from courseminder.models import NotificationPreference, ReminderPolicy

UPDATABLE_FIELDS = (
  "email_enabled",
  "dashboard_enabled",
  "muted_policy_ids",
  "quiet_hours_start",
  "quiet_hours_end",
  "timezone",
)


def normalize_hhmm(v: str | None) -> str | None:
  s = (v or "").strip()
  if not s:
    return None
  minutes = parse_hhmm(s)
  if minutes is None:
    raise PreferenceValidationError("Time must be HH:MM")
  return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_timezone(v: str | None) -> str:
  name = (v or "").strip() or "UTC"
  try:
    ZoneInfo(name)
  except (ZoneInfoNotFoundError, ValueError) as e:
    raise PreferenceValidationError(f"Unknown timezone: {name}") from e
  return name


async def _row(db: AsyncSession, user_id: str) -> NotificationPreference | None:
  res = await db.execute(select(NotificationPreference).where(NotificationPreference.user_id == user_id))
  return res.scalar_one_or_none()


async def get_preferences(db: AsyncSession, user_id: str) -> LearnerPreferences:
  return preferences_from_row(await _row(db, user_id))


async def update_preferences(db: AsyncSession, user_id: str, changes: dict[str, Any]) -> LearnerPreferences:
  """Partial update; keys absent from `changes` keep their stored (or default) value."""
  unknown = set(changes) - set(UPDATABLE_FIELDS)
  if unknown:
    raise PreferenceValidationError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

  clean: dict[str, Any] = {}
  for key, value in changes.items():
    if key in ("quiet_hours_start", "quiet_hours_end"):
      clean[key] = normalize_hhmm(value)
    elif key == "timezone":
      clean[key] = normalize_timezone(value)
    elif key == "muted_policy_ids":
      ids = sorted({str(x) for x in (value or [])})
      if ids:
        res = await db.execute(select(ReminderPolicy.id).where(ReminderPolicy.id.in_(ids)))
        missing = set(ids) - {str(x) for x in res.scalars().all()}
        if missing:
          raise PreferenceValidationError(f"Unknown reminder policies: {', '.join(sorted(missing))}")
      clean[key] = ids
    else:
      clean[key] = bool(value)

  row = await _row(db, user_id)
  if row is None:
    row = NotificationPreference(
      user_id=user_id, email_enabled=True, dashboard_enabled=True, muted_policy_ids=[], timezone="UTC"
    )
    db.add(row)
  for key, value in clean.items():
    setattr(row, key, value)

  start, end = row.quiet_hours_start, row.quiet_hours_end
  if (start is None) != (end is None):
    raise PreferenceValidationError("Quiet hours need both a start and an end")
  await db.flush()
  return preferences_from_row(row)
