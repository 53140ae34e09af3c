from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from courseminder.db import SessionLocal
from courseminder.models import utcnow

ROLES = ("student", "instructor", "admin")


@dataclass(frozen=True)
class Subject:
  id: str
  role: str

  @property
  def is_staff(self) -> bool:
    return self.role in ("instructor", "admin")


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


def get_clock() -> Callable[[], datetime]:
  return utcnow


async def get_current_subject(
  x_user_id: str | None = Header(default=None, alias="X-User-Id"),
  x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> Subject:
  # Authentication happens upstream; the gateway forwards the verified identity.
  uid = (x_user_id or "").strip()
  if not uid:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
  role = (x_user_role or "student").strip().lower()
  if role not in ROLES:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
  return Subject(id=uid, role=role)


async def require_staff(subject: Subject = Depends(get_current_subject)) -> Subject:
  if not subject.is_staff:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Instructor or admin role required")
  return subject


async def require_admin(subject: Subject = Depends(get_current_subject)) -> Subject:
  if subject.role != "admin":
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
  return subject


def ensure_self_or_staff(subject: Subject, learner_id: str) -> None:
  if subject.id != learner_id and not subject.is_staff:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view another learner")
