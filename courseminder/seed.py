from __future__ import annotations

import asyncio

from courseminder.config import settings
from courseminder.db import SessionLocal, engine, init_models
from courseminder.log import configure_logging, get_logger
from courseminder.reminders.policies import ensure_default_policies

logger = get_logger("seed")


async def seed(*, create_schema: bool = False) -> int:
  if create_schema:
    await init_models()
  async with SessionLocal() as db:
    created = await ensure_default_policies(db)
    await db.commit()
  logger.info(f"Seeded {created} default reminder policies")
  return created


def main() -> None:
  configure_logging(settings.log_level, json_logs=settings.log_json)

  async def _run() -> None:
    try:
      await seed(create_schema=settings.database_url.startswith("sqlite"))
    finally:
      await engine.dispose()

  asyncio.run(_run())


if __name__ == "__main__":
  main()
