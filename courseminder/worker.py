from __future__ import annotations

import asyncio
from datetime import datetime
from time import monotonic
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courseminder.config import settings
from courseminder.delivery.queue import DrainSummary, drain_delivery_queue
from courseminder.delivery.transport import EmailTransport, transport_for
from courseminder.log import configure_logging, get_logger
from courseminder.metrics import SweepMetrics, SweepSample, sweep_metrics
from courseminder.models import utcnow
from courseminder.reminders.dispatcher import DispatchRunSummary, process_due_reminders

logger = get_logger("worker")


class ReminderSweeper:
  """
  Periodic due-reminder sweep: dispatch what is due, then drain the delivery queue.

  `start()` spawns the ticker task, `stop()` signals it and waits for the current
  tick to finish. A failing tick is logged and the ticker keeps going.
  """

  def __init__(
    self,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    interval_seconds: float | None = None,
    transport: EmailTransport | None = None,
    clock: Callable[[], datetime] = utcnow,
    metrics: SweepMetrics = sweep_metrics,
  ) -> None:
    self.session_factory = session_factory
    self.interval_seconds = max(1.0, float(interval_seconds or settings.reminder_sweep_interval_seconds))
    self.transport = transport or transport_for()
    self.clock = clock
    self.metrics = metrics
    self._stop = asyncio.Event()
    self._task: asyncio.Task | None = None

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  async def run_once(self) -> tuple[DispatchRunSummary, DrainSummary]:
    now = self.clock()
    start = monotonic()
    dispatched = DispatchRunSummary()
    drained = DrainSummary()
    error = None
    try:
      async with self.session_factory() as db:
        dispatched = await process_due_reminders(db, now=now)
      async with self.session_factory() as db:
        drained = await drain_delivery_queue(db, now=now, transport=self.transport)
    except Exception as e:
      error = f"{type(e).__name__}: {e}"
      raise
    finally:
      self.metrics.observe_sweep(
        SweepSample(
          ts=now,
          duration_ms=(monotonic() - start) * 1000.0,
          reminders_sent=dispatched.sent,
          reminders_failed=dispatched.failed,
          emails_sent=drained.sent,
          emails_failed=drained.failed,
          error=error,
        )
      )
    return dispatched, drained

  async def _run(self) -> None:
    logger.info(f"Reminder sweeper started (every {self.interval_seconds:.0f}s)")
    while not self._stop.is_set():
      try:
        await self.run_once()
      except Exception:
        logger.exception("Reminder sweep failed")
      try:
        await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
      except asyncio.TimeoutError:
        pass
    logger.info("Reminder sweeper stopped")

  def start(self) -> None:
    if self.running:
      return
    self._stop.clear()
    self._task = asyncio.create_task(self._run(), name="reminder-sweeper")

  async def stop(self, timeout: float = 30.0) -> None:
    if self._task is None:
      return
    self._stop.set()
    try:
      await asyncio.wait_for(self._task, timeout=timeout)
    except asyncio.TimeoutError:
      self._task.cancel()
      try:
        await self._task
      except asyncio.CancelledError:
        pass
    finally:
      self._task = None


async def _serve() -> None:
  from courseminder.db import SessionLocal

  sweeper = ReminderSweeper(SessionLocal)
  sweeper.start()
  try:
    await asyncio.Event().wait()
  finally:
    await sweeper.stop()


def main() -> None:
  configure_logging(settings.log_level, json_logs=settings.log_json)
  try:
    asyncio.run(_serve())
  except KeyboardInterrupt:
    logger.info("Interrupted")


if __name__ == "__main__":
  main()
