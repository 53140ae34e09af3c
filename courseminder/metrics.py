from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic


@dataclass
class SweepSample:
  ts: datetime
  duration_ms: float
  reminders_sent: int
  reminders_failed: int
  emails_sent: int
  emails_failed: int
  error: str | None = None


class SweepMetrics:
  def __init__(self) -> None:
    self._started_monotonic = monotonic()
    self._started_at = datetime.now(timezone.utc)
    self._samples: deque[SweepSample] = deque()
    self._request_count = 0
    self._request_errors = 0
    self._lock = Lock()

  @property
  def started_at(self) -> datetime:
    return self._started_at

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def observe_request(self, status_code: int) -> None:
    with self._lock:
      self._request_count += 1
      if status_code >= 500:
        self._request_errors += 1

  def observe_sweep(self, sample: SweepSample) -> None:
    with self._lock:
      self._samples.append(sample)
      self._prune_locked(sample.ts)

  def _prune_locked(self, now: datetime) -> None:
    cutoff = now - timedelta(hours=24)
    while self._samples and self._samples[0].ts < cutoff:
      self._samples.popleft()

  def snapshot(self) -> dict:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._prune_locked(now)
      samples = list(self._samples)
      requests, request_errors = self._request_count, self._request_errors

    last = samples[-1] if samples else None
    return {
      "uptimeSeconds": self.uptime_seconds(),
      "requestCount": requests,
      "requestErrorCount": request_errors,
      "sweeps24h": len(samples),
      "sweepErrors24h": sum(1 for s in samples if s.error),
      "remindersSent24h": sum(s.reminders_sent for s in samples),
      "remindersFailed24h": sum(s.reminders_failed for s in samples),
      "emailsSent24h": sum(s.emails_sent for s in samples),
      "emailsFailed24h": sum(s.emails_failed for s in samples),
      "lastSweepAt": last.ts.isoformat() if last else None,
      "lastSweepDurationMs": round(last.duration_ms, 2) if last else None,
      "lastSweepError": last.error if last else None,
    }


sweep_metrics = SweepMetrics()
