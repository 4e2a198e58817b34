"""Scheduling and run metrics for the featured-listing expiration sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from marketplace.app.featuring import ExpirationSweeper, SweepSummary

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "demoted": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["demoted"] = int(_SWEEP_METRICS.get("demoted", 0)) + summary.total
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_sweep_job(sweeper: ExpirationSweeper, *, now: Optional[datetime] = None) -> SweepSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = sweeper.sweep(current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Featured listing sweep failed")
        raise

    _record_run_success(current_time, summary)
    logger.info(
        "Featured listing sweep completed",
        extra={"demoted": summary.as_dict(), "total": summary.total},
    )
    return summary


class _SweepWorker(Thread):
    def __init__(self, sweeper: ExpirationSweeper, *, interval: float):
        super().__init__(daemon=True)
        self._sweeper = sweeper
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop_event.wait(self._interval):
            try:
                run_sweep_job(self._sweeper)
            except Exception:
                # Logged and counted inside run_sweep_job; keep the schedule.
                continue


def start_sweep_scheduler(sweeper: ExpirationSweeper, *, interval_seconds: float) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        _worker = _SweepWorker(sweeper, interval=interval_seconds)
        _worker.start()
        logger.info("Featured listing sweep scheduler started", extra={"interval_seconds": interval_seconds})


def shutdown_sweep_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Featured listing sweep scheduler stopped")


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "demoted": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_sweep_metrics",
    "run_sweep_job",
    "shutdown_sweep_scheduler",
    "start_sweep_scheduler",
]
