"""
BillingScheduler -- In-process polling scheduler for the billing jobs.

Contract:
    Wakes up every ``scheduler_tick_seconds`` and calls
    ``InvoiceJobRunner.run_all`` at most once per calendar day (by the
    injected Clock).

Architecture: billing_services.  Uses ``billing_services.invoice_jobs``.

Invariants enforced:
    - All dates from the injected Clock.
    - Graceful shutdown: ``stop()`` is honoured between ticks and a running
      batch is allowed to finish.

Non-goals:
    - NOT a distributed scheduler (no leader election).  Running two
      schedulers is safe but wasteful: recurring generation is idempotent.
"""

from __future__ import annotations

import threading
from datetime import date

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger
from billing_services.invoice_jobs import InvoiceJobRunner, JobRunSummary

logger = get_logger("services.scheduler")


class BillingScheduler:
    """Daily driver for ``InvoiceJobRunner``.

    Contract:
        - ``tick()`` runs the jobs if they have not run today.
        - ``start()`` / ``stop()`` for background thread operation.
    """

    def __init__(
        self,
        runner: InvoiceJobRunner,
        clock: Clock | None = None,
        tick_interval_seconds: int = 3600,
    ):
        self._runner = runner
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._last_run_date: date | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def last_run_date(self) -> date | None:
        return self._last_run_date

    def tick(self) -> JobRunSummary | None:
        """Run today's jobs unless already done (public for testing).

        Returns the run summary, or ``None`` when nothing ran.
        """
        today = self._clock.today()
        if self._last_run_date == today:
            return None
        try:
            summary = self._runner.run_all(today)
        except Exception:
            logger.exception("scheduler_tick_failed", extra={"as_of": today})
            return None
        self._last_run_date = today
        logger.info("scheduler_tick_completed", extra={
            "as_of": today,
            "errors": len(summary.errors),
        })
        return summary

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="billing-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
