"""
Tests for BillingScheduler.

Validates:
- tick() runs the jobs at most once per calendar day
- a failed tick is logged and retried on the next tick
- start()/stop() manage the background thread
- end to end: scheduled ticks drive recurring generation
"""

from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

from billing_modules.invoicing.models import LineItem
from billing_services.invoice_jobs import InvoiceJobRunner, JobRunSummary
from billing_services.scheduler import BillingScheduler


class _RecordingRunner:
    """Stands in for InvoiceJobRunner and records each run date."""

    def __init__(self, fail_times: int = 0):
        self.runs: list[date] = []
        self.fail_times = fail_times
        self.ran = threading.Event()

    def run_all(self, as_of):
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("database unavailable")
        self.runs.append(as_of)
        self.ran.set()
        return JobRunSummary(as_of=as_of)


class TestTick:

    def test_runs_once_per_day(self, clock):
        runner = _RecordingRunner()
        scheduler = BillingScheduler(runner, clock=clock)

        assert scheduler.tick() == JobRunSummary(as_of=date(2024, 1, 15))
        clock.advance(3600)
        assert scheduler.tick() is None
        assert runner.runs == [date(2024, 1, 15)]
        assert scheduler.last_run_date == date(2024, 1, 15)

    def test_runs_again_next_day(self, clock):
        runner = _RecordingRunner()
        scheduler = BillingScheduler(runner, clock=clock)
        scheduler.tick()
        clock.advance_days(1)
        scheduler.tick()
        assert runner.runs == [date(2024, 1, 15), date(2024, 1, 16)]

    def test_failed_tick_is_retried(self, clock, captured_logs):
        runner = _RecordingRunner(fail_times=1)
        scheduler = BillingScheduler(runner, clock=clock)

        assert scheduler.tick() is None
        assert scheduler.last_run_date is None
        assert scheduler.tick() is not None
        assert runner.runs == [date(2024, 1, 15)]

        messages = [r["message"] for r in captured_logs()]
        assert "scheduler_tick_failed" in messages
        assert "scheduler_tick_completed" in messages


class TestThread:

    def test_start_and_stop(self, clock):
        runner = _RecordingRunner()
        scheduler = BillingScheduler(runner, clock=clock, tick_interval_seconds=3600)

        scheduler.start()
        try:
            assert runner.ran.wait(timeout=5)
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.is_running
        assert runner.runs == [date(2024, 1, 15)]

    def test_start_twice_keeps_one_thread(self, clock):
        runner = _RecordingRunner()
        scheduler = BillingScheduler(runner, clock=clock, tick_interval_seconds=3600)
        scheduler.start()
        try:
            runner.ran.wait(timeout=5)
            scheduler.start()
        finally:
            scheduler.stop(timeout=5)
        assert runner.runs == [date(2024, 1, 15)]


class TestScheduledGeneration:

    def test_weekly_template_over_three_weeks(
        self, session_factory, recurring_service, org_id, clock, settings, mailer,
    ):
        template = recurring_service.create_template(
            org_id,
            template_name="Weekly",
            frequency="weekly",
            start_date=clock.today(),
            items=[LineItem(name="Support", unit_price=Decimal("75.00"))],
        )
        runner = InvoiceJobRunner(session_factory, clock=clock, settings=settings, mailer=mailer)
        scheduler = BillingScheduler(runner, clock=clock)

        for _ in range(21):
            scheduler.tick()
            scheduler.tick()
            clock.advance_days(1)

        history = recurring_service.history(org_id, template.id)
        assert [i.recurring_run_date for i in history] == [
            date(2024, 1, 15), date(2024, 1, 22), date(2024, 1, 29),
        ]
        assert all(i.recurring_template_id == template.id for i in history)
        assert recurring_service.get_template(org_id, template.id).invoices_generated == 3
