from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass

from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db, session_scope
from server.creditmeter.ledger.accounts import list_workspaces_due_for_rollover
from server.creditmeter.ledger.overage import retry_pending_invoices, rollover_period
from server.creditmeter.ledger.settlement import sweep_expired_reservations


@dataclass
class CycleReport:
    released: int = 0
    invoices_sent: int = 0
    rolled_over: int = 0
    failures: int = 0


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def invoice_step(settings: Settings, log: logging.Logger, *, now: dt.datetime, invoicer=None) -> int:
    sent = retry_pending_invoices(settings, invoicer=invoicer, now=now)
    if sent:
        log.info("Delivered %s pending overage invoice(s)", sent)
    return sent


def rollover_step(
    settings: Settings,
    log: logging.Logger,
    *,
    now: dt.datetime,
    invoicer=None,
    notifier=None,
) -> tuple[int, int]:
    with session_scope(settings) as db:
        due = list_workspaces_due_for_rollover(db, now=now)
    rolled = 0
    failures = 0
    for workspace_id in due:
        try:
            if rollover_period(settings, workspace_id=workspace_id, now=now, invoicer=invoicer, notifier=notifier):
                rolled += 1
        except Exception as e:
            failures += 1
            log.exception("Period rollover failed for workspace %s: %s", workspace_id, e)
    return rolled, failures


def run_worker_cycle(
    settings: Settings,
    *,
    now: dt.datetime | None = None,
    log: logging.Logger | None = None,
    sweep: bool = True,
    invoices: bool = True,
    rollover: bool = True,
    invoicer=None,
    notifier=None,
) -> CycleReport:
    """One pass of background work. Each step fails on its own without stopping the others."""
    now = now or _utcnow()
    log = log or logging.getLogger("creditmeter.worker")
    report = CycleReport()

    if sweep:
        try:
            report.released = sweep_expired_reservations(settings, now=now)
        except Exception as e:
            report.failures += 1
            log.exception("Expiry sweep failed: %s", e)

    if invoices:
        try:
            report.invoices_sent = invoice_step(settings, log, now=now, invoicer=invoicer)
        except Exception as e:
            report.failures += 1
            log.exception("Invoice retry failed: %s", e)

    if rollover:
        try:
            report.rolled_over, failed = rollover_step(
                settings, log, now=now, invoicer=invoicer, notifier=notifier
            )
            report.failures += failed
        except Exception as e:
            report.failures += 1
            log.exception("Period rollover scan failed: %s", e)

    return report


def run_worker_loop(settings: Settings, *, process_index: int = 0, max_cycles: int | None = None) -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    log = logging.getLogger(f"creditmeter.worker.{process_index}")

    init_db(settings)

    next_sweep_at = 0.0
    next_invoice_at = 0.0
    next_rollover_at = 0.0
    cycles = 0

    log.info("Worker started (process_index=%s, db=%s)", process_index, settings.db_url)

    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        now = time.time()
        sweep = now >= next_sweep_at
        invoices = now >= next_invoice_at
        rollover = now >= next_rollover_at

        if sweep or invoices or rollover:
            report = run_worker_cycle(settings, log=log, sweep=sweep, invoices=invoices, rollover=rollover)
            if report.rolled_over:
                log.info("Rolled %s workspace(s) into a new billing period", report.rolled_over)
            if report.failures:
                log.warning("Worker cycle finished with %s failure(s)", report.failures)

        if sweep:
            next_sweep_at = now + float(settings.sweep_interval_seconds)
        if invoices:
            next_invoice_at = now + float(settings.invoice_retry_interval_seconds)
        if rollover:
            next_rollover_at = now + float(settings.rollover_interval_seconds)

        time.sleep(settings.worker_poll_seconds)
