"""Periodic cleanup of charges that never converged.

A PENDING row older than ``STALE_AFTER_MINUTES`` is marked FAILED. When
``GATEWAY_STATUS_CHECK`` is on, up to ``STATUS_CHECK_LIMIT`` rows per sweep are
first asked about at the gateway (short timeout each); a COMPLETED answer wins,
anything else (including gateway errors) still fails the row.

``run_once`` skips when a sweep is already running in the same process only.
Separate processes (a cron ``reconcile_payments`` next to a ``--loop`` worker)
may overlap; every write is a conditional ``UPDATE ... WHERE status='PENDING'``,
so the loser of such an overlap lands in ``SweepReport.raced``.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from . import notifications
from .exceptions import GatewayError, InvalidStateError, PaymentError, PaymentNotFound
from .integrations import client_for_method
from .models import Payment
from .services import PaymentStateMachine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    cutoff: Optional[object] = None
    examined: int = 0
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    # rows another writer resolved between our read and our update
    raced: List[int] = field(default_factory=list)
    # rows whose resolution raised; retried on the next sweep
    errored: List[int] = field(default_factory=list)
    gateway_checks: int = 0
    skipped: bool = False


class ReconciliationScheduler:
    def __init__(self, state_machine: Optional[PaymentStateMachine] = None, clock=timezone.now,
                 stale_after_minutes: Optional[int] = None, interval_minutes: Optional[int] = None,
                 gateway_check: Optional[bool] = None, check_limit: Optional[int] = None,
                 check_timeout: Optional[float] = None, client_factory=client_for_method):
        conf = settings.PAYMENTS
        self.clock = clock
        self.state_machine = state_machine or PaymentStateMachine(clock=clock)
        if stale_after_minutes is None:
            stale_after_minutes = conf.get("STALE_AFTER_MINUTES", 30)
        if interval_minutes is None:
            interval_minutes = conf.get("SWEEP_INTERVAL_MINUTES", 30)
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.interval = timedelta(minutes=interval_minutes)
        self.gateway_check = conf.get("GATEWAY_STATUS_CHECK", False) if gateway_check is None else gateway_check
        self.check_limit = conf.get("STATUS_CHECK_LIMIT", 20) if check_limit is None else check_limit
        self.check_timeout = conf.get("STATUS_CHECK_TIMEOUT", 5) if check_timeout is None else check_timeout
        self.client_factory = client_factory

        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- one sweep ----------
    def run_once(self) -> SweepReport:
        if not self._running.acquire(blocking=False):
            logger.info("Reconciliation sweep already in progress; skipping")
            return SweepReport(skipped=True)
        try:
            return self._sweep()
        finally:
            self._running.release()

    def _sweep(self) -> SweepReport:
        report = SweepReport(cutoff=self.clock() - self.stale_after)
        stale = list(Payment.objects.stale_pending(report.cutoff))
        report.examined = len(stale)
        minutes = int(self.stale_after.total_seconds() // 60)

        for payment in stale:
            try:
                self._resolve(payment, minutes, report)
            except Exception:
                # one bad row must not keep the rest of the backlog PENDING
                logger.exception("Reconciliation of payment=%s crashed; continuing", payment.pk)
                report.errored.append(payment.pk)

        logger.info(
            "Reconciliation sweep: examined=%s failed=%s completed=%s raced=%s errored=%s gateway_checks=%s",
            report.examined, len(report.failed), len(report.completed), len(report.raced),
            len(report.errored), report.gateway_checks,
        )
        return report

    def _resolve(self, payment, minutes, report):
        reason = f"Payment timed out after {minutes} minutes"
        if self.gateway_check and report.gateway_checks < self.check_limit:
            client = self.client_factory(payment.method)
            if client is not None:
                report.gateway_checks += 1
                try:
                    status = client.query_status(payment, timeout=self.check_timeout)
                except GatewayError as e:
                    logger.warning("Status check for payment=%s failed: %s", payment.pk, e)
                    reason = f"Payment timed out after {minutes} minutes (gateway status unavailable)"
                else:
                    if status.outcome == Payment.Status.COMPLETED:
                        if self._complete(payment, status, report):
                            return
                        reason = f"Payment timed out after {minutes} minutes (unusable gateway status)"
                    elif status.outcome == Payment.Status.FAILED:
                        reason = f"Gateway reported failure: {status.message}"[:255]
        self._fail(payment, reason, report)

    def _complete(self, payment, status, report) -> bool:
        """Apply a gateway COMPLETED answer; False when the row should be failed instead."""
        try:
            transition = self.state_machine.mark_completed(payment.pk, status.transaction_id, status.raw)
        except InvalidStateError as e:
            notifications.report_anomaly(payment.pk, e, "reconciliation")
            return True
        except PaymentNotFound:
            return True
        except PaymentError as e:
            logger.warning("Gateway status for payment=%s cannot be applied: %s", payment.pk, e)
            return False
        (report.completed if transition.changed else report.raced).append(payment.pk)
        return True

    def _fail(self, payment, reason, report):
        try:
            transition = self.state_machine.mark_failed(payment.pk, reason)
        except InvalidStateError:
            # a notification completed it first; that outcome stands
            logger.info("Payment %s resolved concurrently; sweep skipped it", payment.pk)
            report.raced.append(payment.pk)
            return
        except PaymentNotFound:
            return
        (report.failed if transition.changed else report.raced).append(payment.pk)

    # ---------- background loop ----------
    def run_forever(self):
        while not self._stop.is_set():
            close_old_connections()
            try:
                self.run_once()
            except Exception:
                logger.exception("Reconciliation sweep crashed")
            finally:
                close_old_connections()
            self._stop.wait(self.interval.total_seconds())

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="payments-reconciliation", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
