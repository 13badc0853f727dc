"""
Auto-Repayment Scheduler

Collects due installments once a day, charging the borrower's default
payment method through the gateway when one is on file and the wallet
otherwise. Each row is settled in its own unit through the shared
settlement path; one failing row never stops the batch.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import click

from .errors import LendingError
from .logging_config import log_action, setup_logging
from .models import LoanStatus, RepaymentStatus
from .repayments import RepaymentService
from .repositories import LoanRepository, RepaymentRepository


logger = logging.getLogger("peerfund.scheduler")


@dataclass
class BatchResult:
    """Outcome of one scheduler pass"""
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    pending: int = 0  # gateway charges left processing
    errors: Dict[str, str] = field(default_factory=dict)  # repayment id -> error

    @property
    def attempted(self) -> int:
        return self.processed + self.pending + self.failed


class AutoRepaymentScheduler:
    """
    Daily auto-repayment job.

    ``run_once`` can be driven by any external scheduler; ``start`` runs it
    on a daemon thread at ``run_hour_utc`` every day.
    """

    def __init__(
        self,
        repayment_service: RepaymentService,
        repayments: RepaymentRepository,
        loans: LoanRepository,
        run_hour_utc: int = 0
    ):
        self.repayment_service = repayment_service
        self.repayments = repayments
        self.loans = loans
        self.run_hour_utc = run_hour_utc
        self.running = False
        self._wakeup = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[datetime] = None) -> BatchResult:
        """
        Settle every PENDING installment due at or before ``now``.

        Returns:
            BatchResult with per-row failures keyed by repayment id
        """
        now = now or datetime.now(timezone.utc)
        result = BatchResult()
        due = self.repayments.due_pending(now)
        logger.info(f"Auto-repayment run: {len(due)} installments due as of {now.isoformat()}")

        for repayment in due:
            loan = self.loans.get(repayment.loan_id)
            if loan is None or loan.status != LoanStatus.FUNDED:
                result.skipped += 1
                continue
            if repayment.payment_intent_id and not repayment.failure_reason:
                # A gateway charge is in flight; its webhook settles the row
                result.skipped += 1
                continue
            try:
                row = self.repayment_service.collect_autopay(repayment.id, now=now)
                if row.status == RepaymentStatus.PAID:
                    result.processed += 1
                else:
                    result.pending += 1
            except Exception as e:
                result.failed += 1
                result.errors[repayment.id] = str(e)
                log_action(logger, "error", f"Auto-repayment failed for {repayment.id}: {e}",
                           user_id=loan.borrower_id, action="autopay", resource=repayment.id,
                           extra={'loan_id': loan.id, 'error_type': type(e).__name__})
                self._record_failure(repayment.id, str(e))

        logger.info(
            f"Auto-repayment run finished: {result.processed} settled, {result.pending} processing, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    def _record_failure(self, repayment_id: str, reason: str) -> None:
        try:
            self.repayment_service.record_failure(repayment_id, reason, autopay=True)
        except LendingError as e:
            logger.error(f"Could not record autopay failure on {repayment_id}: {e}")

    def seconds_until_next_run(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        next_run = now.replace(hour=self.run_hour_utc, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return (next_run - now).total_seconds()

    def _loop(self) -> None:
        while self.running:
            if self._wakeup.wait(self.seconds_until_next_run()):
                break
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Auto-repayment run crashed: {e}", exc_info=True)

    def start(self) -> None:
        """Start the daily loop on a daemon thread"""
        if self.running:
            return
        self.running = True
        self._wakeup.clear()
        self._thread = threading.Thread(target=self._loop, name="peerfund-autopay", daemon=True)
        self._thread.start()
        logger.info(f"Auto-repayment scheduler started, daily at {self.run_hour_utc:02d}:00 UTC")

    def stop(self) -> None:
        """Stop the loop and wait for the thread to exit"""
        self.running = False
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Auto-repayment scheduler stopped")

    def is_running(self) -> bool:
        return self.running


@click.command()
@click.option('--loop', is_flag=True, help='Keep running and settle due installments daily.')
def main(loop):
    """Settle due installments once (default) or run the daily loop."""
    from .config import get_config
    from .system import LendingSystem

    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)
    system = LendingSystem.from_config(cfg)
    try:
        if not loop:
            result = system.scheduler.run_once()
            click.echo(f"settled={result.processed} pending={result.pending} "
                       f"failed={result.failed} skipped={result.skipped}")
            for repayment_id, error in result.errors.items():
                click.echo(f"  {repayment_id}: {error}")
            return
        if not cfg.autopay_enabled:
            raise click.ClickException("Auto-repayment is disabled (PEERFUND_AUTOPAY_ENABLED=false)")
        system.scheduler.start()
        try:
            while system.scheduler.is_running():
                threading.Event().wait(60)
        except KeyboardInterrupt:
            system.scheduler.stop()
    finally:
        system.close()


if __name__ == '__main__':
    main()
