"""
Repayment schedule recalculation tool

Rewrites the base payment and fee breakdown of existing repayment rows for
selected loans. Dry-run by default.

Examples:

    peerfund-recalc --ids=abc,def --mode=term --commit
    peerfund-recalc --fundedSince=2025-01-01 --mode=term --dry
    peerfund-recalc --ids=abc --mode=apr --bump=2
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import click

from .amortization import InterestModel, base_monthly_payment
from .errors import ValidationError
from .fees import compute_installment_fees
from .logging_config import setup_logging
from .models import Loan, RepaymentStatus
from .money import to_decimal


logger = logging.getLogger("peerfund.recalc")


@dataclass
class RowChange:
    repayment_id: str
    before: Dict[str, str]
    after: Dict[str, str]


@dataclass
class LoanRecalc:
    loan_id: str
    rate_pct: Decimal
    base_payment: Decimal
    rows_total: int
    changes: List[RowChange] = field(default_factory=list)


def _snapshot(base, banking_fee, peerfund_fee, total) -> Dict[str, str]:
    return {
        'base_payment': str(base),
        'banking_fee': str(banking_fee),
        'peerfund_fee': str(peerfund_fee),
        'total_charged': str(total),
    }


class ScheduleRecalculator:
    """Recomputes repayment rows with the amortization and fee engines"""

    def __init__(self, system, mode: InterestModel = InterestModel.TERM_ADD,
                 bump_pct: Decimal = Decimal('2'), platform_rate: Optional[Decimal] = None,
                 banking_rate: Optional[Decimal] = None, touch_paid: bool = False):
        self.system = system
        self.mode = mode
        self.bump_pct = bump_pct
        self.platform_rate = platform_rate if platform_rate is not None else system.policy.platform_fee_rate
        self.banking_rate = banking_rate if banking_rate is not None else system.policy.banking_fee_rate
        self.touch_paid = touch_paid

    def select_loans(self, ids: Optional[List[str]] = None,
                     funded_since: Optional[datetime] = None) -> List[Loan]:
        if ids:
            return [loan for loan in (self.system.loans.get(i) for i in ids) if loan is not None]
        if funded_since is not None:
            return self.system.loans.funded_since(funded_since)
        raise ValidationError("Provide --ids=<...> or --fundedSince=YYYY-MM-DD")

    def recalculate(self, loan: Loan, commit: bool = False) -> LoanRecalc:
        """
        Recompute one loan's rows.

        The rate used is the loan's base rate plus the bump. PENDING rows are
        rewritten; PAID rows only when ``touch_paid`` is set.
        """
        rate = loan.interest_rate + self.bump_pct
        term = loan.term_months or 1
        if self.mode == InterestModel.TERM_ADD:
            base = base_monthly_payment(loan.amount, loan.interest_rate, term,
                                        InterestModel.TERM_ADD, spread_pct=self.bump_pct)
        else:
            base = base_monthly_payment(loan.amount, rate, term, InterestModel.ANNUITY)

        borrower = self.system.users.require(loan.borrower_id)
        fees = compute_installment_fees(base, borrower.is_super_user,
                                        self.platform_rate, self.banking_rate)

        rows = self.system.repayments.for_loan(loan.id)
        report = LoanRecalc(loan_id=loan.id, rate_pct=rate, base_payment=base, rows_total=len(rows))
        targets = [r for r in rows if self.touch_paid or r.status != RepaymentStatus.PAID]

        with self.system.storage.atomic():
            for row in targets:
                change = RowChange(
                    repayment_id=row.id,
                    before=_snapshot(row.base_payment, row.banking_fee, row.peerfund_fee, row.total_charged),
                    after=_snapshot(fees.base, fees.banking_fee, fees.platform_fee, fees.total_charge),
                )
                report.changes.append(change)
                if not commit:
                    logger.info(f"[dry] {row.id}: {change.before} => {change.after}")
                    continue
                row.base_payment = fees.base
                row.banking_fee = fees.banking_fee
                row.peerfund_fee = fees.platform_fee
                row.total_charged = fees.total_charge
                row.amount_due = fees.total_charge
                self.system.repayments.save(row)
                logger.info(f"saved {row.id}")
        return report


def _parse_rate(value: Any, flag: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        rate = to_decimal(value)
    except ArithmeticError:
        raise click.BadParameter(f"Invalid {flag}")
    if not rate.is_finite() or rate < 0:
        raise click.BadParameter(f"Invalid {flag}")
    return rate


@click.command()
@click.option('--ids', default=None, help='Comma separated loan ids to recalculate.')
@click.option('--fundedSince', 'funded_since', type=click.DateTime(formats=['%Y-%m-%d']),
              default=None, help='Recalculate loans funded on/after this date (when --ids is not given).')
@click.option('--mode', type=click.Choice(['term', 'apr'], case_sensitive=False), default='term',
              show_default=True, help='Interest model.')
@click.option('--bump', default='2', show_default=True, help='Percentage points added to the loan rate.')
@click.option('--peerfund', default=None, help='Override the platform fee rate.')
@click.option('--bank', default=None, help='Override the banking fee rate.')
@click.option('--touchPaid', 'touch_paid', is_flag=True, help='Also rewrite PAID rows.')
@click.option('--commit/--dry', default=False, help='Write changes (default is a dry run).')
@click.pass_context
def main(ctx, ids, funded_since, mode, bump, peerfund, bank, touch_paid, commit):
    """Recalculate repayment schedules for selected loans."""
    system = ctx.obj
    owns_system = system is None
    if owns_system:
        from .config import get_config
        from .system import LendingSystem

        cfg = get_config()
        setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)
        system = LendingSystem.from_config(cfg)

    try:
        bump_pct = _parse_rate(bump, '--bump')
        recalculator = ScheduleRecalculator(
            system,
            mode=InterestModel(mode.lower()),
            bump_pct=bump_pct,
            platform_rate=_parse_rate(peerfund, '--peerfund'),
            banking_rate=_parse_rate(bank, '--bank'),
            touch_paid=touch_paid,
        )

        id_list = [i.strip() for i in ids.split(',') if i.strip()] if ids else None
        if ids is not None and not id_list:
            raise click.UsageError("No valid ids in --ids")
        since = funded_since.replace(tzinfo=timezone.utc) if funded_since else None
        try:
            loans = recalculator.select_loans(id_list, since)
        except ValidationError as e:
            raise click.UsageError(str(e))

        if not loans:
            click.echo("[recalc] No loans matched.")
            return

        click.echo(f"[recalc] Mode = {mode.upper()}, bump = +{bump_pct}% | fees: "
                   f"PF={recalculator.platform_rate}, BANK={recalculator.banking_rate}")
        if not commit:
            click.echo("[recalc] DRY RUN (no writes). Use --commit to save changes.")
        if touch_paid:
            click.echo("[recalc] Will update PAID rows as well (history change).")

        for loan in loans:
            report = recalculator.recalculate(loan, commit=commit)
            click.echo(f"[recalc] Loan {loan.id} amount=${loan.amount} rate={report.rate_pct}% "
                       f"duration={loan.term_months} -> baseMonthly=${report.base_payment}")
            click.echo(f"[recalc]   Updating {len(report.changes)}/{report.rows_total} repayment row(s)")
            for change in report.changes:
                prefix = "saved" if commit else "[dry]"
                click.echo(f"[recalc]     {prefix} {change.repayment_id}: "
                           f"{change.before['total_charged']} => {change.after['total_charged']}")
        click.echo("[recalc] Done.")
    finally:
        if owns_system:
            system.close()


if __name__ == '__main__':
    main()
