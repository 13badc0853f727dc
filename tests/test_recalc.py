"""
Test suite for the schedule recalculation tool
"""

from decimal import Decimal

from click.testing import CliRunner

from peerfund.amortization import InterestModel, annuity_payment
from peerfund.recalc import ScheduleRecalculator, main
from peerfund.models import RepaymentStatus


class TestScheduleRecalculator:
    """Test recomputation of stored rows"""

    def test_term_bump_rewrites_pending_rows(self, system, accepted_loan):
        recalculator = ScheduleRecalculator(system, mode=InterestModel.TERM_ADD, bump_pct=Decimal('4'))
        report = recalculator.recalculate(accepted_loan, commit=True)

        # 500 x 1.12 / 6
        assert report.base_payment == Decimal('93.33')
        assert report.rate_pct == Decimal('12')
        assert len(report.changes) == 6
        for row in system.repayments.for_loan(accepted_loan.id):
            assert row.base_payment == Decimal('93.33')
            assert row.peerfund_fee == Decimal('1.87')
            assert row.banking_fee == Decimal('4.67')
            assert row.total_charged == Decimal('99.87')
            assert row.amount_due == Decimal('99.87')

    def test_dry_run_writes_nothing(self, system, accepted_loan):
        recalculator = ScheduleRecalculator(system, bump_pct=Decimal('4'))
        report = recalculator.recalculate(accepted_loan, commit=False)
        assert report.changes[0].before['total_charged'] == "98.08"
        assert report.changes[0].after['total_charged'] == "99.87"
        assert all(r.total_charged == Decimal('98.08') for r in system.repayments.for_loan(accepted_loan.id))

    def test_apr_mode_uses_annuity(self, system, accepted_loan):
        recalculator = ScheduleRecalculator(system, mode=InterestModel.ANNUITY, bump_pct=Decimal('2'))
        report = recalculator.recalculate(accepted_loan, commit=True)
        assert report.base_payment == annuity_payment(Decimal('500'), Decimal('10'), 6)

    def test_paid_rows_kept_unless_touched(self, system, borrower, funded_loan):
        system.repayment_service.pay_next(funded_loan.id, borrower.id)
        recalculator = ScheduleRecalculator(system, bump_pct=Decimal('4'))
        report = recalculator.recalculate(funded_loan, commit=True)

        assert len(report.changes) == 5
        paid = [r for r in system.repayments.for_loan(funded_loan.id) if r.status == RepaymentStatus.PAID]
        assert paid[0].total_charged == Decimal('98.08')

        touching = ScheduleRecalculator(system, bump_pct=Decimal('4'), touch_paid=True)
        assert len(touching.recalculate(funded_loan, commit=False).changes) == 6

    def test_super_user_borrower_waiver(self, system, borrower, accepted_loan):
        system.users.mark_super_user(borrower.id)
        recalculator = ScheduleRecalculator(system, bump_pct=Decimal('2'))
        recalculator.recalculate(accepted_loan, commit=True)
        row = system.repayments.for_loan(accepted_loan.id)[0]
        assert row.peerfund_fee == Decimal('0')
        assert row.total_charged == Decimal('96.25')


class TestRecalcCommand:
    """Test the command line entry point"""

    def setup_method(self):
        self.runner = CliRunner()

    def test_dry_run_by_default(self, system, accepted_loan):
        result = self.runner.invoke(main, ['--ids', accepted_loan.id, '--bump', '4'], obj=system)
        assert result.exit_code == 0, result.output
        assert "[recalc] DRY RUN (no writes)" in result.output
        assert "98.08 => 99.87" in result.output
        assert "[recalc] Done." in result.output
        assert system.repayments.for_loan(accepted_loan.id)[0].total_charged == Decimal('98.08')

    def test_commit(self, system, accepted_loan):
        result = self.runner.invoke(
            main, ['--ids', accepted_loan.id, '--mode', 'term', '--bump', '4', '--commit'], obj=system
        )
        assert result.exit_code == 0, result.output
        assert "DRY RUN" not in result.output
        assert system.repayments.for_loan(accepted_loan.id)[0].total_charged == Decimal('99.87')

    def test_funded_since(self, system, funded_loan):
        result = self.runner.invoke(main, ['--fundedSince', '2020-01-01'], obj=system)
        assert result.exit_code == 0, result.output
        assert f"Loan {funded_loan.id}" in result.output

    def test_no_match(self, system):
        result = self.runner.invoke(main, ['--ids', 'missing-loan'], obj=system)
        assert result.exit_code == 0
        assert "[recalc] No loans matched." in result.output

    def test_requires_selection(self, system):
        result = self.runner.invoke(main, [], obj=system)
        assert result.exit_code == 2
        assert "--fundedSince" in result.output

    def test_rejects_bad_bump(self, system, accepted_loan):
        result = self.runner.invoke(main, ['--ids', accepted_loan.id, '--bump', 'abc'], obj=system)
        assert result.exit_code == 2
