"""
Test suite for the loan lifecycle

Tests origination rules, the loan state machine, collections with fines,
closing, write-off, overdue marking and atomicity of each operation.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date

from microcredit.amortization import InterestMethod
from microcredit.audit import AuditEventType
from microcredit.config import MicrocreditConfig
from microcredit.engine import MicrocreditSystem
from microcredit.errors import ConcurrencyConflict, ErrorKind
from microcredit.ledger import (
    CASH, FINE_INCOME, INTEREST_INCOME, LOAN_LOSS_EXPENSE, LOAN_RECEIVABLE, SAVINGS_LIABILITY,
    TransactionType
)
from microcredit.loans import InstallmentStatus, LoanStatus, LoanType
from microcredit.members import MemberStatus
from microcredit.payments import PaymentMethod
from microcredit.storage import InMemoryStorage


class Clock:
    """Settable clock"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, day: int, month: int = 1) -> None:
        self.now = datetime(2025, month, day, 10, 0, tzinfo=timezone.utc)


class LifecycleTestCase:
    """Branch DHK with a well rated group and one member holding 500 in savings"""

    def setup_method(self):
        self.clock = Clock(datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc))
        self.system = MicrocreditSystem(storage=InMemoryStorage(), config=MicrocreditConfig(), clock=self.clock)
        self.loans = self.system.loans

        members = self.system.members
        self.branch = members.create_branch("DHK", "Dhaka Central").unwrap()
        self.group = members.create_group(self.branch.id, "Shapla Samity").unwrap()
        members.set_group_rating(self.group.id, Decimal('0.8')).unwrap()
        self.member = members.enroll_member(self.branch.id, "Rahima Begum", "01711000000",
                                            group_id=self.group.id).unwrap()

        self.savings = self.system.savings.open_account(self.member.id).unwrap()
        self.system.savings.deposit(self.savings.id, '500').unwrap()

    def disbursed_loan(self, principal='1000', rate='10', weeks=4, method=InterestMethod.FLAT):
        loan = self.loans.apply(self.member.id, principal, rate, method, weeks).unwrap()
        self.loans.approve(loan.id, "manager1").unwrap()
        return self.loans.disburse(loan.id, "officer1").unwrap()

    def balances(self):
        return self.system.trial_balance().balances


class TestApplication(LifecycleTestCase):
    """Test loan origination rules"""

    def test_apply_creates_pending_loan(self):
        loan = self.loans.apply(
            self.member.id, Decimal('10000'), Decimal('15'), InterestMethod.FLAT, 50,
            loan_type=LoanType.BUSINESS, purpose="Grocery stock", applied_by="officer1"
        ).unwrap()

        assert loan.loan_code == "LN-DHK-25-00001"
        assert loan.status == LoanStatus.PENDING
        assert loan.group_id == self.group.id
        assert loan.branch_id == self.branch.id
        assert loan.total_interest == Decimal('1500.00')
        assert loan.total_payable == Decimal('11500.00')
        assert loan.periodic_installment == Decimal('230.00')
        assert loan.remaining_balance == Decimal('11500.00')
        assert self.loans.get_loan(loan.id) == loan

    def test_invalid_terms(self):
        result = self.loans.apply(self.member.id, '0', '15', InterestMethod.FLAT, 50)

        assert result.error.kind == ErrorKind.VALIDATION
        assert self.loans.get_member_loans(self.member.id) == []

    @pytest.mark.parametrize("principal", ['abc', 'NaN', 'Infinity', '1E+40'])
    def test_malformed_principal(self, principal):
        result = self.loans.apply(self.member.id, principal, '15', InterestMethod.FLAT, 50)

        assert result.error.kind == ErrorKind.VALIDATION
        assert self.loans.get_member_loans(self.member.id) == []

    def test_malformed_rate(self):
        result = self.loans.apply(self.member.id, '1000', 'NaN', InterestMethod.FLAT, 4)

        assert result.error.kind == ErrorKind.VALIDATION

    def test_unknown_member(self):
        result = self.loans.apply("missing", '1000', '10', InterestMethod.FLAT, 4)

        assert result.error.kind == ErrorKind.NOT_FOUND

    def test_inactive_member(self):
        self.system.members.set_member_status(self.member.id, MemberStatus.BLACKLISTED).unwrap()

        result = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4)

        assert result.error.kind == ErrorKind.BUSINESS_RULE
        assert result.error.message == "Member is not active"

    def test_insufficient_savings(self):
        self.system.savings.withdraw(self.savings.id, '450').unwrap()

        result = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4)

        assert result.error.kind == ErrorKind.BUSINESS_RULE
        assert result.error.message == "Insufficient savings balance. Minimum 100.00 required."

    def test_savings_at_minimum_is_enough(self):
        self.system.savings.withdraw(self.savings.id, '400').unwrap()

        assert self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).is_ok

    def test_no_savings_account(self):
        member = self.system.members.enroll_member(self.branch.id, "Karim Mia", "01811000000").unwrap()

        result = self.loans.apply(member.id, '1000', '10', InterestMethod.FLAT, 4)

        assert "Insufficient savings balance" in result.error.message

    def test_group_below_threshold(self):
        self.system.members.set_group_rating(self.group.id, '0.49').unwrap()

        result = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4)

        assert result.error.kind == ErrorKind.BUSINESS_RULE
        assert result.error.message == "Group performance is below threshold"

    def test_member_without_group(self):
        member = self.system.members.enroll_member(self.branch.id, "Karim Mia", "01811000000").unwrap()
        account = self.system.savings.open_account(member.id).unwrap()
        self.system.savings.deposit(account.id, '100').unwrap()

        loan = self.loans.apply(member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

        assert loan.group_id is None

    def test_one_open_loan_per_member(self):
        first = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

        # A pending application does not block another one
        assert self.loans.apply(self.member.id, '2000', '10', InterestMethod.FLAT, 4).is_ok

        self.loans.approve(first.id, "manager1").unwrap()
        result = self.loans.apply(self.member.id, '3000', '10', InterestMethod.FLAT, 4)

        assert result.error.message == "Member already has an active loan"
        assert self.loans.has_active_loan(self.member.id)

    def test_failed_application_allocates_no_code(self):
        self.system.members.set_group_rating(self.group.id, '0.1').unwrap()
        self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4)
        self.system.members.set_group_rating(self.group.id, '0.9').unwrap()

        loan = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

        assert loan.loan_code == "LN-DHK-25-00001"


class TestStateMachine(LifecycleTestCase):
    """Test the allowed and rejected transitions"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

    def test_approve(self):
        loan = self.loans.approve(self.loan.id, "manager1").unwrap()

        assert loan.status == LoanStatus.APPROVED
        assert loan.approved_by == "manager1"
        assert loan.approval_date == self.clock.now

    def test_approve_twice(self):
        self.loans.approve(self.loan.id, "manager1").unwrap()

        result = self.loans.approve(self.loan.id, "manager1")

        assert result.error.kind == ErrorKind.BUSINESS_RULE
        assert result.error.message == "Loan is not in pending status"

    def test_reject(self):
        loan = self.loans.reject(self.loan.id, "  Insufficient business plan ", "manager1").unwrap()

        assert loan.status == LoanStatus.REJECTED
        assert loan.rejection_reason == "Insufficient business plan"
        assert self.loans.approve(self.loan.id, "manager1").is_error

    def test_reject_requires_reason(self):
        assert self.loans.reject(self.loan.id, " ").error.kind == ErrorKind.VALIDATION
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.PENDING

    def test_disburse_requires_approval(self):
        result = self.loans.disburse(self.loan.id)

        assert result.error.message == "Loan must be approved before disbursement"
        assert self.loans.get_schedule(self.loan.id) == []
        assert self.system.repository.list_transactions(self.loan.id) == []

    def test_disburse(self):
        self.loans.approve(self.loan.id, "manager1").unwrap()
        loan = self.loans.disburse(self.loan.id, "officer1").unwrap()

        assert loan.status == LoanStatus.DISBURSED
        assert loan.disbursement_date == self.clock.now
        assert loan.disbursed_by == "officer1"

        schedule = self.loans.get_schedule(loan.id)
        assert [i.due_date for i in schedule] == [
            date(2025, 1, 8), date(2025, 1, 15), date(2025, 1, 22), date(2025, 1, 29)
        ]
        assert sum(i.total_amount for i in schedule) == loan.total_payable

        assert self.system.members.get_member(self.member.id).loan_cycle == 1

        postings = self.system.repository.list_transactions(loan.id)
        assert len(postings) == 1
        assert postings[0].transaction_type == TransactionType.LOAN_DISBURSEMENT
        assert (postings[0].debit_account, postings[0].credit_account) == (LOAN_RECEIVABLE, CASH)
        assert postings[0].amount == Decimal('1000.00')
        assert self.balances()[LOAN_RECEIVABLE] == Decimal('1000.00')
        assert self.system.trial_balance().is_balanced

    def test_disburse_twice(self):
        self.loans.approve(self.loan.id, "manager1").unwrap()
        self.loans.disburse(self.loan.id).unwrap()

        assert self.loans.disburse(self.loan.id).is_error
        assert len(self.loans.get_schedule(self.loan.id)) == 4

    def test_payment_on_pending_loan(self):
        result = self.loans.collect_payment(self.loan.id, '100')

        assert result.error.kind == ErrorKind.BUSINESS_RULE

    def test_unknown_loan(self):
        assert self.loans.approve("missing", "manager1").error.kind == ErrorKind.NOT_FOUND
        assert self.loans.collect_payment("missing", '10').error.kind == ErrorKind.NOT_FOUND

    def test_audit_trail_of_a_loan(self):
        self.loans.approve(self.loan.id, "manager1").unwrap()
        self.loans.disburse(self.loan.id, "officer1").unwrap()

        events = self.system.audit_trail.get_events_for_entity("loan", self.loan.id)

        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED, AuditEventType.LOAN_DISBURSED
        ]
        assert self.system.audit_trail.verify_integrity()['valid']


class TestCollections(LifecycleTestCase):
    """Test payments against a disbursed loan"""

    def test_late_payment_with_fine(self):
        """10,000 at 15% flat over 50 weeks, first installment paid ten days late"""
        loan = self.disbursed_loan('10000', '15', 50)
        self.clock.set(18)

        payment = self.loans.collect_payment(loan.id, '280', collected_by="officer1").unwrap()

        assert payment.payment_code == "PAY-25-000001"
        assert payment.fine_paid == Decimal('50.00')
        assert payment.interest_paid == Decimal('30.00')
        assert payment.principal_paid == Decimal('200.00')
        assert payment.total_amount == Decimal('280.00')
        assert payment.unapplied_amount == Decimal('0.00')

        first = self.loans.get_schedule(loan.id)[0]
        assert first.status == InstallmentStatus.PAID
        assert first.late_days == 10
        assert first.fine_amount == Decimal('50.00')

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.paid_amount == Decimal('230.00')
        assert loan.fine_paid == Decimal('50.00')
        assert loan.remaining_balance == Decimal('11270.00')

        balances = self.balances()
        assert balances[CASH] == Decimal('-9220.00')
        assert balances[LOAN_RECEIVABLE] == Decimal('9800.00')
        assert balances[SAVINGS_LIABILITY] == Decimal('500.00')
        assert balances[INTEREST_INCOME] == Decimal('30.00')
        assert balances[FINE_INCOME] == Decimal('50.00')
        assert self.system.trial_balance().debit_total == Decimal('580.00')
        assert self.system.trial_balance().is_balanced

    def test_one_posting_per_component(self):
        loan = self.disbursed_loan('10000', '15', 50)
        self.clock.set(18)

        payment = self.loans.collect_payment(loan.id, '280').unwrap()

        postings = [t for t in self.system.repository.list_transactions(loan.id) if t.payment_id == payment.id]
        assert {t.transaction_type: t.amount for t in postings} == {
            TransactionType.LOAN_REPAYMENT: Decimal('200.00'),
            TransactionType.INTEREST_INCOME: Decimal('30.00'),
            TransactionType.FINE_COLLECTION: Decimal('50.00'),
        }
        assert all(t.debit_account == CASH and t.reference == payment.payment_code for t in postings)

    def test_on_time_repayment_closes_loan(self):
        loan = self.disbursed_loan()

        for day in (8, 15, 22, 29):
            self.clock.set(day)
            self.loans.collect_payment(loan.id, '275', method=PaymentMethod.MOBILE_BANKING).unwrap()

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.closed_date == self.clock.now
        assert loan.paid_installments == 4
        assert loan.remaining_balance == Decimal('0.00')
        assert loan.fine_paid == Decimal('0.00')
        assert not self.loans.has_active_loan(self.member.id)

        assert len(self.loans.get_payments(loan.id)) == 4
        assert self.balances()[LOAN_RECEIVABLE] == Decimal('0.00')
        assert self.balances()[INTEREST_INCOME] == Decimal('100.00')

        events = self.system.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_CLOSED

        result = self.loans.collect_payment(loan.id, '10')
        assert result.error.kind == ErrorKind.BUSINESS_RULE

    def test_overpayment_is_unapplied(self):
        loan = self.disbursed_loan()
        self.clock.set(8)

        payment = self.loans.collect_payment(loan.id, '300').unwrap()

        assert payment.tendered_amount == Decimal('300.00')
        assert payment.total_amount == Decimal('275.00')
        assert payment.unapplied_amount == Decimal('25.00')
        assert self.loans.get_schedule(loan.id)[1].paid_amount == Decimal('0.00')
        assert self.balances()[CASH] == Decimal('500.00') - Decimal('1000.00') + Decimal('275.00')

    def test_partial_payments(self):
        loan = self.disbursed_loan()
        self.clock.set(8)

        self.loans.collect_payment(loan.id, '100').unwrap()
        self.loans.collect_payment(loan.id, '100').unwrap()

        first = self.loans.get_schedule(loan.id)[0]
        assert first.status == InstallmentStatus.PARTIAL
        assert first.paid_amount == Decimal('200.00')
        assert first.interest_paid == Decimal('25.00')

    def test_explicit_installment(self):
        loan = self.disbursed_loan()
        third = self.loans.get_schedule(loan.id)[2]
        self.clock.set(8)

        payment = self.loans.collect_payment(loan.id, '275', installment_id=third.id).unwrap()

        assert payment.installment_id == third.id
        schedule = self.loans.get_schedule(loan.id)
        assert schedule[2].status == InstallmentStatus.PAID
        assert schedule[0].status == InstallmentStatus.PENDING

    def test_unknown_installment(self):
        loan = self.disbursed_loan()

        result = self.loans.collect_payment(loan.id, '275', installment_id="missing")

        assert result.error.kind == ErrorKind.NOT_FOUND

    def test_invalid_amount(self):
        loan = self.disbursed_loan()

        assert self.loans.collect_payment(loan.id, '0').error.kind == ErrorKind.VALIDATION
        assert self.loans.collect_payment(loan.id, '-1').error.kind == ErrorKind.VALIDATION

    @pytest.mark.parametrize("amount", ['abc', 'NaN', '-Infinity', 'Infinity'])
    def test_malformed_amount(self, amount):
        loan = self.disbursed_loan()

        result = self.loans.collect_payment(loan.id, amount)

        assert result.error.kind == ErrorKind.VALIDATION
        assert self.loans.get_payments(loan.id) == []
        assert self.loans.get_loan(loan.id).remaining_balance == Decimal('1100.00')

    def test_tiny_loan_closes_once_owed_weeks_are_paid(self):
        """0.05 over 9 weeks: five weeks of 0.01, the rest owe nothing"""
        loan = self.disbursed_loan('0.05', '0', 9)
        schedule = self.loans.get_schedule(loan.id)

        assert [i.total_amount for i in schedule] == [Decimal('0.01')] * 5 + [Decimal('0.00')] * 4
        assert all(i.remaining_amount >= 0 for i in schedule)

        for installment in schedule[:5]:
            self.clock.now = datetime.combine(installment.due_date, datetime.min.time(), tzinfo=timezone.utc)
            self.loans.collect_payment(loan.id, '0.01').unwrap()

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.remaining_balance == Decimal('0.00')
        assert self.balances()[LOAN_RECEIVABLE] == Decimal('0.00')

    def test_emi_loan_repays_exactly(self):
        loan = self.disbursed_loan('5000', '24', 10, InterestMethod.DECLINING_BALANCE_EMI)

        for installment in self.loans.get_schedule(loan.id):
            self.clock.now = datetime.combine(installment.due_date, datetime.min.time(), tzinfo=timezone.utc)
            self.loans.collect_payment(loan.id, installment.total_amount).unwrap()

        loan = self.loans.get_loan(loan.id)
        assert loan.status == LoanStatus.CLOSED
        assert loan.principal_paid == Decimal('5000.00')
        assert loan.interest_paid == loan.total_interest
        assert self.balances()[LOAN_RECEIVABLE] == Decimal('0.00')
        assert self.system.trial_balance().is_balanced

    def test_failed_collection_rolls_back(self, monkeypatch):
        loan = self.disbursed_loan()
        self.clock.set(8)
        events_before = len(self.system.audit_trail.get_all_events())
        transactions_before = len(self.system.repository.list_transactions())

        def broken_post_repayment(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(self.system.ledger, "post_repayment", broken_post_repayment)

        with pytest.raises(RuntimeError):
            self.loans.collect_payment(loan.id, '275')

        assert self.loans.get_loan(loan.id) == loan
        assert self.loans.get_schedule(loan.id)[0].paid_amount == Decimal('0.00')
        assert self.loans.get_payments(loan.id) == []
        assert len(self.system.repository.list_transactions()) == transactions_before
        assert len(self.system.audit_trail.get_all_events()) == events_before
        assert self.system.codes.allocator.current_value("PAY:25") == 0

    def test_concurrent_collections(self):
        loan = self.disbursed_loan()
        self.clock.set(8)
        results = []

        def collect():
            results.append(self.loans.collect_payment(loan.id, '275'))

        threads = [threading.Thread(target=collect) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(r.is_ok for r in results)
        assert {r.value.payment_code for r in results} == {"PAY-25-000001", "PAY-25-000002"}
        loan = self.loans.get_loan(loan.id)
        assert loan.paid_amount == Decimal('550.00')
        assert loan.paid_installments == 2
        assert self.system.trial_balance().is_balanced

    def test_stale_write_is_rejected(self):
        loan = self.disbursed_loan()
        stale = self.loans.get_loan(loan.id)
        self.clock.set(8)
        self.loans.collect_payment(loan.id, '275').unwrap()

        with pytest.raises(ConcurrencyConflict):
            with self.system.repository.unit_of_work() as uow:
                stale.purpose = "Overwritten"
                uow.register(stale)

        current = self.loans.get_loan(loan.id)
        assert current.paid_amount == Decimal('275.00')
        assert current.purpose == ""


class TestWriteOffAndOverdue(LifecycleTestCase):
    """Test write-off postings and overdue marking"""

    def test_write_off_outstanding_principal(self):
        loan = self.disbursed_loan()
        self.clock.set(8)
        self.loans.collect_payment(loan.id, '275').unwrap()

        loan = self.loans.write_off(loan.id, "Member relocated", "manager1").unwrap()

        assert loan.status == LoanStatus.WRITTEN_OFF
        assert loan.write_off_reason == "Member relocated"
        assert loan.closed_date == self.clock.now

        postings = [t for t in self.system.repository.list_transactions(loan.id)
                    if t.transaction_type == TransactionType.LOAN_WRITE_OFF]
        assert len(postings) == 1
        assert postings[0].amount == Decimal('750.00')
        assert self.balances()[LOAN_LOSS_EXPENSE] == Decimal('750.00')
        assert self.balances()[LOAN_RECEIVABLE] == Decimal('0.00')
        assert self.system.trial_balance().is_balanced
        assert not self.loans.has_active_loan(self.member.id)

    def test_write_off_rules(self):
        loan = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

        assert self.loans.write_off(loan.id, "Bad debt").error.kind == ErrorKind.BUSINESS_RULE
        assert self.loans.write_off(loan.id, "").error.kind == ErrorKind.VALIDATION

    def test_mark_overdue(self):
        loan = self.disbursed_loan()
        self.clock.set(21)

        overdue = self.loans.mark_overdue(loan.id).unwrap()

        assert [i.installment_number for i in overdue] == [1, 2]
        assert [i.late_days for i in overdue] == [13, 6]
        assert [i.fine_amount for i in overdue] == [Decimal('65.00'), Decimal('30.00')]
        schedule = self.loans.get_schedule(loan.id)
        assert [i.status for i in schedule] == [
            InstallmentStatus.OVERDUE, InstallmentStatus.OVERDUE,
            InstallmentStatus.PENDING, InstallmentStatus.PENDING
        ]

    def test_mark_overdue_is_idempotent(self):
        loan = self.disbursed_loan()
        self.clock.set(21)

        self.loans.mark_overdue(loan.id).unwrap()
        self.clock.advance(days=1)
        overdue = self.loans.mark_overdue(loan.id).unwrap()

        assert [i.late_days for i in overdue] == [14, 7]
        events = [e for e in self.system.audit_trail.get_all_events()
                  if e.event_type == AuditEventType.INSTALLMENT_OVERDUE]
        assert len(events) == 2

    def test_payment_after_overdue(self):
        loan = self.disbursed_loan()
        self.clock.set(21)
        self.loans.mark_overdue(loan.id).unwrap()

        payment = self.loans.collect_payment(loan.id, '340').unwrap()

        assert payment.fine_paid == Decimal('65.00')
        assert payment.total_amount == Decimal('340.00')
        assert self.loans.get_schedule(loan.id)[0].status == InstallmentStatus.PAID

    def test_mark_overdue_on_pending_loan(self):
        loan = self.loans.apply(self.member.id, '1000', '10', InterestMethod.FLAT, 4).unwrap()

        assert self.loans.mark_overdue(loan.id).error.kind == ErrorKind.BUSINESS_RULE
