"""
Loan Lifecycle Module

Orchestrates loan origination, disbursement, collection and write-off:

    Pending -> Approved -> Disbursed -> Active -> Closed
    Pending -> Rejected
    Disbursed / Active -> WrittenOff

Every transition checks its source state and business rules before touching
anything, then runs in a single unit of work with its ledger postings and
audit events. Operations return a Result instead of raising.
"""

from typing import List, Optional
import uuid

from .amortization import AmortizationCalculator, InterestMethod
from .audit import AuditTrail, AuditEventType
from .config import MicrocreditConfig, get_config
from .errors import BusinessRuleViolation, NotFoundError, ValidationError, returns_result
from .fines import FineCalculator
from .ledger import LedgerPoster
from .loans import (
    Installment, InstallmentScheduler, InstallmentStatus, Loan, LoanStatus, LoanType,
    OPEN_LOAN_STATES, REPAYING_STATES
)
from .logging_config import get_logger, log_action
from .money import Numeric, format_money, to_decimal, to_money
from .payments import Payment, PaymentAllocator, PaymentMethod
from .repository import Repository
from .sequences import CodeGenerator


class LoanLifecycle:
    """Loan state machine and collection entry point"""

    def __init__(
        self,
        repository: Repository,
        codes: CodeGenerator,
        ledger: LedgerPoster,
        audit_trail: AuditTrail,
        config: Optional[MicrocreditConfig] = None
    ):
        self.repository = repository
        self.codes = codes
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.config = config or get_config()

        self.calculator = AmortizationCalculator(self.config.weeks_per_year)
        self.scheduler = InstallmentScheduler()
        self.fine_calculator = FineCalculator(self.config.fine_per_day)
        self.allocator = PaymentAllocator(self.fine_calculator)
        self.logger = get_logger("microcredit.lifecycle")

    @returns_result
    def apply(
        self,
        member_id: str,
        principal: Numeric,
        annual_rate: Numeric,
        method: InterestMethod,
        duration_weeks: int,
        loan_type: LoanType = LoanType.GENERAL,
        purpose: str = "",
        applied_by: Optional[str] = None
    ) -> Loan:
        """
        Create a loan application

        The member must be active, hold a savings account with at least the
        configured minimum balance, have no approved, disbursed or active
        loan, and if enrolled in a group the group's performance rating must
        meet the configured threshold.

        Args:
            member_id: Applicant
            principal: Loan amount
            annual_rate: Annual interest rate in percent
            method: Interest method
            duration_weeks: Number of weekly installments
            loan_type: Loan purpose category
            purpose: Free-text purpose
            applied_by: Staff ID

        Returns:
            Result with the Pending loan
        """
        if not isinstance(loan_type, LoanType):
            raise ValidationError(f"Unknown loan type: {loan_type!r}")
        amortization = self.calculator.calculate(principal, annual_rate, duration_weeks, method)

        with self.repository.unit_of_work() as uow:
            profile = self.repository.get_member_profile(member_id)
            if not profile:
                raise NotFoundError("member", member_id)
            member = profile.member

            if not member.is_active:
                raise BusinessRuleViolation("Member is not active")
            if self.has_active_loan(member_id):
                raise BusinessRuleViolation("Member already has an active loan")

            minimum = self.config.min_savings_for_loan
            if profile.savings_account is None or profile.savings_account.balance < minimum:
                raise BusinessRuleViolation(
                    f"Insufficient savings balance. Minimum {format_money(minimum)} required."
                )

            if member.group_id is not None:
                if profile.group is None:
                    raise NotFoundError("group", member.group_id)
                if profile.group.performance_rating < self.config.group_performance_threshold:
                    raise BusinessRuleViolation("Group performance is below threshold")

            branch = self.repository.get_branch(member.branch_id)
            if not branch:
                raise NotFoundError("branch", member.branch_id)

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                loan_code=self.codes.loan_code(branch.code, uow.now),
                member_id=member.id,
                branch_id=branch.id,
                group_id=member.group_id,
                loan_type=loan_type,
                purpose=purpose,
                loan_amount=to_money(principal),
                interest_rate=to_decimal(annual_rate),
                interest_method=method,
                duration_weeks=duration_weeks,
                application_date=uow.now,
                total_interest=amortization.total_interest,
                total_payable=amortization.total_payable,
                periodic_installment=amortization.periodic_installment,
                remaining_balance=amortization.total_payable
            )
            uow.add(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_code": loan.loan_code,
                    "member_id": member.id,
                    "principal": loan.loan_amount,
                    "interest_rate": loan.interest_rate,
                    "interest_method": method,
                    "duration_weeks": duration_weeks,
                    "total_payable": loan.total_payable
                },
                user_id=applied_by,
                now=uow.now
            )

        log_action(
            self.logger, "info",
            f"Loan {loan.loan_code} applied for {format_money(loan.loan_amount)}",
            user_id=applied_by,
            action="apply_loan",
            resource=f"loan:{loan.id}",
            extra={"member_id": member_id, "interest_method": method.value}
        )
        return loan

    @returns_result
    def approve(self, loan_id: str, approved_by: str) -> Loan:
        """Pending -> Approved"""
        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise BusinessRuleViolation("Loan is not in pending status")

            loan.status = LoanStatus.APPROVED
            loan.approval_date = uow.now
            loan.approved_by = approved_by
            uow.register(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"loan_code": loan.loan_code},
                user_id=approved_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Loan {loan.loan_code} approved",
                   user_id=approved_by, action="approve_loan", resource=f"loan:{loan.id}")
        return loan

    @returns_result
    def reject(self, loan_id: str, reason: str, rejected_by: Optional[str] = None) -> Loan:
        """Pending -> Rejected"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise BusinessRuleViolation("Loan is not in pending status")

            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason.strip()
            uow.register(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"loan_code": loan.loan_code, "reason": loan.rejection_reason},
                user_id=rejected_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Loan {loan.loan_code} rejected",
                   user_id=rejected_by, action="reject_loan", resource=f"loan:{loan.id}")
        return loan

    @returns_result
    def disburse(self, loan_id: str, disbursed_by: Optional[str] = None) -> Loan:
        """
        Approved -> Disbursed

        Builds the weekly schedule from the disbursement date, bumps the
        member's loan cycle and posts Dr LOAN_RECEIVABLE / Cr CASH.
        """
        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise BusinessRuleViolation("Loan must be approved before disbursement")

            member = self.repository.get_member(loan.member_id)
            if not member:
                raise NotFoundError("member", loan.member_id)

            amortization = self.calculator.calculate(
                loan.loan_amount, loan.interest_rate, loan.duration_weeks, loan.interest_method
            )
            installments = self.scheduler.build(loan, amortization, uow.now.date(), uow.now)
            for installment in installments:
                uow.add(installment)

            loan.status = LoanStatus.DISBURSED
            loan.disbursement_date = uow.now
            loan.disbursed_by = disbursed_by
            uow.register(loan)

            member.loan_cycle += 1
            uow.register(member)

            posting = self.ledger.post_disbursement(uow, loan, created_by=disbursed_by)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_code": loan.loan_code,
                    "amount": loan.loan_amount,
                    "installments": len(installments),
                    "first_due_date": installments[0].due_date,
                    "transaction_code": posting.transaction_code
                },
                user_id=disbursed_by,
                now=uow.now
            )

        log_action(
            self.logger, "info",
            f"Loan {loan.loan_code} disbursed: {format_money(loan.loan_amount)}",
            user_id=disbursed_by,
            action="disburse_loan",
            resource=f"loan:{loan.id}",
            extra={"loan_cycle": member.loan_cycle}
        )
        return loan

    @returns_result
    def collect_payment(
        self,
        loan_id: str,
        amount: Numeric,
        collected_by: Optional[str] = None,
        installment_id: Optional[str] = None,
        method: PaymentMethod = PaymentMethod.CASH,
        remarks: Optional[str] = None
    ) -> Payment:
        """
        Collect a payment against a disbursed or active loan

        Cash is applied fine first, then interest, then principal, to the
        given installment or the earliest unpaid one. Cash beyond what that
        installment owes is recorded as unapplied on the Payment.

        Args:
            loan_id: Loan being repaid
            amount: Cash tendered
            collected_by: Field officer ID
            installment_id: Installment to pay, earliest unpaid if None
            method: Payment method
            remarks: Free text

        Returns:
            Result with the recorded Payment
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if not isinstance(method, PaymentMethod):
            raise ValidationError(f"Unknown payment method: {method!r}")

        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status not in REPAYING_STATES:
                raise BusinessRuleViolation(
                    f"Loan is {loan.status.value}, payments are accepted only on disbursed or active loans"
                )

            installments = self.repository.list_installments(loan.id)
            allocation = self.allocator.allocate(loan, installments, amount, uow.now, installment_id)
            if allocation.is_noop:
                raise BusinessRuleViolation("Nothing outstanding to apply the payment to")

            uow.register(allocation.installment)
            uow.register(loan)

            split = allocation.split
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                payment_code=self.codes.payment_code(uow.now),
                loan_id=loan.id,
                member_id=loan.member_id,
                installment_id=allocation.installment.id,
                payment_date=uow.now,
                principal_paid=split.principal,
                interest_paid=split.interest,
                fine_paid=split.fine,
                total_amount=split.applied,
                tendered_amount=to_money(amount),
                unapplied_amount=split.unapplied,
                payment_method=method,
                collected_by=collected_by,
                remarks=remarks
            )
            uow.add(payment)

            postings = self.ledger.post_repayment(uow, loan, payment, created_by=collected_by)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_code": payment.payment_code,
                    "installment_number": allocation.installment.installment_number,
                    "principal": split.principal,
                    "interest": split.interest,
                    "fine": split.fine,
                    "unapplied": split.unapplied,
                    "remaining_balance": loan.remaining_balance,
                    "transactions": [t.transaction_code for t in postings]
                },
                user_id=collected_by,
                now=uow.now
            )

            if loan.status == LoanStatus.CLOSED:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_CLOSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"loan_code": loan.loan_code, "paid_amount": loan.paid_amount},
                    user_id=collected_by,
                    now=uow.now
                )

        log_action(
            self.logger, "info",
            f"Payment {payment.payment_code} of {format_money(payment.total_amount)} on loan {loan.loan_code}",
            user_id=collected_by,
            action="collect_payment",
            resource=f"loan:{loan.id}",
            extra={
                "fine": str(split.fine),
                "interest": str(split.interest),
                "principal": str(split.principal),
                "unapplied": str(split.unapplied),
                "loan_status": loan.status.value
            }
        )
        return payment

    @returns_result
    def write_off(self, loan_id: str, reason: str, written_off_by: Optional[str] = None) -> Loan:
        """
        Disbursed / Active -> WrittenOff

        Posts Dr LOAN_LOSS_EXPENSE / Cr LOAN_RECEIVABLE for the principal not
        yet repaid.
        """
        if not reason or not reason.strip():
            raise ValidationError("Write-off reason is required")

        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status not in REPAYING_STATES:
                raise BusinessRuleViolation(
                    f"Loan is {loan.status.value}, only disbursed or active loans can be written off"
                )

            outstanding = loan.outstanding_principal
            loan.status = LoanStatus.WRITTEN_OFF
            loan.write_off_reason = reason.strip()
            loan.closed_date = uow.now
            uow.register(loan)

            transaction_code = None
            if outstanding > 0:
                posting = self.ledger.post_write_off(uow, loan, outstanding, created_by=written_off_by)
                transaction_code = posting.transaction_code

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_WRITTEN_OFF,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_code": loan.loan_code,
                    "outstanding_principal": outstanding,
                    "reason": loan.write_off_reason,
                    "transaction_code": transaction_code
                },
                user_id=written_off_by,
                now=uow.now
            )

        log_action(
            self.logger, "warning",
            f"Loan {loan.loan_code} written off with {format_money(outstanding)} principal outstanding",
            user_id=written_off_by,
            action="write_off_loan",
            resource=f"loan:{loan.id}"
        )
        return loan

    @returns_result
    def mark_overdue(self, loan_id: str) -> List[Installment]:
        """
        Flag unpaid installments past their due date as Overdue and refresh
        their late days and fine

        Returns:
            Result with every installment that is overdue after the update
        """
        with self.repository.unit_of_work() as uow:
            loan = self._loan(loan_id)
            if loan.status not in REPAYING_STATES:
                raise BusinessRuleViolation(f"Loan is {loan.status.value}, nothing can be overdue")

            overdue = []
            for installment in self.repository.list_installments(loan.id):
                if installment.is_paid or installment.due_date >= uow.now.date():
                    continue

                newly_overdue = installment.status != InstallmentStatus.OVERDUE
                installment.status = InstallmentStatus.OVERDUE
                installment.late_days = self.fine_calculator.late_days(installment.due_date, uow.now)
                installment.fine_amount = max(
                    self.fine_calculator.accrued_fine(installment.due_date, uow.now),
                    installment.fine_paid
                )
                uow.register(installment)
                overdue.append(installment)

                if newly_overdue:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.INSTALLMENT_OVERDUE,
                        entity_type="installment",
                        entity_id=installment.id,
                        metadata={
                            "loan_id": loan.id,
                            "installment_number": installment.installment_number,
                            "late_days": installment.late_days,
                            "fine_amount": installment.fine_amount
                        },
                        now=uow.now
                    )

        if overdue:
            log_action(self.logger, "info", f"Loan {loan.loan_code} has {len(overdue)} overdue installments",
                       action="mark_overdue", resource=f"loan:{loan.id}")
        return overdue

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.repository.get_loan(loan_id)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installments ordered by number"""
        return self.repository.list_installments(loan_id)

    def get_payments(self, loan_id: str) -> List[Payment]:
        return self.repository.list_payments(loan_id)

    def get_member_loans(self, member_id: str) -> List[Loan]:
        return self.repository.loans_for_member(member_id)

    def has_active_loan(self, member_id: str) -> bool:
        """True if the member has an approved, disbursed or active loan"""
        return any(loan.status in OPEN_LOAN_STATES for loan in self.repository.loans_for_member(member_id))

    def _loan(self, loan_id: str) -> Loan:
        loan = self.repository.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan
