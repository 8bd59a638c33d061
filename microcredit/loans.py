"""
Loan Module

Loan and installment records plus the weekly installment scheduler. State
changes are driven by LoanLifecycle and PaymentAllocator; this module only
holds the data and the schedule arithmetic.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .amortization import AmortizationResult, InterestMethod
from .errors import ValidationError
from .money import ZERO
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"          # Applied, awaiting decision
    APPROVED = "approved"        # Approved, not yet disbursed
    DISBURSED = "disbursed"      # Funds released, no payment yet
    ACTIVE = "active"            # Repayment in progress
    CLOSED = "closed"            # Fully repaid
    REJECTED = "rejected"        # Application declined
    WRITTEN_OFF = "written_off"  # Uncollectible


class LoanType(Enum):
    """Loan purpose category"""
    GENERAL = "general"
    AGRICULTURE = "agriculture"
    BUSINESS = "business"
    EDUCATION = "education"
    EMERGENCY = "emergency"


class InstallmentStatus(Enum):
    """Installment collection state"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


# Loans in these states block a new application by the same member
OPEN_LOAN_STATES = (LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.ACTIVE)

# Loans in these states accept payments and can be written off
REPAYING_STATES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)


@dataclass
class Loan(StorageRecord):
    """Loan with its computed totals and running repayment totals"""
    loan_code: str
    member_id: str
    branch_id: str
    loan_type: LoanType
    purpose: str
    loan_amount: Decimal
    interest_rate: Decimal             # Annual percentage, e.g. 15 for 15%
    interest_method: InterestMethod
    duration_weeks: int
    application_date: datetime
    group_id: Optional[str] = None

    # Calculated at application
    total_interest: Decimal = ZERO
    total_payable: Decimal = ZERO
    periodic_installment: Decimal = ZERO

    status: LoanStatus = LoanStatus.PENDING

    # Running totals
    paid_amount: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    paid_installments: int = 0
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    fine_paid: Decimal = ZERO

    # Decisions and key dates
    approval_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    disbursement_date: Optional[datetime] = None
    disbursed_by: Optional[str] = None
    last_payment_date: Optional[datetime] = None
    closed_date: Optional[datetime] = None
    write_off_reason: Optional[str] = None

    version: int = 0
    is_deleted: bool = False

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_LOAN_STATES

    @property
    def outstanding_principal(self) -> Decimal:
        return self.loan_amount - self.principal_paid


@dataclass
class Installment(StorageRecord):
    """One weekly installment; the fine is tracked apart from total_amount"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal = ZERO
    remaining_amount: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    late_days: int = 0
    fine_amount: Decimal = ZERO
    payment_date: Optional[datetime] = None
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    fine_paid: Decimal = ZERO
    is_deleted: bool = False

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def principal_due(self) -> Decimal:
        return self.principal_amount - self.principal_paid

    @property
    def interest_due(self) -> Decimal:
        return self.interest_amount - self.interest_paid

    @property
    def fine_due(self) -> Decimal:
        return max(self.fine_amount - self.fine_paid, ZERO)


class InstallmentScheduler:
    """Turns an amortization breakdown into dated weekly installments"""

    DAYS_PER_PERIOD = 7

    def build(
        self,
        loan: Loan,
        amortization: AmortizationResult,
        disbursement_date: date,
        now: datetime
    ) -> List[Installment]:
        """
        Build the repayment schedule

        Args:
            loan: Loan being disbursed
            amortization: Breakdown computed for the loan's terms
            disbursement_date: Installment k is due k weeks after this date
            now: Record timestamp

        Returns:
            Installments ordered by installment_number, Pending unless they owe nothing
        """
        if len(amortization.periods) != loan.duration_weeks:
            raise ValidationError(
                f"Breakdown has {len(amortization.periods)} periods, loan has {loan.duration_weeks} weeks"
            )

        installments = []
        for period in amortization.periods:
            total = period.principal + period.interest
            installments.append(Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=period.number,
                due_date=disbursement_date + timedelta(days=self.DAYS_PER_PERIOD * period.number),
                principal_amount=period.principal,
                interest_amount=period.interest,
                total_amount=total,
                remaining_amount=total,
                # Tail weeks of a tiny loan can owe nothing
                status=InstallmentStatus.PAID if total == 0 else InstallmentStatus.PENDING
            ))

        return installments
