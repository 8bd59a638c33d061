"""
Payment Allocation Module

Splits collected cash across fine, interest and principal (in that order) for
one installment, and applies the result to the installment and loan running
totals.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum

from .errors import BusinessRuleViolation, NotFoundError, ValidationError
from .fines import FineCalculator
from .loans import Loan, Installment, InstallmentStatus, LoanStatus
from .money import Numeric, ZERO, to_decimal, to_money
from .storage import StorageRecord


class PaymentMethod(Enum):
    """How the cash was received"""
    CASH = "cash"
    MOBILE_BANKING = "mobile_banking"
    BANK_TRANSFER = "bank_transfer"


@dataclass
class Payment(StorageRecord):
    """Immutable record of one collection against a loan"""
    payment_code: str
    loan_id: str
    member_id: str
    payment_date: datetime
    principal_paid: Decimal
    interest_paid: Decimal
    fine_paid: Decimal
    total_amount: Decimal          # principal + interest + fine
    tendered_amount: Decimal       # Cash handed over
    unapplied_amount: Decimal      # tendered - total
    payment_method: PaymentMethod = PaymentMethod.CASH
    installment_id: Optional[str] = None
    collected_by: Optional[str] = None
    remarks: Optional[str] = None


@dataclass(frozen=True)
class WaterfallSplit:
    """Result of splitting cash across the dues"""
    fine: Decimal
    interest: Decimal
    principal: Decimal
    unapplied: Decimal

    @property
    def applied(self) -> Decimal:
        return self.fine + self.interest + self.principal


def allocate_waterfall(
    cash: Numeric,
    fine_due: Numeric,
    interest_due: Numeric,
    principal_due: Numeric
) -> WaterfallSplit:
    """
    Split cash in the fixed order fine, interest, principal

    Each component is capped by its due; whatever is left after the principal
    is returned as unapplied.

    Raises:
        ValidationError: If any input is negative
    """
    remaining = to_money(cash)
    dues = [to_money(fine_due), to_money(interest_due), to_money(principal_due)]
    if remaining < 0 or any(d < 0 for d in dues):
        raise ValidationError("Cash and dues must not be negative")

    parts = []
    for due in dues:
        part = min(remaining, due)
        parts.append(part)
        remaining -= part

    return WaterfallSplit(fine=parts[0], interest=parts[1], principal=parts[2], unapplied=remaining)


@dataclass
class Allocation:
    """What a collection did to one installment"""
    split: WaterfallSplit
    installment: Optional[Installment] = None
    late_days: int = 0

    @property
    def is_noop(self) -> bool:
        return self.split.applied == ZERO


class PaymentAllocator:
    """
    Applies a cash collection to the selected (or earliest unpaid)
    installment of a loan. Loan and installment are mutated in place; the
    caller persists them in its unit of work.

    Cash beyond what the selected installment owes is reported as unapplied
    and is not carried to the next installment.
    """

    def __init__(self, fine_calculator: Optional[FineCalculator] = None):
        self.fine_calculator = fine_calculator or FineCalculator()

    def allocate(
        self,
        loan: Loan,
        installments: List[Installment],
        cash: Numeric,
        now: datetime,
        installment_id: Optional[str] = None
    ) -> Allocation:
        """
        Allocate a collection

        Args:
            loan: Loan being repaid
            installments: The loan's installments
            cash: Amount collected, must be positive
            now: Collection time, used for the fine and payment dates
            installment_id: Installment to pay; earliest unpaid if None

        Returns:
            Allocation with the split and the installment it was applied to
        """
        cash = to_decimal(cash)
        if cash <= 0:
            raise ValidationError("Payment amount must be positive")
        cash = to_money(cash)

        installment = self._select(loan, installments, installment_id)
        if installment is None:
            return Allocation(split=WaterfallSplit(ZERO, ZERO, ZERO, cash))

        late_days = self.fine_calculator.late_days(installment.due_date, now)
        installment.late_days = late_days
        installment.fine_amount = max(self.fine_calculator.accrued_fine(installment.due_date, now),
                                      installment.fine_paid)

        split = allocate_waterfall(
            cash,
            installment.fine_due,
            max(installment.interest_due, ZERO),
            max(installment.principal_due, ZERO)
        )
        # Unreachable for schedules built by InstallmentScheduler, which marks
        # zero-amount weeks Paid; an unpaid installment always owes something
        if split.applied == ZERO:
            return Allocation(split=split, installment=installment, late_days=late_days)

        self._apply_to_installment(installment, split, now)
        self._apply_to_loan(loan, installments, split, now)

        return Allocation(split=split, installment=installment, late_days=late_days)

    def _select(self, loan: Loan, installments: List[Installment],
                installment_id: Optional[str]) -> Optional[Installment]:
        schedule = sorted((i for i in installments if not i.is_deleted),
                          key=lambda i: i.installment_number)

        if installment_id is not None:
            for installment in schedule:
                if installment.id == installment_id:
                    if installment.is_paid:
                        raise BusinessRuleViolation(
                            f"Installment {installment.installment_number} of loan {loan.loan_code} is already paid"
                        )
                    return installment
            raise NotFoundError("installment", installment_id)

        for installment in schedule:
            if not installment.is_paid:
                return installment
        return None

    @staticmethod
    def _apply_to_installment(installment: Installment, split: WaterfallSplit, now: datetime) -> None:
        installment.fine_paid += split.fine
        installment.interest_paid += split.interest
        installment.principal_paid += split.principal
        installment.paid_amount += split.interest + split.principal
        installment.remaining_amount = max(installment.total_amount - installment.paid_amount, ZERO)

        if installment.remaining_amount <= 0:
            installment.status = InstallmentStatus.PAID
            installment.payment_date = now
        else:
            installment.status = InstallmentStatus.PARTIAL

    @staticmethod
    def _apply_to_loan(loan: Loan, installments: List[Installment],
                       split: WaterfallSplit, now: datetime) -> None:
        loan.principal_paid += split.principal
        loan.interest_paid += split.interest
        loan.fine_paid += split.fine
        loan.paid_amount += split.interest + split.principal
        loan.remaining_balance = max(loan.total_payable - loan.paid_amount, ZERO)
        loan.last_payment_date = now
        loan.paid_installments = sum(1 for i in installments if i.is_paid and not i.is_deleted)

        if loan.remaining_balance <= 0:
            loan.status = LoanStatus.CLOSED
            loan.closed_date = now
        else:
            loan.status = LoanStatus.ACTIVE
