"""
Portfolio Reporting Module

Read-only views over the loan book: overdue installments, Portfolio at Risk
and a delinquency aging breakdown.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .fines import FineCalculator
from .loans import Installment, Loan, REPAYING_STATES
from .money import ZERO, sum_money
from .repository import Repository


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


class ReportingEngine:
    """Portfolio quality reports"""

    def __init__(self, repository: Repository, fine_calculator: Optional[FineCalculator] = None):
        self.repository = repository
        self.fine_calculator = fine_calculator or FineCalculator()

    def _late_unpaid(self, as_of: datetime):
        """Yield (loan, installment, late_days) for each unpaid installment past due"""
        for loan in self.repository.list_loans(REPAYING_STATES):
            for installment in self.repository.list_installments(loan.id):
                if installment.is_paid:
                    continue
                late_days = self.fine_calculator.late_days(installment.due_date, as_of)
                if late_days > 0:
                    yield loan, installment, late_days

    def overdue_installments(self, as_of: Optional[datetime] = None) -> ReportResult:
        """
        List unpaid installments past their due date

        Args:
            as_of: Reporting time, defaults to now

        Returns:
            ReportResult with one row per installment, most late first
        """
        as_of = as_of or datetime.now(timezone.utc)

        data = []
        for loan, installment, late_days in self._late_unpaid(as_of):
            data.append(self._overdue_row(loan, installment, late_days, as_of))
        data.sort(key=lambda row: (-row['late_days'], row['loan_code'], row['installment_number']))

        return ReportResult(
            report_id="overdue_installments",
            generated_at=as_of,
            data=data,
            totals={
                'installment_count': len(data),
                'amount_overdue': sum_money(row['remaining_amount'] for row in data),
                'fines_outstanding': sum_money(row['fine_outstanding'] for row in data)
            }
        )

    def _overdue_row(self, loan: Loan, installment: Installment, late_days: int,
                     as_of: datetime) -> Dict[str, Any]:
        accrued = self.fine_calculator.accrued_fine(installment.due_date, as_of)
        return {
            'loan_id': loan.id,
            'loan_code': loan.loan_code,
            'member_id': loan.member_id,
            'installment_id': installment.id,
            'installment_number': installment.installment_number,
            'due_date': installment.due_date,
            'late_days': late_days,
            'remaining_amount': installment.remaining_amount,
            'accrued_fine': accrued,
            'fine_outstanding': max(accrued - installment.fine_paid, ZERO)
        }

    def portfolio_at_risk(self, threshold_days: int = 30, as_of: Optional[datetime] = None) -> ReportResult:
        """
        Portfolio at Risk: share of the outstanding balance on disbursed and
        active loans that have an unpaid installment more than
        ``threshold_days`` late

        Returns:
            ReportResult whose totals hold outstanding_balance,
            at_risk_balance and par_percentage
        """
        if threshold_days < 0:
            raise ValueError("Threshold days cannot be negative")
        as_of = as_of or datetime.now(timezone.utc)

        at_risk: Dict[str, Loan] = {}
        for loan, _, late_days in self._late_unpaid(as_of):
            if late_days > threshold_days:
                at_risk[loan.id] = loan

        outstanding = sum_money(l.remaining_balance for l in self.repository.list_loans(REPAYING_STATES))
        at_risk_balance = sum_money(l.remaining_balance for l in at_risk.values())

        percentage = ZERO
        if outstanding > 0:
            percentage = (at_risk_balance / outstanding * 100).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

        data = [
            {'loan_id': l.id, 'loan_code': l.loan_code, 'remaining_balance': l.remaining_balance}
            for l in sorted(at_risk.values(), key=lambda l: l.loan_code)
        ]

        return ReportResult(
            report_id=f"par_{threshold_days}",
            generated_at=as_of,
            data=data,
            totals={
                'outstanding_balance': outstanding,
                'at_risk_balance': at_risk_balance,
                'par_percentage': percentage,
                'loans_at_risk': len(at_risk)
            }
        )

    def delinquency_aging(self, as_of: Optional[datetime] = None) -> ReportResult:
        """Outstanding balance bucketed by each loan's most late installment"""
        as_of = as_of or datetime.now(timezone.utc)

        worst: Dict[str, int] = {}
        for loan, _, late_days in self._late_unpaid(as_of):
            worst[loan.id] = max(worst.get(loan.id, 0), late_days)

        buckets = {
            'current': {'loans': 0, 'balance': ZERO},
            '1-30': {'loans': 0, 'balance': ZERO},
            '31-60': {'loans': 0, 'balance': ZERO},
            '61-90': {'loans': 0, 'balance': ZERO},
            '90+': {'loans': 0, 'balance': ZERO}
        }

        total_balance = ZERO
        for loan in self.repository.list_loans(REPAYING_STATES):
            days = worst.get(loan.id, 0)
            if days > 90:
                bucket_name = '90+'
            elif days > 60:
                bucket_name = '61-90'
            elif days > 30:
                bucket_name = '31-60'
            elif days > 0:
                bucket_name = '1-30'
            else:
                bucket_name = 'current'

            buckets[bucket_name]['loans'] += 1
            buckets[bucket_name]['balance'] += loan.remaining_balance
            total_balance += loan.remaining_balance

        data = []
        for bucket_name, bucket in buckets.items():
            percentage = ZERO
            if total_balance > 0:
                percentage = (bucket['balance'] / total_balance * 100).quantize(
                    Decimal('0.01'), rounding=ROUND_HALF_UP
                )
            data.append({
                'aging_bucket': bucket_name,
                'loan_count': bucket['loans'],
                'balance': bucket['balance'],
                'percentage': percentage
            })

        return ReportResult(
            report_id="delinquency_aging",
            generated_at=as_of,
            data=data,
            totals={'total_balance': total_balance, 'loan_count': sum(b['loans'] for b in buckets.values())}
        )
