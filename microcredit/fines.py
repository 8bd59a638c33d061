"""
Late Fine Module

A flat fine per whole day an installment is past its due date.
"""

from decimal import Decimal
from datetime import datetime, date

from .money import Numeric, to_money


class FineCalculator:
    """Pure and idempotent: the fine is recomputed from dates, never accumulated"""

    def __init__(self, fine_per_day: Numeric = Decimal('5')):
        self.fine_per_day = to_money(fine_per_day)
        if self.fine_per_day < 0:
            raise ValueError("Fine per day cannot be negative")

    @staticmethod
    def late_days(due_date: date, now: datetime) -> int:
        """Whole days past due, 0 if not yet due"""
        return max(0, (now.date() - due_date).days)

    def accrued_fine(self, due_date: date, now: datetime) -> Decimal:
        """Total fine accrued on an installment due on ``due_date``"""
        return to_money(self.late_days(due_date, now) * self.fine_per_day)
