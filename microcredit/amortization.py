"""
Amortization Module

Computes total interest, total payable, the periodic installment and the
per-week principal/interest breakdown for the three supported interest
methods. Installments are weekly; the periodic rate is the annual percentage
divided by 100 and by the number of weeks per year.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List

from .errors import ValidationError
from .money import Numeric, to_decimal, to_money, sum_money


class InterestMethod(Enum):
    """How interest is charged over the life of a loan"""
    FLAT = "flat"                                    # Interest on original principal
    REDUCING_BALANCE = "reducing_balance"            # Equal principal + interest on remainder
    DECLINING_BALANCE_EMI = "declining_balance_emi"  # Equal installments (annuity)


@dataclass(frozen=True)
class PeriodBreakdown:
    """Principal and interest due in one week"""
    number: int
    principal: Decimal
    interest: Decimal

    @property
    def total(self) -> Decimal:
        return self.principal + self.interest


@dataclass(frozen=True)
class AmortizationResult:
    """Loan totals plus the per-period split they were summed from"""
    total_interest: Decimal
    total_payable: Decimal
    periodic_installment: Decimal
    periods: List[PeriodBreakdown] = field(default_factory=list)


class AmortizationCalculator:
    """
    Pure amortization arithmetic.

    All amounts are rounded to cents per period and the final period absorbs
    the rounding residue, so the principal column always sums to the
    principal exactly and the reported totals are the column sums.
    """

    def __init__(self, weeks_per_year: int = 52):
        self.weeks_per_year = weeks_per_year

    def calculate(
        self,
        principal: Numeric,
        annual_rate: Numeric,
        duration_weeks: int,
        method: InterestMethod
    ) -> AmortizationResult:
        """
        Calculate amortization for a weekly loan

        Args:
            principal: Loan amount, must be positive
            annual_rate: Annual interest rate in percent, 0 to 100
            duration_weeks: Number of weekly installments, at least 1
            method: Interest method

        Returns:
            AmortizationResult with totals and the weekly breakdown

        Raises:
            ValidationError: If any input is out of range
        """
        principal = to_decimal(principal)
        rate = to_decimal(annual_rate)

        if principal <= 0:
            raise ValidationError("Principal must be positive")
        if rate < 0 or rate > 100:
            raise ValidationError("Interest rate must be between 0 and 100")
        if isinstance(duration_weeks, bool) or not isinstance(duration_weeks, int) or duration_weeks < 1:
            raise ValidationError("Duration must be at least one week")
        if not isinstance(method, InterestMethod):
            raise ValidationError(f"Unknown interest method: {method!r}")

        principal = to_money(principal)

        if method == InterestMethod.FLAT:
            return self._flat(principal, rate, duration_weeks)
        elif method == InterestMethod.REDUCING_BALANCE:
            return self._reducing_balance(principal, rate, duration_weeks)
        else:
            return self._emi(principal, rate, duration_weeks)

    def weekly_rate(self, annual_rate: Decimal) -> Decimal:
        return annual_rate / Decimal('100') / Decimal(self.weeks_per_year)

    def _flat(self, principal: Decimal, rate: Decimal, n: int) -> AmortizationResult:
        total_interest = to_money(principal * rate / Decimal('100'))
        principal_share = to_money(principal / n)
        interest_share = to_money(total_interest / n)

        periods = []
        principal_left = principal
        interest_left = total_interest
        for k in range(1, n + 1):
            if k < n:
                principal_k = min(principal_share, principal_left)
                interest_k = min(interest_share, interest_left)
            else:
                principal_k = principal_left
                interest_k = interest_left
            periods.append(PeriodBreakdown(k, principal_k, interest_k))
            principal_left -= principal_k
            interest_left -= interest_k

        total_payable = principal + total_interest
        return AmortizationResult(
            total_interest=total_interest,
            total_payable=total_payable,
            periodic_installment=to_money(total_payable / n),
            periods=periods
        )

    def _reducing_balance(self, principal: Decimal, rate: Decimal, n: int) -> AmortizationResult:
        i = self.weekly_rate(rate)
        principal_share = to_money(principal / n)

        periods = []
        remaining = principal
        for k in range(1, n + 1):
            interest = to_money(remaining * i)
            principal_k = min(principal_share, remaining) if k < n else remaining
            periods.append(PeriodBreakdown(k, principal_k, interest))
            remaining -= principal_k

        return self._result(principal, principal_share, periods)

    def _emi(self, principal: Decimal, rate: Decimal, n: int) -> AmortizationResult:
        i = self.weekly_rate(rate)
        if i == 0:
            installment = to_money(principal / n)
        else:
            growth = (1 + i) ** n
            installment = to_money(principal * i * growth / (growth - 1))

        periods = []
        remaining = principal
        for k in range(1, n + 1):
            interest = to_money(remaining * i)
            if k < n:
                principal_k = min(installment - interest, remaining)
            else:
                principal_k = remaining
            periods.append(PeriodBreakdown(k, principal_k, interest))
            remaining -= principal_k

        return self._result(principal, installment, periods)

    @staticmethod
    def _result(principal: Decimal, installment: Decimal,
                periods: List[PeriodBreakdown]) -> AmortizationResult:
        total_interest = sum_money(p.interest for p in periods)
        return AmortizationResult(
            total_interest=total_interest,
            total_payable=principal + total_interest,
            periodic_installment=installment,
            periods=periods
        )


def calculate_amortization(
    principal: Numeric,
    annual_rate: Numeric,
    duration_weeks: int,
    method: InterestMethod,
    weeks_per_year: int = 52
) -> AmortizationResult:
    """Convenience wrapper around AmortizationCalculator.calculate"""
    return AmortizationCalculator(weeks_per_year).calculate(principal, annual_rate, duration_weeks, method)
