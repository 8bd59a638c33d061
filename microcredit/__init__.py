"""
Microcredit Engine

Financial computation and posting core for a microfinance backend:
amortization, installment schedules, waterfall payment allocation and
double-entry ledger posting, all on Decimal precision.
"""

__version__ = "1.0.0"
