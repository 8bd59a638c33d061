"""
Sequence Allocation Module

Human-readable codes (loan, payment, transaction, savings account, group,
member) are built from persisted per-series counters. A counter is read and
incremented inside a storage transaction, so two writers can never draw the
same number, and a rolled-back unit of work gives its number back.
"""

from datetime import datetime
from typing import Optional

from .storage import StorageInterface


class SequenceAllocator:
    """Persisted monotonically increasing counters keyed by series name"""

    def __init__(self, storage: StorageInterface, table_name: str = "sequences"):
        self.storage = storage
        self.table_name = table_name

    def next_value(self, series: str) -> int:
        """Allocate the next number in ``series`` (first value is 1)"""
        with self.storage.atomic():
            row = self.storage.load(self.table_name, series)
            value = (row["value"] if row else 0) + 1
            self.storage.save(self.table_name, series, {"id": series, "value": value})
            return value

    def current_value(self, series: str) -> int:
        """Last allocated number, 0 if the series was never used"""
        row = self.storage.load(self.table_name, series)
        return row["value"] if row else 0


class CodeGenerator:
    """
    Formats identifiers:

        LN-{branch}-{yy}-{seq:5}    PAY-{yy}-{seq:6}     TXN-{yy}-{seq:7}
        SAV-{yy}-{seq:6}            GRP-{branch}-{yy}-{seq:4}
        MEM-{branch}-{yy}-{seq:5}

    Each (prefix, branch, year) is its own series, so numbering restarts at 1
    every year and per branch where the branch is part of the code.
    """

    def __init__(self, allocator: SequenceAllocator):
        self.allocator = allocator

    @staticmethod
    def _year(now: datetime) -> str:
        return now.strftime("%y")

    def _code(self, prefix: str, width: int, now: datetime, branch_code: Optional[str] = None) -> str:
        yy = self._year(now)
        parts = [prefix] + ([branch_code] if branch_code else []) + [yy]
        series = ":".join(parts)
        seq = self.allocator.next_value(series)
        return "-".join(parts + [f"{seq:0{width}d}"])

    def loan_code(self, branch_code: str, now: datetime) -> str:
        return self._code("LN", 5, now, branch_code)

    def payment_code(self, now: datetime) -> str:
        return self._code("PAY", 6, now)

    def transaction_code(self, now: datetime) -> str:
        return self._code("TXN", 7, now)

    def savings_account_number(self, now: datetime) -> str:
        return self._code("SAV", 6, now)

    def group_code(self, branch_code: str, now: datetime) -> str:
        return self._code("GRP", 4, now, branch_code)

    def member_code(self, branch_code: str, now: datetime) -> str:
        return self._code("MEM", 5, now, branch_code)
