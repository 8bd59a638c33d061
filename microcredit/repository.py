"""
Repository and Unit of Work Module

Typed persistence port over a StorageInterface, plus the unit of work that
every mutating operation runs in. A unit of work:

- holds the storage transaction (and its lock) from start to finish,
- stamps created_at / updated_at with one timestamp taken at its start,
- rejects updates to append-only records,
- refuses to overwrite an entity whose stored version moved since it was
  read (ConcurrencyConflict),
- owns the ledger AccountCache for its postings.

Anything raised inside the unit of work rolls back every write made in it,
including sequence numbers and audit events.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Type
from contextlib import contextmanager
import threading

from .errors import BusinessRuleViolation, ConcurrencyConflict
from .ledger import AccountCache, LedgerAccount, Transaction
from .loans import Installment, Loan, LoanStatus
from .logging_config import get_logger
from .members import Branch, Group, Member
from .payments import Payment
from .savings import SavingsAccount, SavingsTransaction
from .storage import StorageInterface, StorageRecord


TABLES: Dict[Type[StorageRecord], str] = {
    Branch: "branches",
    Group: "groups",
    Member: "members",
    Loan: "loans",
    Installment: "installments",
    Payment: "payments",
    SavingsAccount: "savings_accounts",
    SavingsTransaction: "savings_transactions",
    LedgerAccount: "ledger_accounts",
    Transaction: "transactions",
}

# Written once, never updated
APPEND_ONLY = (Payment, Transaction, SavingsTransaction)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MemberProfile:
    """A member with the records loan eligibility depends on"""
    member: Member
    savings_account: Optional[SavingsAccount] = None
    group: Optional[Group] = None


class UnitOfWork:
    """Write side of one atomic operation, see module docstring"""

    def __init__(self, repository: 'Repository', now: datetime):
        self.repository = repository
        self.now = now
        self.ledger_accounts = AccountCache(self)
        self._dirty: Dict[Tuple[str, str], StorageRecord] = {}
        self.logger = get_logger("microcredit.repository")

    @property
    def storage(self) -> StorageInterface:
        return self.repository.storage

    def add(self, record: StorageRecord) -> None:
        """Insert a new record immediately"""
        table = self.repository.table_for(record)
        if self.storage.exists(table, record.id):
            raise ConcurrencyConflict(f"{type(record).__name__} {record.id} already exists")

        record.created_at = self.now
        record.updated_at = self.now
        self.storage.save(table, record.id, record.to_dict())

    def register(self, record: StorageRecord) -> None:
        """Mark a changed entity for writing when the unit of work completes"""
        if isinstance(record, APPEND_ONLY):
            raise BusinessRuleViolation(f"{type(record).__name__} records are append-only")
        table = self.repository.table_for(record)
        self._dirty[(table, record.id)] = record

    def flush(self) -> None:
        """Write registered entities, checking versions where they have one"""
        for (table, record_id), record in self._dirty.items():
            if hasattr(record, "version"):
                stored = self.storage.load(table, record_id)
                if stored is not None and stored.get("version", 0) != record.version:
                    raise ConcurrencyConflict(
                        f"{type(record).__name__} {record_id} was modified concurrently "
                        f"(expected version {record.version}, found {stored.get('version')})"
                    )
                record.version += 1

            record.updated_at = self.now
            self.storage.save(table, record_id, record.to_dict())

        self.logger.debug(f"Flushed {len(self._dirty)} entities")
        self._dirty.clear()


class Repository:
    """Persistence port: typed reads plus unit_of_work() for writes"""

    def __init__(self, storage: StorageInterface, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or _utc_now
        self._local = threading.local()

    @staticmethod
    def table_for(record: StorageRecord) -> str:
        return TABLES[type(record)]

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def unit_of_work(self):
        """
        Run a block atomically. A nested call on the same thread joins the
        enclosing unit of work.
        """
        with self.storage.atomic():
            current = getattr(self._local, "uow", None)
            if current is not None:
                yield current
                return

            uow = UnitOfWork(self, self.clock())
            self._local.uow = uow
            try:
                yield uow
                uow.flush()
            finally:
                self._local.uow = None

    # Generic helpers

    def _get(self, cls: Type[StorageRecord], record_id: str):
        data = self.storage.load(TABLES[cls], record_id)
        return cls.from_dict(data) if data else None

    def _find(self, cls: Type[StorageRecord], **filters) -> List:
        return [cls.from_dict(d) for d in self.storage.find(TABLES[cls], filters)]

    # Branches, groups and members

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self._get(Branch, branch_id)

    def get_branch_by_code(self, code: str) -> Optional[Branch]:
        branches = self._find(Branch, code=code)
        return branches[0] if branches else None

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._get(Group, group_id)

    def get_member(self, member_id: str) -> Optional[Member]:
        return self._get(Member, member_id)

    def members_in_group(self, group_id: str) -> List[Member]:
        members = self._find(Member, group_id=group_id)
        members.sort(key=lambda m: m.code)
        return members

    def get_member_profile(self, member_id: str) -> Optional[MemberProfile]:
        member = self.get_member(member_id)
        if not member:
            return None
        return MemberProfile(
            member=member,
            savings_account=self.savings_account_for_member(member_id),
            group=self.get_group(member.group_id) if member.group_id else None
        )

    # Loans

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        loan = self._get(Loan, loan_id)
        return loan if loan and not loan.is_deleted else None

    def loans_for_member(self, member_id: str) -> List[Loan]:
        loans = [l for l in self._find(Loan, member_id=member_id) if not l.is_deleted]
        loans.sort(key=lambda l: (l.application_date, l.loan_code))
        return loans

    def list_loans(self, statuses: Optional[Tuple[LoanStatus, ...]] = None) -> List[Loan]:
        loans = [Loan.from_dict(d) for d in self.storage.load_all(TABLES[Loan])]
        loans = [l for l in loans if not l.is_deleted and (statuses is None or l.status in statuses)]
        loans.sort(key=lambda l: (l.application_date, l.loan_code))
        return loans

    def list_installments(self, loan_id: str) -> List[Installment]:
        installments = [i for i in self._find(Installment, loan_id=loan_id) if not i.is_deleted]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def list_payments(self, loan_id: str) -> List[Payment]:
        payments = self._find(Payment, loan_id=loan_id)
        payments.sort(key=lambda p: (p.payment_date, p.payment_code))
        return payments

    # Ledger

    def get_ledger_account(self, code: str) -> Optional[LedgerAccount]:
        accounts = self._find(LedgerAccount, code=code)
        return accounts[0] if accounts else None

    def list_ledger_accounts(self) -> List[LedgerAccount]:
        accounts = [LedgerAccount.from_dict(d) for d in self.storage.load_all(TABLES[LedgerAccount])]
        accounts.sort(key=lambda a: a.code)
        return accounts

    def list_transactions(self, loan_id: Optional[str] = None) -> List[Transaction]:
        if loan_id is None:
            transactions = [Transaction.from_dict(d) for d in self.storage.load_all(TABLES[Transaction])]
        else:
            transactions = self._find(Transaction, loan_id=loan_id)
        transactions.sort(key=lambda t: t.transaction_code)
        return transactions

    # Savings

    def get_savings_account(self, account_id: str) -> Optional[SavingsAccount]:
        return self._get(SavingsAccount, account_id)

    def savings_account_for_member(self, member_id: str) -> Optional[SavingsAccount]:
        accounts = self._find(SavingsAccount, member_id=member_id)
        return accounts[0] if accounts else None

    def list_savings_transactions(self, account_id: str) -> List[SavingsTransaction]:
        entries = self._find(SavingsTransaction, savings_account_id=account_id)
        entries.sort(key=lambda e: (e.transaction_date, e.created_at))
        return entries
