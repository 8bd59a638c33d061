"""
Double-Entry Ledger Module

Every money movement is one Transaction that debits one account and credits
another by the same amount. Account balances are kept in their natural sign:
debit-normal accounts (assets, expenses) grow on debit, credit-normal
accounts (liabilities, income, equity) grow on credit, so the debit-normal
total always equals the credit-normal total.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .errors import BusinessRuleViolation, ValidationError
from .logging_config import get_logger, log_action
from .money import Numeric, ZERO, to_decimal, to_money, sum_money, format_money
from .sequences import CodeGenerator
from .storage import StorageRecord


class AccountType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance
    INCOME = "income"         # Credit normal balance
    EXPENSE = "expense"       # Debit normal balance


DEBIT_NORMAL = (AccountType.ASSET, AccountType.EXPENSE)


class TransactionType(Enum):
    """Business reason for a posting"""
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_REPAYMENT = "loan_repayment"
    INTEREST_INCOME = "interest_income"
    FINE_COLLECTION = "fine_collection"
    SAVINGS_DEPOSIT = "savings_deposit"
    SAVINGS_WITHDRAWAL = "savings_withdrawal"
    LOAN_WRITE_OFF = "loan_write_off"


# Fixed chart of accounts
CASH = "CASH"
LOAN_RECEIVABLE = "LOAN_RECEIVABLE"
SAVINGS_LIABILITY = "SAVINGS_LIABILITY"
INTEREST_INCOME = "INTEREST_INCOME"
FINE_INCOME = "FINE_INCOME"
LOAN_LOSS_EXPENSE = "LOAN_LOSS_EXPENSE"

CHART: Dict[str, Tuple[str, AccountType]] = {
    CASH: ("Cash in Hand", AccountType.ASSET),
    LOAN_RECEIVABLE: ("Loans Receivable", AccountType.ASSET),
    SAVINGS_LIABILITY: ("Member Savings", AccountType.LIABILITY),
    INTEREST_INCOME: ("Interest Income", AccountType.INCOME),
    FINE_INCOME: ("Fine Income", AccountType.INCOME),
    LOAN_LOSS_EXPENSE: ("Loan Loss Expense", AccountType.EXPENSE),
}


@dataclass
class LedgerAccount(StorageRecord):
    """General ledger account; its balance changes only through postings"""
    code: str
    name: str
    account_type: AccountType
    balance: Decimal = ZERO
    is_active: bool = True
    version: int = 0

    @property
    def is_debit_normal(self) -> bool:
        return self.account_type in DEBIT_NORMAL

    def apply_debit(self, amount: Decimal) -> None:
        self.balance += amount if self.is_debit_normal else -amount

    def apply_credit(self, amount: Decimal) -> None:
        self.balance += -amount if self.is_debit_normal else amount


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger posting"""
    transaction_code: str
    transaction_date: datetime
    transaction_type: TransactionType
    debit_account: str
    credit_account: str
    amount: Decimal
    description: str
    reference: Optional[str] = None
    loan_id: Optional[str] = None
    payment_id: Optional[str] = None
    created_by: Optional[str] = None


class AccountCache:
    """
    Ledger accounts touched by one unit of work, keyed by code.

    An account is loaded (or created from the chart) the first time it is
    referenced and the same instance is returned afterwards, so several
    postings to one account inside a unit of work accumulate on one balance.
    """

    def __init__(self, uow):
        self.uow = uow
        self._accounts: Dict[str, LedgerAccount] = {}

    def get(self, code: str) -> LedgerAccount:
        account = self._accounts.get(code)
        if account is not None:
            return account

        account = self.uow.repository.get_ledger_account(code)
        if account is None:
            if code not in CHART:
                raise ValidationError(f"Unknown ledger account {code}")
            name, account_type = CHART[code]
            account = LedgerAccount(
                id=str(uuid.uuid4()),
                created_at=self.uow.now,
                updated_at=self.uow.now,
                code=code,
                name=name,
                account_type=account_type
            )
            self.uow.add(account)

        self._accounts[code] = account
        return account

    def __contains__(self, code: str) -> bool:
        return code in self._accounts


class LedgerPoster:
    """
    Creates balanced postings inside a unit of work. The caller's unit of
    work persists the touched accounts and commits or rolls back every
    posting together with the business change that caused it.
    """

    def __init__(self, codes: CodeGenerator):
        self.codes = codes
        self.logger = get_logger("microcredit.ledger")

    def post(
        self,
        uow,
        debit_code: str,
        credit_code: str,
        amount: Numeric,
        transaction_type: TransactionType,
        description: str,
        reference: Optional[str] = None,
        loan_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Transaction:
        """
        Post one double-entry transaction

        Args:
            uow: Active unit of work
            debit_code: Chart code of the account to debit
            credit_code: Chart code of the account to credit
            amount: Positive amount
            transaction_type: Business reason
            description: Human-readable description
            reference: Business reference (loan code, account number...)
            loan_id: Related loan
            payment_id: Related payment
            created_by: Staff ID

        Returns:
            The appended Transaction
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Posting amount must be positive")
        if debit_code == credit_code:
            raise ValidationError("Debit and credit accounts must differ")
        amount = to_money(amount)

        debit_account = uow.ledger_accounts.get(debit_code)
        credit_account = uow.ledger_accounts.get(credit_code)
        for account in (debit_account, credit_account):
            if not account.is_active:
                raise BusinessRuleViolation(f"Ledger account {account.code} is inactive")

        debit_account.apply_debit(amount)
        credit_account.apply_credit(amount)
        uow.register(debit_account)
        uow.register(credit_account)

        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=uow.now,
            updated_at=uow.now,
            transaction_code=self.codes.transaction_code(uow.now),
            transaction_date=uow.now,
            transaction_type=transaction_type,
            debit_account=debit_code,
            credit_account=credit_code,
            amount=amount,
            description=description,
            reference=reference,
            loan_id=loan_id,
            payment_id=payment_id,
            created_by=created_by
        )
        uow.add(transaction)

        log_action(
            self.logger, "debug",
            f"Posted {transaction.transaction_code}: Dr {debit_code} / Cr {credit_code} {format_money(amount)}",
            user_id=created_by,
            action="post_transaction",
            resource=f"transaction:{transaction.id}",
            extra={"transaction_type": transaction_type.value, "reference": reference}
        )
        return transaction

    def post_disbursement(self, uow, loan, created_by: Optional[str] = None) -> Transaction:
        """Dr LOAN_RECEIVABLE / Cr CASH for the principal"""
        return self.post(
            uow, LOAN_RECEIVABLE, CASH, loan.loan_amount,
            TransactionType.LOAN_DISBURSEMENT,
            f"Loan disbursement - {loan.loan_code}",
            reference=loan.loan_code,
            loan_id=loan.id,
            created_by=created_by
        )

    def post_repayment(self, uow, loan, payment, created_by: Optional[str] = None) -> List[Transaction]:
        """One posting per nonzero component of the payment"""
        components = [
            (payment.principal_paid, LOAN_RECEIVABLE, TransactionType.LOAN_REPAYMENT, "Principal repayment"),
            (payment.interest_paid, INTEREST_INCOME, TransactionType.INTEREST_INCOME, "Interest collection"),
            (payment.fine_paid, FINE_INCOME, TransactionType.FINE_COLLECTION, "Fine collection"),
        ]

        transactions = []
        for amount, credit_code, transaction_type, label in components:
            if amount > 0:
                transactions.append(self.post(
                    uow, CASH, credit_code, amount, transaction_type,
                    f"{label} - {loan.loan_code}",
                    reference=payment.payment_code,
                    loan_id=loan.id,
                    payment_id=payment.id,
                    created_by=created_by
                ))
        return transactions

    def post_savings_deposit(self, uow, account, amount: Decimal,
                             created_by: Optional[str] = None) -> Transaction:
        """Dr CASH / Cr SAVINGS_LIABILITY"""
        return self.post(
            uow, CASH, SAVINGS_LIABILITY, amount,
            TransactionType.SAVINGS_DEPOSIT,
            f"Savings deposit - {account.account_number}",
            reference=account.account_number,
            created_by=created_by
        )

    def post_savings_withdrawal(self, uow, account, amount: Decimal,
                                created_by: Optional[str] = None) -> Transaction:
        """Dr SAVINGS_LIABILITY / Cr CASH"""
        return self.post(
            uow, SAVINGS_LIABILITY, CASH, amount,
            TransactionType.SAVINGS_WITHDRAWAL,
            f"Savings withdrawal - {account.account_number}",
            reference=account.account_number,
            created_by=created_by
        )

    def post_write_off(self, uow, loan, amount: Decimal,
                       created_by: Optional[str] = None) -> Transaction:
        """Dr LOAN_LOSS_EXPENSE / Cr LOAN_RECEIVABLE for the outstanding principal"""
        return self.post(
            uow, LOAN_LOSS_EXPENSE, LOAN_RECEIVABLE, amount,
            TransactionType.LOAN_WRITE_OFF,
            f"Loan write-off - {loan.loan_code}",
            reference=loan.loan_code,
            loan_id=loan.id,
            created_by=created_by
        )


@dataclass(frozen=True)
class TrialBalance:
    """Debit-normal and credit-normal totals over a set of accounts"""
    debit_total: Decimal
    credit_total: Decimal
    balances: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def difference(self) -> Decimal:
        return self.debit_total - self.credit_total

    @property
    def is_balanced(self) -> bool:
        return self.difference == ZERO


def trial_balance(accounts: List[LedgerAccount]) -> TrialBalance:
    """
    Compute the trial balance

    Args:
        accounts: Every ledger account

    Returns:
        TrialBalance; is_balanced is True when the books are consistent
    """
    debit_total = sum_money(a.balance for a in accounts if a.is_debit_normal)
    credit_total = sum_money(a.balance for a in accounts if not a.is_debit_normal)
    return TrialBalance(
        debit_total=debit_total,
        credit_total=credit_total,
        balances={a.code: a.balance for a in accounts}
    )
