"""
Savings Module

One savings account per member. Every deposit and withdrawal appends a
SavingsTransaction carrying the balance after the movement and posts the
matching ledger entry, all in one unit of work.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .config import MicrocreditConfig, get_config
from .errors import BusinessRuleViolation, NotFoundError, ValidationError, returns_result
from .ledger import LedgerPoster
from .logging_config import get_logger, log_action
from .money import Numeric, ZERO, to_decimal, to_money, format_money
from .sequences import CodeGenerator
from .storage import StorageRecord

if TYPE_CHECKING:
    from .repository import Repository


class SavingsTransactionKind(Enum):
    """Direction of a savings movement"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class SavingsAccount(StorageRecord):
    """Member savings account"""
    account_number: str
    member_id: str
    opening_date: datetime
    balance: Decimal = ZERO
    total_deposits: Decimal = ZERO
    total_withdrawals: Decimal = ZERO
    compulsory_weekly_savings: Decimal = Decimal('20')
    is_active: bool = True
    version: int = 0


@dataclass
class SavingsTransaction(StorageRecord):
    """Immutable savings movement with the balance snapshot after it"""
    savings_account_id: str
    kind: SavingsTransactionKind
    amount: Decimal
    balance_after: Decimal
    transaction_date: datetime
    processed_by: Optional[str] = None
    remarks: Optional[str] = None
    reference: Optional[str] = None
    ledger_transaction_code: Optional[str] = None


class SavingsManager:
    """Opens savings accounts and processes deposits and withdrawals"""

    def __init__(
        self,
        repository: 'Repository',
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
        self.logger = get_logger("microcredit.savings")

    @returns_result
    def open_account(
        self,
        member_id: str,
        compulsory_weekly_savings: Optional[Numeric] = None,
        opened_by: Optional[str] = None
    ) -> SavingsAccount:
        """
        Open the member's savings account

        Args:
            member_id: Member ID
            compulsory_weekly_savings: Weekly savings commitment, defaults to
                the configured amount
            opened_by: Staff ID

        Returns:
            Result with the new SavingsAccount
        """
        if compulsory_weekly_savings is None:
            compulsory_weekly_savings = self.config.default_compulsory_savings
        weekly = to_money(compulsory_weekly_savings)
        if weekly < 0:
            raise ValidationError("Compulsory weekly savings cannot be negative")

        with self.repository.unit_of_work() as uow:
            member = self.repository.get_member(member_id)
            if not member:
                raise NotFoundError("member", member_id)
            if self.repository.savings_account_for_member(member_id):
                raise BusinessRuleViolation("Member already has a savings account")

            account = SavingsAccount(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                account_number=self.codes.savings_account_number(uow.now),
                member_id=member_id,
                opening_date=uow.now,
                compulsory_weekly_savings=weekly
            )
            uow.add(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.SAVINGS_ACCOUNT_OPENED,
                entity_type="savings_account",
                entity_id=account.id,
                metadata={"account_number": account.account_number, "member_id": member_id},
                user_id=opened_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Savings account {account.account_number} opened",
                   user_id=opened_by, action="open_savings_account",
                   resource=f"savings_account:{account.id}")
        return account

    @returns_result
    def deposit(
        self,
        account_id: str,
        amount: Numeric,
        processed_by: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> SavingsTransaction:
        """Deposit into a savings account"""
        return self._move(account_id, amount, SavingsTransactionKind.DEPOSIT, processed_by, remarks)

    @returns_result
    def withdraw(
        self,
        account_id: str,
        amount: Numeric,
        processed_by: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> SavingsTransaction:
        """Withdraw from a savings account; the balance may not go negative"""
        return self._move(account_id, amount, SavingsTransactionKind.WITHDRAWAL, processed_by, remarks)

    def _move(
        self,
        account_id: str,
        amount: Numeric,
        kind: SavingsTransactionKind,
        processed_by: Optional[str],
        remarks: Optional[str]
    ) -> SavingsTransaction:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError(f"{kind.value.capitalize()} amount must be greater than zero")
        amount = to_money(amount)

        with self.repository.unit_of_work() as uow:
            account = self.repository.get_savings_account(account_id)
            if not account:
                raise NotFoundError("savings account", account_id)
            if not account.is_active:
                raise BusinessRuleViolation(f"Savings account {account.account_number} is not active")

            if kind == SavingsTransactionKind.DEPOSIT:
                account.balance += amount
                account.total_deposits += amount
                posting = self.ledger.post_savings_deposit(uow, account, amount, created_by=processed_by)
                event_type = AuditEventType.SAVINGS_DEPOSIT
            else:
                if account.balance < amount:
                    raise BusinessRuleViolation(
                        f"Insufficient balance: available {format_money(account.balance)}, "
                        f"requested {format_money(amount)}"
                    )
                account.balance -= amount
                account.total_withdrawals += amount
                posting = self.ledger.post_savings_withdrawal(uow, account, amount, created_by=processed_by)
                event_type = AuditEventType.SAVINGS_WITHDRAWAL

            uow.register(account)

            entry = SavingsTransaction(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                savings_account_id=account.id,
                kind=kind,
                amount=amount,
                balance_after=account.balance,
                transaction_date=uow.now,
                processed_by=processed_by,
                remarks=remarks,
                reference=account.account_number,
                ledger_transaction_code=posting.transaction_code
            )
            uow.add(entry)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="savings_account",
                entity_id=account.id,
                metadata={"amount": amount, "balance_after": account.balance,
                          "transaction_code": posting.transaction_code},
                user_id=processed_by,
                now=uow.now
            )

        log_action(
            self.logger, "info",
            f"Savings {kind.value} of {format_money(amount)} on {account.account_number}",
            user_id=processed_by,
            action=f"savings_{kind.value}",
            resource=f"savings_account:{account.id}",
            extra={"balance_after": str(entry.balance_after)}
        )
        return entry

    def get_balance(self, account_id: str) -> Decimal:
        """Current balance, zero for an unknown account"""
        account = self.repository.get_savings_account(account_id)
        return account.balance if account else ZERO

    def get_account_for_member(self, member_id: str) -> Optional[SavingsAccount]:
        return self.repository.savings_account_for_member(member_id)

    def get_transactions(self, account_id: str) -> List[SavingsTransaction]:
        """Movements on an account, oldest first"""
        return self.repository.list_savings_transactions(account_id)
