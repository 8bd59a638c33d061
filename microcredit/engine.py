"""
Engine Assembly Module

Wires storage, repository, code generation, audit trail, ledger and the
services together.
"""

from datetime import datetime
from typing import Callable, Optional

from .audit import AuditTrail
from .config import MicrocreditConfig, get_config
from .ledger import LedgerPoster, TrialBalance, trial_balance
from .lifecycle import LoanLifecycle
from .logging_config import get_logger, setup_logging
from .members import MemberRegistry
from .reporting import ReportingEngine
from .repository import Repository
from .savings import SavingsManager
from .sequences import CodeGenerator, SequenceAllocator
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface


def storage_from_url(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    ``memory://`` gives InMemoryStorage, ``sqlite:///path/to.db`` (or
    ``sqlite:///:memory:``) gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


class MicrocreditSystem:
    """Microcredit engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[MicrocreditConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        setup_logging(self.config.log_level, log_format=self.config.log_format, log_file=self.config.log_file)
        self.storage = storage or storage_from_url(self.config.database_url)

        self.repository = Repository(self.storage, clock=clock)
        self.codes = CodeGenerator(SequenceAllocator(self.storage))
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = LedgerPoster(self.codes)

        self.members = MemberRegistry(self.repository, self.codes, self.audit_trail)
        self.savings = SavingsManager(self.repository, self.codes, self.ledger, self.audit_trail, self.config)
        self.loans = LoanLifecycle(self.repository, self.codes, self.ledger, self.audit_trail, self.config)
        self.reports = ReportingEngine(self.repository, self.loans.fine_calculator)

        get_logger("microcredit.engine").debug(f"Engine ready on {type(self.storage).__name__}")

    def trial_balance(self) -> TrialBalance:
        return trial_balance(self.repository.list_ledger_accounts())

    def close(self) -> None:
        self.storage.close()
