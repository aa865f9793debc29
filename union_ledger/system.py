"""
Ledger system container: every component wired from configuration
"""

from decimal import Decimal
from typing import Optional

from .config import UnionLedgerConfig, get_config
from .currency import Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .guards import GuardRegistry
from .transactions import TransactionLog
from .accounts import AccountLedger
from .loans import LoanManager
from .imports import BulkTransactionImporter


class LedgerSystem:
    """Ledger, loan engine and importer sharing one storage backend"""

    def __init__(
        self,
        config: Optional[UnionLedgerConfig] = None,
        storage: Optional[StorageInterface] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.guards = GuardRegistry(timeout_seconds=self.config.guard_timeout_seconds)
        self.transaction_log = TransactionLog(self.storage, self.audit_trail)
        self.ledger = AccountLedger(
            self.storage, self.transaction_log, self.audit_trail, self.guards,
            default_currency=Currency.from_code(self.config.default_currency)
        )
        self.loan_manager = LoanManager(
            self.storage, self.ledger, self.audit_trail, self.guards,
            annual_interest_rate=self.config.annual_interest_rate,
            min_amount=Decimal(self.config.loan_min_amount),
            max_amount=Decimal(self.config.loan_max_amount),
            max_term_months=self.config.loan_max_term_months,
            grace_period_days=self.config.loan_grace_period_days
        )
        self.importer = BulkTransactionImporter(
            self.storage, self.ledger, self.loan_manager, self.audit_trail
        )

    def close(self) -> None:
        self.storage.close()
