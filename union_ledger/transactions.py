"""
Transaction Log Module

Append-only log of monetary events per account. Appending is the only way a
balance-affecting fact enters the system. A transaction is created PENDING
and moves exactly once to COMPLETED or FAILED; completed records and their
effect on balance are immutable, failed records have no effect at all.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    DataIntegrityError, InvalidAmount, InvalidTransactionState, TransactionNotFound
)
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of ledger events"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER_IN = "transfer-in"
    TRANSFER_OUT = "transfer-out"
    LOAN_DISBURSEMENT = "loan-disbursement"
    LOAN_REPAYMENT = "loan-repayment"

    @property
    def is_credit(self) -> bool:
        return self in (
            TransactionType.DEPOSIT,
            TransactionType.TRANSFER_IN,
            TransactionType.LOAN_DISBURSEMENT,
        )


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionMethod(Enum):
    """Payment rail the money moved over"""
    INTERNAL = "internal"
    WAVE = "wave"      # WAVE mobile money
    APS = "aps"        # APS mobile money
    BANK = "bank"      # Bank transfer
    CASH = "cash"


def _parse_enum(enum_cls, value: str, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise DataIntegrityError(f"Unrecognized {field_name} {value!r} in persisted transaction")


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger record. ``amount`` is signed: credits positive,
    debits negative.
    """
    account_id: str
    sequence: int
    transaction_type: TransactionType
    amount: Money
    status: TransactionStatus = TransactionStatus.PENDING
    method: TransactionMethod = TransactionMethod.INTERNAL
    description: str = ""
    related_loan_id: Optional[str] = None
    counterparty_account_id: Optional[str] = None
    transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    settled_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    @property
    def balance_effect(self) -> Money:
        """What this record contributes to the account balance right now"""
        if self.is_completed:
            return self.amount
        return Money.zero(self.amount.currency)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        settled_at = data.get('settled_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            sequence=data['sequence'],
            transaction_type=_parse_enum(TransactionType, data['transaction_type'], "type"),
            amount=Money.from_dict(data['amount']),
            status=_parse_enum(TransactionStatus, data['status'], "status"),
            method=_parse_enum(TransactionMethod, data.get('method', 'internal'), "method"),
            description=data.get('description') or "",
            related_loan_id=data.get('related_loan_id'),
            counterparty_account_id=data.get('counterparty_account_id'),
            transfer_id=data.get('transfer_id'),
            failure_reason=data.get('failure_reason'),
            settled_at=datetime.fromisoformat(settled_at) if settled_at else None,
        )


CompletionListener = Callable[[Transaction], None]


class TransactionLog:
    """
    Append-only transaction log with per-account sequence numbers
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "transactions"
        self.sequences_table = "transaction_sequences"
        self.logger = get_logger("union_ledger.transactions")
        self._listeners: List[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Register a callback invoked with every transaction marked completed"""
        self._listeners.append(listener)

    def append(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Money,
        related_loan_id: Optional[str] = None,
        method: TransactionMethod = TransactionMethod.INTERNAL,
        description: Optional[str] = None,
        counterparty_account_id: Optional[str] = None,
        transfer_id: Optional[str] = None
    ) -> Transaction:
        """
        Append a PENDING transaction for an account

        Args:
            account_id: Account the event belongs to
            transaction_type: Type of event; decides the sign
            amount: Positive magnitude of the event
            related_loan_id: Loan this event services, if any
            method: Payment rail
            description: Free-text description
            counterparty_account_id: Other side of a transfer
            transfer_id: Shared id of both legs of a transfer

        Returns:
            The appended Transaction in PENDING state
        """
        if not amount.is_positive():
            raise InvalidAmount(f"Transaction amount must be positive, got {amount.to_string()}")

        signed = amount if transaction_type.is_credit else -amount
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            sequence = self._next_sequence(account_id)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                sequence=sequence,
                transaction_type=transaction_type,
                amount=signed,
                method=method,
                description=description or transaction_type.value.replace("-", " ").capitalize(),
                related_loan_id=related_loan_id,
                counterparty_account_id=counterparty_account_id,
                transfer_id=transfer_id,
            )
            self._save(transaction)

        log_action(
            self.logger, "debug", f"Transaction appended: {transaction_type.value}",
            action="append_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account_id,
                "sequence": sequence,
                "amount": signed.to_string(),
                "method": method.value,
                "related_loan_id": related_loan_id,
            }
        )
        return transaction

    def mark_completed(self, transaction_id: str) -> Transaction:
        """
        Move a PENDING transaction to COMPLETED

        Raises:
            TransactionNotFound: If the id is unknown
            InvalidTransactionState: If the transaction is already terminal
        """
        with self.storage.atomic():
            transaction = self._transition(transaction_id, TransactionStatus.COMPLETED)
            for listener in self._listeners:
                listener(transaction)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_COMPLETED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "account_id": transaction.account_id,
                    "sequence": transaction.sequence,
                    "type": transaction.transaction_type.value,
                    "amount": transaction.amount.to_string(),
                    "related_loan_id": transaction.related_loan_id,
                }
            )
        return transaction

    def mark_failed(self, transaction_id: str, reason: str) -> Transaction:
        """
        Move a PENDING transaction to FAILED; it never affects the balance

        Raises:
            TransactionNotFound: If the id is unknown
            InvalidTransactionState: If the transaction is already terminal
        """
        with self.storage.atomic():
            transaction = self._transition(transaction_id, TransactionStatus.FAILED, reason)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_FAILED,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={"account_id": transaction.account_id, "reason": reason}
            )
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def list_for_account(
        self,
        account_id: str,
        status: Optional[TransactionStatus] = None
    ) -> List[Transaction]:
        """All transactions of an account in sequence order"""
        filters: Dict[str, Any] = {"account_id": account_id}
        if status:
            filters["status"] = status.value
        transactions = [
            Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)
        ]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def completed_sum(self, account_id: str, currency: Currency) -> Money:
        """Signed sum of the account's completed transactions"""
        total = Money.zero(currency)
        for transaction in self.list_for_account(account_id, TransactionStatus.COMPLETED):
            total = total + transaction.amount
        return total

    def last_sequence(self, account_id: str) -> int:
        data = self.storage.load(self.sequences_table, account_id)
        return data["last_sequence"] if data else 0

    def _next_sequence(self, account_id: str) -> int:
        sequence = self.last_sequence(account_id) + 1
        self.storage.save(
            self.sequences_table, account_id,
            {"id": account_id, "account_id": account_id, "last_sequence": sequence}
        )
        return sequence

    def _transition(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        reason: Optional[str] = None
    ) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        if not transaction.is_pending:
            raise InvalidTransactionState(
                f"Transaction {transaction_id} is already {transaction.status.value}; "
                f"cannot mark it {new_status.value}"
            )

        now = datetime.now(timezone.utc)
        transaction.status = new_status
        transaction.failure_reason = reason
        transaction.settled_at = now
        transaction.updated_at = now
        self._save(transaction)

        log_action(
            self.logger, "info", f"Transaction {new_status.value}: {transaction.transaction_type.value}",
            action=f"mark_{new_status.value}", resource=f"transaction:{transaction.id}",
            extra={
                "account_id": transaction.account_id,
                "sequence": transaction.sequence,
                "amount": transaction.amount.to_string(),
                "reason": reason,
            }
        )
        return transaction

    def _save(self, transaction: Transaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
