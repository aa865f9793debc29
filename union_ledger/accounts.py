"""
Account Ledger Module

Member accounts and their derived balances. A balance is never stored: it is
the signed sum of the account's completed transactions, cached per account
and dropped whenever a new transaction for that account completes.

Every balance-mutating operation runs inside ``mutation()``, which holds the
per-account guards and a storage unit of work, so a check-then-debit can
never interleave with another debit on the same account.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from contextlib import contextmanager
from enum import Enum
import threading
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .guards import GuardRegistry, account_key
from .transactions import (
    Transaction, TransactionLog, TransactionMethod, TransactionStatus, TransactionType
)
from .exceptions import (
    AccountAlreadyExists, AccountInactive, AccountNotFound, CurrencyMismatch,
    DataIntegrityError, InvalidAmount, InvalidTransfer, TransactionNotFound
)
from .logging_config import get_logger, log_action


class AccountState(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"
    DEACTIVATED = "deactivated"  # Never deleted, only switched off


@dataclass
class Account(StorageRecord):
    """Member account; one per owner"""
    owner_id: str
    currency: Currency
    state: AccountState = AccountState.ACTIVE
    deactivation_reason: Optional[str] = None

    def can_transact(self) -> bool:
        return self.state == AccountState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        try:
            state = AccountState(data['state'])
        except ValueError:
            raise DataIntegrityError(f"Unrecognized account state {data['state']!r}")
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            currency=Currency.from_code(data['currency']),
            state=state,
            deactivation_reason=data.get('deactivation_reason'),
        )


class AccountLedger:
    """
    Account ledger over the transaction log
    """

    def __init__(
        self,
        storage: StorageInterface,
        transaction_log: TransactionLog,
        audit_trail: AuditTrail,
        guards: GuardRegistry,
        default_currency: Currency = Currency.GMD
    ):
        self.storage = storage
        self.transaction_log = transaction_log
        self.audit_trail = audit_trail
        self.guards = guards
        self.default_currency = default_currency
        self.table_name = "accounts"
        self.logger = get_logger("union_ledger.accounts")

        self._balance_cache: Dict[str, Money] = {}
        self._generations: Dict[str, int] = {}
        self._cache_lock = threading.Lock()

        transaction_log.add_completion_listener(self._on_transaction_completed)

    # Accounts

    def open_account(
        self,
        owner_id: str,
        currency: Optional[Currency] = None,
        actor_id: Optional[str] = None
    ) -> Account:
        """
        Open the account of a newly registered member

        Raises:
            AccountAlreadyExists: If the owner already has an account
        """
        currency = currency or self.default_currency

        with self.guards.hold(f"owner:{owner_id}"), self.storage.atomic():
            existing = self.find_account_by_owner(owner_id)
            if existing:
                raise AccountAlreadyExists(
                    f"Owner {owner_id} already has account {existing.id}",
                    account_id=existing.id,
                )

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                currency=currency,
            )
            self._save(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={"owner_id": owner_id, "currency": currency.code},
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", "Account opened",
            actor_id=actor_id, action="open_account", resource=f"account:{account.id}",
            extra={"owner_id": owner_id, "currency": currency.code}
        )
        return account

    def get_account(self, account_id: str) -> Account:
        """
        Get account by ID

        Raises:
            AccountNotFound: If the account does not exist
        """
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
        return Account.from_dict(data)

    def find_account_by_owner(self, owner_id: str) -> Optional[Account]:
        matches = self.storage.find(self.table_name, {"owner_id": owner_id})
        if matches:
            return Account.from_dict(matches[0])
        return None

    def deactivate_account(
        self,
        account_id: str,
        reason: str,
        actor_id: Optional[str] = None
    ) -> Account:
        """Switch an account off; it keeps its history but can no longer move money"""
        with self.mutation(account_id):
            account = self._require_active(account_id)
            account.state = AccountState.DEACTIVATED
            account.deactivation_reason = reason
            account.updated_at = datetime.now(timezone.utc)
            self._save(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_DEACTIVATED,
                entity_type="account",
                entity_id=account_id,
                metadata={"reason": reason},
                actor_id=actor_id
            )

        log_action(
            self.logger, "warning", "Account deactivated",
            actor_id=actor_id, action="deactivate_account", resource=f"account:{account_id}",
            extra={"reason": reason}
        )
        return account

    def get_sequence(self, account_id: str) -> int:
        """Sequence number of the last transaction appended for the account"""
        self.get_account(account_id)
        return self.transaction_log.last_sequence(account_id)

    # Balances

    def get_balance(self, account_id: str) -> Money:
        """
        Current balance: the signed sum of completed transactions.

        Recomputed under the account guard when the cached value has been
        invalidated, so it always reflects a consistent snapshot.
        """
        account = self.get_account(account_id)

        with self.guards.hold(account_key(account_id)):
            with self._cache_lock:
                generation = self._generations.get(account_id, 0)
                cached = self._balance_cache.get(account_id)
            if cached is not None:
                return cached

            balance = self.transaction_log.completed_sum(account_id, account.currency)

            with self._cache_lock:
                if self._generations.get(account_id, 0) == generation:
                    self._balance_cache[account_id] = balance
            return balance

    def _invalidate(self, *account_ids: str) -> None:
        with self._cache_lock:
            for account_id in account_ids:
                self._generations[account_id] = self._generations.get(account_id, 0) + 1
                self._balance_cache.pop(account_id, None)

    def _on_transaction_completed(self, transaction: Transaction) -> None:
        # Runs with the caller's guards held; must not take any guard itself.
        self._invalidate(transaction.account_id)

    # Money movement

    @contextmanager
    def mutation(self, *account_ids: str):
        """
        Atomic scope for balance-mutating work on one or more accounts.

        Holds every account guard (in ascending key order) and a storage unit
        of work. If anything escapes the block the unit of work is rolled back
        and the cached balances of the accounts are dropped.
        """
        with self.guards.hold(*(account_key(a) for a in account_ids)):
            try:
                with self.storage.atomic():
                    yield
            except BaseException:
                self._invalidate(*account_ids)
                raise

    def deposit(
        self,
        account_id: str,
        amount: Money,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        related_loan_id: Optional[str] = None,
        description: Optional[str] = None,
        method: TransactionMethod = TransactionMethod.INTERNAL,
        actor_id: Optional[str] = None
    ) -> Transaction:
        """
        Credit an account with a completed transaction

        Args:
            account_id: Account to credit
            amount: Positive amount in the account currency
            transaction_type: A credit type; DEPOSIT or LOAN_DISBURSEMENT
            related_loan_id: Loan the credit belongs to, if any
            description: Free-text description
            method: Payment rail
            actor_id: Caller identity for the audit trail

        Returns:
            The completed Transaction
        """
        if not transaction_type.is_credit:
            raise InvalidAmount(f"{transaction_type.value} is not a credit")

        with self.mutation(account_id):
            account = self._require_active(account_id)
            self._validate_amount(account, amount)

            transaction = self.transaction_log.append(
                account_id, transaction_type, amount, related_loan_id,
                method=method, description=description
            )
            transaction = self.transaction_log.mark_completed(transaction.id)

        log_action(
            self.logger, "info", f"Credited {amount.to_string()}",
            actor_id=actor_id, action=transaction_type.value, resource=f"account:{account_id}",
            extra={"transaction_id": transaction.id, "related_loan_id": related_loan_id}
        )
        return transaction

    def withdraw(
        self,
        account_id: str,
        amount: Money,
        transaction_type: TransactionType = TransactionType.WITHDRAWAL,
        related_loan_id: Optional[str] = None,
        description: Optional[str] = None,
        method: TransactionMethod = TransactionMethod.INTERNAL,
        actor_id: Optional[str] = None
    ) -> Transaction:
        """
        Debit an account with a completed transaction.

        Raises:
            InsufficientFunds: If the amount exceeds the balance; nothing is
                recorded in that case
        """
        if transaction_type.is_credit:
            raise InvalidAmount(f"{transaction_type.value} is not a debit")

        with self.mutation(account_id):
            account = self._require_active(account_id)
            self._validate_amount(account, amount)
            self.get_balance(account_id).subtract(amount)

            transaction = self.transaction_log.append(
                account_id, transaction_type, amount, related_loan_id,
                method=method, description=description
            )
            transaction = self.transaction_log.mark_completed(transaction.id)

        log_action(
            self.logger, "info", f"Debited {amount.to_string()}",
            actor_id=actor_id, action=transaction_type.value, resource=f"account:{account_id}",
            extra={"transaction_id": transaction.id, "related_loan_id": related_loan_id}
        )
        return transaction

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Money,
        description: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Tuple[Transaction, Transaction]:
        """
        Move money between two accounts; both legs complete or neither does

        Returns:
            (outgoing leg, incoming leg)
        """
        if from_account_id == to_account_id:
            raise InvalidTransfer(f"Transfer source and destination are both {from_account_id}")

        transfer_id = str(uuid.uuid4())
        with self.mutation(from_account_id, to_account_id):
            source = self._require_active(from_account_id)
            target = self._require_active(to_account_id)
            self._validate_amount(source, amount)
            self._validate_amount(target, amount)
            self.get_balance(from_account_id).subtract(amount)

            outgoing = self.transaction_log.append(
                from_account_id, TransactionType.TRANSFER_OUT, amount,
                description=description, counterparty_account_id=to_account_id,
                transfer_id=transfer_id
            )
            incoming = self.transaction_log.append(
                to_account_id, TransactionType.TRANSFER_IN, amount,
                description=description, counterparty_account_id=from_account_id,
                transfer_id=transfer_id
            )
            outgoing = self.transaction_log.mark_completed(outgoing.id)
            incoming = self.transaction_log.mark_completed(incoming.id)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="transfer",
                entity_id=transfer_id,
                metadata={
                    "from_account_id": from_account_id,
                    "to_account_id": to_account_id,
                    "amount": amount.to_string(),
                },
                actor_id=actor_id
            )

        log_action(
            self.logger, "info", f"Transferred {amount.to_string()}",
            actor_id=actor_id, action="transfer", resource=f"transfer:{transfer_id}",
            extra={"from_account_id": from_account_id, "to_account_id": to_account_id}
        )
        return outgoing, incoming

    # External rails

    def record_pending_deposit(
        self,
        account_id: str,
        amount: Money,
        method: TransactionMethod,
        description: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> Transaction:
        """Record a deposit that an external rail has yet to confirm; no balance effect"""
        with self.mutation(account_id):
            account = self._require_active(account_id)
            self._validate_amount(account, amount)
            transaction = self.transaction_log.append(
                account_id, TransactionType.DEPOSIT, amount,
                method=method, description=description
            )

        log_action(
            self.logger, "info", f"Pending {method.value} deposit of {amount.to_string()}",
            actor_id=actor_id, action="record_pending_deposit", resource=f"account:{account_id}",
            extra={"transaction_id": transaction.id}
        )
        return transaction

    def settle_pending(self, transaction_id: str, actor_id: Optional[str] = None) -> Transaction:
        """Complete a pending transaction once its rail confirms it"""
        pending = self._require_transaction(transaction_id)
        with self.mutation(pending.account_id):
            self._require_active(pending.account_id)
            if pending.amount.is_negative():
                self.get_balance(pending.account_id).subtract(-pending.amount)
            transaction = self.transaction_log.mark_completed(transaction_id)

        log_action(
            self.logger, "info", "Pending transaction settled",
            actor_id=actor_id, action="settle_pending",
            resource=f"account:{transaction.account_id}",
            extra={"transaction_id": transaction_id, "amount": transaction.amount.to_string()}
        )
        return transaction

    def fail_pending(
        self,
        transaction_id: str,
        reason: str,
        actor_id: Optional[str] = None
    ) -> Transaction:
        """Fail a pending transaction; it never affects the balance"""
        pending = self._require_transaction(transaction_id)
        with self.mutation(pending.account_id):
            transaction = self.transaction_log.mark_failed(transaction_id, reason)

        log_action(
            self.logger, "warning", "Pending transaction failed",
            actor_id=actor_id, action="fail_pending",
            resource=f"account:{transaction.account_id}",
            extra={"transaction_id": transaction_id, "reason": reason}
        )
        return transaction

    def transaction_history(
        self,
        account_id: str,
        status: Optional[TransactionStatus] = None
    ) -> List[Transaction]:
        """All transactions of the account, oldest first"""
        self.get_account(account_id)
        return self.transaction_log.list_for_account(account_id, status)

    # Helpers

    def _require_active(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account.can_transact():
            raise AccountInactive(f"Account {account_id} is deactivated", account_id=account_id)
        return account

    def _require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.transaction_log.get_transaction(transaction_id)
        if not transaction:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction

    def _validate_amount(self, account: Account, amount: Money) -> None:
        if amount.currency != account.currency:
            raise CurrencyMismatch(
                f"Account {account.id} holds {account.currency.code}, "
                f"amount is {amount.currency.code}"
            )
        if not amount.is_positive():
            raise InvalidAmount(f"Amount must be positive, got {amount.to_string()}")

    def _save(self, account: Account) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
