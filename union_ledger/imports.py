"""
Bulk Transaction Import Module

Administrative import of deposit, withdrawal and loan-payment rows (typically
from a CSV upload, or a batch of payments collected offline). Each row goes
through the normal ledger or loan operations on its own, so a bad row never
affects the others. Rows that fail validation are skipped,
rows the ledger refuses are recorded as failures, and a summary of the run is
kept in ``import_audit_logs``.
"""

import csv
import io
from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .currency import Money, decimal_from_string
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .loans import LoanManager
from .transactions import TransactionType
from .exceptions import AccountNotFound, InvalidAmount, InvalidImportFile, UnionLedgerError
from .logging_config import get_logger, log_action

REQUIRED_COLUMNS = ("amount", "type")
TARGET_COLUMNS = ("account_id", "owner_id", "loan_id")
ROW_TYPES = {
    "deposit": TransactionType.DEPOSIT,
    "withdrawal": TransactionType.WITHDRAWAL,
    "loan-payment": TransactionType.LOAN_REPAYMENT,
}


class ImportStatus(Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


@dataclass
class ImportReport(StorageRecord):
    """Outcome of one bulk import run"""
    performed_by: str
    file_name: Optional[str]
    record_count: int
    success_count: int
    failure_count: int
    skipped_count: int
    status: ImportStatus
    started_at: datetime
    completed_at: datetime
    failures: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImportReport':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            performed_by=data['performed_by'],
            file_name=data.get('file_name'),
            record_count=data['record_count'],
            success_count=data['success_count'],
            failure_count=data['failure_count'],
            skipped_count=data['skipped_count'],
            status=ImportStatus(data['status']),
            started_at=datetime.fromisoformat(data['started_at']),
            completed_at=datetime.fromisoformat(data['completed_at']),
            failures=data.get('failures') or [],
            skipped=data.get('skipped') or [],
            transaction_ids=data.get('transaction_ids') or [],
        )


class _SkipRow(Exception):
    """Row failed validation before reaching the ledger"""


def parse_csv(text: str) -> List[Dict[str, str]]:
    """
    Read import rows from CSV text.

    The header must name ``amount`` and ``type`` plus at least one of
    ``account_id``, ``owner_id`` or ``loan_id``; ``description`` is optional.

    Raises:
        InvalidImportFile: If required columns are missing
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    headers = [h.strip().lower() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in headers]
    if missing or not set(TARGET_COLUMNS) & set(headers):
        raise InvalidImportFile(
            f"Import file columns {headers} lack {missing or [' or '.join(TARGET_COLUMNS)]}"
        )

    rows = []
    for raw in reader:
        row = {
            (key or "").strip().lower(): (value or "").strip()
            for key, value in raw.items()
            if key is not None
        }
        if any(row.values()):
            rows.append(row)
    return rows


class BulkTransactionImporter:
    """
    Applies bulk rows through the account ledger and the loan manager
    """

    def __init__(self, storage: StorageInterface, ledger: AccountLedger,
                 loan_manager: LoanManager, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.table_name = "import_audit_logs"
        self.logger = get_logger("union_ledger.imports")

    def import_rows(
        self,
        rows: Iterable[Dict[str, Any]],
        performed_by: str,
        file_name: Optional[str] = None
    ) -> ImportReport:
        """
        Apply every row and persist an ImportReport

        Args:
            rows: Dicts with amount, type, an optional description and the
                target: account_id or owner_id for deposits and withdrawals,
                loan_id for loan payments
            performed_by: Identity of the administrator running the import
            file_name: Name of the uploaded file, if any

        Returns:
            The persisted ImportReport
        """
        started_at = datetime.now(timezone.utc)
        record_count = 0
        failures: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        transaction_ids: List[str] = []

        for row_number, row in enumerate(rows, start=1):
            record_count += 1
            try:
                target, amount, transaction_type, description = self._validate_row(row)
            except _SkipRow as e:
                skipped.append({"row": row_number, "reason": str(e)})
                continue

            try:
                transaction_id = self._apply(
                    target, amount, transaction_type, description, performed_by
                )
            except UnionLedgerError as e:
                failures.append({
                    "row": row_number,
                    "loan" if target[0] == "loan_id" else "account": target[1],
                    "reason": e.user_message,
                })
                log_action(
                    self.logger, "warning", f"Import row {row_number} failed",
                    actor_id=performed_by, action="bulk_import_row",
                    extra={"error": type(e).__name__, "detail": str(e)}
                )
                continue
            transaction_ids.append(transaction_id)

        success_count = len(transaction_ids)
        if record_count and not success_count:
            status = ImportStatus.FAILED
        elif failures or skipped:
            status = ImportStatus.COMPLETED_WITH_ERRORS
        else:
            status = ImportStatus.COMPLETED

        now = datetime.now(timezone.utc)
        report = ImportReport(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            performed_by=performed_by,
            file_name=file_name,
            record_count=record_count,
            success_count=success_count,
            failure_count=len(failures),
            skipped_count=len(skipped),
            status=status,
            started_at=started_at,
            completed_at=now,
            failures=failures,
            skipped=skipped,
            transaction_ids=transaction_ids,
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, report.id, report.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.BULK_IMPORT_COMPLETED,
                entity_type="import",
                entity_id=report.id,
                metadata={
                    "file_name": file_name,
                    "record_count": record_count,
                    "success_count": success_count,
                    "failure_count": len(failures),
                    "skipped_count": len(skipped),
                    "status": status.value,
                },
                actor_id=performed_by
            )

        log_action(
            self.logger, "info", f"Bulk import {status.value}",
            actor_id=performed_by, action="bulk_import", resource=f"import:{report.id}",
            extra={
                "file_name": file_name,
                "record_count": record_count,
                "success_count": success_count,
                "failure_count": len(failures),
                "skipped_count": len(skipped),
            }
        )
        return report

    def import_csv(self, text: str, performed_by: str, file_name: Optional[str] = None) -> ImportReport:
        return self.import_rows(parse_csv(text), performed_by, file_name)

    def get_report(self, report_id: str) -> Optional[ImportReport]:
        data = self.storage.load(self.table_name, report_id)
        return ImportReport.from_dict(data) if data else None

    def list_reports(self) -> List[ImportReport]:
        return [ImportReport.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def _validate_row(
        self, row: Dict[str, Any]
    ) -> Tuple[Tuple[str, str], Decimal, TransactionType, Optional[str]]:
        kind = str(row.get("type") or "").strip().lower().replace("_", "-")
        if kind not in ROW_TYPES:
            raise _SkipRow(f"Invalid transaction type '{kind}'")

        if ROW_TYPES[kind] == TransactionType.LOAN_REPAYMENT:
            loan_id = str(row.get("loan_id") or "").strip()
            if not loan_id:
                raise _SkipRow("Missing loan")
            target = ("loan_id", loan_id)
        else:
            account_id = str(row.get("account_id") or "").strip()
            owner_id = str(row.get("owner_id") or "").strip()
            if account_id:
                target = ("account_id", account_id)
            elif owner_id:
                target = ("owner_id", owner_id)
            else:
                raise _SkipRow("Missing account")

        try:
            amount = decimal_from_string(str(row.get("amount") or ""))
        except InvalidAmount:
            raise _SkipRow(f"Invalid amount '{row.get('amount')}'")
        if amount <= 0:
            raise _SkipRow(f"Amount must be positive, got {amount}")

        description = str(row.get("description") or "").strip() or None
        return target, amount, ROW_TYPES[kind], description

    def _resolve_account(self, target: Tuple[str, str]) -> str:
        kind, value = target
        if kind == "account_id":
            return self.ledger.get_account(value).id
        account = self.ledger.find_account_by_owner(value)
        if not account:
            raise AccountNotFound(f"No account for owner {value}", owner_id=value)
        return account.id

    def _apply(self, target: Tuple[str, str], amount: Decimal, transaction_type: TransactionType,
               description: Optional[str], performed_by: str) -> str:
        if transaction_type == TransactionType.LOAN_REPAYMENT:
            # Capped at the payoff amount by the loan manager
            loan = self.loan_manager.get_loan(target[1])
            payment = self.loan_manager.apply_payment(
                loan.id, Money.of(amount, loan.currency), actor_id=performed_by
            )
            return payment.transaction_id

        account_id = self._resolve_account(target)
        account = self.ledger.get_account(account_id)
        money = Money.of(amount, account.currency)
        description = description or f"Bulk {transaction_type.value}"
        if transaction_type == TransactionType.DEPOSIT:
            transaction = self.ledger.deposit(
                account_id, money, description=description, actor_id=performed_by
            )
        else:
            transaction = self.ledger.withdraw(
                account_id, money, description=description, actor_id=performed_by
            )
        return transaction.id
