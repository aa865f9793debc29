"""
Account endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_actor_id, get_system
from .schemas import (
    DeactivateAccountRequest, MoneyModel, MoneyMovementRequest, OpenAccountRequest,
    PendingDepositRequest, TransferRequest, account_response, parse_choice,
    transaction_response
)
from ..currency import Currency
from ..exceptions import AccountNotFound
from ..system import LedgerSystem
from ..transactions import TransactionMethod, TransactionStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def open_account(
    request: OpenAccountRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Open the account of a newly registered member"""
    currency = Currency.from_code(request.currency) if request.currency else None
    account = system.ledger.open_account(request.owner_id, currency, actor_id=actor_id)
    return account_response(account, system.ledger.get_balance(account.id))


@router.get("/by-owner/{owner_id}")
def get_account_by_owner(owner_id: str, system: LedgerSystem = Depends(get_system)):
    account = system.ledger.find_account_by_owner(owner_id)
    if not account:
        raise AccountNotFound(f"No account for owner {owner_id}")
    return account_response(account, system.ledger.get_balance(account.id))


@router.get("/{account_id}")
def get_account(account_id: str, system: LedgerSystem = Depends(get_system)):
    """Get account details with current balance"""
    account = system.ledger.get_account(account_id)
    return account_response(account, system.ledger.get_balance(account_id))


@router.get("/{account_id}/balance")
def get_balance(account_id: str, system: LedgerSystem = Depends(get_system)):
    return {
        "account_id": account_id,
        "balance": MoneyModel.from_money(system.ledger.get_balance(account_id)),
        "sequence": system.ledger.get_sequence(account_id),
    }


@router.get("/{account_id}/transactions")
def get_account_transactions(
    account_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    system: LedgerSystem = Depends(get_system)
):
    """Transaction history, oldest first"""
    status_value = parse_choice(TransactionStatus, status_filter, "status") if status_filter else None
    transactions = system.ledger.transaction_history(account_id, status_value)
    return {"transactions": [transaction_response(t) for t in transactions]}


@router.post("/{account_id}/deposit")
def deposit(
    account_id: str,
    request: MoneyMovementRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    account = system.ledger.get_account(account_id)
    transaction = system.ledger.deposit(
        account_id,
        request.amount.to_money(account.currency),
        description=request.description,
        method=parse_choice(TransactionMethod, request.method, "method"),
        actor_id=actor_id
    )
    return {
        "transaction": transaction_response(transaction),
        "balance": MoneyModel.from_money(system.ledger.get_balance(account_id)),
    }


@router.post("/{account_id}/withdraw")
def withdraw(
    account_id: str,
    request: MoneyMovementRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    account = system.ledger.get_account(account_id)
    transaction = system.ledger.withdraw(
        account_id,
        request.amount.to_money(account.currency),
        description=request.description,
        method=parse_choice(TransactionMethod, request.method, "method"),
        actor_id=actor_id
    )
    return {
        "transaction": transaction_response(transaction),
        "balance": MoneyModel.from_money(system.ledger.get_balance(account_id)),
    }


@router.post("/{account_id}/transfer")
def transfer(
    account_id: str,
    request: TransferRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Move money to another member's account"""
    account = system.ledger.get_account(account_id)
    outgoing, incoming = system.ledger.transfer(
        account_id,
        request.to_account_id,
        request.amount.to_money(account.currency),
        description=request.description,
        actor_id=actor_id
    )
    return {
        "transfer_id": outgoing.transfer_id,
        "outgoing": transaction_response(outgoing),
        "incoming": transaction_response(incoming),
        "balance": MoneyModel.from_money(system.ledger.get_balance(account_id)),
    }


@router.post("/{account_id}/pending-deposits", status_code=status.HTTP_201_CREATED)
def record_pending_deposit(
    account_id: str,
    request: PendingDepositRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Record a mobile-money or bank deposit awaiting confirmation"""
    account = system.ledger.get_account(account_id)
    transaction = system.ledger.record_pending_deposit(
        account_id,
        request.amount.to_money(account.currency),
        parse_choice(TransactionMethod, request.method, "method"),
        description=request.description,
        actor_id=actor_id
    )
    return transaction_response(transaction)


@router.post("/{account_id}/deactivate")
def deactivate_account(
    account_id: str,
    request: DeactivateAccountRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    account = system.ledger.deactivate_account(account_id, request.reason, actor_id=actor_id)
    return account_response(account)
