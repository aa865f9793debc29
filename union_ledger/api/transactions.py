"""
Transaction endpoints: lookup and settlement of pending rail deposits
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_actor_id, get_system
from .schemas import FailPendingRequest, transaction_response
from ..exceptions import TransactionNotFound
from ..system import LedgerSystem


router = APIRouter()


@router.get("/{transaction_id}")
def get_transaction(transaction_id: str, system: LedgerSystem = Depends(get_system)):
    transaction = system.transaction_log.get_transaction(transaction_id)
    if not transaction:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    return transaction_response(transaction)


@router.post("/{transaction_id}/settle")
def settle_pending(
    transaction_id: str,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    """Confirm a pending deposit; it now counts towards the balance"""
    return transaction_response(system.ledger.settle_pending(transaction_id, actor_id=actor_id))


@router.post("/{transaction_id}/fail")
def fail_pending(
    transaction_id: str,
    request: FailPendingRequest,
    system: LedgerSystem = Depends(get_system),
    actor_id: Optional[str] = Depends(get_actor_id)
):
    transaction = system.ledger.fail_pending(transaction_id, request.reason, actor_id=actor_id)
    return transaction_response(transaction)
