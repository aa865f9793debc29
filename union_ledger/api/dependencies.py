"""
Shared API dependencies: the ledger system and the caller's identity
"""

import threading
from typing import Optional
from fastapi import Header

from ..system import LedgerSystem

_system: Optional[LedgerSystem] = None
_system_lock = threading.Lock()


def get_system() -> LedgerSystem:
    """Ledger system built from configuration on first use"""
    global _system
    with _system_lock:
        if _system is None:
            _system = LedgerSystem()
        return _system


def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """Verified caller identity supplied by the authentication layer"""
    return x_actor_id
