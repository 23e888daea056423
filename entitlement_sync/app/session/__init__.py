"""
Session management package.

Identity switches, logout and the multi-account credential store.
"""

from .accounts import AccountStore, StoredAccount
from .manager import SessionManager, SwitchResult

__all__ = [
    "AccountStore",
    "StoredAccount",
    "SessionManager",
    "SwitchResult",
]
