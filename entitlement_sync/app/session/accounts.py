"""
Stored accounts and per-identity session credentials.
"""

import json
from datetime import datetime, timezone
from typing import Callable, List, Optional

import jwt
from pydantic import BaseModel, ValidationError

from shared.logging import get_logger
from ..cache.local_cache import entitlement_namespace, redemption_namespace
from ..cache.store import KeyValueStore
from ..ids import require_identity
from ..models import utcnow


ACCOUNTS_NAMESPACE = "accounts"
CREDENTIAL_KEY = "session"


def credential_namespace(identity_id: str) -> str:
    return f"credentials:{identity_id}"


class StoredAccount(BaseModel):
    """Entry of the stored-accounts index."""
    user_id: str
    username: str = ""
    last_login: datetime
    auto_login: bool = False


class AccountStore:
    """Keeps one credential per identity so switching back needs no new login."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.logger = get_logger("sync.session.accounts")
        self._clock = clock

    async def remember(self, user_id: str, token: Optional[str], *, username: Optional[str] = None,
                       auto_login: Optional[bool] = None) -> StoredAccount:
        """Persist the credential and move the account to the top of the index."""
        identity = require_identity(user_id)
        now = self._clock()

        if token:
            await self.store.set(
                credential_namespace(identity),
                CREDENTIAL_KEY,
                json.dumps({"token": token, "saved_at": now.isoformat()})
            )

        existing = await self.get_account(identity)
        account = StoredAccount(
            user_id=identity,
            username=username if username is not None else (existing.username if existing else identity),
            last_login=now,
            auto_login=auto_login if auto_login is not None else (existing.auto_login if existing else False)
        )
        await self.store.set(ACCOUNTS_NAMESPACE, identity, account.model_dump_json())
        return account

    async def credential_for(self, user_id: str) -> Optional[str]:
        """Stored token of ``user_id``; expired tokens count as missing."""
        identity = require_identity(user_id)
        raw = await self.store.get(credential_namespace(identity), CREDENTIAL_KEY)
        if raw is None:
            return None

        try:
            token = json.loads(raw)["token"]
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning("Discarding corrupt credential", identity=identity, error=str(e))
            await self.store.clear(credential_namespace(identity))
            return None

        if self._is_expired(token):
            self.logger.info("Stored credential expired", identity=identity)
            await self.store.clear(credential_namespace(identity))
            return None
        return token

    def _is_expired(self, token: str) -> bool:
        try:
            claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
        except jwt.DecodeError:
            # opaque session tokens carry no expiry
            return False
        exp = claims.get("exp")
        if exp is None:
            return False
        return datetime.fromtimestamp(int(exp), tz=timezone.utc) <= self._clock()

    async def get_account(self, user_id: str) -> Optional[StoredAccount]:
        raw = await self.store.get(ACCOUNTS_NAMESPACE, user_id)
        if raw is None:
            return None
        try:
            return StoredAccount.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning("Discarding corrupt account entry", identity=user_id, error=str(e))
            await self.store.delete(ACCOUNTS_NAMESPACE, user_id)
            return None

    async def accounts(self) -> List[StoredAccount]:
        """Stored accounts, most recent login first."""
        accounts = []
        for user_id in (await self.store.items(ACCOUNTS_NAMESPACE)):
            account = await self.get_account(user_id)
            if account is not None:
                accounts.append(account)
        return sorted(accounts, key=lambda account: account.last_login, reverse=True)

    async def set_auto_login(self, user_id: str, enabled: bool) -> bool:
        account = await self.get_account(require_identity(user_id))
        if account is None:
            return False
        account.auto_login = enabled
        return await self.store.set(ACCOUNTS_NAMESPACE, account.user_id, account.model_dump_json())

    async def forget(self, user_id: str) -> None:
        """Remove every persisted record of ``user_id``."""
        identity = require_identity(user_id)
        await self.store.clear(credential_namespace(identity))
        await self.store.clear(entitlement_namespace(identity))
        await self.store.clear(redemption_namespace(identity))
        await self.store.delete(ACCOUNTS_NAMESPACE, identity)
        self.logger.info("Account forgotten", identity=identity)
