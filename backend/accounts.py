# backend/accounts.py
import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from db import execute

logger = logging.getLogger(__name__)

CONNECTED_ACCOUNTS_TABLE = os.getenv("CONNECTED_ACCOUNTS_TABLE", "connected_accounts")
CONFLICT_KEY = "user_id,provider,provider_account_id"
PROVIDERS = ("facebook", "instagram")


class AccountStoreError(RuntimeError):
    pass


class AccountNotFoundError(AccountStoreError):
    pass


class TokenExpiredError(AccountStoreError):
    pass


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Timestamp inválido em %s: %s", CONNECTED_ACCOUNTS_TABLE, value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def expiry_from_now(expires_in: int, now: Optional[datetime] = None) -> datetime:
    return (now or _now_utc()) + timedelta(seconds=int(expires_in))


@dataclass
class ConnectedAccount:
    user_id: str
    provider: str
    provider_account_id: str
    access_token: str
    token_expires_at: Optional[datetime] = None
    account_username: Optional[str] = None
    account_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or _now_utc())

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "provider_account_id": self.provider_account_id,
            "access_token": self.access_token,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "account_username": self.account_username or None,
            "account_name": self.account_name or None,
            "profile_picture_url": self.profile_picture_url or None,
            "updated_at": (self.updated_at or _now_utc()).isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ConnectedAccount":
        return cls(
            user_id=row.get("user_id"),
            provider=row.get("provider"),
            provider_account_id=str(row.get("provider_account_id") or ""),
            access_token=row.get("access_token"),
            token_expires_at=parse_timestamp(row.get("token_expires_at")),
            account_username=row.get("account_username"),
            account_name=row.get("account_name"),
            profile_picture_url=row.get("profile_picture_url"),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


class ConnectedAccountStore:
    """Leitura/gravação das credenciais conectadas via cliente Supabase."""

    def __init__(self, client, table: str = CONNECTED_ACCOUNTS_TABLE):
        self.client = client
        self.table = table

    def _require_client(self):
        if self.client is None:
            raise AccountStoreError("Database is not configured")
        return self.client

    def upsert(self, account: ConnectedAccount) -> None:
        client = self._require_client()
        try:
            client.table(self.table).upsert(account.to_row(), on_conflict=CONFLICT_KEY).execute()
        except Exception as err:  # noqa: BLE001
            logger.error(
                "Falha ao salvar conta conectada %s/%s: %s",
                account.provider, account.provider_account_id, err,
            )
            raise AccountStoreError("Failed to save connected account") from err

    def latest_for_user(self, user_id: str) -> ConnectedAccount:
        client = self._require_client()
        try:
            response = (
                client.table(self.table)
                .select("*")
                .eq("user_id", user_id)
                .order("updated_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao buscar conta conectada do usuário %s: %s", user_id, err)
            raise AccountNotFoundError("No connected account found") from err
        rows = getattr(response, "data", None) or []
        if not rows:
            raise AccountNotFoundError("No connected account found")
        return ConnectedAccount.from_row(rows[0])


def get_valid_account(store: ConnectedAccountStore, user_id: str, now: Optional[datetime] = None) -> ConnectedAccount:
    account = store.latest_for_user(user_id)
    if account.is_expired(now):
        # Sem refresh token: o usuário precisa refazer o OAuth.
        logger.info("Token expirado para o usuário %s (%s)", user_id, account.provider)
        raise TokenExpiredError("Token expired. Please reconnect your account.")
    return account


def ensure_connected_accounts_table() -> None:
    execute(
        f"""
        CREATE TABLE IF NOT EXISTS {CONNECTED_ACCOUNTS_TABLE} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            provider TEXT NOT NULL CHECK (provider IN ('facebook', 'instagram')),
            provider_account_id TEXT NOT NULL,
            access_token TEXT NOT NULL,
            token_expires_at TIMESTAMPTZ,
            account_username TEXT,
            account_name TEXT,
            profile_picture_url TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (user_id, provider, provider_account_id)
        );
        """
    )
    execute(
        f"CREATE INDEX IF NOT EXISTS {CONNECTED_ACCOUNTS_TABLE}_user_updated_idx "
        f"ON {CONNECTED_ACCOUNTS_TABLE} (user_id, updated_at DESC);"
    )
