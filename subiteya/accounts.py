"""Connected publishing accounts and their OAuth tokens."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from subiteya.crypto import TokenCipher
from subiteya.errors import PreconditionError, TikTokAuthError
from subiteya.models import ExternalAccount, utcnow
from subiteya.tiktok import TikTokClient

logger = logging.getLogger(__name__)

# Refresh slightly before the stored expiry
EXPIRY_SKEW = timedelta(seconds=60)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    # SQLite drops tzinfo
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AccountTokens:
    """Decrypts, refreshes and re-encrypts account tokens."""

    def __init__(
        self,
        session_factory: sessionmaker,
        cipher: TokenCipher,
        client: TikTokClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._client = client
        self._clock = clock

    def get_account(self, account_id: Optional[str]) -> ExternalAccount:
        if not account_id:
            raise PreconditionError("Video has no TikTok account assigned")
        with self._session_factory() as session:
            account = session.get(ExternalAccount, account_id)
        if account is None:
            raise PreconditionError(f"TikTok account {account_id} not found")
        return account

    def create_account(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        display_name: Optional[str] = None,
        open_id: Optional[str] = None,
    ) -> ExternalAccount:
        with self._session_factory() as session:
            account = ExternalAccount(
                user_id=user_id,
                display_name=display_name,
                open_id=open_id,
                access_token_enc=self._cipher.encrypt(access_token),
                refresh_token_enc=self._cipher.encrypt(refresh_token) if refresh_token else None,
                expires_at=self._clock() + timedelta(seconds=expires_in) if expires_in else None,
            )
            session.add(account)
            session.commit()
            return account

    def _is_expired(self, account: ExternalAccount) -> bool:
        expires_at = _as_utc(account.expires_at)
        return expires_at is not None and expires_at - EXPIRY_SKEW <= self._clock()

    def access_token(self, account: ExternalAccount, force_refresh: bool = False) -> str:
        """
        Return a usable access token.

        Refreshes when the stored expiry has passed or when forced (after a
        401 from the platform).
        """
        if not force_refresh and not self._is_expired(account):
            return self._cipher.decrypt(account.access_token_enc)

        if not account.refresh_token_enc:
            if force_refresh:
                raise TikTokAuthError(f"Access token for account {account.id} was rejected and no refresh token is stored")
            logger.warning(f"[TikTok] Token for account {account.id} expired and cannot be refreshed")
            return self._cipher.decrypt(account.access_token_enc)

        reason = "rejected" if force_refresh else "expired"
        logger.info(f"[TikTok] Refreshing {reason} token for account {account.id}")
        refreshed = self._client.refresh_access_token(self._cipher.decrypt(account.refresh_token_enc))

        with self._session_factory() as session:
            stored = session.get(ExternalAccount, account.id)
            if stored is None:
                raise PreconditionError(f"TikTok account {account.id} not found")
            stored.access_token_enc = self._cipher.encrypt(refreshed.access_token)
            if refreshed.refresh_token:
                stored.refresh_token_enc = self._cipher.encrypt(refreshed.refresh_token)
            stored.expires_at = self._clock() + timedelta(seconds=refreshed.expires_in)
            session.commit()
            account.access_token_enc = stored.access_token_enc
            account.refresh_token_enc = stored.refresh_token_enc
            account.expires_at = stored.expires_at

        return refreshed.access_token
