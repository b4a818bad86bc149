"""
Strava OAuth token management.

Looks up a user's linked Strava account and hands back a usable access
token, refreshing it against Strava when it has expired.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy.orm import Session, sessionmaker

from ..models import STRAVA_PROVIDER, Account
from .single_flight import SingleFlight

logger = logging.getLogger(__name__)

STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_DEAUTHORIZE_URL = "https://www.strava.com/oauth/deauthorize"


@dataclass
class AccountRecord:
    id: int
    user_id: int
    provider: str
    provider_account_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[int]


@dataclass
class TokenRefreshResult:
    access_token: str
    refresh_token: str
    expires_at: int


@dataclass
class TokenResult:
    access_token: str
    account: AccountRecord


class AccountStore(Protocol):
    def get_account(self, user_id: int, provider: str) -> Optional[AccountRecord]: ...

    def update_tokens(self, account_id: int, access_token: str, refresh_token: str, expires_at: int) -> None: ...

    def delete_account(self, account_id: int) -> None: ...


class SqlAccountStore:
    """AccountStore backed by the SQLAlchemy ``accounts`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get_account(self, user_id: int, provider: str) -> Optional[AccountRecord]:
        db: Session = self._session_factory()
        try:
            account = (
                db.query(Account)
                .filter(Account.user_id == user_id, Account.provider == provider)
                .first()
            )
            if not account:
                return None
            return AccountRecord(
                id=account.id,
                user_id=account.user_id,
                provider=account.provider,
                provider_account_id=account.provider_account_id,
                access_token=account.access_token,
                refresh_token=account.refresh_token,
                expires_at=account.expires_at,
            )
        finally:
            db.close()

    def update_tokens(self, account_id: int, access_token: str, refresh_token: str, expires_at: int) -> None:
        db: Session = self._session_factory()
        try:
            account = db.query(Account).filter(Account.id == account_id).first()
            if not account:
                raise LookupError(f"Account {account_id} disappeared during token refresh")
            account.access_token = access_token
            account.refresh_token = refresh_token
            account.expires_at = expires_at
            db.commit()
        finally:
            db.close()

    def delete_account(self, account_id: int) -> None:
        db: Session = self._session_factory()
        try:
            db.query(Account).filter(Account.id == account_id).delete()
            db.commit()
        finally:
            db.close()


class TokenManager:
    def __init__(self, store: AccountStore, http: httpx.AsyncClient,
                 client_id: str, client_secret: str,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self._http = http
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._refreshes = SingleFlight()

    async def get_valid_access_token(self, user_id: int) -> Optional[TokenResult]:
        """
        Return a valid token for ``user_id`` or None when the user must
        (re)connect Strava. Concurrent calls for the same user share one
        refresh and see the same outcome.
        """
        account = self.store.get_account(user_id, STRAVA_PROVIDER)
        if not account:
            logger.warning(f"No Strava account found for user {user_id}")
            return None

        if not account.access_token:
            logger.error(f"No access token available for user {user_id}")
            return None

        now = int(self._clock())
        if account.expires_at is not None and account.expires_at <= now:
            logger.info(f"Strava token expired for user {user_id} (expires_at={account.expires_at}, now={now}), refreshing")
            return await self._refreshes.run(user_id, lambda: self._refresh_and_store(user_id))

        return TokenResult(access_token=account.access_token, account=account)

    async def _refresh_and_store(self, user_id: int) -> Optional[TokenResult]:
        # Re-read: a refresh that finished just before we got here already rotated the token.
        account = self.store.get_account(user_id, STRAVA_PROVIDER)
        if not account or not account.access_token:
            return None
        if account.expires_at is not None and account.expires_at > int(self._clock()):
            return TokenResult(access_token=account.access_token, account=account)

        refreshed = await self.refresh_access_token(account)
        if not refreshed:
            logger.error(f"Failed to refresh Strava token for user {user_id}")
            return None

        self.store.update_tokens(account.id, refreshed.access_token, refreshed.refresh_token, refreshed.expires_at)
        account.access_token = refreshed.access_token
        account.refresh_token = refreshed.refresh_token
        account.expires_at = refreshed.expires_at
        logger.info(f"Strava token refreshed for user {user_id}")
        return TokenResult(access_token=refreshed.access_token, account=account)

    async def disconnect(self, user_id: int) -> bool:
        """Revoke our Strava access (best effort) and forget the linked account."""
        account = self.store.get_account(user_id, STRAVA_PROVIDER)
        if not account:
            return False

        if account.access_token:
            try:
                response = await self._http.post(
                    STRAVA_DEAUTHORIZE_URL,
                    data={"access_token": account.access_token},
                    timeout=10.0,
                )
                if response.status_code != 200:
                    logger.warning(f"Strava deauthorize returned {response.status_code} for user {user_id}")
            except httpx.HTTPError as e:
                logger.warning(f"Strava deauthorize failed for user {user_id}: {e}")

        self.store.delete_account(account.id)
        logger.info(f"Strava account disconnected for user {user_id}")
        return True

    async def refresh_access_token(self, account: AccountRecord) -> Optional[TokenRefreshResult]:
        if not account.refresh_token:
            logger.error(f"No refresh token available for account {account.id}")
            return None

        try:
            logger.info("Strava API: POST /oauth/token (refresh)")
            response = await self._http.post(
                STRAVA_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": account.refresh_token,
                },
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            logger.error(f"Error refreshing Strava token: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"Strava token refresh failed: {response.status_code} {response.text}")
            return None

        try:
            data = response.json()
            expires_at = data.get("expires_at")
            if expires_at is None:
                expires_at = int(self._clock()) + int(data["expires_in"])
            return TokenRefreshResult(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token") or account.refresh_token,
                expires_at=int(expires_at),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unexpected Strava token refresh payload: {e}")
            return None
