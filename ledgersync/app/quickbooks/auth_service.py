"""
QuickBooks Token Lifecycle

Owns the OAuth2 grant for each (user, QuickBooks company) pair:
- Authorization URL with a signed, short-lived state token
- Code exchange and connection upsert
- Transparent refresh of tokens close to expiry (single-flight per connection)
- Best-effort revocation on disconnect
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, Any, Optional

from jose import JWTError, jwt
from sqlalchemy.orm import Session

from ledgersync.config import get_settings
from ledgersync.app.models import QuickBooksConnection
from .encryption import TokenEncryption
from .errors import ConnectionExpired
from .providers.base import BaseAccountingProvider
from .providers.quickbooks import QuickBooksOAuthProvider

logger = logging.getLogger(__name__)

STATE_PURPOSE = "qbo_oauth"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (sqlite) as UTC so they compare with aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshLocks:
    """Registry of one asyncio.Lock per connection id."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}

    def get(self, connection_id: int) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock


@lru_cache()
def get_refresh_locks() -> RefreshLocks:
    return RefreshLocks()


class TokenManager:
    """
    Connection and token service.

    Callers must ask for a connection right before each remote call and never
    keep one across an await: every refresh rewrites the stored token pair.
    """

    def __init__(
        self,
        db: Session,
        provider: Optional[BaseAccountingProvider] = None,
        encryption: Optional[TokenEncryption] = None,
        refresh_locks: Optional[RefreshLocks] = None
    ):
        """
        Args:
            db: SQLAlchemy database session
            provider: OAuth provider, defaults to QuickBooksOAuthProvider
            encryption: Token cipher, defaults to TokenEncryption()
            refresh_locks: Lock registry, defaults to the process-wide one
        """
        self.db = db
        self.settings = get_settings()
        self.provider = provider or QuickBooksOAuthProvider()
        self.encryption = encryption or TokenEncryption()
        self.refresh_locks = refresh_locks or get_refresh_locks()
        self.refresh_margin = timedelta(minutes=self.settings.token_refresh_margin_minutes)

    # OAuth state

    def create_state(self, user_id: int) -> str:
        payload = {
            'sub': str(user_id),
            'iat': int(utcnow().timestamp()),
            'nonce': secrets.token_urlsafe(16),
            'purpose': STATE_PURPOSE,
        }
        return jwt.encode(payload, self.settings.secret_key, algorithm=self.settings.algorithm)

    def decode_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Return the state payload, or None when the signature or shape is wrong."""
        try:
            payload = jwt.decode(state, self.settings.secret_key, algorithms=[self.settings.algorithm])
        except JWTError:
            return None

        if payload.get('purpose') != STATE_PURPOSE or 'sub' not in payload or 'iat' not in payload:
            return None
        return payload

    def verify_state(self, state: str, user_id: int) -> bool:
        """
        Check that a callback state was issued for this user in the last few minutes.

        Rejects forged tokens, tokens issued to another user, and tokens older
        than oauth_state_max_age_minutes.
        """
        payload = self.decode_state(state)
        if payload is None:
            logger.warning("OAuth state rejected: invalid signature or payload")
            return False

        if payload['sub'] != str(user_id):
            logger.warning(f"OAuth state rejected: issued for user {payload['sub']}, got {user_id}")
            return False

        age = utcnow().timestamp() - int(payload['iat'])
        if age > self.settings.oauth_state_max_age_minutes * 60:
            logger.warning(f"OAuth state rejected: {int(age)}s old")
            return False

        return True

    # Authorization flow

    def begin_authorization(self, user_id: int) -> Dict[str, str]:
        """
        Start the OAuth flow.

        Returns:
            {
                'authorization_url': str,
                'state': str
            }

        Example:
            >>> result = manager.begin_authorization(user.id)
            >>> # Redirect user to result['authorization_url']
        """
        state = self.create_state(user_id)
        url = self.provider.get_authorization_url(state, self.settings.quickbooks_redirect_uri)
        return {'authorization_url': url, 'state': state}

    async def complete_authorization(
        self,
        user_id: int,
        code: str,
        realm_id: str,
        company_name: Optional[str] = None
    ) -> QuickBooksConnection:
        """
        Exchange the callback code and store the grant.

        Re-authorizing the same company updates the existing connection row
        instead of creating a second one.
        """
        tokens = await self.provider.exchange_code_for_token(code, self.settings.quickbooks_redirect_uri)

        connection = self.db.query(QuickBooksConnection).filter(
            QuickBooksConnection.user_id == user_id,
            QuickBooksConnection.company_id == realm_id
        ).first()

        if connection:
            logger.info(f"Re-authorizing QuickBooks connection {connection.id} for realm {realm_id}")
        else:
            connection = QuickBooksConnection(user_id=user_id, company_id=realm_id)
            self.db.add(connection)

        self._store_tokens(connection, tokens)
        if company_name:
            connection.company_name = company_name
        connection.is_active = True
        connection.connection_error = None
        connection.connected_at = utcnow()
        connection.disconnected_at = None

        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"QuickBooks connection {connection.id} active for user {user_id}")
        return connection

    # Connections

    def get_connection(self, user_id: int) -> Optional[QuickBooksConnection]:
        """Most recently connected active connection, without touching tokens."""
        return self.db.query(QuickBooksConnection).filter(
            QuickBooksConnection.user_id == user_id,
            QuickBooksConnection.is_active == True  # noqa: E712
        ).order_by(QuickBooksConnection.connected_at.desc(), QuickBooksConnection.id.desc()).first()

    def needs_refresh(self, connection: QuickBooksConnection) -> bool:
        expires_at = as_utc(connection.token_expires_at)
        if expires_at is None:
            return True
        return expires_at - utcnow() <= self.refresh_margin

    async def get_valid_connection(self, user_id: int) -> Optional[QuickBooksConnection]:
        """
        Active connection whose access token is valid for at least the refresh margin.

        Returns:
            The connection, or None when the user has no active connection

        Raises:
            ConnectionExpired: If the token had to be refreshed and the refresh failed
        """
        connection = self.get_connection(user_id)
        if connection is None:
            return None

        if not self.needs_refresh(connection):
            return connection

        async with self.refresh_locks.get(connection.id):
            # Another caller may have refreshed while we waited for the lock
            self.db.refresh(connection)
            if not connection.is_active:
                raise ConnectionExpired()
            if self.needs_refresh(connection):
                await self._refresh(connection)

        return connection

    async def _refresh(self, connection: QuickBooksConnection) -> None:
        logger.info(f"Refreshing QuickBooks tokens for connection {connection.id}")
        try:
            refresh_token = self.encryption.decrypt(connection.refresh_token)
            if not refresh_token:
                raise ValueError("No refresh token stored")
            tokens = await self.provider.refresh_access_token(refresh_token)
        except Exception as e:
            logger.error(f"Token refresh failed for connection {connection.id}: {e}")
            connection.is_active = False
            connection.connection_error = str(e)
            self.db.commit()
            raise ConnectionExpired() from e

        self._store_tokens(connection, tokens)
        connection.connection_error = None
        self.db.commit()

    def _store_tokens(self, connection: QuickBooksConnection, tokens: Dict[str, Any]) -> None:
        connection.access_token = self.encryption.encrypt(tokens['access_token'])
        if tokens.get('refresh_token'):
            connection.refresh_token = self.encryption.encrypt(tokens['refresh_token'])
        expires_in = int(tokens.get('expires_in') or 3600)
        connection.token_expires_at = utcnow() + timedelta(seconds=expires_in)

    def get_access_token(self, connection: QuickBooksConnection) -> str:
        return self.encryption.decrypt(connection.access_token)

    async def disconnect(self, user_id: int) -> bool:
        """
        Disconnect the user's active QuickBooks company.

        Revocation is best-effort; the connection is marked inactive either way.

        Returns:
            False if there was no active connection
        """
        connection = self.get_connection(user_id)
        if connection is None:
            return False

        try:
            token = self.encryption.decrypt(connection.refresh_token) or self.encryption.decrypt(connection.access_token)
            if token:
                await self.provider.revoke_token(token)
        except Exception as e:
            # Log but don't fail - connection will be marked inactive anyway
            logger.warning(f"Token revocation failed for connection {connection.id}: {e}")

        connection.is_active = False
        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.disconnected_at = utcnow()

        self.db.commit()
        logger.info(f"QuickBooks connection {connection.id} disconnected")
        return True

    def check_connection_status(self, user_id: int) -> Dict[str, Any]:
        connection = self.get_connection(user_id)
        if connection is None:
            return {'connected': False, 'error': 'No active QuickBooks connection'}

        return {
            'connected': True,
            'company_name': connection.company_name,
            'company_id': connection.company_id,
            'connected_at': connection.connected_at,
            'last_synced_at': connection.last_synced_at,
            'expires_at': connection.token_expires_at,
        }

    def update_last_synced(self, connection_id: int) -> None:
        connection = self.db.query(QuickBooksConnection).filter(
            QuickBooksConnection.id == connection_id
        ).first()
        if connection:
            connection.last_synced_at = utcnow()
            self.db.commit()
