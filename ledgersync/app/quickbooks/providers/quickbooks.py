"""
QuickBooks Online OAuth2 Provider

Intuit uses a standard authorization-code grant. Client credentials are sent
with HTTP Basic auth to the token endpoint; refresh tokens rotate on every
refresh.

Documentation: https://developer.intuit.com/app/developer/qbo/docs/develop/authentication-and-authorization/oauth-2.0
"""

import httpx
import logging
from typing import Dict, Any, Optional
from urllib.parse import urlencode

from ledgersync.config import get_settings
from .base import BaseAccountingProvider

logger = logging.getLogger(__name__)

AUTHORIZATION_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

SCOPES = [
    "com.intuit.quickbooks.accounting",
    "openid",
    "profile",
    "email",
]


class OAuthProviderError(Exception):
    """Raised when Intuit's OAuth endpoints reject a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QuickBooksOAuthProvider(BaseAccountingProvider):
    """
    Intuit OAuth2 integration.

    Uses client_id/client_secret from settings unless given explicitly.
    An httpx transport can be injected for tests.
    """

    name = "quickbooks"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        settings = get_settings()
        self.client_id = client_id if client_id is not None else settings.quickbooks_client_id
        self.client_secret = client_secret if client_secret is not None else settings.quickbooks_client_secret
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            auth=(self.client_id, self.client_secret)
        )

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            'client_id': self.client_id,
            'response_type': 'code',
            'scope': ' '.join(SCOPES),
            'redirect_uri': redirect_uri,
            'state': state,
        }
        return f"{AUTHORIZATION_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                TOKEN_URL,
                data=data,
                headers={'Accept': 'application/json'}
            )

        if response.status_code != 200:
            try:
                error_detail = response.json()
            except ValueError:
                error_detail = {}
            message = error_detail.get('error_description') or error_detail.get('error') or response.text
            logger.error(f"Intuit token endpoint returned {response.status_code}: {message}")
            raise OAuthProviderError(f"Token request failed: {message}", status_code=response.status_code)

        tokens = response.json()
        if not tokens.get('access_token'):
            raise OAuthProviderError("Token response did not contain an access token")
        return tokens

    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Exchange authorization code for the initial token pair.

        Returns:
            {
                'access_token': str,
                'refresh_token': str,
                'expires_in': int (3600 for Intuit),
                'x_refresh_token_expires_in': int,
                'token_type': 'bearer'
            }

        Raises:
            OAuthProviderError: If Intuit rejects the code
        """
        return await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': redirect_uri,
        })

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    async def revoke_token(self, token: str) -> bool:
        async with self._client() as client:
            response = await client.post(
                REVOKE_URL,
                json={'token': token},
                headers={'Accept': 'application/json'}
            )

        if response.status_code != 200:
            raise OAuthProviderError(
                f"Token revocation failed: {response.text}",
                status_code=response.status_code
            )
        return True
