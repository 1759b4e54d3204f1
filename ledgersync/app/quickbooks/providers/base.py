"""
Abstract base class for accounting platform OAuth providers

Defines the authorization-code grant operations the token manager relies on.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any


class BaseAccountingProvider(ABC):
    """
    Abstract base class for accounting platform OAuth providers.

    The token manager only talks to the platform's OAuth endpoints through
    this interface, which keeps it testable with a fake provider.
    """

    name = "base"

    @abstractmethod
    def get_authorization_url(
        self,
        state: str,
        redirect_uri: str
    ) -> str:
        """
        Build the consent URL the user is redirected to.

        Args:
            state: Signed CSRF token that comes back on the callback
            redirect_uri: Registered callback URL

        Returns:
            Full authorization URL
        """
        pass

    @abstractmethod
    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str
    ) -> Dict[str, Any]:
        """
        Trade the callback code for the first token pair.

        Args:
            code: One-time code from the consent redirect
            redirect_uri: Same callback URL that was sent to get_authorization_url

        Returns:
            Token response with access_token, refresh_token, expires_in (seconds)
            and token_type
        """
        pass

    @abstractmethod
    async def refresh_access_token(
        self,
        refresh_token: str
    ) -> Dict[str, Any]:
        """
        Obtain a new token pair.

        Intuit rotates refresh tokens, so callers must store both values
        from the response.

        Returns:
            Dictionary with access_token, refresh_token and expires_in
        """
        pass

    @abstractmethod
    async def revoke_token(
        self,
        token: str
    ) -> bool:
        """
        Revoke a grant (disconnect).

        Returns:
            True if revocation successful
        """
        pass
