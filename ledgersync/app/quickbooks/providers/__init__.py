"""
Accounting Provider Implementations

Abstract base class and the Intuit QuickBooks Online OAuth2 implementation.
"""

from .base import BaseAccountingProvider
from .quickbooks import QuickBooksOAuthProvider, OAuthProviderError

__all__ = ['BaseAccountingProvider', 'QuickBooksOAuthProvider', 'OAuthProviderError']
