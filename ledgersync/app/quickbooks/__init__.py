"""
QuickBooks Sync Module

Pushes categorized bank statement transactions into QuickBooks Online:
token lifecycle, rate-limited API gateway, entity mapping, transaction
conversion and batched sync jobs.
"""

from .auth_service import TokenManager
from .client import QuickBooksClient
from .encryption import TokenEncryption
from .mapping_service import MappingService
from .oracle import MappingOracle
from .rate_limiter import SlidingWindowRateLimiter
from .sync_service import SyncService

__all__ = [
    'TokenManager',
    'QuickBooksClient',
    'TokenEncryption',
    'MappingService',
    'MappingOracle',
    'SlidingWindowRateLimiter',
    'SyncService',
]
