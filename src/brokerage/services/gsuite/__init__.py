"""Google Sheets integration.

Provides service account authentication, a shared request rate limiter
and an async-wrapped Sheets client used by the sync engine.
"""

from src.brokerage.services.gsuite.auth import GSuiteAuthManager
from src.brokerage.services.gsuite.rate_limit import SheetsRateLimiter
from src.brokerage.services.gsuite.sheets import GoogleSheetsClient

__all__ = [
    "GoogleSheetsClient",
    "GSuiteAuthManager",
    "SheetsRateLimiter",
]
