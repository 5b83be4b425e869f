"""GSuite authentication manager for service account access to Sheets.

Handles credential creation and service instance caching to avoid
redundant credential builds per API request.
"""

from __future__ import annotations

from typing import Any

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = structlog.get_logger(__name__)

# Read/write access to spreadsheets shared with the service account
SHEETS_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
]


class GSuiteAuthManager:
    """Manages Google API authentication with service account credentials.

    Caches service instances per (api, user_email) tuple to avoid
    repeated credential builds and HTTP connection overhead.
    """

    def __init__(
        self,
        service_account_file: str,
        delegated_user_email: str | None = None,
    ) -> None:
        self._service_account_file = service_account_file
        self._delegated_user_email = delegated_user_email
        self._service_cache: dict[str, Any] = {}

    def _build_credentials(
        self,
        user_email: str | None,
        scopes: list[str],
    ) -> service_account.Credentials:
        """Create service account credentials with optional user delegation.

        Args:
            user_email: If provided, applies domain-wide delegation via
                with_subject() so the service account impersonates this user.
            scopes: OAuth2 scopes for the credentials.

        Returns:
            Service account credentials, optionally delegated.
        """
        credentials = service_account.Credentials.from_service_account_file(
            self._service_account_file,
            scopes=scopes,
        )
        if user_email:
            credentials = credentials.with_subject(user_email)
        return credentials

    def get_sheets_service(self) -> Any:
        """Get a cached Sheets API v4 service instance.

        Spreadsheets are shared with the service account directly, so
        delegation is only applied when a delegated user was configured.

        Returns:
            Sheets API Resource object.
        """
        email = self._delegated_user_email
        cache_key = f"sheets:{email or 'service_account'}"

        if cache_key not in self._service_cache:
            logger.info("building_sheets_service", user_email=email)
            credentials = self._build_credentials(email, SHEETS_SCOPES)
            service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
            self._service_cache[cache_key] = service

        return self._service_cache[cache_key]
