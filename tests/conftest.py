"""Fixtures for sync engine tests.

Wires the in-memory fakes from tests/fakes.py into repositories, sheets
and a RetryHandler whose sleep records delays instead of waiting. No
database or Google API is touched.
"""

from __future__ import annotations

import pytest

from src.brokerage.sync.retry import RetryConfig, RetryHandler

from tests.fakes import (
    BUYER_HEADERS,
    SELLER_HEADERS,
    FakeSheetsClient,
    InMemoryEntityRepository,
    InMemoryFailedChangeRepository,
    RecordingSleep,
)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def failed_changes() -> InMemoryFailedChangeRepository:
    return InMemoryFailedChangeRepository()


@pytest.fixture
def retry_handler(sleep, failed_changes) -> RetryHandler:
    """RetryHandler with default backoff, recording sleeps instead of waiting."""
    return RetryHandler(RetryConfig(), failed_changes, sleep=sleep)


@pytest.fixture
def buyer_sheet() -> FakeSheetsClient:
    return FakeSheetsClient(BUYER_HEADERS)


@pytest.fixture
def seller_sheet() -> FakeSheetsClient:
    return FakeSheetsClient(SELLER_HEADERS)


@pytest.fixture
def call_log() -> list:
    return []


@pytest.fixture
def buyer_repository(call_log) -> InMemoryEntityRepository:
    return InMemoryEntityRepository("buyer_number", log=call_log)


@pytest.fixture
def seller_repository(call_log) -> InMemoryEntityRepository:
    return InMemoryEntityRepository(
        "seller_number", key_format=lambda n: f"AA{n:05d}", log=call_log
    )
