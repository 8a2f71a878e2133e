"""Shared fixtures for upload core tests."""

import pytest

from filevault.config import Settings
from filevault.services.cache import CacheService
from filevault.services.chunked_upload import ChunkedUploadService


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Create a controllable clock.

    Returns:
        FakeClock starting at t=1000s.
    """
    return FakeClock()


@pytest.fixture
def settings():
    """Settings built from defaults only.

    Returns:
        Settings instance independent of the process-wide cached one.
    """
    return Settings()


@pytest.fixture
def cache(clock):
    """Cache with a 300s default TTL driven by the fake clock.

    Returns:
        CacheService instance.
    """
    return CacheService(default_ttl=300, cleanup_interval=60, clock=clock)


@pytest.fixture
def uploads(clock):
    """Upload service with a 30 minute session timeout driven by the fake clock.

    Returns:
        ChunkedUploadService instance.
    """
    return ChunkedUploadService(session_timeout=1800, cleanup_interval=300, clock=clock)


@pytest.fixture
def user_a():
    return "user-a"


@pytest.fixture
def user_b():
    return "user-b"
