"""Shared test fixtures for the sync backend."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from cache_devices import OwnershipCache
from cache_memory import InMemoryCache
from fakes import DEVICE, NOW, OTHER_DEVICE, OTHER_USER, USER, FakeClock, FakeRepo
from main import create_app
from rate_limit import RateLimiter
from service_sync import SyncService


@pytest.fixture
def repo() -> FakeRepo:
    """Store with two accounts, one active device each."""
    repo = FakeRepo()
    repo.add_user(USER)
    repo.add_user(OTHER_USER)
    repo.add_device(DEVICE, USER)
    repo.add_device(OTHER_DEVICE, OTHER_USER)
    return repo


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryCache:
    return InMemoryCache(default_ttl=300, clock=clock)


@pytest.fixture
def ownership(backend: InMemoryCache, repo: FakeRepo) -> OwnershipCache:
    return OwnershipCache(backend, repo, ttl=300)


@pytest.fixture
def service(repo: FakeRepo, ownership: OwnershipCache) -> SyncService:
    return SyncService(repo, ownership, clock=lambda: NOW)


@pytest.fixture
def client(repo: FakeRepo, backend: InMemoryCache) -> TestClient:
    app = create_app(
        repo=repo,
        cache_backend=backend,
        rate_limiter=RateLimiter(limit=1000, window_seconds=60),
        clock=lambda: NOW,
    )
    return TestClient(app, raise_server_exceptions=False)
