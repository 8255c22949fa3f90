"""Shared fixtures for system-level API and CLI tests."""

import importlib
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from dutystack.api.security import set_rate_limit
from dutystack.config import get_settings


@pytest.fixture()
def system_app(monkeypatch):
    monkeypatch.setenv("DUTYSTACK_API_KEYS", "system-key")
    monkeypatch.setenv("DUTYSTACK_RATE_LIMIT_PER_MINUTE", "100")
    monkeypatch.setenv("DUTYSTACK_CACHE_BACKEND", "memory")
    monkeypatch.delenv("DUTYSTACK_ORACLE_URL", raising=False)
    monkeypatch.delenv("DUTYSTACK_LIVE_RATES_URL", raising=False)
    get_settings.cache_clear()
    set_rate_limit(100)

    import dutystack.api.app as app_mod

    app_mod = importlib.reload(app_mod)
    yield app_mod.app
    get_settings.cache_clear()
    set_rate_limit(None)


@pytest.fixture()
def system_client(system_app) -> Iterator[TestClient]:
    with TestClient(system_app, headers={"X-API-Key": "system-key"}) as client:
        yield client


@pytest.fixture()
def anonymous_client(system_app) -> Iterator[TestClient]:
    with TestClient(system_app) as client:
        yield client
