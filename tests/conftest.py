# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures for the policy engine."""

from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from insiderguard.db import Database
from insiderguard.policy_engine import (
    ActionType,
    AuditLedger,
    CacheInvalidator,
    HandlerRegistry,
    InMemoryDirectory,
    PolicyEngineConfig,
    PolicyEngineService,
    PolicyStore,
    ResolvedPolicyCache,
    SubjectAttributes,
)

# Monday, inside business hours
START = datetime(2026, 3, 2, 10, 0, 0)


class FakeClock:
    """Controllable naive-UTC clock injected into every component."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Frozen clock starting Monday 2026-03-02 10:00 UTC."""
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Engine configuration backed by a per-test SQLite file."""
    return PolicyEngineConfig(
        database_url=f"sqlite:///{tmp_path / 'engine.db'}",
        executor_max_workers=2,
        executor_poll_interval_seconds=0.05,
        execution_timeout_seconds=0.5,
    )


@pytest.fixture
def database(config):
    """Initialized database, disposed after the test."""
    db = Database(config.database_url)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def ledger(database, clock):
    return AuditLedger(database, clock=clock)


@pytest.fixture
def cache(config):
    return ResolvedPolicyCache(ttl_seconds=config.cache_ttl_seconds)


@pytest.fixture
def invalidator(cache):
    return CacheInvalidator(cache)


@pytest.fixture
def store(database, ledger, invalidator, config, clock):
    """Policy store wired to the shared cache invalidator."""
    return PolicyStore(database, ledger, invalidator, config=config, clock=clock)


@pytest.fixture
def directory():
    """Directory with one R&D engineer and one finance analyst."""
    return InMemoryDirectory({
        "emp-1": SubjectAttributes(
            subject_id="emp-1", department="R&D", role="engineer",
        ),
        "emp-2": SubjectAttributes(
            subject_id="emp-2", department="Finance", role="analyst",
        ),
    })


@pytest.fixture
def dispatched() -> List[Any]:
    """Dispatches received by the recording handler, in call order."""
    return []


@pytest.fixture
def registry(dispatched):
    """Registry with a recording handler for every built-in action type."""
    registry = HandlerRegistry()

    def record(dispatch) -> Dict[str, Any]:
        dispatched.append(dispatch)
        return {"delivered": True, "record": dispatch.execution_record_id}

    for action_type in ActionType:
        registry.register(action_type.value, record)
    return registry


@pytest.fixture
def service(config, database, directory, registry, clock):
    """Started service without the background executor loop."""
    service = PolicyEngineService(
        config=config,
        directory=directory,
        registry=registry,
        database=database,
        clock=clock,
    )
    service.startup(start_executor=False)
    yield service
    service.shutdown()
