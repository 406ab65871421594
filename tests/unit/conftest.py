"""Shared fixtures for the pipeline unit tests."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")

import pytest

from auditflow.core.broker import IMPORT_QUEUE, EXPORT_QUEUE, InMemoryBroker
from auditflow.core.config import Settings
from auditflow.core.storage import LocalFileStorage
from auditflow.main import Pipeline, build_pipeline
from auditflow.services.workers import Worker


class FakeClock:
    """Monotonic seconds that only move when a test says so."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeWallClock:
    """Aware UTC datetimes that only move when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.value = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs: float) -> None:
        self.value += timedelta(**kwargs)


INVENTORY_CSV = (
    b"serial_number,brand,model,location\n"
    b"SN-1,Dell,Latitude 7440,HQ\n"
    b"SN-2,HP,EliteBook 840,Lab\n"
    b"SN-3,Lenovo,ThinkPad T14,HQ\n"
)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        redis_enabled_flag=False,
        local_storage_path=str(tmp_path / "storage"),
        progress_flush_every=1,
        error_log_cap=1000,
    )


@pytest.fixture()
def pipeline(settings: Settings, clock: FakeClock, wall_clock: FakeWallClock) -> Pipeline:
    built = build_pipeline(
        settings,
        broker=InMemoryBroker(visibility_timeout=30.0, clock=clock),
        storage=LocalFileStorage(settings.local_storage_path),
        clock=wall_clock,
    )
    yield built
    built.engine.dispose()


@pytest.fixture()
def import_worker(pipeline: Pipeline) -> Worker:
    return Worker(
        pipeline.policies[IMPORT_QUEUE], pipeline.broker, pipeline.store, pipeline.runner
    )


@pytest.fixture()
def export_worker(pipeline: Pipeline) -> Worker:
    return Worker(
        pipeline.policies[EXPORT_QUEUE], pipeline.broker, pipeline.store, pipeline.runner
    )
