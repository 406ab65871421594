"""Entrypoint wiring the pipeline and running the worker pools."""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .core.broker import QueueBroker, QueuePolicy, build_broker, default_policies
from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .core.storage import FileStorage, build_storage
from .db import Base, build_engine, build_session_factory
from .services.handlers import default_registry
from .services.job_store import JobRecordStore, utcnow
from .services.pipeline import PipelineService
from .services.registry import HandlerRegistry
from .services.runner import JobRunner
from .services.workers import WorkerPool

LOGGER = structlog.get_logger(__name__)


@dataclass
class Pipeline:
    """Every collaborator of a running pipeline, built once per process."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    broker: QueueBroker
    storage: FileStorage
    registry: HandlerRegistry
    store: JobRecordStore
    runner: JobRunner
    policies: dict[str, QueuePolicy]
    service: PipelineService

    def pools(self, poll_timeout: float = 1.0) -> list[WorkerPool]:
        return [
            WorkerPool(policy, self.broker, self.store, self.runner, poll_timeout=poll_timeout)
            for policy in self.policies.values()
        ]


def build_pipeline(
    settings: Settings | None = None,
    *,
    broker: QueueBroker | None = None,
    storage: FileStorage | None = None,
    registry: HandlerRegistry | None = None,
    clock: Callable[[], datetime] | None = None,
    create_tables: bool = True,
) -> Pipeline:
    """Construct the pipeline from settings; any collaborator can be injected."""

    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    session_factory = build_session_factory(engine)

    broker = broker or build_broker(settings)
    storage = storage or build_storage(settings)
    registry = registry or default_registry(session_factory)
    store = JobRecordStore(
        session_factory,
        export_retention_days=settings.export_retention_days,
        clock=clock or utcnow,
    )
    runner = JobRunner(
        store,
        storage,
        registry,
        error_log_cap=settings.error_log_cap,
        flush_every=settings.progress_flush_every,
    )
    policies = default_policies(settings)
    service = PipelineService(
        store,
        broker,
        storage,
        registry,
        policies,
        max_upload_bytes=settings.max_upload_bytes,
    )
    return Pipeline(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        broker=broker,
        storage=storage,
        registry=registry,
        store=store,
        runner=runner,
        policies=policies,
        service=service,
    )


def run() -> None:
    """Start the import and export worker pools until SIGINT or SIGTERM."""

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    pipeline = build_pipeline(settings)
    pools = pipeline.pools()
    stop = threading.Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        LOGGER.info("shutdown_requested", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    for pool in pools:
        pool.start()
    LOGGER.info(
        "pipeline_workers_running",
        queues={name: policy.concurrency for name, policy in pipeline.policies.items()},
    )
    stop.wait()
    for pool in pools:
        pool.stop(timeout=settings.visibility_timeout_seconds)
    pipeline.engine.dispose()


if __name__ == "__main__":
    run()


__all__ = ["Pipeline", "build_pipeline", "run"]
