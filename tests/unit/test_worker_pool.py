from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path

from auditflow.core.broker import IMPORT_QUEUE, InMemoryBroker
from auditflow.core.config import Settings
from auditflow.core.storage import LocalFileStorage
from auditflow.main import build_pipeline
from auditflow.services.workers import WorkerPool

from conftest import INVENTORY_CSV


def _wait_for_status(pipeline, job_id: str, status: str, timeout: float = 10.0) -> str:  # type: ignore[no-untyped-def]
    deadline = time.monotonic() + timeout
    current = ""
    while time.monotonic() < deadline:
        current = pipeline.service.get(job_id, 1).status
        if current == status:
            break
        time.sleep(0.05)
    return current


def test_pool_threads_process_jobs_until_stopped(tmp_path: Path) -> None:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'pipeline.db'}",
        redis_enabled_flag=False,
        local_storage_path=str(tmp_path / "storage"),
    )
    pipeline = build_pipeline(
        settings,
        broker=InMemoryBroker(),
        storage=LocalFileStorage(settings.local_storage_path),
    )
    policy = replace(pipeline.policies[IMPORT_QUEUE], concurrency=1)
    pool = WorkerPool(policy, pipeline.broker, pipeline.store, pipeline.runner, poll_timeout=0.05)
    source = pipeline.service.stage_upload(1, "inventory.csv", INVENTORY_CSV)
    job_id = pipeline.service.submit(1, "inventory", "import", source)

    pool.start()
    try:
        assert pool.running
        assert _wait_for_status(pipeline, job_id, "completed") == "completed"
    finally:
        pool.stop(timeout=5.0)

    assert not pool.running
    assert pipeline.service.get(job_id, 1).success_records == 3
    pipeline.engine.dispose()
