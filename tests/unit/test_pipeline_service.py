"""End-to-end scenarios for submission, workers and polling."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from auditflow.core.broker import EXPORT_QUEUE, IMPORT_QUEUE
from auditflow.core.exceptions import (
    JobNotFound,
    ResultUnavailable,
    RowError,
    StorageError,
    TransientJobError,
    UnknownJobKind,
    UploadRejected,
)
from auditflow.main import Pipeline
from auditflow.services.registry import HandlerRegistry, JobKind
from auditflow.services.progress import ProgressSnapshot
from auditflow.services.runner import AttemptOutcome, JobRunner, OutcomeKind
from auditflow.services.workers import Worker

from conftest import INVENTORY_CSV, FakeClock, FakeWallClock


def _submit_import(pipeline: Pipeline, content: bytes = INVENTORY_CSV, **kwargs) -> str:
    source = pipeline.service.stage_upload(1, "inventory.csv", content)
    return pipeline.service.submit(1, "inventory", "import", source, **kwargs)


def test_clean_import_completes_with_all_rows(pipeline: Pipeline, import_worker: Worker) -> None:
    job_id = _submit_import(pipeline)

    assert pipeline.service.get(job_id, 1).status == "pending"
    outcome = import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert outcome is not None and outcome.kind is OutcomeKind.COMPLETED
    assert job.status == "completed"
    assert job.total_records == 3
    assert job.processed_records == 3
    assert job.success_records == 3
    assert job.error_records == 0
    assert job.error_log == []
    assert job.attempts == 1
    assert job.progress_percent == 100


def test_invalid_row_is_recorded_without_failing_job(
    pipeline: Pipeline, import_worker: Worker
) -> None:
    content = (
        b"serial_number,asset_tag,brand\n"
        b"SN-1,,Dell\n"
        b",,HP\n"
        b"SN-3,,Lenovo\n"
    )
    job_id = _submit_import(pipeline, content)

    import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.success_records == 2
    assert job.error_records == 1
    assert job.processed_records == job.success_records + job.error_records
    assert [entry.row for entry in job.error_log] == [2]
    assert "serial number" in job.error_log[0].message
    assert job.success_rate == 67


def test_duplicate_rows_become_row_errors(pipeline: Pipeline, import_worker: Worker) -> None:
    content = b"serial_number\nSN-1\nSN-1\n"
    job_id = _submit_import(pipeline, content)

    import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.success_records == 1
    assert job.error_log[0].row == 2
    assert "Duplicate" in job.error_log[0].message


def test_unknown_kind_is_rejected_and_recorded_as_failed(pipeline: Pipeline) -> None:
    source = pipeline.service.stage_upload(1, "ships.csv", b"name\nEnterprise\n")

    with pytest.raises(UnknownJobKind) as excinfo:
        pipeline.service.submit(1, "import:spaceships", "import", source)

    job_id = excinfo.value.job_id
    assert job_id is not None
    job = pipeline.service.get(job_id, 1)
    assert job.status == "failed"
    assert job.attempts == 0
    assert job.started_at is None
    assert "spaceships" in (job.last_error or "")
    assert pipeline.broker.stats(IMPORT_QUEUE) == {"waiting": 0, "active": 0, "delayed": 0}


def test_kind_for_the_other_direction_is_unknown(pipeline: Pipeline) -> None:
    with pytest.raises(UnknownJobKind):
        pipeline.service.submit(1, "export:full_audit", "import", None)


def test_transient_failures_retry_with_backoff_then_fail(
    pipeline: Pipeline, clock: FakeClock
) -> None:
    def unavailable(organization_id: int, row: dict) -> None:
        raise TransientJobError("inventory database unavailable")

    registry = HandlerRegistry(
        {JobKind.IMPORT_INVENTORY: unavailable}, {}, require_all=False
    )
    runner = JobRunner(pipeline.store, pipeline.storage, registry)
    worker = Worker(pipeline.policies[IMPORT_QUEUE], pipeline.broker, pipeline.store, runner)
    job_id = _submit_import(pipeline)

    with patch.object(pipeline.broker, "nack", wraps=pipeline.broker.nack) as nack:
        assert worker.process_next().kind is OutcomeKind.TRANSIENT
        assert pipeline.service.get(job_id, 1).status == "pending"
        assert worker.process_next() is None

        clock.advance(2.0)
        assert worker.process_next().kind is OutcomeKind.TRANSIENT
        clock.advance(4.0)
        assert worker.process_next().kind is OutcomeKind.TRANSIENT

    delays = [call.args[1] for call in nack.call_args_list]
    assert delays == [2.0, 4.0]
    assert delays == sorted(delays)

    job = pipeline.service.get(job_id, 1)
    assert job.status == "failed"
    assert job.attempts == 3
    assert job.last_error == "inventory database unavailable"
    assert pipeline.broker.stats(IMPORT_QUEUE) == {"waiting": 0, "active": 0, "delayed": 0}


def test_counters_reset_on_each_attempt(pipeline: Pipeline, clock: FakeClock) -> None:
    calls = {"count": 0}

    def flaky(organization_id: int, row: dict) -> None:
        calls["count"] += 1
        if calls["count"] == 2:
            raise TransientJobError("lock timeout")
        if row["serial_number"] == "SN-3":
            raise RowError("bad row")

    registry = HandlerRegistry({JobKind.IMPORT_INVENTORY: flaky}, {}, require_all=False)
    runner = JobRunner(pipeline.store, pipeline.storage, registry, flush_every=1)
    worker = Worker(pipeline.policies[IMPORT_QUEUE], pipeline.broker, pipeline.store, runner)
    job_id = _submit_import(pipeline)

    worker.process_next()
    clock.advance(2.0)
    worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.attempts == 2
    assert job.processed_records == 3
    assert job.success_records == 2
    assert job.error_records == 1


def test_error_log_is_capped_with_marker(pipeline: Pipeline) -> None:
    def reject(organization_id: int, row: dict) -> None:
        raise RowError(f"rejected {row['serial_number']}")

    registry = HandlerRegistry({JobKind.IMPORT_INVENTORY: reject}, {}, require_all=False)
    runner = JobRunner(pipeline.store, pipeline.storage, registry, error_log_cap=2)
    worker = Worker(pipeline.policies[IMPORT_QUEUE], pipeline.broker, pipeline.store, runner)
    job_id = _submit_import(pipeline)

    worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.error_records == 3
    assert job.errors_omitted == 1
    assert [entry.row for entry in job.error_log] == [1, 2, None]
    assert job.error_log[-1].message == "1 additional errors omitted"


def test_crashed_worker_lease_is_redelivered(
    pipeline: Pipeline, import_worker: Worker, clock: FakeClock
) -> None:
    job_id = _submit_import(pipeline)
    lease = pipeline.broker.dequeue(IMPORT_QUEUE)
    assert lease is not None
    pipeline.store.claim(job_id, lease.attempt)

    clock.advance(pipeline.policies[IMPORT_QUEUE].visibility_timeout + 1)
    outcome = import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert outcome is not None and outcome.kind is OutcomeKind.COMPLETED
    assert job.status == "completed"
    assert job.attempts == 2
    assert job.success_records == 3
    assert pipeline.broker.ack(lease) is False


def test_redelivery_past_attempt_budget_fails_job(
    pipeline: Pipeline, import_worker: Worker, clock: FakeClock
) -> None:
    job_id = _submit_import(pipeline)
    timeout = pipeline.policies[IMPORT_QUEUE].visibility_timeout
    for _ in range(3):
        lease = pipeline.broker.dequeue(IMPORT_QUEUE)
        pipeline.store.claim(job_id, lease.attempt)
        clock.advance(timeout + 1)

    assert import_worker.process_next() is None

    job = pipeline.service.get(job_id, 1)
    assert job.status == "failed"
    assert job.last_error == "Maximum attempts exceeded"


def test_terminal_job_delivery_is_ignored(pipeline: Pipeline, import_worker: Worker) -> None:
    job_id = _submit_import(pipeline)
    import_worker.process_next()
    before = pipeline.service.get(job_id, 1)

    assert pipeline.broker.enqueue(job_id, IMPORT_QUEUE) is True
    assert import_worker.process_next() is None

    after = pipeline.service.get(job_id, 1)
    assert after.status == "completed"
    assert after.attempts == before.attempts
    assert pipeline.store.fail(job_id, "late failure") is False
    assert pipeline.service.get(job_id, 1).status == "completed"


def test_cancel_pending_job_fails_it_immediately(
    pipeline: Pipeline, import_worker: Worker
) -> None:
    job_id = _submit_import(pipeline)

    job = pipeline.service.cancel(job_id, 1)

    assert job.status == "failed"
    assert job.last_error == "cancelled"
    assert import_worker.process_next() is None
    assert pipeline.service.get(job_id, 1).started_at is None


def test_cancel_running_job_stops_between_rows(pipeline: Pipeline) -> None:
    holder: dict[str, str] = {}

    def cancel_on_first_row(organization_id: int, row: dict) -> None:
        if row["serial_number"] == "SN-1":
            pipeline.service.cancel(holder["job_id"], organization_id)

    registry = HandlerRegistry(
        {JobKind.IMPORT_INVENTORY: cancel_on_first_row}, {}, require_all=False
    )
    runner = JobRunner(pipeline.store, pipeline.storage, registry, flush_every=1)
    worker = Worker(pipeline.policies[IMPORT_QUEUE], pipeline.broker, pipeline.store, runner)
    holder["job_id"] = _submit_import(pipeline)

    outcome = worker.process_next()

    job = pipeline.service.get(holder["job_id"], 1)
    assert outcome.kind is OutcomeKind.CANCELLED
    assert job.status == "failed"
    assert job.last_error == "cancelled"
    assert job.processed_records == 1


def test_other_organization_cannot_see_job(pipeline: Pipeline) -> None:
    job_id = _submit_import(pipeline)

    with pytest.raises(JobNotFound):
        pipeline.service.get(job_id, 2)
    with pytest.raises(JobNotFound):
        pipeline.service.cancel(job_id, 2)


def test_upload_over_limit_is_rejected(pipeline: Pipeline) -> None:
    pipeline.service.max_upload_bytes = 10

    with pytest.raises(UploadRejected):
        pipeline.service.stage_upload(1, "inventory.csv", INVENTORY_CSV)


def test_upload_with_unsupported_extension_is_rejected(pipeline: Pipeline) -> None:
    with pytest.raises(UploadRejected):
        pipeline.service.stage_upload(1, "inventory.pdf", b"%PDF-1.4")
    with pytest.raises(UploadRejected):
        pipeline.service.stage_upload(1, "inventory.exe", b"MZ")


def test_corrupt_source_fails_without_retry(pipeline: Pipeline, import_worker: Worker) -> None:
    source = pipeline.service.stage_upload(1, "inventory.json", b"{not json")
    job_id = pipeline.service.submit(1, "import:inventory", "import", source)

    outcome = import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert outcome.kind is OutcomeKind.FATAL
    assert job.status == "failed"
    assert job.attempts == 1
    assert "JSON" in (job.last_error or "")


def test_mapping_config_renames_columns(pipeline: Pipeline, import_worker: Worker) -> None:
    content = b"Hostname,Address\ncore-sw-1,10.0.0.1\nedge-fw,10.0.0.254\n"
    source = pipeline.service.stage_upload(
        1, "devices.csv", content, mapping_config={"Address": "ip_address"}
    )
    job_id = pipeline.service.submit(1, "network_devices", "import", source)

    import_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.success_records == 2


def _seed_inventory(pipeline: Pipeline, import_worker: Worker) -> None:
    _submit_import(pipeline)
    import_worker.process_next()


def test_export_download_until_expiry(
    pipeline: Pipeline,
    import_worker: Worker,
    export_worker: Worker,
    wall_clock: FakeWallClock,
) -> None:
    _seed_inventory(pipeline, import_worker)
    job_id = pipeline.service.submit(
        1, "inventory", "export", {"location": "HQ"}, "csv", name="hq_inventory"
    )

    export_worker.process_next()

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.total_records == 2
    assert job.result is not None
    assert job.result.key.startswith("org-1/exports/")

    download = pipeline.service.download(job_id, 1)
    with download.stream as stream:
        body = stream.read().decode("utf-8")
    assert download.filename == "hq_inventory.csv"
    assert download.content_type == "text/csv"
    assert "SN-1" in body and "SN-2" not in body
    assert pipeline.service.get(job_id, 1).download_count == 1

    wall_clock.advance(days=7)
    pipeline.service.download(job_id, 1).stream.close()

    wall_clock.advance(seconds=1)
    with pytest.raises(ResultUnavailable):
        pipeline.service.download(job_id, 1)


def test_download_before_completion_is_unavailable(pipeline: Pipeline) -> None:
    job_id = pipeline.service.submit(1, "inventory", "export", None, "csv")

    with pytest.raises(ResultUnavailable):
        pipeline.service.download(job_id, 1)


def test_full_audit_export_is_composite_json(
    pipeline: Pipeline, import_worker: Worker, export_worker: Worker
) -> None:
    _seed_inventory(pipeline, import_worker)
    job_id = pipeline.service.submit(1, "full_audit", "export", None, "json")

    export_worker.process_next()

    download = pipeline.service.download(job_id, 1)
    with download.stream as stream:
        payload = json.loads(stream.read())
    assert set(payload["data"]) == {"inventory", "network_devices", "vulnerabilities"}
    assert len(payload["data"]["inventory"]) == 3
    assert payload["export_info"]["record_count"] == 3


def test_unsupported_export_format_fails_job(
    pipeline: Pipeline, export_worker: Worker
) -> None:
    job_id = pipeline.service.submit(1, "inventory", "export", None, "docx")

    outcome = export_worker.process_next()

    assert outcome.kind is OutcomeKind.FATAL
    assert pipeline.service.get(job_id, 1).status == "failed"


def test_priority_orders_delivery(pipeline: Pipeline, export_worker: Worker) -> None:
    low = pipeline.service.submit(1, "inventory", "export", None, "csv", priority="low")
    critical = pipeline.service.submit(
        1, "inventory", "export", None, "csv", priority="critical"
    )

    export_worker.process_next()

    assert pipeline.service.get(critical, 1).status == "completed"
    assert pipeline.service.get(low, 1).status == "pending"


def test_list_jobs_paginates_and_filters(pipeline: Pipeline) -> None:
    for _ in range(3):
        _submit_import(pipeline)
    pipeline.service.submit(1, "inventory", "export", None, "csv")
    pipeline.service.submit(2, "inventory", "export", None, "csv")

    page = pipeline.service.list_jobs(1, direction="import", limit=2)

    assert page.total == 3
    assert page.total_pages == 2
    assert len(page.jobs) == 2
    assert all(job.direction == "import" for job in page.jobs)
    assert pipeline.service.list_jobs(1).total == 4


def test_sweep_expired_removes_records_and_files(
    pipeline: Pipeline,
    import_worker: Worker,
    export_worker: Worker,
    wall_clock: FakeWallClock,
) -> None:
    _seed_inventory(pipeline, import_worker)
    job_id = pipeline.service.submit(1, "inventory", "export", None, "excel")
    export_worker.process_next()
    result_key = pipeline.service.get(job_id, 1).result.key

    assert pipeline.service.sweep_expired() == []

    wall_clock.advance(days=8)
    assert pipeline.service.list_expired() == [job_id]
    assert pipeline.service.sweep_expired() == [job_id]
    assert not pipeline.storage.exists(result_key)
    with pytest.raises(JobNotFound):
        pipeline.service.get(job_id, 1)


def test_queue_stats_reports_each_queue(pipeline: Pipeline) -> None:
    _submit_import(pipeline)

    stats = pipeline.service.queue_stats()

    assert stats[IMPORT_QUEUE]["waiting"] == 1
    assert stats[EXPORT_QUEUE] == {"waiting": 0, "active": 0, "delayed": 0}


def _take_over(pipeline: Pipeline, queue: str, clock: FakeClock):  # type: ignore[no-untyped-def]
    """Claim a job, let its lease expire and claim it again as attempt 2."""

    stale_lease = pipeline.broker.dequeue(queue)
    stale_record = pipeline.store.claim(stale_lease.job_id, stale_lease.attempt)
    clock.advance(pipeline.policies[queue].visibility_timeout + 1)
    current_lease = pipeline.broker.dequeue(queue)
    current_record = pipeline.store.claim(current_lease.job_id, current_lease.attempt)
    assert current_lease.attempt == 2
    return stale_lease, stale_record, current_lease, current_record


def test_expired_attempt_cannot_requeue_job_taken_over(
    pipeline: Pipeline, import_worker: Worker, clock: FakeClock
) -> None:
    job_id = _submit_import(pipeline)
    stale_lease, _, current_lease, current_record = _take_over(pipeline, IMPORT_QUEUE, clock)

    import_worker._apply(
        stale_lease, 3, AttemptOutcome(OutcomeKind.TRANSIENT, error="lock timeout")
    )

    job = pipeline.service.get(job_id, 1)
    assert job.status == "processing"
    assert job.attempts == 2
    assert job.last_error is None

    outcome = pipeline.runner.run(current_record)
    import_worker._apply(current_lease, current_record.max_attempts, outcome)

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.success_records == 3
    assert pipeline.broker.stats(IMPORT_QUEUE) == {"waiting": 0, "active": 0, "delayed": 0}


def test_expired_attempt_cannot_fail_job_taken_over(
    pipeline: Pipeline, import_worker: Worker, clock: FakeClock
) -> None:
    job_id = _submit_import(pipeline)
    stale_lease, _, _, _ = _take_over(pipeline, IMPORT_QUEUE, clock)

    import_worker._apply(stale_lease, 3, AttemptOutcome(OutcomeKind.FATAL, error="boom"))

    assert pipeline.service.get(job_id, 1).status == "processing"
    assert pipeline.store.fail(job_id, "boom", attempt=1) is False
    assert pipeline.store.set_total(job_id, 1, 99) is False
    assert pipeline.store.flush_progress(job_id, 1, ProgressSnapshot(processed=5)) is False
    assert pipeline.store.complete(job_id, 1, ProgressSnapshot()) is False
    job = pipeline.service.get(job_id, 1)
    assert job.status == "processing"
    assert job.processed_records == 0
    assert job.total_records is None


def test_runner_stops_when_record_belongs_to_later_attempt(
    pipeline: Pipeline, clock: FakeClock
) -> None:
    job_id = _submit_import(pipeline)
    _, stale_record, _, _ = _take_over(pipeline, IMPORT_QUEUE, clock)

    outcome = pipeline.runner.run(stale_record)

    assert outcome.kind is OutcomeKind.SUPERSEDED
    assert pipeline.service.get(job_id, 1).success_records == 0


def test_runner_stops_when_lease_cannot_be_extended(pipeline: Pipeline) -> None:
    job_id = _submit_import(pipeline)
    lease = pipeline.broker.dequeue(IMPORT_QUEUE)
    record = pipeline.store.claim(job_id, lease.attempt)

    outcome = pipeline.runner.run(record, heartbeat=lambda: False)

    assert outcome.kind is OutcomeKind.SUPERSEDED
    assert outcome.snapshot.processed == 1
    assert pipeline.service.get(job_id, 1).status == "processing"


def test_result_of_superseded_export_is_removed(
    pipeline: Pipeline, export_worker: Worker, clock: FakeClock
) -> None:
    job_id = pipeline.service.submit(1, "inventory", "export", None, "csv")
    stale_lease = pipeline.broker.dequeue(EXPORT_QUEUE)
    stale_record = pipeline.store.claim(job_id, stale_lease.attempt)
    stale_outcome = pipeline.runner.run(stale_record)
    assert stale_outcome.result is not None
    assert pipeline.storage.exists(stale_outcome.result.key)

    clock.advance(pipeline.policies[EXPORT_QUEUE].visibility_timeout + 1)
    assert export_worker.process_next().kind is OutcomeKind.COMPLETED
    export_worker._apply(stale_lease, stale_record.max_attempts, stale_outcome)

    job = pipeline.service.get(job_id, 1)
    assert job.status == "completed"
    assert job.attempts == 2
    assert job.result.key != stale_outcome.result.key
    assert not pipeline.storage.exists(stale_outcome.result.key)
    assert pipeline.storage.exists(job.result.key)


def test_result_is_removed_when_completion_cannot_be_recorded(
    pipeline: Pipeline, export_worker: Worker
) -> None:
    job_id = pipeline.service.submit(1, "inventory", "export", None, "json")
    stored: list[str] = []
    original_run = pipeline.runner.run

    def run_and_remember(record, heartbeat=None):  # type: ignore[no-untyped-def]
        outcome = original_run(record, heartbeat)
        stored.append(outcome.result.key)
        return outcome

    with patch.object(pipeline.runner, "run", side_effect=run_and_remember), patch.object(
        pipeline.store, "complete", side_effect=TransientJobError("database unavailable")
    ):
        with pytest.raises(TransientJobError):
            export_worker.process_next()

    assert stored and not pipeline.storage.exists(stored[0])
    assert pipeline.service.get(job_id, 1).status == "processing"


def test_sweep_continues_after_storage_failure(
    pipeline: Pipeline, export_worker: Worker, wall_clock: FakeWallClock
) -> None:
    first = pipeline.service.submit(1, "inventory", "export", None, "csv")
    second = pipeline.service.submit(1, "inventory", "export", None, "csv")
    export_worker.process_next()
    export_worker.process_next()
    wall_clock.advance(days=8)

    with patch.object(
        pipeline.storage, "delete", side_effect=[StorageError("Could not delete file"), True]
    ):
        removed = pipeline.service.sweep_expired()

    assert len(removed) == 1
    kept = ({first, second} - set(removed)).pop()
    assert pipeline.service.get(kept, 1).status == "completed"
