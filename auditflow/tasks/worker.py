"""Celery application factory for maintenance tasks."""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import Any

import structlog
from celery import Celery, signals
from kombu import Queue

from ..core.config import get_settings

LOGGER = structlog.get_logger(__name__)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

MAINTENANCE_QUEUE = "maintenance"

settings = get_settings()


def _resolve_ca_cert_path(path: str | None) -> str | None:
    """Resolve the configured CA certificate path to an absolute path.

    redis-py requires an absolute filesystem path for ``ssl_ca_certs``. A missing
    certificate is logged and Python's default trust store is used instead.
    """

    if not path:
        return None

    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate

    if candidate.is_file():
        return str(candidate)

    LOGGER.warning(
        "redis_ca_certificate_missing",
        configured_path=path,
        resolved_path=str(candidate),
    )
    return None


def _build_ssl_options() -> dict[str, Any]:
    options: dict[str, Any] = {"ssl_cert_reqs": ssl.CERT_REQUIRED}
    resolved_cert = _resolve_ca_cert_path(settings.redis_ca_cert_path)
    if resolved_cert:
        options["ssl_ca_certs"] = resolved_cert
    return options


def _verify_celery_connectivity() -> None:
    """Fail fast when the broker cannot be reached."""

    try:
        with celery.connection_for_read() as connection:
            connection.ensure_connection(max_retries=1)
    except Exception as exc:  # pragma: no cover - requires broker connectivity
        LOGGER.error(
            "celery_broker_unavailable",
            broker=settings.broker_url,
            error=str(exc),
        )
        raise


celery = Celery(
    "auditflow",
    broker=settings.broker_url,
    backend=settings.result_backend,
)

celery.conf.update(include=["auditflow.tasks.maintenance"])

celery_conf: dict[str, object] = {
    "task_default_queue": MAINTENANCE_QUEUE,
    "task_queues": (Queue(MAINTENANCE_QUEUE),),
    "task_routes": {"tasks.maintenance.*": {"queue": MAINTENANCE_QUEUE}},
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "worker_prefetch_multiplier": 1,
    "broker_transport_options": {
        "global_keyprefix": f"{settings.redis_key_prefix}-broker:",
    },
    "result_backend_transport_options": {
        "global_keyprefix": f"{settings.redis_key_prefix}-result:",
    },
    "broker_connection_retry_on_startup": True,
}

if settings.broker_url.startswith("rediss://"):
    celery_conf["broker_use_ssl"] = _build_ssl_options()

if settings.result_backend.startswith("rediss://"):
    celery_conf["redis_backend_use_ssl"] = _build_ssl_options()

celery.conf.update(**celery_conf)

LOGGER.info(
    "celery_bootstrap_ready",
    broker=settings.broker_url,
    backend=settings.result_backend,
)


@signals.worker_ready.connect
def _log_worker_configuration(sender: Any | None = None, **_: Any) -> None:
    """Emit structured worker configuration details after startup."""

    app = sender.app if sender is not None else celery
    _verify_celery_connectivity()
    queue_names = sorted(
        getattr(queue, "name", str(queue)) for queue in app.conf.task_queues or []
    )
    registered_tasks = sorted(
        task_name for task_name in app.tasks.keys() if task_name.startswith("tasks.")
    )
    LOGGER.info(
        "celery_worker_configuration",
        default_queue=app.conf.task_default_queue,
        queues=queue_names,
        registered_tasks=registered_tasks,
    )


@signals.task_prerun.connect
def _log_task_prerun(
    sender: Any | None = None,
    task_id: str | None = None,
    task: Any | None = None,
    **_: Any,
) -> None:
    task_name = getattr(task, "name", "")
    if task_name and not task_name.startswith("tasks."):
        return
    LOGGER.info("celery_task_prerun", task_id=task_id, task_name=task_name or None)


@signals.task_postrun.connect
def _log_task_postrun(
    sender: Any | None = None,
    task_id: str | None = None,
    task: Any | None = None,
    retval: Any | None = None,
    state: str | None = None,
    **_: Any,
) -> None:
    """Emit completion information after a task finishes."""

    payload: dict[str, Any] = {
        "task_id": task_id,
        "task_name": getattr(task, "name", None),
        "state": state,
    }
    task_name = payload["task_name"] or ""
    if task_name and not task_name.startswith("tasks."):
        return
    if state == "SUCCESS":
        if isinstance(retval, dict):
            payload["result_keys"] = sorted(retval.keys())
        else:
            payload["result_repr"] = repr(retval)

    LOGGER.info("celery_task_postrun", **payload)


__all__ = ["MAINTENANCE_QUEUE", "celery"]
