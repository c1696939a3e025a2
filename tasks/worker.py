"""Celery application factory."""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import Any

import structlog
from celery import Celery, signals
from kombu import Queue

from app.backend.src.core.config import Settings, get_settings
from app.backend.src.core.logging import configure_logging

LOGGER = structlog.get_logger(__name__)
PROJECT_ROOT = Path(__file__).resolve().parents[1]

JOBS_QUEUE = "jobs"

settings = get_settings()


def _resolve_ca_cert_path(path: str | None) -> str | None:
    """Resolve the configured CA certificate path to an absolute path.

    redis-py requires an absolute filesystem path for ``ssl_ca_certs``; a
    project-relative value such as ``certs/redis_ca.pem`` is resolved against
    the project root. When the file is missing we log a warning and fall back
    to the default trust store.
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


def _build_ssl_options(config: Settings) -> dict[str, Any]:
    """Return SSL options for Redis connections."""

    options: dict[str, Any] = {"ssl_cert_reqs": ssl.CERT_REQUIRED}
    resolved_cert = _resolve_ca_cert_path(config.redis_ca_cert_path)
    if resolved_cert:
        options["ssl_ca_certs"] = resolved_cert
    return options


def create_celery(config: Settings) -> Celery:
    """Return the Celery app shared by the API (producer) and the workers."""

    app = Celery("docflow", broker=config.broker_url, backend=config.result_backend)

    celery_conf: dict[str, object] = {
        "include": ["tasks.job_tasks"],
        "task_default_queue": JOBS_QUEUE,
        "task_queues": (Queue(JOBS_QUEUE),),
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        # One job per slot: a slot takes the next message only after the
        # current attempt has finished.
        "worker_concurrency": config.worker_concurrency,
        "worker_prefetch_multiplier": 1,
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "task_soft_time_limit": config.task_soft_time_limit,
        "task_time_limit": config.task_time_limit,
        "result_expires": config.job_retention_success_seconds,
        "broker_transport_options": {
            "global_keyprefix": "docflow-broker:",
            "visibility_timeout": config.task_time_limit * 2,
        },
        "result_backend_transport_options": {
            "global_keyprefix": "docflow-result:",
        },
        "broker_connection_retry_on_startup": True,
    }

    ssl_options = _build_ssl_options(config)
    if config.broker_url.startswith("rediss://"):
        celery_conf["broker_use_ssl"] = ssl_options.copy()
    if config.result_backend.startswith("rediss://"):
        celery_conf["redis_backend_use_ssl"] = ssl_options.copy()

    app.conf.update(**celery_conf)
    return app


def _verify_celery_connectivity(app: Celery) -> None:
    """Fail fast when the broker is unreachable instead of idling with jobs stuck in ``pending``."""

    try:
        with app.connection_for_read() as connection:
            connection.ensure_connection(max_retries=1)
    except Exception as exc:  # pragma: no cover - requires broker connectivity
        LOGGER.error(
            "celery_broker_unavailable",
            broker=settings.broker_url,
            error=str(exc),
        )
        raise


celery = create_celery(settings)

LOGGER.info(
    "celery_bootstrap_ready",
    broker=settings.broker_url,
    backend=settings.result_backend,
    concurrency=settings.worker_concurrency,
)


@signals.setup_logging.connect
def _configure_worker_logging(**_: Any) -> None:
    configure_logging(settings.log_level)


@signals.worker_ready.connect
def _log_worker_configuration(sender: Any | None = None, **_: Any) -> None:
    """Emit structured worker configuration details after startup."""

    app = sender.app if sender is not None else celery
    _verify_celery_connectivity(app)
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
        concurrency=app.conf.worker_concurrency,
        registered_tasks=registered_tasks,
    )


@signals.task_prerun.connect
def _log_task_prerun(
    sender: Any | None = None,
    task_id: str | None = None,
    task: Any | None = None,
    args: tuple[Any, ...] = (),
    kwargs: dict[str, Any] | None = None,
    **_: Any,
) -> None:
    """Log when a task begins execution to help debug queue issues."""

    kwargs = kwargs or {}
    task_name = getattr(task, "name", "")
    if task_name and not task_name.startswith("tasks."):
        return
    LOGGER.info(
        "celery_task_prerun",
        task_id=task_id,
        task_name=task_name or None,
        job_id=kwargs.get("job_id"),
        organization_id=kwargs.get("organization_id"),
    )


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
    if state == "SUCCESS" and isinstance(retval, dict):
        payload["result_keys"] = sorted(retval.keys())

    LOGGER.info("celery_task_postrun", **payload)


__all__ = ["JOBS_QUEUE", "celery", "create_celery"]
