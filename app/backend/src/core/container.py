"""Process-wide wiring of the job-processing services.

Every collaborator is built once from :class:`Settings` and handed to its
consumers by constructor; nothing is created lazily on first use.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from celery import Celery
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.backend.src.db import build_engine, build_session_factory
from app.backend.src.services.dispatcher import QueueDispatcher, RetryPolicy
from app.backend.src.services.event_broker import (
    EventBroker,
    EventTransport,
    InMemoryEventTransport,
    RedisEventTransport,
)
from app.backend.src.services.fetcher import UrlFetcher
from app.backend.src.services.job_service import JobService
from app.backend.src.services.job_status import JobStatusService
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.llm import LlmService, build_llm_client
from app.backend.src.services.ocr import OcrClient
from app.backend.src.services.pipeline import Fetcher, JobPipeline
from app.backend.src.services.subscription_bridge import SubscriptionBridge
from app.backend.src.services.worker import JobWorker

from .config import Settings
from .redis_queue import DispatchLedger, InMemoryDispatchLedger, RedisDispatchLedger, get_redis
from .security import IdentityResolver
from .storage import Storage, build_storage

LOGGER = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    store: JobStore
    storage: Storage
    broker: EventBroker
    dispatcher: QueueDispatcher
    status: JobStatusService
    ocr: OcrClient
    llm: LlmService
    pipeline: JobPipeline
    worker: JobWorker
    job_service: JobService
    resolver: IdentityResolver
    bridge: SubscriptionBridge

    def close(self) -> None:
        self.broker.close()
        self.engine.dispose()


def _build_queue_backends(settings: Settings) -> tuple[DispatchLedger, EventTransport]:
    if not settings.redis_enabled:
        LOGGER.warning(
            "redis_backends_disabled",
            detail="dispatch ledger and job events are process-local",
        )
        return InMemoryDispatchLedger(), InMemoryEventTransport()
    client = get_redis(settings)
    return RedisDispatchLedger(client), RedisEventTransport(client)


def build_services(
    settings: Settings,
    celery_app: Celery,
    *,
    engine: Engine | None = None,
    storage: Storage | None = None,
    ledger: DispatchLedger | None = None,
    transport: EventTransport | None = None,
    fetcher: Fetcher | None = None,
    ocr: OcrClient | None = None,
    llm: LlmService | None = None,
) -> Services:
    """Build the full object graph; keyword arguments replace individual collaborators."""

    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    store = JobStore(session_factory)
    storage = storage or build_storage(settings)

    if ledger is None or transport is None:
        default_ledger, default_transport = _build_queue_backends(settings)
        ledger = ledger or default_ledger
        transport = transport or default_transport
    broker = EventBroker(transport)

    policy = RetryPolicy(
        max_attempts=settings.job_max_attempts,
        base_delay=settings.job_backoff_seconds,
    )
    dispatcher = QueueDispatcher(
        celery_app,
        ledger,
        policy,
        lease_ttl=settings.task_time_limit,
        success_ttl=settings.job_retention_success_seconds,
        failure_ttl=settings.job_retention_failure_seconds,
    )
    status = JobStatusService(store, broker)

    fetcher = fetcher or UrlFetcher(
        timeout=settings.fetch_timeout_seconds,
        max_bytes=settings.fetch_max_bytes,
    )
    ocr = ocr or OcrClient(
        settings.ocr_url,
        timeout=settings.ocr_timeout_seconds,
        retries=settings.ocr_retries,
        retry_delay=settings.ocr_retry_delay_seconds,
    )
    llm = llm or LlmService(
        build_llm_client(
            settings.openai_api_key,
            settings.llm_base_url,
            settings.llm_timeout_seconds,
        ),
        settings.llm_model,
        timeout=settings.llm_timeout_seconds,
    )

    pipeline = JobPipeline(store, status, storage, fetcher, ocr, llm)
    worker = JobWorker(store, status, pipeline, dispatcher)
    job_service = JobService(store, storage, dispatcher, llm)
    resolver = IdentityResolver(session_factory, cookie_name=settings.session_cookie_name)
    bridge = SubscriptionBridge(store, broker, resolver)

    LOGGER.info(
        "services_built",
        redis_enabled=settings.redis_enabled,
        storage=type(storage).__name__,
        max_attempts=policy.max_attempts,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        storage=storage,
        broker=broker,
        dispatcher=dispatcher,
        status=status,
        ocr=ocr,
        llm=llm,
        pipeline=pipeline,
        worker=worker,
        job_service=job_service,
        resolver=resolver,
        bridge=bridge,
    )


__all__ = ["Services", "build_services"]
