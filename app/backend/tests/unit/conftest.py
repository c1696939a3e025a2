"""Shared fixtures: an in-memory job store, broker and dispatcher wired like production."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import Mock

sys.path.append(str(Path(__file__).resolve().parents[4]))

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("AWS_S3_BUCKET", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", "/tmp/docflow-tests")

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.backend.src.core.config import Settings
from app.backend.src.core.container import Services, build_services
from app.backend.src.core.redis_queue import InMemoryDispatchLedger
from app.backend.src.core.security import hash_token
from app.backend.src.core.storage import LocalStorage, job_file_key
from app.backend.src.db import build_engine, build_session_factory, session_scope
from app.backend.src.models import ApiKey, Base, ExtractionSchema, Job, JobStatus, JobType
from app.backend.src.services.dispatcher import QueueDispatcher, RetryPolicy
from app.backend.src.services.event_broker import EventBroker, InMemoryEventTransport
from app.backend.src.services.fetcher import FetchedFile
from app.backend.src.services.job_status import JobStatusService
from app.backend.src.services.job_store import JobStore
from app.backend.src.services.llm import ExtractionResult, GeneratedSchema, TokenUsage
from app.backend.src.services.ocr import OcrResult
from app.backend.src.services.pipeline import JobPipeline
from app.backend.src.services.worker import JobWorker

ORG_ID = "org_test"
USER_ID = "usr_test"
API_KEY = "dfk_test_key"


class FakeOcr:
    """Returns a fixed result, or raises the queued errors first."""

    def __init__(self, result: OcrResult | None = None) -> None:
        self.result = result or OcrResult(markdown="hello", page_count=1)
        self.errors: list[BaseException] = []
        self.calls: list[tuple[bytes, str]] = []

    def parse(self, data: bytes, mime_type: str) -> OcrResult:
        self.calls.append((data, mime_type))
        if self.errors:
            raise self.errors.pop(0)
        return self.result

    def check_health(self) -> bool:
        return True


class FakeLlm:
    model = "test/model"

    def __init__(self) -> None:
        self.data: dict[str, Any] = {"a": 1}
        self.usage = TokenUsage(prompt_tokens=10, completion_tokens=5)
        self.calls: list[dict[str, Any]] = []

    def extract(
        self,
        markdown: str,
        schema: dict[str, Any] | None = None,
        hints: str | None = None,
    ) -> ExtractionResult:
        self.calls.append({"markdown": markdown, "schema": schema, "hints": hints})
        return ExtractionResult(data=self.data, usage=self.usage, model=self.model)

    def generate_schema(self, markdown: str, hints: str | None = None) -> GeneratedSchema:
        self.calls.append({"markdown": markdown, "hints": hints})
        return GeneratedSchema(
            name="Invoice",
            description="Invoice fields",
            json_schema={"type": "object", "properties": {"total": {"type": "number"}}},
        )


class FakeFetcher:
    def __init__(self) -> None:
        self.file = FetchedFile(content=b"%PDF-1.7 remote", content_type="application/pdf", file_name="doc.pdf")
        self.calls: list[str] = []

    def fetch(self, url: str) -> FetchedFile:
        self.calls.append(url)
        return self.file


class EventRecorder:
    def __init__(self, broker: EventBroker) -> None:
        self.broker = broker
        self.received: list[dict[str, Any]] = []
        self.subscriptions: list[str] = []

    def watch(self, job_id: str) -> None:
        self.subscriptions.append(self.broker.subscribe(job_id, self.received.append))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.received if event["type"] == event_type]

    def close(self) -> None:
        for subscription_id in self.subscriptions:
            self.broker.unsubscribe(subscription_id)


JobFactory = Callable[..., Job]
SchemaFactory = Callable[..., ExtractionSchema]


@pytest.fixture()
def engine() -> Iterator[Engine]:
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture()
def transport() -> InMemoryEventTransport:
    return InMemoryEventTransport()


@pytest.fixture()
def broker(transport: InMemoryEventTransport) -> EventBroker:
    return EventBroker(transport)


@pytest.fixture()
def ledger() -> InMemoryDispatchLedger:
    return InMemoryDispatchLedger()


@pytest.fixture()
def celery_app() -> Mock:
    return Mock()


@pytest.fixture()
def dispatcher(celery_app: Mock, ledger: InMemoryDispatchLedger) -> QueueDispatcher:
    return QueueDispatcher(celery_app, ledger, RetryPolicy(max_attempts=3, base_delay=1.0))


@pytest.fixture()
def status_service(store: JobStore, broker: EventBroker) -> JobStatusService:
    return JobStatusService(store, broker)


@pytest.fixture()
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage")


@pytest.fixture()
def ocr() -> FakeOcr:
    return FakeOcr()


@pytest.fixture()
def llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def pipeline(
    store: JobStore,
    status_service: JobStatusService,
    storage: LocalStorage,
    fetcher: FakeFetcher,
    ocr: FakeOcr,
    llm: FakeLlm,
) -> JobPipeline:
    return JobPipeline(store, status_service, storage, fetcher, ocr, llm)


@pytest.fixture()
def worker(
    store: JobStore,
    status_service: JobStatusService,
    pipeline: JobPipeline,
    dispatcher: QueueDispatcher,
) -> JobWorker:
    return JobWorker(store, status_service, pipeline, dispatcher)


@pytest.fixture()
def events(broker: EventBroker) -> Iterator[EventRecorder]:
    """Record every event published for a job: ``events.watch(job_id)`` then read ``events.received``."""

    recorder = EventRecorder(broker)
    yield recorder
    recorder.close()


@pytest.fixture()
def make_job(store: JobStore, storage: LocalStorage) -> JobFactory:
    """Insert a job; uploaded bytes are written to storage unless ``source_url`` is given."""

    def _make(
        job_type: JobType = JobType.PARSE,
        *,
        content: bytes = b"%PDF-1.7 test",
        mime_type: str = "application/pdf",
        source_url: str | None = None,
        schema_id: str | None = None,
        status: JobStatus = JobStatus.PENDING,
        organization_id: str = ORG_ID,
        **fields: Any,
    ) -> Job:
        job = Job(
            organization_id=organization_id,
            user_id=USER_ID,
            type=job_type.value,
            status=status.value,
            file_name="doc.pdf",
            file_size=0 if source_url else len(content),
            mime_type="application/octet-stream" if source_url else mime_type,
            source_url=source_url,
            schema_id=schema_id,
            **fields,
        )
        job = store.insert(job)
        if not source_url:
            key = job_file_key(organization_id, job.id, "doc.pdf")
            storage.put(key, content, mime_type)
            job = store.update_fields(job.id, {"file_key": key})
        return job

    return _make


@pytest.fixture()
def make_schema(store: JobStore) -> SchemaFactory:
    def _make(json_schema: dict[str, Any] | None = None, organization_id: str = ORG_ID) -> ExtractionSchema:
        return store.insert_schema(
            ExtractionSchema(
                organization_id=organization_id,
                user_id=USER_ID,
                name="Test schema",
                json_schema=json_schema or {"type": "object"},
            )
        )

    return _make


@pytest.fixture()
def api_key(session_factory: sessionmaker[Session]) -> str:
    with session_scope(session_factory) as session:
        session.add(
            ApiKey(
                organization_id=ORG_ID,
                user_id=USER_ID,
                name="test key",
                key_hash=hash_token(API_KEY),
            )
        )
    return API_KEY


@pytest.fixture()
def services(
    engine: Engine,
    storage: LocalStorage,
    ledger: InMemoryDispatchLedger,
    transport: InMemoryEventTransport,
    fetcher: FakeFetcher,
    ocr: FakeOcr,
    llm: FakeLlm,
    celery_app: Mock,
) -> Services:
    settings = Settings(_env_file=None, REDIS_ENABLED=False, JOB_MAX_ATTEMPTS=3)
    return build_services(
        settings,
        celery_app,
        engine=engine,
        storage=storage,
        ledger=ledger,
        transport=transport,
        fetcher=fetcher,
        ocr=ocr,
        llm=llm,
    )
