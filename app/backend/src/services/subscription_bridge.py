"""Adapts a live WebSocket connection into an :class:`EventBroker` subscriber."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from app.backend.src.core.errors import AuthError
from app.backend.src.core.security import IdentityResolver
from app.backend.src.schemas.events import JobEvent
from app.backend.src.services.event_broker import EventBroker
from app.backend.src.services.job_store import JobStore

LOGGER = structlog.get_logger(__name__)

CLOSE_UNAUTHORIZED = 4401
CLOSE_NOT_FOUND = 4404

_STOP = object()


def error_message(job_id: str, error: str) -> dict[str, Any]:
    return {"type": "error", "jobId": job_id, "data": {"error": error}}


class SubscriptionBridge:
    """Serves ``/ws/jobs/{job_id}``.

    The broker handler is registered before the snapshot is read, and a
    single writer task drains one queue, so the snapshot is always the
    first message and nothing published after the read is lost.
    """

    def __init__(self, store: JobStore, broker: EventBroker, resolver: IdentityResolver) -> None:
        self.store = store
        self.broker = broker
        self.resolver = resolver

    async def serve(self, websocket: WebSocket, job_id: str) -> None:
        await websocket.accept()

        try:
            identity = await run_in_threadpool(
                self.resolver.resolve,
                websocket.headers.get("authorization"),
                dict(websocket.cookies),
            )
        except AuthError:
            LOGGER.info("subscription_rejected", job_id=job_id, reason="unauthorized")
            await self._reject(websocket, job_id, "Unauthorized", CLOSE_UNAUTHORIZED)
            return

        job = await run_in_threadpool(self.store.get, job_id, identity.organization_id)
        if job is None:
            LOGGER.info(
                "subscription_rejected",
                job_id=job_id,
                organization_id=identity.organization_id,
                reason="not_found",
            )
            await self._reject(websocket, job_id, "Job not found", CLOSE_NOT_FOUND)
            return

        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue[Any] = asyncio.Queue()

        def forward(message: dict[str, Any]) -> None:
            # Broker handlers may run on a pub/sub listener thread.
            loop.call_soon_threadsafe(outbox.put_nowait, message)

        # Redis transports do blocking pub/sub I/O under the broker lock.
        subscription_id = await run_in_threadpool(self.broker.subscribe, job_id, forward)
        LOGGER.info(
            "subscription_opened",
            job_id=job_id,
            subscription_id=subscription_id,
            organization_id=identity.organization_id,
        )
        try:
            snapshot = await run_in_threadpool(self.store.get, job_id, identity.organization_id)
            status = snapshot.status if snapshot is not None else job.status
            await websocket.send_json(JobEvent.status(job_id, status).to_wire())

            writer = asyncio.create_task(self._write(websocket, outbox))
            try:
                await self._read(websocket, outbox)
            finally:
                outbox.put_nowait(_STOP)
                await writer
        finally:
            await run_in_threadpool(self.broker.unsubscribe, subscription_id)
            LOGGER.info("subscription_closed", job_id=job_id, subscription_id=subscription_id)

    async def _read(self, websocket: WebSocket, outbox: asyncio.Queue[Any]) -> None:
        """Answer ``ping`` control messages until the client goes away."""

        while True:
            try:
                message = await websocket.receive_json()
            except WebSocketDisconnect:
                return
            except (KeyError, ValueError):
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                outbox.put_nowait({"type": "pong"})

    async def _write(self, websocket: WebSocket, outbox: asyncio.Queue[Any]) -> None:
        while True:
            message = await outbox.get()
            if message is _STOP:
                return
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as exc:
                LOGGER.debug("subscription_send_failed", error=str(exc))
                return

    @staticmethod
    async def _reject(websocket: WebSocket, job_id: str, error: str, code: int) -> None:
        await websocket.send_json(error_message(job_id, error))
        await websocket.close(code=code)


__all__ = ["CLOSE_NOT_FOUND", "CLOSE_UNAUTHORIZED", "SubscriptionBridge", "error_message"]
