"""Worker that retries deposit events whose processing hit an infrastructure failure."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from localdeals_api.core.settings import settings
from localdeals_api.db.types import utcnow
from localdeals_api.models.deposit_event import DepositEvent, DepositEventStatusEnum, fetch_events_for_retry
from localdeals_api.services.payments.deposit_reconciler import DepositReconciler, ReconcileOutcome

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class ReplayLimitExceededError(RuntimeError):
    """Raised when a dead-lettered event is replayed without ``force``."""


class DepositEventReplayWorker:
    """Periodically re-processes deposit events awaiting retry."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        received_grace_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.deposit_replay_interval_seconds
        self._batch_size = batch_size or settings.deposit_replay_batch_size
        self._max_attempts = max_attempts or settings.deposit_event_max_attempts
        self._received_grace_seconds = (
            settings.deposit_event_received_grace_seconds if received_grace_seconds is None else received_grace_seconds
        )
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Deposit replay worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
            max_attempts=self._max_attempts,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Deposit replay worker stopped")

    async def run_once(self, *, now: datetime | None = None) -> Dict[str, int]:
        """Process one batch of due events; one event's failure never stops the batch."""

        moment = now or utcnow()
        summary: Dict[str, int] = {
            "processed": 0,
            "rejected": 0,
            "pending_retry": 0,
            "dead_lettered": 0,
            "failed": 0,
        }

        session = await self._ensure_session()
        async with session as db:
            events = await fetch_events_for_retry(
                db,
                now=moment,
                limit=self._batch_size,
                received_before=moment - timedelta(seconds=self._received_grace_seconds),
            )
            event_ids = [event.id for event in events]
            await db.rollback()

            reconciler = DepositReconciler(db, max_attempts=self._max_attempts)
            for event_id in event_ids:
                try:
                    outcome = await reconciler.process(event_id, now=moment)
                except Exception:
                    await db.rollback()
                    summary["failed"] += 1
                    logger.exception("Deposit event replay failed", event_id=str(event_id))
                    continue
                summary[outcome.status] = summary.get(outcome.status, 0) + 1

        if event_ids:
            logger.info("Deposit replay sweep completed", **summary)
        return summary

    async def replay_event(self, event_id: UUID, *, force: bool = False) -> ReconcileOutcome:
        """Explicitly re-process a single event; dead-lettered events need ``force``."""

        session = await self._ensure_session()
        async with session as db:
            event = await db.get(DepositEvent, event_id)
            if event is None:
                raise ValueError(f"Deposit event {event_id} not found")
            dead_lettered = event.status == DepositEventStatusEnum.DEAD_LETTERED
            if dead_lettered and not force:
                raise ReplayLimitExceededError(f"Replay attempts exhausted for {event_id}")
            # A forced replay gets one more attempt before it is dead-lettered again.
            max_attempts = event.attempts + 1 if dead_lettered else self._max_attempts
            await db.rollback()

            reconciler = DepositReconciler(db, max_attempts=max_attempts)
            return await reconciler.process(event_id)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - keep the loop alive
                logger.exception("Deposit replay iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["DepositEventReplayWorker", "ReplayLimitExceededError"]
