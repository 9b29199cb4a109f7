"""Dispatch loop and per-job processing against the external analysis provider."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

import aiohttp
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.logging import get_logger
from app.domain.queue.errors import ProviderCallError, RetryExhaustedError
from app.domain.queue.priorities import dispatch_delay_ms
from app.models.analysis_job import AnalysisJob, ErrorType, JobStatus
from app.services.circuit_breaker import HALF_OPEN, OPEN
from app.services.queue_manager import QueueManager, queue_manager
from app.utils.clock import iso, utcnow

logger = get_logger("services.dispatch")
settings = get_settings()


class AnalysisProvider(Protocol):
    async def analyze(self, job: AnalysisJob) -> dict[str, Any]:
        ...


def error_type_for_status(status: int) -> ErrorType:
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status in (401, 403):
        return ErrorType.AUTHENTICATION
    if status in (400, 422):
        return ErrorType.VALIDATION
    return ErrorType.SERVICE_ERROR


class HttpAnalysisProvider:
    def __init__(self, url: str | None = None, api_key: str | None = None, timeout_sec: int | None = None) -> None:
        self.url = url or settings.analysis_provider_url
        self.api_key = api_key if api_key is not None else settings.analysis_provider_api_key
        self.timeout_sec = timeout_sec or settings.analysis_provider_timeout_sec

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def analyze(self, job: AnalysisJob) -> dict[str, Any]:
        payload = {
            "job_id": str(job.id),
            "entry_id": job.entry_id,
            "user_id": job.user_id,
            "relationship_id": job.relationship_id,
            "priority": job.priority,
            "attempt": int(job.processing_attempts or 0) + 1,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.post(self.url, json=payload) as resp:
                    if resp.status >= 400:
                        body = await resp.text(errors="ignore")
                        raise ProviderCallError(
                            error_type_for_status(resp.status),
                            f"Analysis provider returned {resp.status}: {body[:300]}",
                        )
                    return await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ProviderCallError(ErrorType.TIMEOUT, f"Analysis provider timed out after {self.timeout_sec}s") from exc
        except aiohttp.ClientConnectionError as exc:
            raise ProviderCallError(ErrorType.NETWORK, f"Network error calling analysis provider: {exc}") from exc
        except aiohttp.ContentTypeError as exc:
            raise ProviderCallError(ErrorType.SERVICE_ERROR, f"Invalid provider response: {exc}") from exc


class DispatchService:
    def __init__(self, manager: QueueManager | None = None, provider: AnalysisProvider | None = None) -> None:
        self.manager = manager or queue_manager
        self.provider = provider or HttpAnalysisProvider()

    @property
    def service_name(self) -> str:
        return self.manager.service_name

    async def dispatch_cycle(
        self,
        db: AsyncSession,
        *,
        max_items: int | None = None,
        priority_filter: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        breaker = await self.manager.breakers.snapshot(self.service_name, now)
        if breaker.state == OPEN:
            logger.info("dispatch_skipped_circuit_open", service=self.service_name, open_until=iso(breaker.open_until))
            return {"status": "skipped", "reason": "circuit_open", "claimed": 0, "circuit_breaker": breaker.as_dict()}

        in_flight = await self.manager.repo.count_by_status(db, JobStatus.CLAIMED.value)
        free_slots = max(0, self.manager.max_concurrent - in_flight)
        if breaker.state == HALF_OPEN:
            # One probe while half-open.
            free_slots = min(free_slots, 1) if in_flight == 0 else 0
        if max_items is not None:
            free_slots = min(free_slots, max_items)
        if free_slots == 0:
            return {"status": "saturated", "claimed": 0, "in_flight": in_flight, "circuit_breaker": breaker.as_dict()}

        claimed = await self.manager.dequeue(db, max_items=free_slots, priority_filter=priority_filter, now=now)
        for job in claimed:
            self.manager.scheduler.run_after(dispatch_delay_ms(job.priority), "process", job_id=str(job.id))
        if claimed:
            logger.info("dispatch_cycle_done", claimed=len(claimed), in_flight=in_flight, breaker=breaker.state)
        return {
            "status": "dispatched",
            "claimed": len(claimed),
            "job_ids": [str(job.id) for job in claimed],
            "in_flight": in_flight,
            "circuit_breaker": breaker.as_dict(),
        }

    async def process_job(self, db: AsyncSession, job_id: UUID | str) -> dict[str, Any]:
        job = await self.manager.repo.get(db, job_id)
        if job is None:
            logger.warning("process_job_missing", job_id=str(job_id))
            return {"status": "missing", "job_id": str(job_id)}
        if job.status != JobStatus.CLAIMED.value:
            logger.info("process_job_skipped", job_id=str(job.id), status=job.status)
            return {"status": "skipped", "job_id": str(job.id), "job_status": job.status}

        try:
            result = await self.provider.analyze(job)
        except ProviderCallError as exc:
            return await self._handle_failure(db, job.id, exc.error_type, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error("process_job_unexpected_error", job_id=str(job.id), error=str(exc))
            return await self._handle_failure(db, job.id, None, str(exc))

        await self.manager.breakers.record_success(self.service_name)
        return await self.manager.complete(db, job.id, result)

    async def _handle_failure(
        self,
        db: AsyncSession,
        job_id: UUID,
        error_type: ErrorType | str | None,
        message: str,
    ) -> dict[str, Any]:
        kind = error_type or ErrorType.SERVICE_ERROR
        await self.manager.breakers.record_failure(self.service_name, kind, message)
        try:
            outcome = await self.manager.requeue(
                db, job_id, error_type=error_type, error_message=message, service=self.service_name
            )
        except RetryExhaustedError as exc:
            return {
                "status": "final_failure",
                "job_id": exc.job_id,
                "retry_count": exc.retry_count,
                "reason": str(exc),
            }
        return {
            "status": outcome.status,
            "job_id": str(outcome.job.id),
            "retry_count": outcome.retry_count,
            "delay_ms": outcome.delay_ms,
            "priority": outcome.job.priority,
            "reason": outcome.reason,
        }


dispatch_service = DispatchService()
