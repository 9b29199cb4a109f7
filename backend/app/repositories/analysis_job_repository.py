from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.analysis_job import ACTIVE_STATUSES, AnalysisJob, JobStatus

WAITING_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRY_WAIT.value)


def _as_uuid(job_id: UUID | str) -> UUID | None:
    if isinstance(job_id, UUID):
        return job_id
    try:
        return UUID(str(job_id))
    except ValueError:
        return None


class AnalysisJobRepository:
    async def get(self, db: AsyncSession, job_id: UUID | str, *, for_update: bool = False) -> AnalysisJob | None:
        job_uuid = _as_uuid(job_id)
        if job_uuid is None:
            return None
        stmt = select(AnalysisJob).where(AnalysisJob.id == job_uuid).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        row = await db.execute(stmt)
        return row.scalar_one_or_none()

    async def get_active_by_dedupe_key(self, db: AsyncSession, dedupe_key: str) -> AnalysisJob | None:
        row = await db.execute(select(AnalysisJob).where(AnalysisJob.dedupe_key == dedupe_key).limit(1))
        return row.scalar_one_or_none()

    async def get_active_for_entry(self, db: AsyncSession, entry_id: str) -> AnalysisJob | None:
        row = await db.execute(
            select(AnalysisJob)
            .where(AnalysisJob.entry_id == entry_id, AnalysisJob.status.in_(ACTIVE_STATUSES))
            .limit(1)
        )
        return row.scalar_one_or_none()

    async def count_active(self, db: AsyncSession) -> int:
        row = await db.execute(
            select(func.count()).select_from(AnalysisJob).where(AnalysisJob.status.in_(ACTIVE_STATUSES))
        )
        return int(row.scalar_one() or 0)

    async def count_by_status(self, db: AsyncSession, status: str) -> int:
        row = await db.execute(select(func.count()).select_from(AnalysisJob).where(AnalysisJob.status == status))
        return int(row.scalar_one() or 0)

    async def count_waiting_by_priority(self, db: AsyncSession) -> dict[str, int]:
        rows = await db.execute(
            select(AnalysisJob.priority, func.count())
            .where(AnalysisJob.status.in_(WAITING_STATUSES))
            .group_by(AnalysisJob.priority)
        )
        return {priority: int(count) for priority, count in rows.all()}

    async def list_dequeue_candidates(self, db: AsyncSession, *, priority: str | None = None) -> list[AnalysisJob]:
        stmt = select(AnalysisJob).where(AnalysisJob.status == JobStatus.QUEUED.value)
        if priority:
            stmt = stmt.where(AnalysisJob.priority == priority)
        stmt = stmt.order_by(AnalysisJob.priority, AnalysisJob.queued_at)
        rows = await db.execute(stmt)
        return list(rows.scalars().all())

    async def list_by_statuses(self, db: AsyncSession, statuses: Iterable[str]) -> list[AnalysisJob]:
        rows = await db.execute(
            select(AnalysisJob).where(AnalysisJob.status.in_(tuple(statuses))).order_by(AnalysisJob.queued_at)
        )
        return list(rows.scalars().all())

    async def list_active(self, db: AsyncSession) -> list[AnalysisJob]:
        return await self.list_by_statuses(db, ACTIVE_STATUSES)

    async def list_waiting(self, db: AsyncSession) -> list[AnalysisJob]:
        return await self.list_by_statuses(db, WAITING_STATUSES)

    async def list_active_for_user(self, db: AsyncSession, user_id: str) -> list[AnalysisJob]:
        rows = await db.execute(
            select(AnalysisJob)
            .where(AnalysisJob.user_id == user_id, AnalysisJob.status.in_(ACTIVE_STATUSES))
            .order_by(AnalysisJob.queued_at)
        )
        return list(rows.scalars().all())

    async def claim(self, db: AsyncSession, job_id: UUID, now: datetime) -> bool:
        """Compare-and-set queued -> claimed. Exactly one concurrent caller wins."""
        result = await db.execute(
            update(AnalysisJob)
            .where(AnalysisJob.id == job_id, AnalysisJob.status == JobStatus.QUEUED.value)
            .values(status=JobStatus.CLAIMED.value, processing_started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_queued_before(self, db: AsyncSession, cutoff: datetime) -> list[AnalysisJob]:
        rows = await db.execute(
            select(AnalysisJob)
            .where(AnalysisJob.status.in_(ACTIVE_STATUSES), AnalysisJob.queued_at < cutoff)
            .order_by(AnalysisJob.queued_at)
        )
        return list(rows.scalars().all())

    async def list_stuck_claimed(
        self,
        db: AsyncSession,
        *,
        started_before: datetime,
        queued_not_before: datetime,
    ) -> list[AnalysisJob]:
        # queued_not_before keeps this set disjoint from list_queued_before.
        rows = await db.execute(
            select(AnalysisJob)
            .where(
                AnalysisJob.status == JobStatus.CLAIMED.value,
                AnalysisJob.processing_started_at.is_not(None),
                AnalysisJob.processing_started_at < started_before,
                AnalysisJob.queued_at >= queued_not_before,
            )
            .order_by(AnalysisJob.processing_started_at)
        )
        return list(rows.scalars().all())

    async def list_overdue_retries(self, db: AsyncSession, due_before: datetime) -> list[AnalysisJob]:
        rows = await db.execute(
            select(AnalysisJob).where(
                AnalysisJob.status == JobStatus.RETRY_WAIT.value,
                AnalysisJob.next_attempt_at.is_not(None),
                AnalysisJob.next_attempt_at < due_before,
            )
        )
        return list(rows.scalars().all())

    async def list_dead_lettered_since(
        self,
        db: AsyncSession,
        since: datetime,
        *,
        limit: int | None = None,
    ) -> list[AnalysisJob]:
        stmt = (
            select(AnalysisJob)
            .where(
                AnalysisJob.status == JobStatus.DEAD_LETTERED.value,
                AnalysisJob.dead_letter_timestamp >= since,
            )
            .order_by(AnalysisJob.dead_letter_timestamp.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        rows = await db.execute(stmt)
        return list(rows.scalars().all())

    async def list_resolved_since(self, db: AsyncSession, since: datetime, *, user_id: str | None = None) -> list[AnalysisJob]:
        stmt = select(AnalysisJob).where(
            or_(
                and_(AnalysisJob.status == JobStatus.COMPLETED.value, AnalysisJob.completed_at >= since),
                and_(AnalysisJob.status == JobStatus.DEAD_LETTERED.value, AnalysisJob.dead_letter_timestamp >= since),
                and_(AnalysisJob.status == JobStatus.CANCELLED.value, AnalysisJob.cancelled_at >= since),
            )
        )
        if user_id:
            stmt = stmt.where(AnalysisJob.user_id == user_id)
        rows = await db.execute(stmt)
        return list(rows.scalars().all())

    async def list_queued_since(self, db: AsyncSession, since: datetime) -> list[AnalysisJob]:
        rows = await db.execute(
            select(AnalysisJob).where(AnalysisJob.queued_at >= since).order_by(AnalysisJob.queued_at)
        )
        return list(rows.scalars().all())


analysis_job_repository = AnalysisJobRepository()
