"""User-facing analysis queue routes: enqueue, status, cancel."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import CurrentUser, get_current_user
from app.api.deps.rbac import OPERATOR_ROLES
from app.api.envelope import success_envelope
from app.core.database import get_db
from app.domain.queue.assessor import PriorityContext, assess_priority_with_content
from app.models.analysis_job import AnalysisJob
from app.schemas import CancelAnalysisRequest, EnqueueAnalysisRequest
from app.services.queue_manager import queue_manager
from app.utils.clock import iso

router = APIRouter(prefix="/analysis-queue", tags=["Analysis Queue"])


def serialize_job(job: AnalysisJob, *, include_history: bool = False) -> dict:
    data = {
        "id": str(job.id),
        "entry_id": job.entry_id,
        "user_id": job.user_id,
        "relationship_id": job.relationship_id,
        "priority": job.priority,
        "status": job.status,
        "queued_at": iso(job.queued_at),
        "processing_started_at": iso(job.processing_started_at),
        "next_attempt_at": iso(job.next_attempt_at),
        "completed_at": iso(job.completed_at),
        "cancelled_at": iso(job.cancelled_at),
        "processing_attempts": job.processing_attempts,
        "last_error_type": job.last_error_type,
        "last_error_message": job.last_error_message,
        "queue_position": job.queue_position,
        "estimated_completion_time": iso(job.estimated_completion_time),
        "dead_letter": {
            "reason": job.dead_letter_reason,
            "category": job.dead_letter_category,
            "timestamp": iso(job.dead_letter_timestamp),
        }
        if job.dead_letter_queue
        else None,
        "requeued_from_id": str(job.requeued_from_id) if job.requeued_from_id else None,
        "requeued_to_id": str(job.requeued_to_id) if job.requeued_to_id else None,
    }
    if include_history:
        data["retry_history"] = job.retry_history or []
        data["priority_history"] = job.priority_history or []
        data["dead_letter_metadata"] = job.dead_letter_metadata or {}
        data["result"] = job.result_json
    return data


def _context_for(payload: EnqueueAnalysisRequest) -> PriorityContext:
    return PriorityContext(
        user_tier=payload.user_tier,
        relationship_linked=bool(payload.relationship_id),
        crisis_signal=payload.crisis_signal,
        explicit_priority=payload.priority,
    )


@router.post("/assess")
async def preview_priority(
    payload: EnqueueAnalysisRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    assessment = assess_priority_with_content(
        _context_for(payload),
        entry_content=payload.entry_content,
        sentiment_score=payload.sentiment_score,
        emotional_keywords=payload.emotional_keywords,
    )
    return success_envelope(
        {
            "priority": assessment.priority.value,
            "reasoning": assessment.reasoning,
            "content_signals": assessment.content_signals,
        }
    )


@router.post("/jobs")
async def enqueue_analysis(
    payload: EnqueueAnalysisRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    context = _context_for(payload)
    assessment = assess_priority_with_content(
        context,
        entry_content=payload.entry_content,
        sentiment_score=payload.sentiment_score,
        emotional_keywords=payload.emotional_keywords,
    )
    result = await queue_manager.enqueue(
        db,
        entry_id=payload.entry_id,
        user_id=current_user.id,
        priority=assessment.priority,
        dedupe_key=payload.dedupe_key,
        context=context,
        relationship_id=payload.relationship_id,
        user_tier=payload.user_tier,
    )
    return success_envelope(
        {
            "status": result.status,
            "job": serialize_job(result.job),
            "priority_reasoning": assessment.reasoning,
        },
        status_code=status.HTTP_201_CREATED if result.status == "queued" else status.HTTP_200_OK,
    )


@router.get("/status")
async def my_queue_status(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return success_envelope(await queue_manager.user_queue_status(db, current_user.id))


@router.get("/jobs/{job_id}")
async def get_analysis_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    job = await queue_manager.require(db, job_id)
    if job.user_id != current_user.id and current_user.role not in OPERATOR_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    return success_envelope(serialize_job(job, include_history=True))


@router.post("/jobs/{job_id}/cancel")
async def cancel_analysis(
    job_id: str,
    payload: CancelAnalysisRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    result = await queue_manager.cancel(
        db,
        job_id,
        requesting_user_id=current_user.id,
        reason=payload.reason if payload else None,
    )
    return success_envelope(result)
