"""Execution history, usage analytics and per-merchant queue limits."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.pipeline_execution import PipelineExecution
from models.project import GenerationProject
from services.pipeline import PipelineValidationError

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}
DEFAULT_PERIOD = "30d"
MAX_HISTORY_LIMIT = 100


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    # SQLite hands back naive datetimes; stored values are always UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    days = PERIOD_DAYS.get(period, PERIOD_DAYS[DEFAULT_PERIOD])
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


async def get_execution_history(
    db: AsyncSession,
    user_id: str,
    *,
    statuses: Optional[Sequence[str]] = None,
    tiers: Optional[Sequence[str]] = None,
    project_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
) -> Dict[str, Any]:
    query = (
        select(PipelineExecution, GenerationProject.name)
        .join(GenerationProject, GenerationProject.id == PipelineExecution.project_id)
        .where(PipelineExecution.user_id == user_id)
    )
    if statuses:
        query = query.where(PipelineExecution.status.in_(list(statuses)))
    if tiers:
        query = query.where(PipelineExecution.subscription_tier.in_(list(tiers)))
    if project_id:
        query = query.where(PipelineExecution.project_id == project_id)
    if start_date:
        query = query.where(PipelineExecution.created_at >= start_date)
    if end_date:
        query = query.where(PipelineExecution.created_at <= end_date)

    page_size = max(min(int(limit), MAX_HISTORY_LIMIT), 1)
    page_offset = max(int(offset), 0)
    rows = await db.execute(
        query.order_by(PipelineExecution.created_at.desc(), PipelineExecution.id.desc())
        .limit(page_size)
        .offset(page_offset)
    )
    items: List[Dict[str, Any]] = []
    for execution, project_name in rows.all():
        items.append(
            {
                "execution_id": execution.id,
                "project_id": execution.project_id,
                "project_name": project_name,
                "status": execution.status,
                "progress": int(execution.progress or 0),
                "subscription_tier": execution.subscription_tier,
                "total_poses": int(execution.total_poses or 0),
                "completed_poses": int(execution.completed_poses or 0),
                "failed_poses": int(execution.failed_poses or 0),
                "credits_used": int(execution.credits_used or 0),
                "credits_refunded": int(execution.credits_refunded or 0),
                "clothing_image_url": execution.clothing_image_url,
                "created_at": execution.created_at.isoformat() if execution.created_at else None,
                "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
            }
        )
    return {"items": items, "limit": page_size, "offset": page_offset}


async def get_pipeline_analytics(db: AsyncSession, user_id: str, period: str = DEFAULT_PERIOD) -> Dict[str, Any]:
    if period not in PERIOD_DAYS:
        raise PipelineValidationError(f"period must be one of: {', '.join(PERIOD_DAYS)}")

    rows = await db.execute(
        select(PipelineExecution).where(
            PipelineExecution.user_id == user_id,
            PipelineExecution.created_at >= period_start(period),
        )
    )
    executions = rows.scalars().all()

    total = len(executions)
    by_status: Dict[str, int] = {}
    by_tier: Dict[str, int] = {}
    credits_used = 0
    durations: List[float] = []
    for execution in executions:
        by_status[execution.status or "unknown"] = by_status.get(execution.status or "unknown", 0) + 1
        tier = execution.subscription_tier or "unknown"
        by_tier[tier] = by_tier.get(tier, 0) + 1
        credits_used += int(execution.credits_used or 0)
        started = _as_utc(execution.started_at)
        finished = _as_utc(execution.completed_at)
        if execution.status == "completed" and started and finished:
            durations.append((finished - started).total_seconds())

    completed = by_status.get("completed", 0)
    return {
        "period": period,
        "total_executions": total,
        "completed_executions": completed,
        "failed_executions": by_status.get("failed", 0),
        "cancelled_executions": by_status.get("cancelled", 0),
        "active_executions": by_status.get("processing", 0),
        "average_processing_time": round(sum(durations) / len(durations)) if durations else 0,
        "total_credits_used": credits_used,
        "success_rate": round(completed * 100 / total, 2) if total else 0.0,
        "executions_by_tier": by_tier,
        "executions_by_status": by_status,
    }


async def get_queue_status(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    active = (
        await db.execute(
            select(func.count(PipelineExecution.id)).where(
                PipelineExecution.user_id == user_id,
                PipelineExecution.status == "processing",
            )
        )
    ).scalar_one()
    daily = (
        await db.execute(
            select(func.count(PipelineExecution.id)).where(
                PipelineExecution.user_id == user_id,
                PipelineExecution.created_at >= day_start,
            )
        )
    ).scalar_one()

    concurrent_limit = max(int(settings.PIPELINE_MAX_ACTIVE_EXECUTIONS), 1)
    daily_limit = max(int(settings.PIPELINE_DAILY_EXECUTION_LIMIT), 1)
    return {
        "active_executions": int(active or 0),
        "concurrent_limit": concurrent_limit,
        "daily_usage": int(daily or 0),
        "daily_limit": daily_limit,
        "can_start_new": int(active or 0) < concurrent_limit and int(daily or 0) < daily_limit,
    }
