"""Pipeline execution router: start, poll, cancel, history and analytics."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import InsufficientCreditsError, LedgerError
from services.merchants import ensure_merchant
from services.pipeline import (
    MAX_BATCH_STATUS_IDS,
    ExecutionNotCancellableError,
    ExecutionNotFoundError,
    PipelineDispatchError,
    PipelineValidationError,
    ProjectNotFoundError,
    cancel_execution,
    get_execution_status,
    get_multiple_execution_statuses,
    get_project_status,
    start_pipeline_execution,
)
from services.pipeline_analytics import get_execution_history, get_pipeline_analytics, get_queue_status

router = APIRouter()


class PoseRequest(BaseModel):
    pose_id: str = Field(min_length=1, max_length=200)
    pose_name: Optional[str] = Field(default=None, max_length=200)
    model_image_url: str = Field(min_length=8, max_length=2000)


class ExecutePipelineRequest(BaseModel):
    poses: List[PoseRequest] = Field(min_length=1)
    clothing_image_url: str = Field(min_length=8, max_length=2000)
    gender: Literal["female", "male"] = "female"
    project_id: Optional[str] = None
    project_name: Optional[str] = Field(default=None, max_length=200)
    user_id: Optional[str] = None


class BatchStatusRequest(BaseModel):
    execution_ids: List[str] = Field(min_length=1, max_length=MAX_BATCH_STATUS_IDS)


@router.post("/execute", status_code=202)
async def execute_pipeline(
    request: ExecutePipelineRequest,
    _rate_limit: None = Depends(rate_limit("pipeline_execute", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Charge the batch upfront and start generation in the background."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    merchant = await ensure_merchant(db, scoped_user_id, email=auth.email, shop_domain=auth.shop_domain)

    queue = await get_queue_status(db, scoped_user_id)
    if not queue["can_start_new"]:
        raise HTTPException(
            status_code=429,
            detail=(
                f"Execution limit reached ({queue['active_executions']}/{queue['concurrent_limit']} active, "
                f"{queue['daily_usage']}/{queue['daily_limit']} today)."
            ),
        )

    try:
        return await start_pipeline_execution(
            db,
            user_id=scoped_user_id,
            poses=[pose.model_dump() for pose in request.poses],
            clothing_image_url=request.clothing_image_url,
            subscription_tier=merchant.subscription_tier,
            project_id=request.project_id,
            project_name=request.project_name,
            gender=request.gender,
        )
    except PipelineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        ) from exc
    except LedgerError as exc:
        raise HTTPException(status_code=503, detail="Credit ledger unavailable. No credits were charged.") from exc
    except PipelineDispatchError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/status/{execution_id}")
async def execution_status(
    execution_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await get_execution_status(db, execution_id, user_id=auth.user_id)
    except ExecutionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Execution not found.") from exc


@router.post("/status/batch")
async def batch_execution_status(
    request: BatchStatusRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await get_multiple_execution_statuses(db, request.execution_ids, auth.user_id)
    except PipelineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/projects/{project_id}/status")
async def project_status(
    project_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await get_project_status(db, project_id, auth.user_id)
    except ProjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Project not found.") from exc


@router.post("/{execution_id}/cancel")
async def cancel_pipeline_execution(
    execution_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await cancel_execution(db, execution_id, auth.user_id)
    except ExecutionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Execution not found.") from exc
    except ExecutionNotCancellableError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/history")
async def execution_history(
    status: Optional[List[str]] = Query(default=None),
    tier: Optional[List[str]] = Query(default=None),
    project_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await get_execution_history(
        db,
        auth.user_id,
        statuses=status,
        tiers=tier,
        project_id=project_id,
        limit=limit,
        offset=offset,
    )


@router.get("/analytics")
async def pipeline_analytics(
    period: str = Query(default="30d"),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await get_pipeline_analytics(db, auth.user_id, period)
    except PipelineValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/queue")
async def queue_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await get_queue_status(db, auth.user_id)
