"""
Pipeline orchestrator.

An execution is a batch of poses pushed through the tier's step chain:

    start_pipeline_execution   validate, reserve credits, create placeholder rows, dispatch
    process_execution_async    background: poses sequentially, steps sequentially
    _finalize_execution        completed/failed, refund every pose that did not complete
    cancel_execution           cooperative stop plus refund of unfinished poses

Every write that moves an execution or a pose out of ``processing`` is a
conditional UPDATE, so a cancel and a finishing worker can race without a
terminal state ever being overwritten.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generation_result import GenerationResult
from models.pipeline_execution import PipelineExecution
from models.project import GenerationProject
from services.artifact_store import ArtifactStore, ArtifactStoreError, build_artifact_path, get_artifact_store
from services.credits import (
    InsufficientCreditsError,
    LedgerError,
    consume_credits,
    get_credit_balance,
    has_sufficient_credits,
    refund_credits,
)
from services.pipeline_events import publish_status
from services.pipeline_queue import dispatch_execution
from services.providers import ProviderError, ProviderOutput, StepAdapter, StepInput, build_step_adapters
from services.step_chain import normalize_tier, quality_for_tier, steps_for_tier

logger = logging.getLogger(__name__)

EXECUTION_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
GENDERS = ("female", "male")
MAX_BATCH_STATUS_IDS = 25


class PipelineValidationError(ValueError):
    """Bad request shape: rejected before any record or charge."""


class PipelineDispatchError(RuntimeError):
    """Background work could not be started; the charge has been refunded."""


class ExecutionNotFoundError(LookupError):
    pass


class ProjectNotFoundError(LookupError):
    pass


class ExecutionNotCancellableError(RuntimeError):
    pass


@dataclass
class PoseInput:
    pose_id: str
    model_image_url: str
    pose_name: Optional[str] = None


@dataclass
class StepResult:
    step_type: str
    status: str  # completed, failed, skipped
    artifact_url: Optional[str] = None
    provider_url: Optional[str] = None
    processing_time: float = 0.0
    error: Optional[str] = None
    provider: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "artifact_url": self.artifact_url,
            "provider_url": self.provider_url,
            "processing_time": round(self.processing_time, 3),
            "error": self.error,
            "provider": self.provider,
        }


@dataclass
class ExecutionContext:
    """Immutable per-execution inputs read once before the pose loop."""

    execution_id: str
    user_id: str
    quality: str
    gender: str
    clothing_image_url: str
    steps: List[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def credits_required(pose_count: int) -> int:
    return int(settings.CREDITS_PER_IMAGE) * max(int(pose_count), 0)


def _unit_cost(execution: PipelineExecution) -> int:
    total = int(execution.total_poses or 0)
    if total > 0 and execution.credits_reserved:
        return int(execution.credits_reserved) // total
    return int(settings.CREDITS_PER_IMAGE)


def get_step_adapters() -> Dict[str, StepAdapter]:
    return build_step_adapters()


def _is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def validate_pose_inputs(poses: Sequence[Any], clothing_image_url: Optional[str]) -> List[PoseInput]:
    """Normalize request poses; raises PipelineValidationError on any bad input."""
    max_poses = max(int(settings.PIPELINE_MAX_POSES), 1)
    items = list(poses or [])
    if not items:
        raise PipelineValidationError("At least one pose is required.")
    if len(items) > max_poses:
        raise PipelineValidationError(f"At most {max_poses} poses can be generated per execution.")

    clothing = str(clothing_image_url or "").strip()
    if not clothing or not _is_http_url(clothing):
        raise PipelineValidationError("clothing_image_url must be an absolute http(s) URL.")

    normalized: List[PoseInput] = []
    seen = set()
    for index, raw in enumerate(items):
        data = raw if isinstance(raw, dict) else getattr(raw, "__dict__", {})
        pose_id = str(data.get("pose_id") or "").strip()
        model_image_url = str(data.get("model_image_url") or "").strip()
        if not pose_id:
            raise PipelineValidationError(f"Pose {index + 1} is missing pose_id.")
        if pose_id in seen:
            raise PipelineValidationError(f"Duplicate pose_id: {pose_id}")
        if not model_image_url or not _is_http_url(model_image_url):
            raise PipelineValidationError(f"Pose {pose_id} needs an absolute http(s) model_image_url.")
        seen.add(pose_id)
        normalized.append(
            PoseInput(
                pose_id=pose_id,
                model_image_url=model_image_url,
                pose_name=(str(data.get("pose_name") or "").strip() or None),
            )
        )
    return normalized


async def _load_execution(db: AsyncSession, execution_id: str, user_id: Optional[str] = None) -> PipelineExecution:
    query = select(PipelineExecution).where(PipelineExecution.id == execution_id)
    if user_id is not None:
        query = query.where(PipelineExecution.user_id == user_id)
    result = await db.execute(query)
    execution = result.scalar_one_or_none()
    if not execution:
        raise ExecutionNotFoundError(f"Execution {execution_id} not found")
    return execution


async def _resolve_project(
    db: AsyncSession,
    *,
    user_id: str,
    project_id: Optional[str],
    project_name: Optional[str],
    clothing_image_url: str,
) -> GenerationProject:
    if project_id:
        result = await db.execute(
            select(GenerationProject).where(
                GenerationProject.id == project_id,
                GenerationProject.user_id == user_id,
            )
        )
        project = result.scalar_one_or_none()
        if not project:
            raise PipelineValidationError(f"Project {project_id} not found.")
        if project.status == "archived":
            raise PipelineValidationError(f"Project {project_id} is archived.")
        return project

    project = GenerationProject(
        id=str(uuid.uuid4()),
        user_id=user_id,
        name=(project_name or "").strip() or f"Generation {_now():%Y-%m-%d %H:%M}",
        clothing_image_url=clothing_image_url,
        status="active",
        result_count=0,
    )
    db.add(project)
    return project


async def _mark_execution_failed(
    db: AsyncSession,
    execution_id: str,
    message: str,
    **values: Any,
) -> bool:
    """Fail an execution that never reached the background worker."""
    now = _now()
    result = await db.execute(
        update(PipelineExecution)
        .where(PipelineExecution.id == execution_id, PipelineExecution.status == "processing")
        .values(status="failed", error_message=message, completed_at=now, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return False
    await db.execute(
        update(GenerationResult)
        .where(GenerationResult.execution_id == execution_id, GenerationResult.status == "processing")
        .values(status="failed", error_message=message, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    project_id = (
        await db.execute(select(PipelineExecution.project_id).where(PipelineExecution.id == execution_id))
    ).scalar_one()
    await _archive_project(db, project_id, now)
    await db.commit()
    return True


async def _archive_project(db: AsyncSession, project_id: str, now: datetime) -> None:
    completed = (
        await db.execute(
            select(func.count(GenerationResult.id)).where(
                GenerationResult.project_id == project_id,
                GenerationResult.status == "completed",
            )
        )
    ).scalar_one()
    await db.execute(
        update(GenerationProject)
        .where(GenerationProject.id == project_id)
        .values(status="archived", result_count=int(completed or 0), completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def start_pipeline_execution(
    db: AsyncSession,
    *,
    user_id: str,
    poses: Sequence[Any],
    clothing_image_url: str,
    subscription_tier: Optional[str] = None,
    project_id: Optional[str] = None,
    project_name: Optional[str] = None,
    gender: str = "female",
) -> Dict[str, Any]:
    """Validate, charge the full batch upfront, create placeholders and hand off.

    Returns the execution snapshot with ``status=processing`` and ``progress=0``
    without waiting for any provider call.
    """
    pose_inputs = validate_pose_inputs(poses, clothing_image_url)
    normalized_gender = str(gender or "female").strip().lower()
    if normalized_gender not in GENDERS:
        raise PipelineValidationError(f"gender must be one of: {', '.join(GENDERS)}")

    tier = normalize_tier(subscription_tier)
    steps = steps_for_tier(tier)
    required = credits_required(len(pose_inputs))

    if not await has_sufficient_credits(user_id, required, db):
        balance = await get_credit_balance(user_id, db)
        raise InsufficientCreditsError(required=required, available=balance["available"])

    clothing = clothing_image_url.strip()
    project = await _resolve_project(
        db,
        user_id=user_id,
        project_id=project_id,
        project_name=project_name,
        clothing_image_url=clothing,
    )
    now = _now()
    execution = PipelineExecution(
        id=str(uuid.uuid4()),
        user_id=user_id,
        project_id=project.id,
        subscription_tier=tier,
        quality=quality_for_tier(tier),
        status="processing",
        enabled_steps=list(steps),
        progress=0,
        total_poses=len(pose_inputs),
        credits_reserved=required,
        credits_used=0,
        clothing_image_url=clothing,
        gender=normalized_gender,
        created_at=now,
        started_at=now,
    )
    db.add(execution)
    for position, pose in enumerate(pose_inputs):
        db.add(
            GenerationResult(
                id=str(uuid.uuid4()),
                execution_id=execution.id,
                project_id=project.id,
                user_id=user_id,
                position=position,
                pose_id=pose.pose_id,
                pose_name=pose.pose_name,
                model_image_url=pose.model_image_url,
                clothing_image_url=clothing,
                status="processing",
                step_results={},
            )
        )
    await db.commit()
    execution_id = execution.id

    try:
        await consume_credits(
            user_id,
            db,
            amount=required,
            description=f"Pipeline generation: {len(pose_inputs)} image(s)",
            feature_type="ai_generation",
            reference_type="pipeline_execution",
            reference_id=execution_id,
        )
    except (InsufficientCreditsError, LedgerError) as exc:
        logger.warning("Charge for execution %s failed: %s", execution_id, exc)
        await _mark_execution_failed(db, execution_id, f"Credit charge failed: {exc}")
        raise

    await db.execute(
        update(PipelineExecution)
        .where(PipelineExecution.id == execution_id)
        .values(credits_used=required)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    snapshot = await get_execution_status(db, execution_id, user_id=user_id)

    try:
        job_id = dispatch_execution(execution_id)
    except Exception as exc:
        logger.exception("Dispatch of execution %s failed: %s", execution_id, exc)
        await _compensate_dispatch_failure(db, execution_id, user_id, required, str(exc))
        raise PipelineDispatchError("Pipeline queue unavailable. Your credits were refunded.") from exc

    await db.execute(
        update(PipelineExecution)
        .where(PipelineExecution.id == execution_id)
        .values(queue_job_id=job_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    snapshot["queue_job_id"] = job_id
    logger.info(
        "Started execution %s for %s: %s pose(s), tier=%s, steps=%s",
        execution_id,
        user_id,
        len(pose_inputs),
        tier,
        ",".join(steps),
    )
    return snapshot


async def _compensate_dispatch_failure(
    db: AsyncSession,
    execution_id: str,
    user_id: str,
    amount: int,
    reason: str,
) -> None:
    refund_pending = False
    try:
        await refund_credits(
            user_id,
            db,
            amount=amount,
            reason="Pipeline could not be started",
            reference_id=execution_id,
        )
    except LedgerError as exc:
        logger.error("Refund after dispatch failure of %s needs manual adjustment: %s", execution_id, exc)
        refund_pending = True
    await _mark_execution_failed(
        db,
        execution_id,
        f"Pipeline queue unavailable: {reason}",
        credits_used=0,
        credits_refunded=0 if refund_pending else amount,
        refund_pending=refund_pending,
    )


# ---------------------------------------------------------------------------
# Background processing
# ---------------------------------------------------------------------------


async def _execution_is_processing(execution_id: str) -> bool:
    async with async_session_maker() as db:
        status = (
            await db.execute(select(PipelineExecution.status).where(PipelineExecution.id == execution_id))
        ).scalar_one_or_none()
    return status == "processing"


async def _update_pose(result_id: str, **values: Any) -> bool:
    """Apply values to a pose only while it is still processing."""
    async with async_session_maker() as db:
        result = await db.execute(
            update(GenerationResult)
            .where(GenerationResult.id == result_id, GenerationResult.status == "processing")
            .values(updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return result.rowcount == 1


async def _persist_output(
    store: Optional[ArtifactStore],
    output: ProviderOutput,
    *,
    execution_id: str,
    pose_id: str,
    step: str,
) -> Optional[str]:
    """Durable URL for a step output, or the provider URL when persisting fails."""
    if store is None:
        return output.artifact_url
    source = output.content if output.content is not None else output.artifact_url
    if source is None:
        return None
    try:
        return await store.persist(
            source,
            build_artifact_path(execution_id, pose_id, step),
            content_type=output.content_type,
        )
    except ArtifactStoreError as exc:
        logger.warning("Persisting %s for %s/%s failed, keeping provider URL: %s", step, execution_id, pose_id, exc)
        return output.artifact_url


async def _run_step(
    adapter: Optional[StepAdapter],
    store: Optional[ArtifactStore],
    step: str,
    step_input: StepInput,
    *,
    execution_id: str,
    pose_id: str,
) -> StepResult:
    started = time.monotonic()
    if adapter is None:
        return StepResult(step_type=step, status="failed", error=f"No adapter registered for {step}")
    try:
        output = await adapter.execute(step_input)
    except ProviderError as exc:
        return StepResult(
            step_type=step,
            status="failed",
            error=str(exc),
            provider=exc.provider,
            processing_time=time.monotonic() - started,
        )

    durable_url = await _persist_output(store, output, execution_id=execution_id, pose_id=pose_id, step=step)
    if not durable_url:
        return StepResult(
            step_type=step,
            status="failed",
            error="Step output could not be stored",
            provider=output.provider,
            processing_time=time.monotonic() - started,
        )
    return StepResult(
        step_type=step,
        status="completed",
        artifact_url=durable_url,
        provider_url=output.artifact_url,
        provider=output.provider,
        processing_time=time.monotonic() - started,
    )


async def run_pose_chain(
    context: ExecutionContext,
    pose: GenerationResult,
    adapters: Dict[str, StepAdapter],
    store: Optional[ArtifactStore],
) -> Optional[str]:
    """Run one pose through every step. Returns the final pose status, or None if it was cancelled."""
    await _update_pose(pose.id, started_at=_now())
    step_results: Dict[str, Dict[str, Any]] = {}
    current_url: Optional[str] = None

    for index, step in enumerate(context.steps):
        if not await _execution_is_processing(context.execution_id):
            return None

        step_input = StepInput(
            image_url=current_url,
            model_image_url=pose.model_image_url,
            clothing_image_url=pose.clothing_image_url or context.clothing_image_url,
            quality=context.quality,
            user_id=context.user_id,
            gender=context.gender,
        )
        outcome = await _run_step(
            adapters.get(step),
            store,
            step,
            step_input,
            execution_id=context.execution_id,
            pose_id=pose.pose_id,
        )
        step_results[step] = outcome.as_dict()

        if outcome.status == "completed":
            current_url = outcome.artifact_url
        elif index == 0:
            for skipped in context.steps[1:]:
                step_results[skipped] = StepResult(step_type=skipped, status="skipped").as_dict()
            logger.warning("Pose %s of %s failed at %s: %s", pose.pose_id, context.execution_id, step, outcome.error)
            applied = await _update_pose(
                pose.id,
                status="failed",
                step_results=step_results,
                final_image_url=None,
                error_message=outcome.error,
                completed_at=_now(),
            )
            return "failed" if applied else None
        else:
            logger.warning(
                "Step %s degraded for pose %s of %s, keeping previous artifact: %s",
                step,
                pose.pose_id,
                context.execution_id,
                outcome.error,
            )

        if not await _update_pose(pose.id, step_results=dict(step_results), final_image_url=current_url):
            return None

    applied = await _update_pose(
        pose.id,
        status="completed",
        step_results=step_results,
        final_image_url=current_url,
        completed_at=_now(),
    )
    return "completed" if applied else None


async def _pose_counts(db: AsyncSession, execution_id: str) -> Dict[str, int]:
    rows = await db.execute(
        select(GenerationResult.status, func.count(GenerationResult.id))
        .where(GenerationResult.execution_id == execution_id)
        .group_by(GenerationResult.status)
    )
    counts = {"processing": 0, "completed": 0, "failed": 0, "cancelled": 0}
    for status, count in rows.all():
        counts[str(status)] = int(count or 0)
    counts["total"] = sum(counts.values())
    return counts


def _progress_for(counts: Dict[str, int]) -> int:
    total = counts.get("total", 0)
    if total <= 0:
        return 0
    done = counts.get("completed", 0) + counts.get("failed", 0)
    return min(int(round(done * 100 / total)), 100)


async def _record_progress(execution_id: str) -> Optional[Dict[str, int]]:
    async with async_session_maker() as db:
        counts = await _pose_counts(db, execution_id)
        progress = _progress_for(counts)
        result = await db.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == execution_id, PipelineExecution.status == "processing")
            .values(
                progress=case((PipelineExecution.progress < progress, progress), else_=PipelineExecution.progress),
                completed_poses=counts["completed"],
                failed_poses=counts["failed"],
                updated_at=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    if result.rowcount != 1:
        return None
    await publish_status(
        execution_id,
        {
            "execution_id": execution_id,
            "status": "processing",
            "progress": progress,
            "completed_poses": counts["completed"],
            "failed_poses": counts["failed"],
            "total_poses": counts["total"],
        },
    )
    return counts


async def _finalize_execution(execution_id: str, *, interrupted_reason: Optional[str] = None) -> bool:
    """Move a processing execution to its terminal state and refund unfinished poses.

    Returns False when another actor (cancel, recovery) already finalized it.
    """
    async with async_session_maker() as db:
        execution = (
            await db.execute(select(PipelineExecution).where(PipelineExecution.id == execution_id))
        ).scalar_one_or_none()
        if not execution or execution.status != "processing":
            return False

        now = _now()
        # Execution row before result rows, the same lock order as cancel_execution.
        claimed = await db.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == execution_id, PipelineExecution.status == "processing")
            .values(status="failed", completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            return False

        await db.execute(
            update(GenerationResult)
            .where(GenerationResult.execution_id == execution_id, GenerationResult.status == "processing")
            .values(
                status="failed",
                error_message=interrupted_reason or "Generation did not finish",
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        counts = await _pose_counts(db, execution_id)
        total = int(execution.total_poses or counts["total"])
        completed = counts["completed"]
        failed = max(total - completed, 0)
        unit_cost = _unit_cost(execution)
        refund_amount = failed * unit_cost
        final_status = "failed" if completed == 0 else "completed"

        if final_status == "failed":
            message = f"All {total} generation(s) failed. No credits were charged."
            if interrupted_reason:
                message = f"{interrupted_reason} {message}"
        else:
            message = f"{failed} of {total} generation(s) failed and were refunded." if failed else None

        await db.execute(
            update(PipelineExecution)
            .where(PipelineExecution.id == execution_id)
            .values(
                status=final_status,
                progress=100,
                completed_poses=completed,
                failed_poses=failed,
                credits_used=completed * unit_cost,
                credits_refunded=refund_amount,
                error_message=message,
            )
            .execution_options(synchronize_session=False)
        )
        await _archive_project(db, execution.project_id, now)
        await db.commit()

        user_id = execution.user_id
        if refund_amount > 0:
            try:
                await refund_credits(
                    user_id,
                    db,
                    amount=refund_amount,
                    reason=f"{failed} failed generation(s)",
                    reference_id=execution_id,
                )
            except LedgerError as exc:
                logger.error(
                    "Refund of %s credits for execution %s failed, flagged for manual adjustment: %s",
                    refund_amount,
                    execution_id,
                    exc,
                )
                await db.execute(
                    update(PipelineExecution)
                    .where(PipelineExecution.id == execution_id)
                    .values(refund_pending=True)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

    logger.info(
        "Execution %s %s: %s completed, %s failed, %s credits refunded",
        execution_id,
        final_status,
        completed,
        failed,
        refund_amount,
    )
    await publish_status(
        execution_id,
        {
            "execution_id": execution_id,
            "status": final_status,
            "progress": 100,
            "completed_poses": completed,
            "failed_poses": failed,
            "total_poses": total,
        },
    )
    return True


async def _run_execution(execution_id: str) -> None:
    async with async_session_maker() as db:
        execution = (
            await db.execute(select(PipelineExecution).where(PipelineExecution.id == execution_id))
        ).scalar_one_or_none()
        if not execution:
            logger.warning("Execution %s not found; nothing to process", execution_id)
            return
        if execution.status != "processing":
            logger.info("Execution %s is %s; skipping", execution_id, execution.status)
            return
        context = ExecutionContext(
            execution_id=execution.id,
            user_id=execution.user_id,
            quality=execution.quality or quality_for_tier(execution.subscription_tier),
            gender=execution.gender or "female",
            clothing_image_url=execution.clothing_image_url,
            steps=list(execution.enabled_steps or steps_for_tier(execution.subscription_tier)),
        )
        poses = (
            await db.execute(
                select(GenerationResult)
                .where(GenerationResult.execution_id == execution_id)
                .order_by(GenerationResult.position)
            )
        ).scalars().all()

    adapters = get_step_adapters()
    try:
        store: Optional[ArtifactStore] = get_artifact_store()
    except ArtifactStoreError as exc:
        logger.warning("Artifact store unavailable, provider URLs will be kept: %s", exc)
        store = None

    for pose in poses:
        if pose.status != "processing":
            continue
        if not await _execution_is_processing(execution_id):
            logger.info("Execution %s stopped before pose %s", execution_id, pose.pose_id)
            return
        try:
            await run_pose_chain(context, pose, adapters, store)
        except Exception as exc:
            logger.exception("Pose %s of %s crashed: %s", pose.pose_id, execution_id, exc)
            await _update_pose(pose.id, status="failed", error_message=str(exc), completed_at=_now())
        await _record_progress(execution_id)

    await _finalize_execution(execution_id)


async def process_execution_async(execution_id: str) -> None:
    """Background entrypoint. Never raises; a crash finalizes the execution with refunds."""
    try:
        await _run_execution(execution_id)
    except Exception as exc:
        logger.exception("Pipeline execution %s crashed: %s", execution_id, exc)
        try:
            await _finalize_execution(execution_id, interrupted_reason="Generation was interrupted.")
        except Exception as finalize_exc:
            logger.exception("Finalizing crashed execution %s failed: %s", execution_id, finalize_exc)


def process_execution_job(execution_id: str) -> None:
    """RQ worker entrypoint for pipeline executions."""
    asyncio.run(process_execution_async(execution_id))


# ---------------------------------------------------------------------------
# Cancellation, status and recovery
# ---------------------------------------------------------------------------


async def cancel_execution(db: AsyncSession, execution_id: str, user_id: str) -> Dict[str, Any]:
    """Cooperatively stop a processing execution and refund every pose not yet completed."""
    execution = await _load_execution(db, execution_id, user_id=user_id)
    if execution.status != "processing":
        raise ExecutionNotCancellableError(f"Execution {execution_id} is {execution.status} and cannot be cancelled.")

    now = _now()
    result = await db.execute(
        update(PipelineExecution)
        .where(PipelineExecution.id == execution_id, PipelineExecution.status == "processing")
        .values(status="cancelled", error_message="Cancelled by user", completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ExecutionNotCancellableError(f"Execution {execution_id} already finished.")

    await db.execute(
        update(GenerationResult)
        .where(GenerationResult.execution_id == execution_id, GenerationResult.status == "processing")
        .values(status="cancelled", error_message="Cancelled by user", completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    counts = await _pose_counts(db, execution_id)
    unit_cost = _unit_cost(execution)
    credits_used = counts["completed"] * unit_cost
    refund_amount = max(int(execution.credits_reserved or 0) - credits_used, 0)
    progress = _progress_for(counts)
    await db.execute(
        update(PipelineExecution)
        .where(PipelineExecution.id == execution_id)
        .values(
            progress=case((PipelineExecution.progress < progress, progress), else_=PipelineExecution.progress),
            completed_poses=counts["completed"],
            failed_poses=counts["failed"],
            credits_used=credits_used,
            credits_refunded=refund_amount,
        )
        .execution_options(synchronize_session=False)
    )
    await _archive_project(db, execution.project_id, now)
    await db.commit()

    if refund_amount > 0:
        try:
            await refund_credits(
                user_id,
                db,
                amount=refund_amount,
                reason=f"Cancelled execution: {counts['total'] - counts['completed']} generation(s) not delivered",
                reference_id=execution_id,
            )
        except LedgerError as exc:
            logger.error("Refund for cancelled execution %s needs manual adjustment: %s", execution_id, exc)
            await db.execute(
                update(PipelineExecution)
                .where(PipelineExecution.id == execution_id)
                .values(refund_pending=True)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    logger.info("Cancelled execution %s, refunded %s credits", execution_id, refund_amount)
    await publish_status(execution_id, {"execution_id": execution_id, "status": "cancelled"})
    return await get_execution_status(db, execution_id, user_id=user_id)


def _serialize_result(result: GenerationResult) -> Dict[str, Any]:
    return {
        "id": result.id,
        "position": result.position,
        "pose_id": result.pose_id,
        "pose_name": result.pose_name,
        "status": result.status,
        "model_image_url": result.model_image_url,
        "clothing_image_url": result.clothing_image_url,
        "final_image_url": result.final_image_url,
        "step_results": dict(result.step_results or {}),
        "error_message": result.error_message,
        "started_at": _iso(result.started_at),
        "completed_at": _iso(result.completed_at),
    }


def _serialize_execution(execution: PipelineExecution, results: Sequence[GenerationResult]) -> Dict[str, Any]:
    counts = {"processing": 0, "completed": 0, "failed": 0, "cancelled": 0}
    for item in results:
        counts[item.status] = counts.get(item.status, 0) + 1
    counts["total"] = len(results)
    progress = int(execution.progress or 0)
    if execution.status == "processing":
        progress = max(progress, _progress_for(counts))

    return {
        "execution_id": execution.id,
        "project_id": execution.project_id,
        "user_id": execution.user_id,
        "status": execution.status,
        "progress": progress,
        "subscription_tier": execution.subscription_tier,
        "quality": execution.quality,
        "enabled_steps": list(execution.enabled_steps or []),
        "total_poses": int(execution.total_poses or len(results)),
        "completed_poses": counts["completed"],
        "failed_poses": counts["failed"],
        "cancelled_poses": counts["cancelled"],
        "processing_poses": counts["processing"],
        "credits_reserved": int(execution.credits_reserved or 0),
        "credits_used": int(execution.credits_used or 0),
        "credits_refunded": int(execution.credits_refunded or 0),
        "refund_pending": bool(execution.refund_pending),
        "queue_job_id": execution.queue_job_id,
        "error_message": execution.error_message,
        "created_at": _iso(execution.created_at),
        "started_at": _iso(execution.started_at),
        "completed_at": _iso(execution.completed_at),
        "results": [_serialize_result(item) for item in results],
    }


async def _results_for(db: AsyncSession, execution_ids: Sequence[str]) -> Dict[str, List[GenerationResult]]:
    grouped: Dict[str, List[GenerationResult]] = {execution_id: [] for execution_id in execution_ids}
    if not execution_ids:
        return grouped
    rows = await db.execute(
        select(GenerationResult)
        .where(GenerationResult.execution_id.in_(list(execution_ids)))
        .order_by(GenerationResult.execution_id, GenerationResult.position)
    )
    for item in rows.scalars().all():
        grouped.setdefault(item.execution_id, []).append(item)
    return grouped


async def get_execution_status(db: AsyncSession, execution_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Read-only projection; pose counts are re-derived from result rows on every call."""
    # Fresh reads: a background session may have written since this session last looked.
    db.expire_all()
    execution = await _load_execution(db, execution_id, user_id=user_id)
    grouped = await _results_for(db, [execution.id])
    return _serialize_execution(execution, grouped[execution.id])


async def get_multiple_execution_statuses(
    db: AsyncSession,
    execution_ids: Sequence[str],
    user_id: str,
) -> Dict[str, Any]:
    ids = list(dict.fromkeys(str(item).strip() for item in execution_ids if str(item).strip()))
    if not ids:
        raise PipelineValidationError("At least one execution id is required.")
    if len(ids) > MAX_BATCH_STATUS_IDS:
        raise PipelineValidationError(f"At most {MAX_BATCH_STATUS_IDS} executions can be requested at once.")

    db.expire_all()
    rows = await db.execute(
        select(PipelineExecution).where(PipelineExecution.id.in_(ids), PipelineExecution.user_id == user_id)
    )
    executions = {item.id: item for item in rows.scalars().all()}
    grouped = await _results_for(db, list(executions))
    return {
        "executions": [
            _serialize_execution(executions[execution_id], grouped[execution_id])
            for execution_id in ids
            if execution_id in executions
        ],
        "not_found": [execution_id for execution_id in ids if execution_id not in executions],
    }


async def get_project_status(db: AsyncSession, project_id: str, user_id: str) -> Dict[str, Any]:
    db.expire_all()
    project = (
        await db.execute(
            select(GenerationProject).where(GenerationProject.id == project_id, GenerationProject.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not project:
        raise ProjectNotFoundError(f"Project {project_id} not found")

    executions = (
        await db.execute(
            select(PipelineExecution)
            .where(PipelineExecution.project_id == project_id)
            .order_by(PipelineExecution.created_at.desc())
        )
    ).scalars().all()
    grouped = await _results_for(db, [item.id for item in executions])
    serialized = [_serialize_execution(item, grouped[item.id]) for item in executions]
    return {
        "project_id": project.id,
        "name": project.name,
        "status": project.status,
        "result_count": int(project.result_count or 0),
        "clothing_image_url": project.clothing_image_url,
        "created_at": _iso(project.created_at),
        "completed_at": _iso(project.completed_at),
        "active_executions": sum(1 for item in serialized if item["status"] == "processing"),
        "executions": serialized,
    }


async def recover_stalled_executions(max_age_minutes: Optional[int] = None) -> int:
    """Finalize executions left in processing by a crashed worker or restart."""
    minutes = max(int(max_age_minutes or settings.PIPELINE_STALLED_AFTER_MINUTES), 1)
    cutoff = _now() - timedelta(minutes=minutes)
    async with async_session_maker() as db:
        stalled = (
            await db.execute(
                select(PipelineExecution.id).where(
                    PipelineExecution.status == "processing",
                    PipelineExecution.started_at < cutoff,
                )
            )
        ).scalars().all()

    recovered = 0
    for execution_id in stalled:
        if await _finalize_execution(execution_id, interrupted_reason="Generation was interrupted."):
            recovered += 1
    if recovered:
        logger.warning("Recovered %s stalled pipeline execution(s)", recovered)
    return recovered
