"""PipelineExecution model: one generation request over a batch of poses."""

from sqlalchemy import Boolean, CheckConstraint, Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class PipelineExecution(Base):
    """Batch of poses run through the tier's step chain."""

    __tablename__ = "pipeline_executions"
    __table_args__ = (
        CheckConstraint("credits_used <= credits_reserved", name="ck_pipeline_executions_used_within_reserved"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("generation_projects.id"), nullable=False, index=True)
    subscription_tier = Column(String, nullable=False)
    quality = Column(String, nullable=False, default="standard")
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed, cancelled
    enabled_steps = Column(JSON, nullable=False, default=list)
    progress = Column(Integer, nullable=False, default=0)
    total_poses = Column(Integer, nullable=False, default=0)
    completed_poses = Column(Integer, nullable=False, default=0)
    failed_poses = Column(Integer, nullable=False, default=0)
    credits_reserved = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    credits_refunded = Column(Integer, nullable=False, default=0)
    refund_pending = Column(Boolean, nullable=False, default=False)
    clothing_image_url = Column(String, nullable=False)
    gender = Column(String, nullable=False, default="female")
    queue_job_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("GenerationProject", back_populates="executions")
    results = relationship(
        "GenerationResult",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="GenerationResult.position",
    )
