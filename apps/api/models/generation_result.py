"""GenerationResult model: one pose inside a pipeline execution."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationResult(Base):
    """Per-pose output row, created as a placeholder when the execution starts."""

    __tablename__ = "generation_results"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = Column(String, ForeignKey("pipeline_executions.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("generation_projects.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    pose_id = Column(String, nullable=False)
    pose_name = Column(String, nullable=True)
    model_image_url = Column(String, nullable=False)
    clothing_image_url = Column(String, nullable=False)
    status = Column(String, nullable=False, default="processing", index=True)  # processing, completed, failed, cancelled
    final_image_url = Column(String, nullable=True)
    step_results = Column(JSON, nullable=False, default=dict)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    execution = relationship("PipelineExecution", back_populates="results")
