"""GenerationProject model grouping a merchant's pipeline executions."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationProject(Base):
    """Container for one or more executions and their results."""

    __tablename__ = "generation_projects"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    base_model_id = Column(String, nullable=True)
    clothing_image_url = Column(String, nullable=True)
    result_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="active")  # active, archived
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="projects")
    executions = relationship("PipelineExecution", back_populates="project", cascade="all, delete-orphan")
