"""GenerationJob model logging every metered generation."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GenerationJob(Base):
    """One charged generation attempt and its output media."""

    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    media_type = Column(String, nullable=False, default="image", index=True)
    prompt = Column(String, nullable=False)
    model = Column(String, nullable=False)
    media_url = Column(String, nullable=True)
    cost = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="processing", index=True)  # processing, completed, failed
    provider_request_id = Column(String, nullable=True, index=True)
    status_url = Column(String, nullable=True)
    response_url = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="generation_jobs")
