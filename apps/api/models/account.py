"""Account model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Authenticated user account holding the credit balance."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)
    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    password_hash = Column(String, nullable=True)
    identity_provider = Column(String, nullable=True)
    identity_subject = Column(String, nullable=True, index=True)
    credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")
    generation_jobs = relationship("GenerationJob", back_populates="account", cascade="all, delete-orphan")
