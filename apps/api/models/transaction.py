"""Transaction model for the append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Transaction(Base):
    """Immutable ledger entry for purchases, grants and refunds."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_transactions_provider_txn"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0)
    currency = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, completed, refund, failed
    provider = Column(String, nullable=False)  # paypal, razorpay, system
    provider_transaction_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
