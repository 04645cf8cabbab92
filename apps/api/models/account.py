"""Account model for front-end identified end users."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Credited entity keyed by the front-end's opaque user id."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),)

    id = Column(String, primary_key=True)
    credits = Column(Integer, nullable=False, default=0)
    referral_count = Column(Integer, nullable=False, default=0)
    usage_count = Column(Integer, nullable=False, default=0)
    referrer_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_activity_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="account")
    conversion_records = relationship("ConversionRecord", back_populates="account")
