"""Conversion record model for staged output artifacts."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class ConversionRecord(Base):
    """Durable metadata for one staged artifact and its retention deadline."""

    __tablename__ = "conversion_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    source_ref = Column(String, nullable=False)
    staged_ref = Column(String, nullable=False)
    format = Column(String, nullable=False)
    media_kind = Column(String, nullable=False)  # video, audio
    byte_size = Column(Integer, nullable=True)
    # Set explicitly by the pipeline so expires_at = created_at + retention holds exactly.
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="conversion_records")
