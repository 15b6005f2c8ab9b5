# app/models/attribution.py
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, Index
from app.db.session import Base

class AttributionClick(Base):
    __tablename__ = "attribution_clicks"
    id = Column(Integer, primary_key=True, index=True)

    referral_code = Column(String, nullable=False, index=True)
    fingerprint = Column(String, nullable=False)
    # Salted one-way hash of the client address, or 'unknown'
    origin_hash = Column(String, nullable=False, default="unknown")

    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # converted=True is terminal
    converted = Column(Boolean, nullable=False, default=False, server_default="false")
    converted_at = Column(DateTime(timezone=True), nullable=True)
    conversion_value = Column(Numeric(12, 2), nullable=True)

    __table_args__ = (
        Index("ix_attribution_clicks_code_open", "referral_code", "converted", "expires_at"),
    )
