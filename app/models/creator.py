# app/models/creator.py
from sqlalchemy import Column, Integer, String, Numeric, DateTime, func
from sqlalchemy.orm import relationship
from app.db.session import Base

class Creator(Base):
    __tablename__ = "creators"
    id = Column(Integer, primary_key=True, index=True)

    # Company ID on the commerce platform; test companies carry a marker (e.g. "_test")
    company_id = Column(String, unique=True, index=True, nullable=False)
    company_name = Column(String, nullable=False, default="Community", server_default="Community")
    product_url = Column(String, nullable=True)

    # --- Denormalized aggregates, written only by the ledger ---
    # Paid referrals brought in by members of this community
    total_referrals = Column(Integer, nullable=False, default=0, server_default="0")
    # Net creator share of commissions (after refunds)
    total_revenue = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    monthly_revenue = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    members = relationship("Member", back_populates="creator")
