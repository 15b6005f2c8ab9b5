# app/models/remediation.py
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, func
from app.db.session import Base

class RemediationAction(Base):
    """A correction applied by the consistency verifier to a stored aggregate."""
    __tablename__ = "remediation_actions"
    id = Column(Integer, primary_key=True, index=True)

    # Exactly one of member_id / creator_id is set
    member_id = Column(Integer, ForeignKey("members.id"), nullable=True, index=True)
    creator_id = Column(Integer, ForeignKey("creators.id"), nullable=True, index=True)
    field = Column(String, nullable=False)
    # Stored as text so counters and money share one column type
    stored_value = Column(String, nullable=True)
    expected_value = Column(String, nullable=False)
    discrepancy_kind = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
