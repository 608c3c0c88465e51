from sqlalchemy import Column, Integer, String, DateTime, Float, Text
from estate_release.database import Base, utcnow

class AccessGrant(Base):
    __tablename__ = "access_grants"

    id = Column(String, primary_key=True, index=True)
    beneficiary_id = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String)
    delay_hours = Column(Float, nullable=False, default=0)
    reason = Column(Text)
    available_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

class EmergencyOverride(Base):
    __tablename__ = "emergency_overrides"

    id = Column(String, primary_key=True, index=True)
    triggered_by = Column(String, nullable=False)
    reason = Column(Text)
    override_type = Column(String, nullable=False)  # full, partial, temporary
    beneficiary_id = Column(String)
    expiration_hours = Column(Float, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
