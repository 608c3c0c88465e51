from sqlalchemy import Column, Integer, String, JSON, DateTime
from estate_release.database import Base, utcnow

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String, nullable=False)
    actor = Column(String)
    result = Column(String, default="success")
    risk_level = Column(String, default="low")
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
