from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, Text
from estate_release.database import Base, utcnow

class EmergencyAccessToken(Base):
    __tablename__ = "emergency_access_tokens"

    id = Column(String, primary_key=True, index=True)
    contact_id = Column(String, nullable=False, index=True)
    issued_by = Column(String)  # owning user
    access_level = Column(String, nullable=False)  # view, download, full
    permissions = Column(JSON, nullable=False, default=list)  # expanded at issue time
    token_type = Column(String, nullable=False, default="temporary")  # temporary, long_term, permanent
    file_ids = Column(JSON, default=list)  # empty = no file restriction
    ip_restrictions = Column(JSON, default=list)
    max_uses = Column(Integer, nullable=False)
    current_uses = Column(Integer, nullable=False, default=0)
    refreshable = Column(Boolean, nullable=False, default=True)
    meta = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    activated_at = Column(DateTime)
    last_refreshed_at = Column(DateTime)
    revoked_at = Column(DateTime)

class AccessLogEntry(Base):
    """Append-only; keeps no foreign key so entries survive token cleanup"""
    __tablename__ = "access_log_entries"

    id = Column(Integer, primary_key=True, index=True)
    token_id = Column(String, index=True)  # null when the token could not be identified
    contact_id = Column(String, index=True)
    action = Column(String, nullable=False)  # created, validated, accessed, revoked, refreshed, activated, failed
    success = Column(Boolean, nullable=False)
    error = Column(String)  # taxonomy code only
    ip_address = Column(String)
    user_agent = Column(Text)
    file_accessed = Column(String)
    details = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
