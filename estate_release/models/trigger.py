from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, Float
from estate_release.database import Base, utcnow

class TriggerCondition(Base):
    __tablename__ = "trigger_conditions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # key into the rule registry
    name = Column(String, nullable=False)
    parameters = Column(JSON, default=dict)
    notify_recipients = Column(JSON, default=list)
    enabled = Column(Boolean, default=True)
    status = Column(String, nullable=False, default="active")  # active, triggered
    priority = Column(String, nullable=False, default="normal")  # normal, critical (after escalation)
    triggered_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

class ExternalSignal(Base):
    __tablename__ = "external_signals"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)  # medical_emergency, legal_document, beneficiary_petition, third_party, manual_override
    signal_type = Column(String, nullable=False)  # e.g. death_certificate, cardiac_arrest, obituary_published
    severity = Column(String)  # low, medium, high, critical
    status = Column(String, default="active")  # active, pending, approved, verified, resolved
    verified = Column(Boolean, default=False)
    payload = Column(JSON, default=dict)
    received_at = Column(DateTime, nullable=False, default=utcnow)

class EvaluationSchedule(Base):
    __tablename__ = "evaluation_schedules"

    user_id = Column(String, primary_key=True)
    frequency = Column(String, nullable=False, default="hourly")  # realtime, minute, hourly, daily, weekly
    enabled = Column(Boolean, nullable=False, default=True)
    next_run_at = Column(DateTime, nullable=False, default=utcnow)
    last_run_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class EvaluationResult(Base):
    """Append-only evaluation history"""
    __tablename__ = "evaluation_results"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    trigger_id = Column(Integer, nullable=False)
    trigger_kind = Column(String, nullable=False)
    triggered = Column(Boolean, nullable=False)
    confidence = Column(Float, nullable=False)
    reason_codes = Column(JSON, default=list)
    required_actions = Column(JSON, default=list)
    details = Column(JSON, default=dict)
    evaluated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
