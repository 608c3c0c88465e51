from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from estate_release.database import Base, utcnow

class DeadManSwitch(Base):
    __tablename__ = "dead_man_switches"

    id = Column(String, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    state = Column(String, nullable=False, default="disabled")  # disabled, armed, warning, grace, triggered
    config = Column(JSON, nullable=False, default=dict)  # SwitchConfig
    last_check_in_at = Column(DateTime, nullable=False, default=utcnow)
    cycle = Column(Integer, nullable=False, default=0)  # bumped on every check-in
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    holiday_windows = relationship(
        "HolidayWindow",
        back_populates="switch",
        order_by="HolidayWindow.start",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

class HolidayWindow(Base):
    __tablename__ = "holiday_windows"

    id = Column(Integer, primary_key=True, index=True)
    switch_id = Column(String, ForeignKey("dead_man_switches.id"), nullable=False, index=True)
    start = Column(DateTime, nullable=False)
    end = Column(DateTime, nullable=False)
    reason = Column(JSON)  # HolidayReason
    created_at = Column(DateTime, default=utcnow)

    switch = relationship("DeadManSwitch", back_populates="holiday_windows")

class SwitchAuditEntry(Base):
    """Append-only; rows are never updated and outlive the switch row"""
    __tablename__ = "switch_audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    switch_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    from_state = Column(String, nullable=False)
    to_state = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    actor = Column(String, nullable=False)
    result = Column(String, nullable=False, default="success")  # success, warning
    details = Column(JSON, default=dict)

class EscalationAction(Base):
    """
    Side effect owed by a switch for one inactivity cycle: a stage
    notification or one piece of the release plan. The unique key makes
    each effect happen at most once per cycle.
    """
    __tablename__ = "escalation_actions"
    __table_args__ = (UniqueConstraint("switch_id", "cycle", "action_key"),)

    id = Column(Integer, primary_key=True, index=True)
    switch_id = Column(String, nullable=False, index=True)
    cycle = Column(Integer, nullable=False)
    action_key = Column(String, nullable=False)  # notify:warning, notify:stage:N, grant:N, override
    status = Column(String, nullable=False, default="pending")  # pending, failed, done
    attempts = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, default=dict)
    external_id = Column(String)
    last_error = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)
