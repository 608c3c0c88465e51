"""
Dead man's switch lifecycle: creation, configuration, check-ins, holiday
mode and the owner-driven state changes. Time-driven escalation is the
monitor's job.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from estate_release.database import to_naive_utc, utcnow
from estate_release.models.switch import DeadManSwitch, HolidayWindow, SwitchAuditEntry
from estate_release.schemas.switch import (
    CheckInMetadata,
    CheckInMethod,
    CheckInResponse,
    HolidayReason,
    SwitchConfig,
    SwitchResponse,
    SwitchState,
    AuditEntryResponse,
)
from estate_release.services.audit import AuditLogger
from estate_release.services.errors import Forbidden, InvalidConfiguration, NotFound
from estate_release.services.locks import KeyedLock
from estate_release.services.switch_state import validate_holiday_window

logger = logging.getLogger(__name__)

# check-ins that restart the inactivity clock and open a new escalation cycle
RESTARTABLE_STATES = (SwitchState.ARMED, SwitchState.WARNING, SwitchState.GRACE)


class DeadManSwitchService:
    def __init__(self, session_factory: Callable[[], Session], audit: AuditLogger,
                 locks: KeyedLock, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.audit = audit
        self.locks = locks
        self.clock = clock

    # ---------- helpers ----------

    def _load(self, db: Session, switch_id: str, user_id: Optional[str] = None) -> DeadManSwitch:
        switch = (
            db.query(DeadManSwitch)
            .options(selectinload(DeadManSwitch.holiday_windows))
            .filter(DeadManSwitch.id == switch_id)
            .first()
        )
        if not switch:
            raise NotFound(f"switch {switch_id} not found")
        if user_id is not None and switch.owner_id != user_id:
            raise Forbidden(f"user {user_id} does not own switch {switch_id}")
        return switch

    def _entry(self, switch: DeadManSwitch, from_state: str, to_state: str, reason: str,
               actor: str, details: Optional[Dict[str, Any]] = None, result: str = "success"):
        return SwitchAuditEntry(
            switch_id=switch.id,
            timestamp=self.clock(),
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            actor=actor,
            result=result,
            details=details or {},
        )

    def _check_in(self, switch: DeadManSwitch, now: datetime):
        # lastCheckInAt never moves backwards
        switch.last_check_in_at = max(switch.last_check_in_at or now, now)
        switch.cycle = (switch.cycle or 0) + 1

    def _commit(self, db: Session, switch: DeadManSwitch) -> SwitchResponse:
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(switch)
        return SwitchResponse.model_validate(switch)

    # ---------- queries ----------

    def get_switch(self, switch_id: str) -> SwitchResponse:
        db = self.session_factory()
        try:
            return SwitchResponse.model_validate(self._load(db, switch_id))
        finally:
            db.close()

    def list_switches(self, owner_id: Optional[str] = None,
                      state: Optional[SwitchState] = None) -> List[SwitchResponse]:
        db = self.session_factory()
        try:
            query = db.query(DeadManSwitch).options(selectinload(DeadManSwitch.holiday_windows))
            if owner_id:
                query = query.filter(DeadManSwitch.owner_id == owner_id)
            if state:
                query = query.filter(DeadManSwitch.state == SwitchState(state).value)
            switches = query.order_by(DeadManSwitch.created_at.asc()).all()
            return [SwitchResponse.model_validate(s) for s in switches]
        finally:
            db.close()

    def get_audit_trail(self, switch_id: str, limit: Optional[int] = None) -> List[AuditEntryResponse]:
        """Entries oldest first; still readable after the switch is deleted"""
        db = self.session_factory()
        try:
            query = (
                db.query(SwitchAuditEntry)
                .filter(SwitchAuditEntry.switch_id == switch_id)
                .order_by(SwitchAuditEntry.id.asc())
            )
            entries = query.all()
            if not entries and db.get(DeadManSwitch, switch_id) is None:
                raise NotFound(f"switch {switch_id} not found")
            if limit:
                entries = entries[-limit:]
            return [AuditEntryResponse.model_validate(e) for e in entries]
        finally:
            db.close()

    def get_statistics(self) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            rows = (
                db.query(DeadManSwitch.state, func.count(DeadManSwitch.id))
                .group_by(DeadManSwitch.state)
                .all()
            )
            by_state = {state.value: 0 for state in SwitchState}
            for state, count in rows:
                by_state[state] = count
            now = self.clock()
            active_holidays = (
                db.query(func.count(HolidayWindow.id))
                .filter(HolidayWindow.start <= now, HolidayWindow.end > now)
                .scalar()
            )
            return {
                "total": sum(by_state.values()),
                "by_state": by_state,
                "active_holiday_windows": active_holidays or 0,
            }
        finally:
            db.close()

    # ---------- lifecycle ----------

    def create_switch(self, owner_id: str, config: Optional[SwitchConfig] = None) -> SwitchResponse:
        config = config or SwitchConfig()
        now = self.clock()
        switch = DeadManSwitch(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            state=SwitchState.DISABLED.value,
            config=config.model_dump(mode="json"),
            last_check_in_at=now,
            cycle=0,
            created_at=now,
        )
        db = self.session_factory()
        try:
            db.add(switch)
            db.add(self._entry(switch, SwitchState.DISABLED.value, SwitchState.DISABLED.value,
                               "switch_created", owner_id))
            self.audit.record("dead_man_switch_created", actor=owner_id,
                              details={"switch_id": switch.id}, session=db)
            response = self._commit(db, switch)
            logger.info(f"Dead man's switch {switch.id} created for {owner_id}")
            return response
        finally:
            db.close()

    def update_configuration(self, switch_id: str, user_id: str, config: SwitchConfig) -> SwitchResponse:
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                if switch.state == SwitchState.TRIGGERED.value:
                    raise InvalidConfiguration("a triggered switch must be reset before reconfiguring")

                switch.config = config.model_dump(mode="json")
                db.add(self._entry(switch, switch.state, switch.state, "configuration_updated", user_id,
                                   details={"config": switch.config}))
                return self._commit(db, switch)
            finally:
                db.close()

    def enable_switch(self, switch_id: str, user_id: str) -> SwitchResponse:
        """Arms a disabled switch and counts as a check-in; a no-op otherwise"""
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                if switch.state != SwitchState.DISABLED.value:
                    return SwitchResponse.model_validate(switch)

                now = self.clock()
                self._check_in(switch, now)
                switch.state = SwitchState.ARMED.value
                db.add(self._entry(switch, SwitchState.DISABLED.value, SwitchState.ARMED.value,
                                   "switch_enabled", user_id))
                self.audit.record("dead_man_switch_enabled", actor=user_id,
                                  details={"switch_id": switch_id}, session=db)
                response = self._commit(db, switch)
                logger.info(f"Dead man's switch {switch_id} armed")
                return response
            finally:
                db.close()

    def disable_switch(self, switch_id: str, user_id: str) -> SwitchResponse:
        """Stops further escalation; grants already created stay in place"""
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                if switch.state == SwitchState.DISABLED.value:
                    return SwitchResponse.model_validate(switch)

                previous = switch.state
                switch.state = SwitchState.DISABLED.value
                db.add(self._entry(switch, previous, SwitchState.DISABLED.value, "switch_disabled", user_id))
                self.audit.record("dead_man_switch_disabled", actor=user_id,
                                  details={"switch_id": switch_id, "previous_state": previous}, session=db)
                response = self._commit(db, switch)
                logger.info(f"Dead man's switch {switch_id} disabled (was {previous})")
                return response
            finally:
                db.close()

    def reset_switch(self, switch_id: str, user_id: str) -> SwitchResponse:
        """Rearms a triggered switch; only allowed when its config is refreshable"""
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                if switch.state != SwitchState.TRIGGERED.value:
                    raise InvalidConfiguration("only a triggered switch can be reset")
                config = SwitchConfig.model_validate(switch.config)
                if not config.refreshable:
                    raise InvalidConfiguration("switch is not refreshable")

                self._check_in(switch, self.clock())
                switch.state = SwitchState.ARMED.value
                db.add(self._entry(switch, SwitchState.TRIGGERED.value, SwitchState.ARMED.value,
                                   "switch_reset", user_id,
                                   details={"method": CheckInMethod.MANUAL_TRIGGER.value}))
                self.audit.record("dead_man_switch_reset", actor=user_id, risk_level="medium",
                                  details={"switch_id": switch_id}, session=db)
                response = self._commit(db, switch)
                logger.warning(f"Dead man's switch {switch_id} reset after trigger")
                return response
            finally:
                db.close()

    def delete_switch(self, switch_id: str, user_id: str) -> None:
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                db.add(self._entry(switch, switch.state, switch.state, "switch_deleted", user_id))
                self.audit.record("dead_man_switch_deleted", actor=user_id,
                                  details={"switch_id": switch_id, "state": switch.state}, session=db)
                db.delete(switch)
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        self.locks.discard(switch_id)
        logger.info(f"Dead man's switch {switch_id} deleted")

    # ---------- check-ins ----------

    def record_check_in(self, switch_id: str, user_id: str, method,
                        metadata: Optional[CheckInMetadata] = None) -> CheckInResponse:
        try:
            method = CheckInMethod(method)
        except ValueError:
            raise InvalidConfiguration(f"unknown check-in method: {method}")

        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                previous = SwitchState(switch.state)
                now = self.clock()
                details = {"method": method.value}
                if metadata:
                    details["metadata"] = metadata.model_dump(exclude_none=True)

                if previous in RESTARTABLE_STATES:
                    self._check_in(switch, now)
                    switch.state = SwitchState.ARMED.value
                else:
                    # disabled or triggered: recorded, but no new escalation cycle
                    switch.last_check_in_at = max(switch.last_check_in_at, now)

                db.add(self._entry(switch, previous.value, switch.state, "check_in", user_id,
                                   details=details))
                try:
                    db.commit()
                except Exception:
                    db.rollback()
                    raise
                db.refresh(switch)

                if previous in (SwitchState.WARNING, SwitchState.GRACE):
                    logger.info(f"Check-in on {switch_id} returned it from {previous.value} to armed")

                return CheckInResponse(
                    switch_id=switch.id,
                    state=SwitchState(switch.state),
                    previous_state=previous,
                    last_check_in_at=switch.last_check_in_at,
                )
            finally:
                db.close()

    # ---------- holiday mode ----------

    def activate_holiday_mode(self, switch_id: str, user_id: str, start: datetime, end: datetime,
                              reason: Optional[HolidayReason] = None) -> SwitchResponse:
        start, end = to_naive_utc(start), to_naive_utc(end)
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                if switch.state == SwitchState.TRIGGERED.value:
                    raise InvalidConfiguration("holiday mode is not available on a triggered switch")

                config = SwitchConfig.model_validate(switch.config)
                validate_holiday_window(start, end, self.clock(), config.max_holiday_days,
                                        switch.holiday_windows)

                window = HolidayWindow(
                    start=start,
                    end=end,
                    reason=(reason or HolidayReason()).model_dump(mode="json"),
                    created_at=self.clock(),
                )
                switch.holiday_windows.append(window)
                db.add(self._entry(switch, switch.state, switch.state, "holiday_mode_activated", user_id,
                                   details={"start": start.isoformat(), "end": end.isoformat()}))
                return self._commit(db, switch)
            finally:
                db.close()

    def deactivate_holiday_mode(self, switch_id: str, user_id: str) -> SwitchResponse:
        """
        Ends the running holiday window now and drops future ones. Time
        already spent on holiday stays excluded.
        """
        with self.locks.hold(switch_id):
            db = self.session_factory()
            try:
                switch = self._load(db, switch_id, user_id)
                now = self.clock()
                changed = []
                for window in list(switch.holiday_windows):
                    if window.start > now:
                        switch.holiday_windows.remove(window)
                        changed.append({"window_id": window.id, "action": "cancelled"})
                    elif window.end > now:
                        window.end = now
                        changed.append({"window_id": window.id, "action": "ended"})

                if not changed:
                    raise InvalidConfiguration("no active or upcoming holiday window")

                db.add(self._entry(switch, switch.state, switch.state, "holiday_mode_deactivated", user_id,
                                   details={"windows": changed}))
                return self._commit(db, switch)
            finally:
                db.close()
