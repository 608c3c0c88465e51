import logging
import uuid
from datetime import timedelta
from typing import Callable, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from estate_release.database import utcnow
from estate_release.models.release import AccessGrant, EmergencyOverride
from estate_release.services.errors import TransientDeliveryFailure

logger = logging.getLogger(__name__)

class LocalReleaseProvider:
    """Records access grants and emergency overrides in the local database"""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def _store(self, row) -> str:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            return row.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store {type(row).__name__}: {str(e)}")
            raise TransientDeliveryFailure(f"release storage failed: {e}") from e
        finally:
            db.close()

    def create_time_delayed_access_grant(self, beneficiary_id: str, resource_type: str,
                                         resource_id: Optional[str], delay_hours: float,
                                         reason: str) -> str:
        now = self.clock()
        grant = AccessGrant(
            id=str(uuid.uuid4()),
            beneficiary_id=beneficiary_id,
            resource_type=resource_type,
            resource_id=resource_id,
            delay_hours=delay_hours,
            reason=reason,
            available_at=now + timedelta(hours=delay_hours),
            created_at=now
        )
        grant_id = self._store(grant)
        logger.info(f"Access grant {grant_id} created for beneficiary {beneficiary_id}")
        return grant_id

    def create_emergency_override(self, triggered_by: str, reason: str, override_type: str,
                                  beneficiary_id: Optional[str], expiration_hours: float) -> str:
        now = self.clock()
        override = EmergencyOverride(
            id=str(uuid.uuid4()),
            triggered_by=triggered_by,
            reason=reason,
            override_type=override_type,
            beneficiary_id=beneficiary_id,
            expiration_hours=expiration_hours,
            expires_at=now + timedelta(hours=expiration_hours),
            created_at=now
        )
        override_id = self._store(override)
        logger.warning(f"Emergency override {override_id} ({override_type}) created by {triggered_by}")
        return override_id

    def list_grants(self, beneficiary_id: Optional[str] = None):
        db = self.session_factory()
        try:
            query = db.query(AccessGrant)
            if beneficiary_id:
                query = query.filter(AccessGrant.beneficiary_id == beneficiary_id)
            return query.order_by(AccessGrant.created_at.asc()).all()
        finally:
            db.close()

    def list_overrides(self):
        db = self.session_factory()
        try:
            return db.query(EmergencyOverride).order_by(EmergencyOverride.created_at.asc()).all()
        finally:
            db.close()
