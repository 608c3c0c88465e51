"""
Emergency access tokens

Tokens are HS256 JWTs naming a stored token record. The record is the
source of truth for expiry, use counts and revocation; the JWT only proves
the record id came from us.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import jwt
from sqlalchemy import update
from sqlalchemy.orm import Session

from estate_release.database import to_naive_utc, utcnow
from estate_release.models.token import AccessLogEntry, EmergencyAccessToken
from estate_release.schemas.token import (
    AccessAction,
    AccessLevel,
    AccessLogResponse,
    IssuedTokenResponse,
    TokenGenerateRequest,
    TokenResponse,
    TokenType,
    TokenUsageResponse,
    TokenValidationResponse,
)
from estate_release.services.errors import (
    Exhausted,
    Expired,
    Forbidden,
    InvalidConfiguration,
    InvalidToken,
    IpDenied,
    NotFound,
    RateLimited,
    TokenError,
)
from estate_release.services.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

TOKEN_TYPE_DEFAULTS = {
    TokenType.TEMPORARY: {"expiration_hours": 72, "max_uses": 10},
    TokenType.LONG_TERM: {"expiration_hours": 24 * 365 * 2, "max_uses": 1000},
    TokenType.PERMANENT: {"expiration_hours": 24 * 365 * 100, "max_uses": 999999},
}

LEVEL_GRANTS = {
    AccessLevel.VIEW: ["view"],
    AccessLevel.DOWNLOAD: ["download"],
    AccessLevel.FULL: ["modify"],
}
LEVEL_ORDER = [AccessLevel.VIEW, AccessLevel.DOWNLOAD, AccessLevel.FULL]


def expand_permissions(access_level: AccessLevel) -> List[str]:
    """Each level carries every permission of the levels below it"""
    level = AccessLevel(access_level)
    permissions: List[str] = []
    for lower in LEVEL_ORDER[:LEVEL_ORDER.index(level) + 1]:
        permissions.extend(LEVEL_GRANTS[lower])
    return permissions


def has_permission(permissions: List[str], action: str) -> bool:
    return action in permissions


class EmergencyAccessService:
    def __init__(self, session_factory: Callable[[], Session], rate_limiter: FixedWindowRateLimiter,
                 secret_key: str, public_base_url: str = "", clock: Callable[[], datetime] = utcnow,
                 default_expiration_hours: float = 72, default_max_uses: int = 10):
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.secret_key = secret_key
        self.public_base_url = public_base_url.rstrip("/")
        self.clock = clock
        self.default_expiration_hours = default_expiration_hours
        self.default_max_uses = default_max_uses

    # ---------- helpers ----------

    def _log(self, db: Session, action: AccessAction, success: bool, token_id: Optional[str] = None,
             contact_id: Optional[str] = None, error: Optional[str] = None,
             ip_address: Optional[str] = None, user_agent: Optional[str] = None,
             file_accessed: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        db.add(AccessLogEntry(
            token_id=token_id,
            contact_id=contact_id,
            action=action.value,
            success=success,
            error=error,
            ip_address=ip_address,
            user_agent=user_agent,
            file_accessed=file_accessed,
            details=details or {},
            timestamp=self.clock()
        ))

    def _fail(self, db: Session, error: TokenError, token: Optional[EmergencyAccessToken] = None,
              ip_address: Optional[str] = None, **extra):
        """Log a failed attempt in its own commit, then raise"""
        hinted_id = extra.pop("token_id", None)
        db.rollback()
        self._log(db, AccessAction.FAILED, False,
                  token_id=token.id if token else hinted_id,
                  contact_id=token.contact_id if token else None,
                  error=error.code, ip_address=ip_address, **extra)
        db.commit()
        raise error

    @staticmethod
    def _naive_timestamp(value: datetime) -> int:
        return int((value - datetime(1970, 1, 1)).total_seconds())

    def _encode(self, token: EmergencyAccessToken) -> str:
        payload = {
            "tokenId": token.id,
            "contactId": token.contact_id,
            "accessLevel": token.access_level,
            "iat": self._naive_timestamp(token.last_refreshed_at or token.created_at),
            "exp": self._naive_timestamp(token.expires_at),
        }
        return jwt.encode(payload, self.secret_key, algorithm=ALGORITHM)

    def _get(self, db: Session, token_id: str) -> EmergencyAccessToken:
        token = db.get(EmergencyAccessToken, token_id)
        if token is None:
            raise NotFound(f"token {token_id} not found")
        return token

    def _access_url(self, encoded: str) -> str:
        return f"{self.public_base_url}/emergency-access/{encoded}"

    @staticmethod
    def _peek_token_id(encoded: str) -> Optional[str]:
        """Token id from an unverified token, only used to key the rate limiter"""
        try:
            claims = jwt.decode(encoded, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        token_id = claims.get("tokenId")
        return token_id if isinstance(token_id, str) else None

    # ---------- issue ----------

    def generate_token(self, request: TokenGenerateRequest) -> IssuedTokenResponse:
        token_type = TokenType(request.token_type)
        defaults = TOKEN_TYPE_DEFAULTS[token_type]
        if token_type == TokenType.TEMPORARY:
            defaults = {"expiration_hours": self.default_expiration_hours, "max_uses": self.default_max_uses}

        expiration_hours = request.expiration_hours or defaults["expiration_hours"]
        max_uses = request.max_uses or defaults["max_uses"]
        if expiration_hours <= 0 or max_uses < 1:
            raise InvalidConfiguration("expiration and max uses must be positive")

        permissions = expand_permissions(request.access_level)

        now = self.clock()
        token = EmergencyAccessToken(
            id=uuid.uuid4().hex,
            contact_id=request.contact_id,
            issued_by=request.issued_by,
            access_level=AccessLevel(request.access_level).value,
            permissions=permissions,
            token_type=token_type.value,
            file_ids=list(request.file_ids),
            ip_restrictions=list(request.ip_restrictions),
            max_uses=max_uses,
            current_uses=0,
            refreshable=request.refreshable,
            meta=request.metadata,
            created_at=now,
            expires_at=now + timedelta(hours=expiration_hours)
        )
        db = self.session_factory()
        try:
            db.add(token)
            self._log(db, AccessAction.CREATED, True, token_id=token.id, contact_id=token.contact_id,
                      details={"access_level": token.access_level, "token_type": token.token_type})
            db.commit()
            db.refresh(token)
            encoded = self._encode(token)
            logger.info(f"Emergency token {token.id} issued to contact {token.contact_id} ({token.access_level})")
            return IssuedTokenResponse(
                token=encoded,
                access_url=self._access_url(encoded),
                details=TokenResponse.model_validate(token)
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def issue_jwt(self, token_id: str) -> str:
        db = self.session_factory()
        try:
            token = self._get(db, token_id)
            if token.revoked_at:
                raise InvalidToken()
            return self._encode(token)
        finally:
            db.close()

    # ---------- validate / use ----------

    def validate_token(self, encoded: str, ip_address: Optional[str] = None, check_expiration: bool = True,
                       check_uses: bool = True, check_ip_restrictions: bool = True) -> TokenValidationResponse:
        ip_key = ip_address or "unknown"
        db = self.session_factory()
        try:
            hinted_id = self._peek_token_id(encoded)
            limited = self.rate_limiter.hit(ip_key)
            if not limited and hinted_id:
                limited = self.rate_limiter.hit(f"{ip_key}:{hinted_id}")
            if limited:
                logger.warning(f"Rate limited emergency token validation from {ip_key}")
                self._fail(db, RateLimited(retry_after_seconds=self.rate_limiter.time_to_reset(ip_key)),
                           ip_address=ip_address, token_id=hinted_id)

            try:
                claims = jwt.decode(
                    encoded,
                    self.secret_key,
                    algorithms=[ALGORITHM],
                    options={"verify_exp": False, "verify_iat": False, "verify_nbf": False}
                )
            except jwt.PyJWTError:
                self._fail(db, InvalidToken(), ip_address=ip_address)

            token_id = claims.get("tokenId")
            token = db.get(EmergencyAccessToken, token_id) if isinstance(token_id, str) else None
            if token is None or token.revoked_at is not None:
                self._fail(db, InvalidToken(), token=token, ip_address=ip_address)

            now = self.clock()
            if check_expiration and now > token.expires_at:
                self._fail(db, Expired(), token=token, ip_address=ip_address)
            if check_uses and token.current_uses >= token.max_uses:
                self._fail(db, Exhausted(), token=token, ip_address=ip_address)
            if check_ip_restrictions and token.ip_restrictions and ip_address not in token.ip_restrictions:
                self._fail(db, IpDenied(), token=token, ip_address=ip_address)

            self._log(db, AccessAction.VALIDATED, True, token_id=token.id, contact_id=token.contact_id,
                      ip_address=ip_address)
            db.commit()
            db.refresh(token)
            return TokenValidationResponse(
                token_id=token.id,
                contact_id=token.contact_id,
                access_level=token.access_level,
                permissions=token.permissions,
                file_ids=token.file_ids or [],
                remaining_uses=max(0, token.max_uses - token.current_uses),
                expires_at=token.expires_at,
                expires_in_seconds=max(0.0, (token.expires_at - now).total_seconds())
            )
        finally:
            db.close()

    def record_token_usage(self, token_id: str, ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None,
                           file_accessed: Optional[str] = None) -> TokenUsageResponse:
        """Count one content access; the increment and the exhaustion check are one statement"""
        db = self.session_factory()
        try:
            token = self._get(db, token_id)
            if token.revoked_at is not None:
                self._fail(db, InvalidToken(), token=token, ip_address=ip_address)
            if token.file_ids and file_accessed not in token.file_ids:
                db.rollback()
                self._log(db, AccessAction.FAILED, False, token_id=token.id, contact_id=token.contact_id,
                          error=Forbidden.code, ip_address=ip_address, user_agent=user_agent,
                          file_accessed=file_accessed)
                db.commit()
                raise Forbidden(f"token does not cover file {file_accessed}")

            result = db.execute(
                update(EmergencyAccessToken)
                .where(
                    EmergencyAccessToken.id == token_id,
                    EmergencyAccessToken.current_uses < EmergencyAccessToken.max_uses,
                    EmergencyAccessToken.revoked_at.is_(None)
                )
                .values(current_uses=EmergencyAccessToken.current_uses + 1, used_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self._fail(db, Exhausted(), token=token, ip_address=ip_address)

            self._log(db, AccessAction.ACCESSED, True, token_id=token.id, contact_id=token.contact_id,
                      ip_address=ip_address, user_agent=user_agent, file_accessed=file_accessed)
            db.commit()
            db.refresh(token)
            return TokenUsageResponse(
                token_id=token.id,
                current_uses=token.current_uses,
                remaining_uses=max(0, token.max_uses - token.current_uses)
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---------- lifecycle ----------

    def revoke_token(self, token_id: str, reason: Optional[str] = None,
                     revoked_by: Optional[str] = None) -> TokenResponse:
        db = self.session_factory()
        try:
            token = self._get(db, token_id)
            if token.revoked_at is None:
                token.revoked_at = self.clock()
                self._log(db, AccessAction.REVOKED, True, token_id=token.id, contact_id=token.contact_id,
                          details={"reason": reason, "revoked_by": revoked_by})
                db.commit()
                db.refresh(token)
                logger.info(f"Emergency token {token_id} revoked")
            return TokenResponse.model_validate(token)
        finally:
            db.close()

    def refresh_token(self, token_id: str, extension_hours: Optional[float] = None) -> IssuedTokenResponse:
        """Pushes expiry out from now; uses already counted stay counted"""
        db = self.session_factory()
        try:
            token = self._get(db, token_id)
            if token.revoked_at is not None:
                raise InvalidToken()
            if not token.refreshable:
                raise InvalidConfiguration("token is not refreshable")

            hours = extension_hours or TOKEN_TYPE_DEFAULTS[TokenType(token.token_type)]["expiration_hours"]
            if TokenType(token.token_type) == TokenType.TEMPORARY and not extension_hours:
                hours = self.default_expiration_hours
            now = self.clock()
            token.expires_at = max(token.expires_at, now + timedelta(hours=hours))
            token.last_refreshed_at = now
            self._log(db, AccessAction.REFRESHED, True, token_id=token.id, contact_id=token.contact_id,
                      details={"expires_at": token.expires_at.isoformat()})
            db.commit()
            db.refresh(token)
            encoded = self._encode(token)
            return IssuedTokenResponse(
                token=encoded,
                access_url=self._access_url(encoded),
                details=TokenResponse.model_validate(token)
            )
        finally:
            db.close()

    def activate_token(self, token_id: str) -> TokenResponse:
        db = self.session_factory()
        try:
            token = self._get(db, token_id)
            if token.revoked_at is not None:
                raise InvalidToken()
            if token.activated_at is None:
                token.activated_at = self.clock()
                self._log(db, AccessAction.ACTIVATED, True, token_id=token.id, contact_id=token.contact_id)
                db.commit()
                db.refresh(token)
            return TokenResponse.model_validate(token)
        finally:
            db.close()

    # ---------- queries ----------

    def get_token(self, token_id: str) -> TokenResponse:
        db = self.session_factory()
        try:
            return TokenResponse.model_validate(self._get(db, token_id))
        finally:
            db.close()

    def get_contact_tokens(self, contact_id: str) -> List[TokenResponse]:
        db = self.session_factory()
        try:
            tokens = (
                db.query(EmergencyAccessToken)
                .filter(
                    EmergencyAccessToken.contact_id == contact_id,
                    EmergencyAccessToken.revoked_at.is_(None)
                )
                .order_by(EmergencyAccessToken.created_at.desc())
                .all()
            )
            return [TokenResponse.model_validate(t) for t in tokens]
        finally:
            db.close()

    def get_access_logs(self, token_id: Optional[str] = None, contact_id: Optional[str] = None,
                        action: Optional[AccessAction] = None, start: Optional[datetime] = None,
                        end: Optional[datetime] = None, limit: int = 100) -> List[AccessLogResponse]:
        start, end = to_naive_utc(start), to_naive_utc(end)
        db = self.session_factory()
        try:
            query = db.query(AccessLogEntry)
            if token_id:
                query = query.filter(AccessLogEntry.token_id == token_id)
            if contact_id:
                query = query.filter(AccessLogEntry.contact_id == contact_id)
            if action:
                query = query.filter(AccessLogEntry.action == AccessAction(action).value)
            if start:
                query = query.filter(AccessLogEntry.timestamp >= start)
            if end:
                query = query.filter(AccessLogEntry.timestamp <= end)
            entries = query.order_by(AccessLogEntry.id.desc()).limit(limit).all()
            return [AccessLogResponse.model_validate(e) for e in entries]
        finally:
            db.close()

    def cleanup_expired_tokens(self) -> int:
        """Deletes expired token records; their access logs stay"""
        db = self.session_factory()
        try:
            removed = (
                db.query(EmergencyAccessToken)
                .filter(EmergencyAccessToken.expires_at < self.clock())
                .delete(synchronize_session=False)
            )
            db.commit()
            if removed:
                logger.info(f"Removed {removed} expired emergency token(s)")
            return removed
        finally:
            db.close()
