from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class AccessLevel(str, Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    FULL = "full"


class TokenType(str, Enum):
    TEMPORARY = "temporary"
    LONG_TERM = "long_term"
    PERMANENT = "permanent"


class AccessAction(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    ACCESSED = "accessed"
    REVOKED = "revoked"
    REFRESHED = "refreshed"
    ACTIVATED = "activated"
    FAILED = "failed"


# ---------- Requests ----------

class TokenGenerateRequest(BaseModel):
    contact_id: str
    access_level: AccessLevel = AccessLevel.VIEW
    token_type: TokenType = TokenType.TEMPORARY
    file_ids: List[str] = []
    expiration_hours: Optional[float] = Field(default=None, gt=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    refreshable: bool = True
    ip_restrictions: List[str] = []
    issued_by: Optional[str] = None
    metadata: Dict[str, Any] = {}


class TokenValidateRequest(BaseModel):
    token: str
    ip_address: Optional[str] = None
    check_expiration: bool = True
    check_uses: bool = True
    check_ip_restrictions: bool = True


class TokenUsageRequest(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    file_accessed: Optional[str] = None


class TokenRefreshRequest(BaseModel):
    extension_hours: Optional[float] = Field(default=None, gt=0)


class TokenRevokeRequest(BaseModel):
    reason: Optional[str] = None
    revoked_by: Optional[str] = None


# ---------- Responses ----------

class TokenResponse(BaseModel):
    id: str
    contact_id: str
    issued_by: Optional[str] = None
    access_level: AccessLevel
    permissions: List[str]
    token_type: TokenType
    file_ids: List[str] = []
    ip_restrictions: List[str] = []
    max_uses: int
    current_uses: int
    refreshable: bool
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IssuedTokenResponse(BaseModel):
    token: str
    access_url: str
    details: TokenResponse


class TokenValidationResponse(BaseModel):
    valid: bool = True
    token_id: str
    contact_id: str
    access_level: AccessLevel
    permissions: List[str]
    file_ids: List[str] = []
    remaining_uses: int
    expires_at: datetime
    expires_in_seconds: float


class TokenUsageResponse(BaseModel):
    token_id: str
    current_uses: int
    remaining_uses: int


class AccessLogResponse(BaseModel):
    id: int
    token_id: Optional[str] = None
    contact_id: Optional[str] = None
    action: AccessAction
    success: bool
    error: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    file_accessed: Optional[str] = None
    details: Dict[str, Any] = {}
    timestamp: datetime

    class Config:
        from_attributes = True
