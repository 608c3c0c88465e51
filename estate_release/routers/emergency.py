from fastapi import APIRouter, Depends, Query, Request
from datetime import datetime
from typing import List, Optional
from estate_release.routers.deps import get_services
from estate_release.schemas.token import (
    AccessAction, AccessLogResponse, IssuedTokenResponse, TokenGenerateRequest, TokenRefreshRequest,
    TokenResponse, TokenRevokeRequest, TokenUsageRequest, TokenUsageResponse, TokenValidateRequest,
    TokenValidationResponse
)
from estate_release.services.container import ReleaseServices

router = APIRouter(prefix="/api/v1/emergency", tags=["emergency-access"])

def _client_ip(request: Request, explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    return request.client.host if request.client else None

@router.post("/tokens", response_model=IssuedTokenResponse, status_code=201)
def generate_token(request: TokenGenerateRequest, services: ReleaseServices = Depends(get_services)):
    """Issue an emergency access token for a contact"""
    return services.tokens.generate_token(request)

@router.post("/tokens/validate", response_model=TokenValidationResponse)
def validate_token(body: TokenValidateRequest, request: Request, services: ReleaseServices = Depends(get_services)):
    return services.tokens.validate_token(
        body.token,
        ip_address=_client_ip(request, body.ip_address),
        check_expiration=body.check_expiration,
        check_uses=body.check_uses,
        check_ip_restrictions=body.check_ip_restrictions
    )

@router.post("/tokens/{token_id}/usage", response_model=TokenUsageResponse)
def record_usage(token_id: str, body: TokenUsageRequest, request: Request,
                 services: ReleaseServices = Depends(get_services)):
    """Count one content access against the token"""
    return services.tokens.record_token_usage(
        token_id,
        ip_address=_client_ip(request, body.ip_address),
        user_agent=body.user_agent or request.headers.get("user-agent"),
        file_accessed=body.file_accessed
    )

@router.post("/tokens/{token_id}/revoke", response_model=TokenResponse)
def revoke_token(token_id: str, body: TokenRevokeRequest, services: ReleaseServices = Depends(get_services)):
    return services.tokens.revoke_token(token_id, body.reason, body.revoked_by)

@router.post("/tokens/{token_id}/refresh", response_model=IssuedTokenResponse)
def refresh_token(token_id: str, body: TokenRefreshRequest, services: ReleaseServices = Depends(get_services)):
    return services.tokens.refresh_token(token_id, body.extension_hours)

@router.post("/tokens/{token_id}/activate", response_model=TokenResponse)
def activate_token(token_id: str, services: ReleaseServices = Depends(get_services)):
    return services.tokens.activate_token(token_id)

@router.get("/tokens/{token_id}/jwt")
def issue_jwt(token_id: str, services: ReleaseServices = Depends(get_services)):
    return {"token_id": token_id, "token": services.tokens.issue_jwt(token_id)}

@router.get("/contacts/{contact_id}/tokens", response_model=List[TokenResponse])
def get_contact_tokens(contact_id: str, services: ReleaseServices = Depends(get_services)):
    """Active (non-revoked) tokens of a contact"""
    return services.tokens.get_contact_tokens(contact_id)

@router.get("/access-logs", response_model=List[AccessLogResponse])
def get_access_logs(
    token_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    action: Optional[AccessAction] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    services: ReleaseServices = Depends(get_services)
):
    return services.tokens.get_access_logs(token_id, contact_id, action, start, end, limit)

@router.post("/cleanup")
def cleanup(services: ReleaseServices = Depends(get_services)):
    """Delete expired tokens and expired rate-limit windows"""
    return {
        "tokens_removed": services.tokens.cleanup_expired_tokens(),
        "rate_limit_windows_removed": services.rate_limiter.cleanup()
    }
