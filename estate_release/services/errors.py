"""
Error taxonomy for the release pipeline.

Every error carries a stable ``code`` and the HTTP status the route layer
answers with. Token validation failures only ever surface their code, so a
caller cannot tell which check rejected the token beyond the class itself.
"""
from typing import Optional


class ReleaseError(Exception):
    code = "release_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(ReleaseError):
    code = "not_found"
    status_code = 404


class Forbidden(ReleaseError):
    code = "forbidden"
    status_code = 403


class InvalidConfiguration(ReleaseError):
    code = "invalid_configuration"
    status_code = 400


class TokenError(ReleaseError):
    """Base for failures surfaced by token validation"""


class RateLimited(TokenError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, message: Optional[str] = None, retry_after_seconds: float = 0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class InvalidToken(TokenError):
    code = "invalid"
    status_code = 401


class Expired(TokenError):
    code = "expired"
    status_code = 410


class Exhausted(TokenError):
    code = "exhausted"
    status_code = 410


class IpDenied(TokenError):
    code = "ip_denied"
    status_code = 403


class TransientDeliveryFailure(ReleaseError):
    code = "transient_delivery_failure"
    status_code = 503
