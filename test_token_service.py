"""
Emergency access tokens: validation order, use counting, lifecycle and
access logging
"""
import threading

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import TEST_SECRET
from estate_release.models import Base
from estate_release.schemas.token import AccessAction, AccessLevel, TokenGenerateRequest, TokenType
from estate_release.services.errors import (
    Exhausted,
    Expired,
    Forbidden,
    InvalidConfiguration,
    InvalidToken,
    IpDenied,
    NotFound,
    RateLimited,
)
from estate_release.services.rate_limiter import FixedWindowRateLimiter
from estate_release.services.token_service import EmergencyAccessService, expand_permissions, has_permission


def issue(services, **kwargs):
    values = dict(contact_id="contact-1", issued_by="owner-1")
    values.update(kwargs)
    return services.tokens.generate_token(TokenGenerateRequest(**values))


def test_permissions_are_cumulative():
    assert expand_permissions(AccessLevel.VIEW) == ["view"]
    assert expand_permissions(AccessLevel.DOWNLOAD) == ["view", "download"]
    full = expand_permissions(AccessLevel.FULL)
    assert {"view", "download"} <= set(full)
    assert has_permission(full, "download")
    assert not has_permission(expand_permissions(AccessLevel.VIEW), "download")


def test_generate_uses_temporary_defaults(services, clock):
    issued = issue(services)
    assert issued.details.max_uses == 10
    assert (issued.details.expires_at - clock()).total_seconds() == 72 * 3600
    assert issued.access_url == f"https://estate.example.com/emergency-access/{issued.token}"

    claims = jwt.decode(issued.token, options={"verify_signature": False})
    assert claims["tokenId"] == issued.details.id
    assert claims["accessLevel"] == "view"


def test_long_term_defaults(services):
    issued = issue(services, token_type=TokenType.LONG_TERM)
    assert issued.details.max_uses == 1000


def test_single_use_token_is_exhausted_after_access(services):
    issued = issue(services, max_uses=1)

    validation = services.tokens.validate_token(issued.token, ip_address="10.0.0.1")
    assert validation.remaining_uses == 1
    usage = services.tokens.record_token_usage(validation.token_id, ip_address="10.0.0.1")
    assert usage.current_uses == 1 and usage.remaining_uses == 0

    with pytest.raises(Exhausted):
        services.tokens.validate_token(issued.token, ip_address="10.0.0.1")
    with pytest.raises(Exhausted):
        services.tokens.record_token_usage(validation.token_id)

    assert services.tokens.get_token(issued.details.id).current_uses == 1


def test_uses_check_can_be_skipped(services):
    issued = issue(services, max_uses=1)
    services.tokens.record_token_usage(issued.details.id)
    validation = services.tokens.validate_token(issued.token, check_uses=False)
    assert validation.remaining_uses == 0


def test_revoked_token_is_invalid(services):
    issued = issue(services)
    services.tokens.revoke_token(issued.details.id, reason="lost phone")
    again = services.tokens.revoke_token(issued.details.id)
    assert again.revoked_at is not None

    with pytest.raises(InvalidToken):
        services.tokens.validate_token(issued.token)
    with pytest.raises(InvalidToken):
        services.tokens.refresh_token(issued.details.id)
    assert services.tokens.get_contact_tokens("contact-1") == []


def test_expired_after_default_window(services, clock):
    issued = issue(services)
    clock.at(hours=73)
    with pytest.raises(Expired):
        services.tokens.validate_token(issued.token)
    assert services.tokens.validate_token(issued.token, check_expiration=False).expires_in_seconds == 0


def test_ip_restrictions(services):
    issued = issue(services, ip_restrictions=["192.168.1.10"])
    with pytest.raises(IpDenied):
        services.tokens.validate_token(issued.token, ip_address="10.0.0.1")
    assert services.tokens.validate_token(issued.token, ip_address="192.168.1.10").valid
    assert services.tokens.validate_token(issued.token, ip_address="10.0.0.2", check_ip_restrictions=False).valid


def test_foreign_signature_is_invalid(services):
    issued = issue(services)
    claims = jwt.decode(issued.token, options={"verify_signature": False})
    forged = jwt.encode(claims, "some-other-secret-that-is-long-enough", algorithm="HS256")
    with pytest.raises(InvalidToken):
        services.tokens.validate_token(forged)
    with pytest.raises(InvalidToken):
        services.tokens.validate_token("not-a-token")


def test_rate_limit_applies_before_validity(services):
    issued = issue(services)
    for _ in range(20):
        with pytest.raises(InvalidToken):
            services.tokens.validate_token("garbage", ip_address="203.0.113.9")

    with pytest.raises(RateLimited) as exc_info:
        services.tokens.validate_token(issued.token, ip_address="203.0.113.9")
    assert exc_info.value.retry_after_seconds > 0

    assert services.tokens.validate_token(issued.token, ip_address="203.0.113.10").valid


def test_rate_limit_window_resets(services, timer):
    for _ in range(21):
        with pytest.raises((InvalidToken, RateLimited)):
            services.tokens.validate_token("garbage", ip_address="203.0.113.9")
    timer.advance(3601)
    issued = issue(services)
    assert services.tokens.validate_token(issued.token, ip_address="203.0.113.9").valid


def test_refresh_extends_expiry_and_keeps_uses(services, clock):
    issued = issue(services, max_uses=3)
    services.tokens.record_token_usage(issued.details.id)
    clock.at(hours=70)

    refreshed = services.tokens.refresh_token(issued.details.id, extension_hours=24)
    assert refreshed.details.current_uses == 1
    assert (refreshed.details.expires_at - clock()).total_seconds() == 24 * 3600

    clock.at(hours=80)
    assert services.tokens.validate_token(refreshed.token).remaining_uses == 2


def test_refresh_requires_refreshable(services):
    issued = issue(services, refreshable=False)
    with pytest.raises(InvalidConfiguration):
        services.tokens.refresh_token(issued.details.id)
    with pytest.raises(NotFound):
        services.tokens.refresh_token("missing")


def test_file_restrictions(services):
    issued = issue(services, file_ids=["will.pdf"])
    with pytest.raises(Forbidden):
        services.tokens.record_token_usage(issued.details.id, file_accessed="photos.zip")
    usage = services.tokens.record_token_usage(issued.details.id, file_accessed="will.pdf")
    assert usage.current_uses == 1


def test_activation_is_recorded_once(services, clock):
    issued = issue(services)
    first = services.tokens.activate_token(issued.details.id)
    clock.advance(hours=1)
    second = services.tokens.activate_token(issued.details.id)
    assert first.activated_at == second.activated_at


def test_every_attempt_is_logged(services, clock):
    issued = issue(services, max_uses=1)
    services.tokens.validate_token(issued.token, ip_address="10.0.0.1")
    services.tokens.record_token_usage(issued.details.id, ip_address="10.0.0.1", user_agent="pytest")
    with pytest.raises(Exhausted):
        services.tokens.validate_token(issued.token, ip_address="10.0.0.1")

    logs = services.tokens.get_access_logs(token_id=issued.details.id)
    assert [entry.action for entry in logs] == [
        AccessAction.FAILED, AccessAction.ACCESSED, AccessAction.VALIDATED, AccessAction.CREATED,
    ]
    assert logs[0].error == "exhausted"
    assert logs[0].success is False
    assert logs[1].user_agent == "pytest"

    failures = services.tokens.get_access_logs(action=AccessAction.FAILED)
    assert len(failures) == 1


def test_cleanup_removes_expired_tokens_but_keeps_logs(services, clock):
    expired = issue(services, expiration_hours=1)
    live = issue(services, expiration_hours=48)
    clock.at(hours=2)

    assert services.tokens.cleanup_expired_tokens() == 1
    with pytest.raises(NotFound):
        services.tokens.get_token(expired.details.id)
    assert services.tokens.get_token(live.details.id).id == live.details.id
    assert services.tokens.get_access_logs(token_id=expired.details.id)


def test_concurrent_usage_stops_at_max_uses(tmp_path, clock):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tokens.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    tokens = EmergencyAccessService(
        sessionmaker(autocommit=False, autoflush=False, bind=engine),
        FixedWindowRateLimiter(100, 3600),
        TEST_SECRET,
        clock=clock,
    )
    issued = tokens.generate_token(TokenGenerateRequest(contact_id="contact-1", issued_by="owner-1", max_uses=3))

    workers = 12
    barrier = threading.Barrier(workers)
    outcomes = []

    def use():
        barrier.wait()
        try:
            tokens.record_token_usage(issued.details.id, ip_address="10.0.0.1")
            outcomes.append("accessed")
        except Exhausted:
            outcomes.append("exhausted")
        except Exception as e:
            outcomes.append(repr(e))

    threads = [threading.Thread(target=use) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert sorted(outcomes) == ["accessed"] * 3 + ["exhausted"] * 9
        assert tokens.get_token(issued.details.id).current_uses == 3
    finally:
        engine.dispose()
