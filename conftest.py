"""
Shared fixtures: in-memory database, controllable clocks and collaborator fakes
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from estate_release.database import Settings
from estate_release.models import Base
from estate_release.schemas.switch import BeneficiaryGrant, EscalationStage, ReleasePlan, SwitchConfig
from estate_release.services.container import ReleaseServices
from estate_release.services.errors import TransientDeliveryFailure
from estate_release.services.rate_limiter import FixedWindowRateLimiter

T0 = datetime(2030, 1, 1, 12, 0, 0)
TEST_SECRET = "test-secret-key-long-enough-for-hs256-signing"


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def at(self, **kwargs) -> datetime:
        """Jump to T0 plus the given offset"""
        self.now = T0 + timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Monotonic seconds for the rate limiter"""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.failures = 0

    def deliver_notification(self, recipients, template, payload):
        if self.failures > 0:
            self.failures -= 1
            raise TransientDeliveryFailure("webhook unreachable")
        self.sent.append({"recipients": list(recipients), "template": template, "payload": dict(payload)})
        return True

    def templates(self):
        return [n["template"] for n in self.sent]


def scenario_config(**overrides) -> SwitchConfig:
    """48h interval, warning at 24h, grace and release at 48h, one beneficiary"""
    values = dict(
        check_in_interval_hours=48,
        warning_threshold_hours=24,
        escalation_stages=[
            EscalationStage(delay_hours=48, recipients=["sister@example.com"]),
            EscalationStage(delay_hours=48, recipients=["executor@example.com"], action="release"),
        ],
        release=ReleasePlan(grants=[BeneficiaryGrant(beneficiary_id="beneficiary-1")]),
    )
    values.update(overrides)
    return SwitchConfig(**values)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        secret_key=TEST_SECRET,
        public_base_url="https://estate.example.com",
        monitor_auto_start=False,
        rate_limit_max_attempts=20,
        rate_limit_window_seconds=3600,
        notification_webhook_url="",
    )


@pytest.fixture
def services(settings, session_factory, clock, timer, notifier):
    limiter = FixedWindowRateLimiter(
        settings.rate_limit_max_attempts, settings.rate_limit_window_seconds, clock=timer
    )
    container = ReleaseServices(settings, session_factory, notifier=notifier, clock=clock, rate_limiter=limiter)
    yield container
    container.shutdown()


@pytest.fixture
def armed_switch(services):
    """Scenario switch armed at T0 for owner-1"""
    switch = services.switches.create_switch("owner-1", scenario_config())
    return services.switches.enable_switch(switch.id, "owner-1")
