"""
Wires the release pipeline services together from a Settings instance
"""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from estate_release.database import Settings, utcnow
from estate_release.providers import LocalReleaseProvider, WebhookNotificationProvider
from estate_release.services.audit import AuditLogger
from estate_release.services.locks import KeyedLock
from estate_release.services.monitor import DeadManSwitchMonitor
from estate_release.services.rate_limiter import FixedWindowRateLimiter
from estate_release.services.rules import RuleRegistry
from estate_release.services.switch_service import DeadManSwitchService
from estate_release.services.token_service import EmergencyAccessService
from estate_release.services.trigger_engine import TriggerEvaluationEngine

logger = logging.getLogger(__name__)


class ReleaseServices:
    def __init__(self, settings: Settings, session_factory: Callable[[], Session],
                 notifier=None, release=None, clock: Callable = utcnow,
                 rate_limiter: Optional[FixedWindowRateLimiter] = None):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.locks = KeyedLock()
        self.audit = AuditLogger(session_factory, clock)
        self.notifier = notifier or WebhookNotificationProvider(
            settings.notification_webhook_url, settings.notification_timeout_seconds
        )
        self.release = release or LocalReleaseProvider(session_factory, clock)

        self.switches = DeadManSwitchService(session_factory, self.audit, self.locks, clock)
        self.monitor = DeadManSwitchMonitor(
            session_factory, self.notifier, self.release, self.audit, self.locks, clock,
            tick_seconds=settings.monitor_tick_seconds,
            max_workers=settings.monitor_max_workers,
            health_check_seconds=settings.monitor_health_check_seconds,
            auto_recovery=settings.monitor_auto_recovery,
            alert_on_errors=settings.monitor_alert_on_errors
        )
        self.triggers = TriggerEvaluationEngine(
            session_factory, RuleRegistry.with_defaults(), self.notifier, self.audit, clock,
            tick_seconds=settings.evaluation_tick_seconds,
            history_limit=settings.evaluation_history_limit,
            release=self.release
        )
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(
            settings.rate_limit_max_attempts, settings.rate_limit_window_seconds
        )
        self.tokens = EmergencyAccessService(
            session_factory, self.rate_limiter, settings.secret_key, settings.public_base_url, clock,
            default_expiration_hours=settings.token_default_expiration_hours,
            default_max_uses=settings.token_default_max_uses
        )

    def start(self):
        if self.settings.monitor_auto_start:
            self.monitor.start()
        self.triggers.start()
        self.rate_limiter.start_cleanup(self.settings.rate_limit_cleanup_seconds)
        logger.info("Release pipeline background jobs started")

    def shutdown(self):
        self.monitor.shutdown()
        self.triggers.shutdown()
        self.rate_limiter.stop_cleanup()
        logger.info("Release pipeline background jobs stopped")
