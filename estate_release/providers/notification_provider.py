import logging
from typing import Dict, Any, List
import httpx
from estate_release.database import utcnow
from estate_release.services.errors import TransientDeliveryFailure

logger = logging.getLogger(__name__)

class WebhookNotificationProvider:
    """Delivers notifications by POSTing them to a webhook"""

    def __init__(self, webhook_url: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

        self.mock_mode = not webhook_url

        if self.mock_mode:
            logger.warning("Notification provider running in SIMULATION MODE - webhook not configured")
        else:
            logger.info(f"Notification provider delivering to {webhook_url}")

    def deliver_notification(self, recipients: List[str], template: str, payload: Dict[str, Any]) -> bool:
        """
        Send one notification. Raises TransientDeliveryFailure when the
        webhook cannot be reached or answers with an error status.
        """
        if self.mock_mode:
            logger.info(f"SIMULATION: would notify {recipients} with '{template}'")
            return True

        body = {
            "recipients": recipients,
            "template": template,
            "payload": payload,
            "sent_at": utcnow().isoformat()
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Notification '{template}' to {recipients} failed: {str(e)}")
            raise TransientDeliveryFailure(f"notification delivery failed: {e}") from e

        logger.info(f"Delivered '{template}' to {len(recipients)} recipient(s)")
        return True
