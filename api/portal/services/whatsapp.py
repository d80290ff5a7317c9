"""
Delivery of alert texts through the whatsapp-bot service on the private
Docker network. Delivery problems are logged and reported as a count, never
raised: an outage of the bot must not turn a sync run into a failure.
"""

import logging

import requests

from portal.core.security import redact_error_message

logger = logging.getLogger(__name__)


class WhatsAppClient:
    def __init__(self, base_url: str, *, timeout: float = 10.0, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, to: str, message: str) -> bool:
        """POST one message to an E.164 number (``+12223334444``). True when the bot accepted it."""
        if not to or not message:
            return False
        try:
            resp = self._session.post(
                f"{self.base_url}/send", json={"to": to, "message": message}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.warning("WhatsApp delivery to %s failed: %s", to, redact_error_message(str(exc)))
            return False
        if resp.status_code != 200:
            logger.warning(
                "whatsapp-bot rejected message to %s with %d: %s",
                to, resp.status_code, redact_error_message(resp.text[:200]),
            )
            return False
        return True

    def broadcast(self, recipients: list[str], message: str) -> int:
        """Number of recipients the message reached."""
        return sum(self.send(to, message) for to in recipients if to)
