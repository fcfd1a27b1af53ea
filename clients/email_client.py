"""
Email gateway client for delivering magic links via an HTTP gateway.

Requests are authenticated with an API key and an HMAC-SHA256 signature
over the exact JSON body. The gateway renders and sends the message; this
client only hands over the recipient and the callback URL.

LoggingEmailSender stands in for the gateway during local development.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod

import requests

logger = logging.getLogger(__name__)


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


class EmailSender(ABC):
    """Delivers a magic link URL to a recipient."""

    @abstractmethod
    def send_magic_link(self, email: str, url: str) -> None:
        """Raises EmailGatewayError if delivery failed."""


class EmailGatewayClient(EmailSender):
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(
        self,
        gateway_url: str,
        api_key: str,
        hmac_secret: str,
        app_name: str = "Unsent",
        timeout_seconds: float = 10,
    ):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            app_name: Product name shown in the email
            timeout_seconds: HTTP timeout for a single gateway call

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.app_name = app_name
        self.timeout_seconds = timeout_seconds

    def sign(self, payload_json: str) -> str:
        """Hex HMAC-SHA256 of the serialized payload."""
        return hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Raises:
            EmailGatewayError: On any failure
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": self.sign(payload_json),
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON (status {response.status_code})")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_magic_link(self, email: str, url: str) -> None:
        """
        Deliver a magic link.

        Args:
            email: Recipient email address
            url: Complete callback URL including the token

        Raises:
            EmailGatewayError: On any failure
        """
        payload = {
            "type": "magic_link",
            "email": email,
            "url": url,
            "subject": f"Your magic link for {self.app_name}",
            "sender": "auth",
        }
        self._sign_and_send(payload)
        # The URL carries a bearer secret; never log it.
        logger.info(f"Magic link email sent to {email}")


class LoggingEmailSender(EmailSender):
    """Local development only: writes the magic link to the log instead of emailing it.

    The URL is a live credential, so this must never be wired in production.
    Enabled by EMAIL_DELIVERY=console.
    """

    def send_magic_link(self, email: str, url: str) -> None:
        logger.warning(f"[dev] Magic link for {email}: {url}")
