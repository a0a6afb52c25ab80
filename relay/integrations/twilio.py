"""Twilio WhatsApp client for messaging and inbound media."""
from typing import Dict, Optional

import httpx
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from relay.config import settings
from relay.exceptions import MediaDownloadException
from relay.utils.logger import log


def as_whatsapp_address(number: str) -> str:
    """Ensure a number carries the 'whatsapp:' channel prefix."""
    number = number.strip()
    return number if number.startswith("whatsapp:") else f"whatsapp:{number}"


class TwilioClient:
    """Client for sending WhatsApp messages and fetching inbound media via Twilio."""

    def __init__(self):
        """Initialize Twilio client. The REST client is created on first send."""
        self._client: Optional[Client] = None
        self.whatsapp_from = settings.twilio_whatsapp_from
        self.validator = RequestValidator(settings.twilio_auth_token)
        log.info("Twilio client initialized")

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return self._client

    def send_message(self, to: str, body: str) -> Optional[str]:
        """Send one WhatsApp text message.

        Returns:
            Message SID if successful, None otherwise
        """
        try:
            message = self.client.messages.create(
                from_=as_whatsapp_address(self.whatsapp_from),
                to=as_whatsapp_address(to),
                body=body,
            )
            log.info(f"Message sent to {to}, SID: {message.sid}")
            return message.sid
        except Exception as e:
            log.error(f"Error sending Twilio message to {to}: {e}")
            return None

    async def download_media(self, url: str) -> bytes:
        """Download inbound media. Twilio media URLs require basic auth.

        Raises:
            MediaDownloadException: On a non-2xx response
            httpx.TransportError: On network failure (retried by the caller)
        """
        auth = None
        if "twilio.com" in url:
            auth = (settings.twilio_account_sid, settings.twilio_auth_token)

        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(url, auth=auth, timeout=30.0)

        if response.status_code >= 400:
            raise MediaDownloadException(
                source="twilio",
                reason=f"HTTP {response.status_code}: {response.text[:200]}",
            )

        log.info(f"[MEDIA] Downloaded {len(response.content)} bytes from Twilio")
        return response.content

    def validate_webhook(self, url: str, params: Dict[str, str], signature: str) -> bool:
        """Validate the X-Twilio-Signature header of a webhook request."""
        try:
            return self.validator.validate(url, params, signature)
        except Exception as e:
            log.error(f"Error validating webhook: {e}")
            return False


# Global instance
twilio_client = TwilioClient()
