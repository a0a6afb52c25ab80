"""Meta WhatsApp Cloud API client (bearer-token auth, JSON payloads)."""
from typing import Optional

import httpx

from relay.config import settings
from relay.exceptions import MediaDownloadException
from relay.utils.logger import log


class MetaClient:
    """Client for the WhatsApp Cloud API Graph endpoints."""

    def __init__(self):
        self.graph_url = settings.meta_graph_url.rstrip("/")
        self.phone_number_id = settings.meta_phone_number_id
        log.info("Meta WhatsApp client initialized")

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {settings.meta_access_token}"}

    async def send_text(
        self, to: str, body: str, phone_number_id: Optional[str] = None
    ) -> Optional[str]:
        """Send one text message.

        Returns:
            WhatsApp message id if successful, None otherwise
        """
        sender_id = phone_number_id or self.phone_number_id
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.graph_url}/{sender_id}/messages",
                    json=payload,
                    headers=self._headers,
                    timeout=15.0,
                )
            if response.status_code >= 400:
                log.error(f"Meta send fail: {response.status_code} {response.text[:200]}")
                return None
            messages = response.json().get("messages") or [{}]
            message_id = messages[0].get("id")
            log.info(f"Message sent to {to} via Meta, id: {message_id}")
            return message_id or "sent"
        except Exception as e:
            log.error(f"Error sending Meta message to {to}: {e}")
            return None

    async def download_media(self, media_id: str) -> bytes:
        """Resolve a media id to its URL, then fetch the bytes.

        Raises:
            MediaDownloadException: On a non-2xx response or missing URL
            httpx.TransportError: On network failure (retried by the caller)
        """
        async with httpx.AsyncClient(follow_redirects=True) as client:
            lookup = await client.get(
                f"{self.graph_url}/{media_id}", headers=self._headers, timeout=15.0
            )
            if lookup.status_code >= 400:
                raise MediaDownloadException(
                    source="meta", reason=f"media lookup HTTP {lookup.status_code}"
                )
            media_url = lookup.json().get("url")
            if not media_url:
                raise MediaDownloadException(source="meta", reason="media lookup returned no url")

            response = await client.get(media_url, headers=self._headers, timeout=30.0)

        if response.status_code >= 400:
            raise MediaDownloadException(
                source="meta", reason=f"media download HTTP {response.status_code}"
            )
        log.info(f"[MEDIA] Downloaded {len(response.content)} bytes from Meta")
        return response.content


# Global instance
meta_client = MetaClient()
