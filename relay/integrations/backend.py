"""HTTP client for the downstream reply-generation backend."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from relay.config import settings
from relay.exceptions import BackendTimeout, BackendUnreachable
from relay.models import ContentPart
from relay.utils.logger import log


@dataclass
class BackendReply:
    parts: List[ContentPart] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Text parts joined by paragraph breaks."""
        return "\n\n".join(
            part.text for part in self.parts if part.type == "text" and part.text
        )


class GenerationBackendClient:
    """Posts the conversation to the backend and returns its reply parts."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        self.url = url or settings.backend_url
        self.timeout = timeout or settings.backend_timeout

    async def generate(
        self,
        text: str,
        history: List[Dict[str, Any]],
        phone: Optional[str],
        user_id: str,
        phone_number_id: Optional[str] = None,
        media_info: Optional[Dict[str, Any]] = None,
    ) -> BackendReply:
        """Request a reply.

        Raises:
            BackendTimeout: When the hard timeout elapses
            BackendUnreachable: On transport errors, non-2xx or malformed bodies
        """
        payload: Dict[str, Any] = {
            "input": {"type": "text", "text": text},
            "history": history,
            "phone": phone,
            "userId": user_id,
        }
        if phone_number_id:
            payload["phoneNumberId"] = phone_number_id
        if media_info:
            payload["mediaInfo"] = media_info

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise BackendTimeout(self.timeout, original_exception=e) from e
        except httpx.HTTPError as e:
            raise BackendUnreachable(str(e), original_exception=e) from e

        if response.status_code >= 400:
            raise BackendUnreachable(f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise BackendUnreachable("invalid JSON body", original_exception=e) from e

        reply = body.get("reply") if isinstance(body, dict) else None
        if not isinstance(reply, list):
            raise BackendUnreachable("response has no reply list")

        try:
            parts = [ContentPart.model_validate(item) for item in reply if isinstance(item, dict)]
        except ValidationError as e:
            raise BackendUnreachable("malformed reply part", original_exception=e) from e
        result = BackendReply(parts=parts)
        log.info(f"Backend reply: {len(parts)} parts, {len(result.text)} chars")
        return result


# Global instance
backend_client = GenerationBackendClient()
