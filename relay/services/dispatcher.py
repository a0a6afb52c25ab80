"""Outbound reply delivery: split long replies and send fragments in order."""
import asyncio
import re
from dataclasses import dataclass
from typing import List, Optional

from relay.config import settings
from relay.exceptions import SendFailed
from relay.integrations.meta import MetaClient, meta_client
from relay.integrations.twilio import TwilioClient, twilio_client
from relay.models import Channel
from relay.utils.logger import log

PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")
SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def _pack_sentences(paragraph: str, limit: int) -> List[str]:
    fragments: List[str] = []
    current = ""
    for sentence in SENTENCE_BREAK.split(paragraph):
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= limit or not current:
            current = candidate
        else:
            fragments.append(current)
            current = sentence
    if current:
        fragments.append(current)
    return fragments


def split_reply(text: Optional[str], limit: Optional[int] = None) -> List[str]:
    """Split a reply into channel-sized fragments.

    Paragraphs within ``limit`` stay whole. Longer paragraphs are split on
    sentence boundaries and packed greedily; a single sentence longer than
    the limit is kept as one fragment.
    """
    limit = limit or settings.fragment_soft_limit
    fragments: List[str] = []
    for paragraph in PARAGRAPH_BREAK.split(text or ""):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= limit:
            fragments.append(paragraph)
        else:
            fragments.extend(_pack_sentences(paragraph, limit))
    return fragments


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.failed


class OutboundDispatcher:
    """Sends reply fragments sequentially with a fixed inter-fragment delay."""

    def __init__(
        self,
        twilio: Optional[TwilioClient] = None,
        meta: Optional[MetaClient] = None,
        delay: Optional[float] = None,
        limit: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.twilio = twilio or twilio_client
        self.meta = meta or meta_client
        self.delay = delay if delay is not None else settings.fragment_delay_seconds
        self.limit = limit or settings.fragment_soft_limit
        self._sleep = sleep

    async def _send(
        self, fragment: str, destination: str, channel: Channel, phone_number_id: Optional[str]
    ) -> None:
        if channel == Channel.TWILIO:
            sid = await asyncio.to_thread(self.twilio.send_message, destination, fragment)
        elif channel == Channel.META:
            sid = await self.meta.send_text(destination, fragment, phone_number_id)
        else:
            raise SendFailed(channel.value, "channel has no outbound transport")
        if not sid:
            raise SendFailed(channel.value, f"provider rejected fragment to {destination}")

    async def dispatch(
        self,
        reply: str,
        destination: str,
        channel: Channel,
        phone_number_id: Optional[str] = None,
    ) -> DispatchReport:
        """Deliver every fragment of ``reply``; a failed fragment does not stop the rest."""
        fragments = split_reply(reply, self.limit)
        report = DispatchReport()
        log.info(f"[DISPATCH] Sending {len(fragments)} fragment(s) to {destination} via {channel.value}")

        for index, fragment in enumerate(fragments):
            try:
                await self._send(fragment, destination, channel, phone_number_id)
                report.sent += 1
                log.info(f"[DISPATCH] Fragment {index + 1}/{len(fragments)} sent")
            except SendFailed as e:
                report.failed += 1
                log.error(f"[DISPATCH] Fragment {index + 1}/{len(fragments)} failed: {e}")
            except Exception as e:
                report.failed += 1
                log.exception(f"[DISPATCH] Unexpected error sending fragment {index + 1}: {e}")

            if index < len(fragments) - 1:
                await self._sleep(self.delay)

        return report


# Global instance
dispatcher = OutboundDispatcher()
