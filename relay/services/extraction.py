"""Extract user-visible text and media references from an inbound payload."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relay.models import InboundPayload, MediaDescriptor
from relay.services.wire_format import MEDIA_MESSAGE_TYPES, num_media, recover_by_regex
from relay.utils.logger import log

FALLBACK_TEXT_FIELDS = ("body", "text", "message")
DEFAULT_META_AUDIO_TYPE = "audio/ogg"


@dataclass
class ExtractedMessage:
    text: str = ""
    media: List[MediaDescriptor] = field(default_factory=list)
    message_id: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return any(descriptor.is_audio for descriptor in self.media)

    @property
    def audio(self) -> Optional[MediaDescriptor]:
        return next((d for d in self.media if d.is_audio), None)


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_twilio_media(fields: Dict[str, Any]) -> List[MediaDescriptor]:
    """Collect indexed MediaUrl{i}/MediaContentType{i} pairs."""
    count = num_media(fields)
    if count == 0 and fields.get("MessageType") != "audio":
        return []

    media = []
    for i in range(max(count, 1)):
        url = fields.get(f"MediaUrl{i}")
        if not url:
            continue
        media.append(MediaDescriptor(url=url, content_type=fields.get(f"MediaContentType{i}")))
    return media


def extract_meta_media(fields: Dict[str, Any]) -> List[MediaDescriptor]:
    media = []
    for media_type in MEDIA_MESSAGE_TYPES:
        blob_id = fields.get(f"meta.{media_type}_id")
        if not blob_id:
            continue
        content_type = fields.get("meta.media_mime_type")
        if not content_type and media_type in ("audio", "voice"):
            content_type = DEFAULT_META_AUDIO_TYPE
        media.append(MediaDescriptor(blob_id=blob_id, content_type=content_type))
    return media


def _scan_fallback_fields(fields: Dict[str, Any]) -> str:
    """Case-insensitive scan for body/text/message style fields."""
    for name in FALLBACK_TEXT_FIELDS:
        for key, value in fields.items():
            if key.lower() == name and _clean(value):
                return _clean(value)
    return ""


def extract_message_id(fields: Dict[str, Any]) -> Optional[str]:
    return fields.get("MessageSid") or fields.get("SmsSid") or fields.get("meta.id") or None


def extract(payload: InboundPayload) -> ExtractedMessage:
    """Pull text, media and the provider message id out of a flat payload.

    Order: explicit Body, Meta text, indexed media pairs, a generic
    body/text/message field scan, then a regex scrape of a collapsed key.
    """
    fields = payload.fields
    message = ExtractedMessage(message_id=extract_message_id(fields))

    message.text = _clean(fields.get("Body")) or _clean(fields.get("meta.text"))
    message.media = extract_twilio_media(fields) or extract_meta_media(fields)

    if not message.text and not message.media:
        message.text = _scan_fallback_fields(fields)

    if not message.text and not message.media and payload.is_single_key:
        scraped = recover_by_regex(next(iter(fields))) or {}
        message.text = _clean(scraped.get("Body"))
        if message.text:
            log.info("Message text scraped from malformed form key")

    if not message.text:
        message.text = _clean(fields.get("meta.caption"))

    log.info(
        f"📝 Extracted message: text_len={len(message.text)}, media={len(message.media)}, "
        f"audio={message.is_audio}, message_id={message.message_id}"
    )
    return message
