"""Inbound wire format detection and recovery.

Both providers deliver the same logical event: Meta as a nested JSON
document, Twilio as a flat form. Some proxies double-encode Twilio bodies so
the whole payload ends up as a single long form key with an empty (or "=")
value. Recovery strategies are plain functions tried in order; the first
one that yields a recognizable field wins.
"""

import base64
import binascii
import json
import re
from typing import Any, Callable, Dict, Optional, Tuple, Union
from urllib.parse import parse_qsl, unquote, unquote_plus

from relay.exceptions import ParseRecoveryExhausted
from relay.models import InboundPayload, SourceKind
from relay.utils.logger import log

# A single form key at least this long is treated as a collapsed payload
MALFORMED_KEY_MIN_LENGTH = 100

RECOGNIZABLE_FIELDS = ("From", "WaId", "Body")

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+=*$")
_REGEX_FIELDS = {
    "Body": re.compile(r"Body=([^&]+)"),
    "From": re.compile(r"From=([^&]+)"),
    "WaId": re.compile(r"WaId=([^&]+)"),
    "MessageSid": re.compile(r"MessageSid=([^&]+)"),
}

MEDIA_MESSAGE_TYPES = ("audio", "voice", "image", "video", "document", "sticker")

RecoveryStrategy = Callable[[str], Optional[Dict[str, str]]]


def parse_form(body: str) -> Dict[str, str]:
    """Parse a urlencoded body keeping the first value of each key."""
    fields: Dict[str, str] = {}
    for key, value in parse_qsl(body, keep_blank_values=True):
        fields.setdefault(key, value)
    return fields


def _has_recognizable_field(fields: Optional[Dict[str, Any]]) -> bool:
    return bool(fields) and any(fields.get(name) for name in RECOGNIZABLE_FIELDS)


def recover_base64(raw: str) -> Optional[Dict[str, str]]:
    """Decode a base64-collapsed body and re-parse it as a form."""
    candidate = raw.strip().rstrip("&")
    if not _BASE64_PATTERN.match(candidate):
        return None
    try:
        decoded = base64.b64decode(candidate, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    fields = parse_form(decoded)
    return fields if _has_recognizable_field(fields) else None


def recover_percent_encoded(raw: str) -> Optional[Dict[str, str]]:
    """Percent-decode a collapsed body and re-parse it as a form."""
    candidate = raw.strip()
    if "%" not in candidate:
        return None
    decoded = unquote(candidate)
    if decoded == candidate:
        return None
    fields = parse_form(decoded)
    return fields if _has_recognizable_field(fields) else None


def recover_by_regex(raw: str) -> Optional[Dict[str, str]]:
    """Last resort: scrape known field names straight out of the raw body."""
    for candidate in (raw, unquote(raw)):
        fields: Dict[str, str] = {}
        for name, pattern in _REGEX_FIELDS.items():
            match = pattern.search(candidate)
            if match:
                fields[name] = unquote_plus(match.group(1))
        if _has_recognizable_field(fields):
            return fields
    return None


RECOVERY_CHAIN: Tuple[Tuple[str, RecoveryStrategy], ...] = (
    ("base64", recover_base64),
    ("percent", recover_percent_encoded),
    ("regex", recover_by_regex),
)


def looks_collapsed(fields: Dict[str, str]) -> bool:
    """True when a form parse produced one long key with an empty or '=' value."""
    if len(fields) != 1:
        return False
    key, value = next(iter(fields.items()))
    return len(key) > MALFORMED_KEY_MIN_LENGTH and value in ("", "=")


def run_recovery_chain(raw: str) -> Tuple[Dict[str, str], Optional[str]]:
    """Try each recovery strategy in order.

    Returns:
        Tuple of (fields, strategy_name). Fields is empty and the name is
        None when every strategy failed.
    """
    for name, strategy in RECOVERY_CHAIN:
        try:
            fields = strategy(raw)
        except Exception as e:
            log.warning(f"Recovery strategy '{name}' raised: {e}")
            continue
        if fields:
            log.info(f"🔧 Collapsed payload recovered by '{name}' ({len(fields)} fields)")
            return fields, name

    error = ParseRecoveryExhausted([name for name, _ in RECOVERY_CHAIN])
    log.warning(f"{error} - continuing with empty fields")
    return {}, None


def flatten_meta_event(document: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten entry[0].changes[0].value of a Meta webhook into ``meta.*`` keys."""
    try:
        value = document["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return {}
    if not isinstance(value, dict):
        return {}

    fields: Dict[str, Any] = {}
    phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
    if phone_number_id:
        fields["meta.phone_number_id"] = phone_number_id

    contacts = value.get("contacts") or []
    if contacts and contacts[0].get("wa_id"):
        fields["meta.wa_id"] = contacts[0]["wa_id"]

    messages = value.get("messages") or []
    if not messages:
        return fields

    message = messages[0]
    message_type = message.get("type", "text")
    fields["meta.id"] = message.get("id")
    fields["meta.from"] = message.get("from")
    fields["meta.type"] = message_type
    text = (message.get("text") or {}).get("body")
    if text:
        fields["meta.text"] = text

    for media_type in MEDIA_MESSAGE_TYPES:
        media = message.get(media_type)
        if isinstance(media, dict) and media.get("id"):
            fields[f"meta.{media_type}_id"] = media["id"]
            if media.get("mime_type"):
                fields["meta.media_mime_type"] = media["mime_type"]
            if media.get("caption"):
                fields["meta.caption"] = media["caption"]

    return {key: val for key, val in fields.items() if val is not None}


def _detect_json(raw: str) -> InboundPayload:
    try:
        document = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        log.warning(f"JSON body did not parse ({e}), scraping known fields instead")
        fields = recover_by_regex(raw) or {}
        return InboundPayload(
            fields=fields,
            source_kind=SourceKind.RECOVERED if fields else SourceKind.UNKNOWN,
            raw_body=raw,
            recovered_by="regex" if fields else None,
        )

    if not isinstance(document, dict):
        return InboundPayload(source_kind=SourceKind.UNKNOWN, raw_body=raw)

    if "entry" in document:
        return InboundPayload(
            fields=flatten_meta_event(document),
            source_kind=SourceKind.META_JSON,
            raw_body=raw,
        )

    if "input" in document:
        return InboundPayload(fields=document, source_kind=SourceKind.WEB_JSON, raw_body=raw)

    return InboundPayload(fields=document, source_kind=SourceKind.UNKNOWN, raw_body=raw)


def _detect_form(raw: str) -> InboundPayload:
    fields = parse_form(raw)
    if not looks_collapsed(fields):
        return InboundPayload(fields=fields, source_kind=SourceKind.TWILIO_FORM, raw_body=raw)

    log.info("Detected collapsed single-key form body, running recovery chain")
    recovered, strategy = run_recovery_chain(raw)
    return InboundPayload(
        fields=recovered,
        source_kind=SourceKind.RECOVERED if recovered else SourceKind.UNKNOWN,
        raw_body=raw,
        recovered_by=strategy,
    )


def detect(raw_body: Union[bytes, str], content_type: Optional[str]) -> InboundPayload:
    """Classify an inbound body and recover a flat key-value view of it.

    Never raises on malformed input; an undecodable body yields empty fields.
    """
    raw = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
    content_type = (content_type or "").lower()

    if "application/json" in content_type:
        payload = _detect_json(raw)
    else:
        payload = _detect_form(raw)

    log.info(
        f"📥 Inbound payload: kind={payload.source_kind.value}, "
        f"fields={len(payload.fields)}, recovered_by={payload.recovered_by}"
    )
    return payload


def is_status_callback(fields: Dict[str, Any]) -> bool:
    """True for Twilio delivery-status callbacks, which carry no user message."""
    if fields.get("MessageStatus"):
        return True
    sms_status = str(fields.get("SmsStatus") or "").lower()
    has_content = bool(fields.get("Body")) or num_media(fields) > 0
    return bool(sms_status) and sms_status != "received" and not has_content


def num_media(fields: Dict[str, Any]) -> int:
    try:
        return max(int(fields.get("NumMedia") or 0), 0)
    except (TypeError, ValueError):
        return 0
