"""Resolve the canonical user key for an inbound event.

The same person must land in the same conversation whichever provider
delivered the message, so every identifier is reduced to its digits and
prefixed with ``wa:``.
"""

import re
from dataclasses import dataclass
from typing import Optional

from relay.models import InboundPayload, SourceKind
from relay.utils.logger import log

ANON_USER_ID = "anon"
WHATSAPP_PREFIX = "wa:"
WEB_PREFIX = "web:"

_CHANNEL_TAG = re.compile(r"^\s*whatsapp:", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")

# Sender patterns scraped from collapsed or unparseable bodies, in priority order
_SENDER_PATTERNS = (
    re.compile(r"From=whatsapp%3A%2B(\d+)", re.IGNORECASE),
    re.compile(r"From=whatsapp:(\+?\d+)", re.IGNORECASE),
    re.compile(r"WaId=(\d+)"),
    re.compile(r'"from"\s*:\s*"(\d+)"'),
    re.compile(r'"wa_id"\s*:\s*"(\d+)"'),
)


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    phone: Optional[str] = None
    source: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == ANON_USER_ID


def normalize_phone(raw: Optional[str]) -> str:
    """Strip channel tags, '+', spaces and punctuation, keeping digits only."""
    return _NON_DIGITS.sub("", _CHANNEL_TAG.sub("", raw or ""))


def canonical_user_id(raw: Optional[str]) -> str:
    """Canonical ``wa:{digits}`` key, or ``anon`` when no digits remain."""
    digits = normalize_phone(raw)
    return f"{WHATSAPP_PREFIX}{digits}" if digits else ANON_USER_ID


def _identity(raw: Optional[str], source: str) -> Optional[ResolvedIdentity]:
    digits = normalize_phone(raw)
    if not digits:
        return None
    return ResolvedIdentity(user_id=f"{WHATSAPP_PREFIX}{digits}", phone=f"+{digits}", source=source)


def scrape_sender(raw_body: str) -> Optional[str]:
    """Pull a sender number out of an undecodable body."""
    for pattern in _SENDER_PATTERNS:
        match = pattern.search(raw_body or "")
        if match:
            return match.group(1)
    return None


def resolve(payload: InboundPayload) -> ResolvedIdentity:
    """Resolve the canonical identity for an inbound payload.

    Precedence: Twilio ``From`` (channel tag stripped), Twilio ``WaId``,
    a sender scraped from a collapsed single-key or raw body, then the Meta
    contact/sender id. Falls back to the ``anon`` sentinel.
    """
    fields = payload.fields

    candidates = (
        ("from", fields.get("From")),
        ("waid", fields.get("WaId")),
    )
    for source, raw in candidates:
        identity = _identity(raw, source)
        if identity:
            log.info(f"📱 Identity resolved from {source}: {identity.user_id}")
            return identity

    if payload.source_kind != SourceKind.META_JSON:
        scrape_target = next(iter(fields)) if payload.is_single_key else ""
        scraped = scrape_sender(scrape_target) or scrape_sender(payload.raw_body)
        identity = _identity(scraped, "regex")
        if identity:
            log.info(f"📱 Identity scraped from malformed payload: {identity.user_id}")
            return identity

    identity = _identity(fields.get("meta.wa_id") or fields.get("meta.from"), "meta")
    if identity:
        log.info(f"📱 Identity resolved from Meta contact: {identity.user_id}")
        return identity

    log.warning("No identity recoverable from inbound payload, using anonymous session")
    return ResolvedIdentity(user_id=ANON_USER_ID)


def resolve_web(user_id: Optional[str]) -> ResolvedIdentity:
    """Identity for the synchronous web chat path (not phone-normalized)."""
    if not user_id or not str(user_id).strip():
        return ResolvedIdentity(user_id=ANON_USER_ID)
    return ResolvedIdentity(user_id=f"{WEB_PREFIX}{str(user_id).strip()}", source="web")
