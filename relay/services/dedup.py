"""Duplicate delivery detection for provider webhook retries."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from relay.config import settings
from relay.models import Role, Turn
from relay.services.identity import ANON_USER_ID
from relay.utils.logger import log

DEDUP_OFF = "off"
DEDUP_CONTENT_HASH = "content_hash"


class DeduplicationGuard:
    """Decides whether an inbound event was already applied to a session.

    A delivery is a duplicate only when a recent user turn carries the same
    provider message id AND the same text. Events without a message id are
    not deduplicated unless ``mode`` is ``content_hash``, which then matches
    identical text seen within ``content_window`` seconds.
    """

    def __init__(
        self,
        window: Optional[int] = None,
        mode: Optional[str] = None,
        content_window: Optional[int] = None,
    ):
        self.window = window or settings.dedup_window
        self.mode = (mode or settings.dedup_without_message_id).lower()
        self.content_window = timedelta(
            seconds=content_window or settings.dedup_content_hash_window_seconds
        )

    def is_duplicate(
        self,
        user_id: str,
        message_id: Optional[str],
        text: str,
        turns: Sequence[Turn],
        now: Optional[datetime] = None,
    ) -> bool:
        if user_id == ANON_USER_ID:
            return False

        recent_user_turns = [t for t in turns[-self.window:] if t.role == Role.USER]

        if message_id:
            duplicate = any(
                t.message_id == message_id and t.text == text for t in recent_user_turns
            )
            if duplicate:
                log.info(f"🔁 Duplicate delivery ignored for {user_id}: {message_id}")
            return duplicate

        if self.mode != DEDUP_CONTENT_HASH:
            return False

        now = now or datetime.now(timezone.utc)
        for turn in recent_user_turns:
            if turn.text != text or turn.metadata is None:
                continue
            seen_at = turn.metadata.timestamp
            if seen_at.tzinfo is None:
                seen_at = seen_at.replace(tzinfo=timezone.utc)
            if now - seen_at <= self.content_window:
                log.info(f"🔁 Duplicate (content match, no message id) ignored for {user_id}")
                return True
        return False

    def is_media_redelivery(
        self,
        user_id: str,
        message_id: Optional[str],
        turns: Sequence[Turn],
    ) -> bool:
        """True when a recent user turn with this message id already stored its media.

        Checked before downloading or transcribing, since the text of a
        voice note is only known after transcription.
        """
        if user_id == ANON_USER_ID or not message_id:
            return False
        recent_user_turns = [t for t in turns[-self.window:] if t.role == Role.USER]
        redelivered = any(t.message_id == message_id and t.has_media for t in recent_user_turns)
        if redelivered:
            log.info(f"🔁 Media redelivery ignored for {user_id}: {message_id}")
        return redelivered


# Global instance
dedup_guard = DeduplicationGuard()
