"""Durable per-user conversation history with snapshot backups.

Layout in the history bucket:
    history/{userId}.json            JSON array of turns (the primary log)
    backups/{userId}/{millis}.json   snapshots written after each reply-commit

Writers for one user are serialized in-process by the pipeline's
``KeyedLock``; across processes the S3 backend uses conditional puts
(ETag ``IfMatch`` / ``IfNoneMatch``). A lost race reloads the log, re-applies
this request's turns and retries.
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote

from pydantic import ValidationError

from relay.config import settings
from relay.exceptions import ConcurrentWriteConflict, VersionConflict
from relay.integrations.storage import BlobStore, build_history_blob_store
from relay.models import SessionBackup, Turn
from relay.services.identity import ANON_USER_ID
from relay.services.retry import retry_on_network_error
from relay.utils.logger import log

MAX_WRITE_ATTEMPTS = 3


@dataclass
class ConversationLog:
    """A user's turns as loaded for one request."""

    user_id: str
    turns: List[Turn] = field(default_factory=list)
    version: Optional[str] = None
    exists: bool = False
    pending: List[Turn] = field(default_factory=list)
    restored_from: Optional[str] = None

    @property
    def persistent(self) -> bool:
        return self.user_id != ANON_USER_ID


def history_key(user_id: str) -> str:
    return f"history/{quote(user_id, safe='')}.json"


def backup_prefix(user_id: str) -> str:
    return f"backups/{quote(user_id, safe='')}/"


def serialize_turns(turns: List[Turn]) -> bytes:
    return json.dumps([turn.to_wire() for turn in turns], ensure_ascii=False).encode("utf-8")


def parse_turns(items) -> List[Turn]:
    """Parse stored turns, skipping entries that no longer validate."""
    if not isinstance(items, list):
        return []
    turns = []
    for item in items:
        try:
            turns.append(Turn.model_validate(item))
        except ValidationError as e:
            log.warning(f"Skipping unreadable stored turn: {e.error_count()} errors")
    return turns


class ConversationHistoryStore:
    """Load, append, save, trim, back up and restore conversation logs."""

    def __init__(
        self,
        store: Optional[BlobStore] = None,
        window_size: Optional[int] = None,
        backup_retention: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self.window_size = window_size or settings.history_window_size
        self.backup_retention = backup_retention or settings.backup_retention
        self._clock = clock

    @property
    def store(self) -> BlobStore:
        if self._store is None:
            self._store = build_history_blob_store()
        return self._store

    # === Storage primitives ===

    @retry_on_network_error(max_attempts=3)
    def _read(self, key: str) -> Tuple[Optional[bytes], Optional[str]]:
        stored = self.store.get(key)
        if stored is None:
            return None, None
        return stored.data, stored.version

    @retry_on_network_error(max_attempts=3)
    def _write(self, key: str, data: bytes, version: Optional[str], must_not_exist: bool) -> Optional[str]:
        return self.store.put(
            key,
            data,
            "application/json",
            if_version=version,
            must_not_exist=must_not_exist,
        )

    def _read_log(self, user_id: str) -> ConversationLog:
        data, version = self._read(history_key(user_id))
        if data is None:
            return ConversationLog(user_id=user_id)
        try:
            turns = parse_turns(json.loads(data))
        except json.JSONDecodeError:
            log.warning(f"History document for {user_id} is not valid JSON, treating as empty")
            turns = []
        return ConversationLog(user_id=user_id, turns=turns, version=version, exists=True)

    # === Public API ===

    async def load(self, user_id: str) -> ConversationLog:
        """Load a user's full log, restoring from the newest backup if empty."""
        if user_id == ANON_USER_ID:
            return ConversationLog(user_id=user_id)

        conversation = await asyncio.to_thread(self._read_log, user_id)
        if conversation.turns:
            log.info(f"[HISTORY] Loaded {len(conversation.turns)} turns for {user_id}")
            return conversation

        restored = await self.restore(user_id)
        if restored is None:
            log.info(f"[HISTORY] No history for {user_id}, starting fresh session")
            return conversation

        backup_key, turns = restored
        conversation.turns = list(turns)
        conversation.restored_from = backup_key
        try:
            conversation.version = await asyncio.to_thread(
                self._write,
                history_key(user_id),
                serialize_turns(conversation.turns),
                conversation.version,
                must_not_exist=not conversation.exists,
            )
            conversation.exists = True
        except VersionConflict:
            log.warning(f"[HISTORY] {user_id} written concurrently during restore, reloading")
            return await asyncio.to_thread(self._read_log, user_id)
        return conversation

    def append(self, conversation: ConversationLog, turn: Turn) -> None:
        conversation.turns.append(turn)
        conversation.pending.append(turn)

    async def save(self, conversation: ConversationLog) -> None:
        """Write the full log back, re-applying pending turns on a lost race."""
        if not conversation.persistent:
            conversation.pending.clear()
            return

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                conversation.version = await asyncio.to_thread(
                    self._write,
                    history_key(conversation.user_id),
                    serialize_turns(conversation.turns),
                    conversation.version,
                    must_not_exist=not conversation.exists,
                )
                conversation.exists = True
                conversation.pending.clear()
                log.info(
                    f"[HISTORY] Saved {len(conversation.turns)} turns for {conversation.user_id}"
                )
                return
            except VersionConflict:
                log.warning(
                    f"[HISTORY] Concurrent write for {conversation.user_id} "
                    f"(attempt {attempt}/{MAX_WRITE_ATTEMPTS}), merging"
                )
                fresh = await asyncio.to_thread(self._read_log, conversation.user_id)
                conversation.turns = fresh.turns + conversation.pending
                conversation.version = fresh.version
                conversation.exists = fresh.exists

        raise ConcurrentWriteConflict(conversation.user_id, MAX_WRITE_ATTEMPTS)

    def context_window(self, turns: List[Turn]) -> List[Turn]:
        """System turns plus the most recent user/assistant turns, in order."""
        conversational = [t for t in turns if t.is_conversational]
        kept = {id(t) for t in conversational[-self.window_size:]}
        return [t for t in turns if not t.is_conversational or id(t) in kept]

    # === Backups ===

    def list_backups(self, user_id: str) -> List[str]:
        """Backup keys for a user, oldest first."""
        return sorted(self.store.list(backup_prefix(user_id)))

    async def backup(self, conversation: ConversationLog) -> Optional[str]:
        """Snapshot the full log and prune snapshots beyond the retention count."""
        if not conversation.persistent or not conversation.turns:
            return None

        now = self._clock()
        key = f"{backup_prefix(conversation.user_id)}{int(now.timestamp() * 1000):013d}.json"
        snapshot = SessionBackup(
            backup_key=key,
            user_id=conversation.user_id,
            turns=list(conversation.turns),
            timestamp=now,
            last_message_id=next(
                (t.message_id for t in reversed(conversation.turns) if t.message_id), None
            ),
        )
        await asyncio.to_thread(
            self._write,
            key,
            snapshot.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8"),
            None,
            must_not_exist=False,
        )

        stale = await asyncio.to_thread(self._prune_backups, conversation.user_id)

        log.info(
            f"[HISTORY] Backed up {len(conversation.turns)} turns for "
            f"{conversation.user_id} ({len(stale)} old backups pruned)"
        )
        return key

    def _prune_backups(self, user_id: str) -> List[str]:
        stale = self.list_backups(user_id)[:-self.backup_retention]
        for old_key in stale:
            self.store.delete(old_key)
        return stale

    async def restore(self, user_id: str) -> Optional[Tuple[str, List[Turn]]]:
        """Newest backup for a user as (key, turns), or None."""
        for key in reversed(self.list_backups(user_id)):
            data, _ = await asyncio.to_thread(self._read, key)
            if data is None:
                continue
            try:
                snapshot = SessionBackup.model_validate_json(data)
            except ValidationError as e:
                log.warning(f"[HISTORY] Unreadable backup {key}: {e.error_count()} errors")
                continue
            if snapshot.turns:
                log.info(f"[HISTORY] Restored {len(snapshot.turns)} turns for {user_id} from {key}")
                return key, snapshot.turns
        return None


# Global instance
history_store = ConversationHistoryStore()
