"""Tests for the durable conversation history store."""
import json

import pytest

from relay.exceptions import ConcurrentWriteConflict, VersionConflict
from relay.models import ContentPart, Role, Turn
from relay.services.history import (
    ConversationHistoryStore,
    backup_prefix,
    history_key,
    serialize_turns,
)


def turn(role, text, message_id=None):
    return Turn(role=role, content=[ContentPart.of_text(text)], message_id=message_id)


USER = "wa:5491122334455"


@pytest.mark.unit
class TestKeys:
    def test_history_key_quotes_user_id(self):
        assert history_key(USER) == "history/wa%3A5491122334455.json"

    def test_backup_prefix(self):
        assert backup_prefix(USER) == "backups/wa%3A5491122334455/"


@pytest.mark.unit
class TestLoadAndSave:
    @pytest.mark.asyncio
    async def test_missing_log_is_fresh_session(self, history):
        conversation = await history.load(USER)
        assert conversation.turns == []
        assert not conversation.exists

    @pytest.mark.asyncio
    async def test_append_and_save_round_trip(self, history, blob_store):
        conversation = await history.load(USER)
        history.append(conversation, turn(Role.USER, "hola", "SM1"))
        history.append(conversation, turn(Role.ASSISTANT, "¡Hola!"))
        await history.save(conversation)

        stored = json.loads(blob_store.objects[history_key(USER)].data)
        assert stored[0]["messageId"] == "SM1"
        assert stored[0]["content"] == [{"type": "text", "text": "hola"}]
        assert conversation.pending == []

        reloaded = await history.load(USER)
        assert [t.text for t in reloaded.turns] == ["hola", "¡Hola!"]

    @pytest.mark.asyncio
    async def test_reads_documents_without_metadata(self, history, blob_store):
        legacy = [
            {"role": "user", "content": [{"type": "text", "text": "hola"}], "messageId": "SM1"},
            {"role": "assistant", "content": [{"type": "text", "text": "buenas"}]},
            {"role": "tool", "content": []},
        ]
        blob_store.put(history_key(USER), json.dumps(legacy).encode(), "application/json")

        conversation = await history.load(USER)
        assert [t.role for t in conversation.turns] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_anon_is_never_persisted(self, history, blob_store):
        conversation = await history.load("anon")
        history.append(conversation, turn(Role.USER, "hola"))
        await history.save(conversation)
        assert await history.backup(conversation) is None
        assert blob_store.objects == {}


@pytest.mark.unit
class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_lost_race_reapplies_pending_turns(self, history, blob_store):
        first = await history.load(USER)
        history.append(first, turn(Role.USER, "uno", "SM1"))
        await history.save(first)

        ours = await history.load(USER)
        theirs = await history.load(USER)
        history.append(theirs, turn(Role.USER, "dos", "SM2"))
        await history.save(theirs)

        history.append(ours, turn(Role.USER, "tres", "SM3"))
        await history.save(ours)

        final = await history.load(USER)
        assert [t.text for t in final.turns] == ["uno", "dos", "tres"]

    @pytest.mark.asyncio
    async def test_first_write_race_is_detected(self, history, blob_store):
        ours = await history.load(USER)
        blob_store.put(history_key(USER), serialize_turns([turn(Role.USER, "otro")]), "application/json")

        history.append(ours, turn(Role.USER, "mío"))
        await history.save(ours)

        final = await history.load(USER)
        assert [t.text for t in final.turns] == ["otro", "mío"]

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, blob_store):
        class AlwaysConflicting(type(blob_store)):
            def put(self, key, data, content_type, if_version=None, must_not_exist=False):
                raise VersionConflict(key)

        store = ConversationHistoryStore(store=AlwaysConflicting(), window_size=24, backup_retention=3)
        conversation = await store.load(USER)
        store.append(conversation, turn(Role.USER, "hola"))

        with pytest.raises(ConcurrentWriteConflict):
            await store.save(conversation)


@pytest.mark.unit
class TestContextWindow:
    def test_keeps_last_n_conversational_turns_and_all_system_turns(self):
        store = ConversationHistoryStore(store=object(), window_size=4, backup_retention=3)
        turns = [turn(Role.SYSTEM, "nota operador")]
        turns += [turn(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"t{i}") for i in range(10)]

        window = store.context_window(turns)

        assert [t.text for t in window] == ["nota operador", "t6", "t7", "t8", "t9"]

    def test_short_history_untouched(self):
        store = ConversationHistoryStore(store=object(), window_size=24, backup_retention=3)
        turns = [turn(Role.USER, "hola"), turn(Role.ASSISTANT, "buenas")]
        assert store.context_window(turns) == turns


@pytest.mark.unit
class TestBackups:
    @pytest.mark.asyncio
    async def test_retains_newest_three(self, history, blob_store):
        conversation = await history.load(USER)
        keys = []
        for i in range(5):
            history.append(conversation, turn(Role.USER, f"m{i}", f"SM{i}"))
            await history.save(conversation)
            keys.append(await history.backup(conversation))

        assert history.list_backups(USER) == keys[-3:]

        snapshot = json.loads(blob_store.objects[keys[-1]].data)
        assert snapshot["userId"] == USER
        assert snapshot["lastMessageId"] == "SM4"
        assert len(snapshot["history"]) == 5

    @pytest.mark.asyncio
    async def test_empty_primary_restores_newest_backup(self, history, blob_store):
        conversation = await history.load(USER)
        history.append(conversation, turn(Role.USER, "viejo"))
        await history.save(conversation)
        await history.backup(conversation)
        history.append(conversation, turn(Role.USER, "nuevo"))
        await history.save(conversation)
        newest = await history.backup(conversation)

        blob_store.delete(history_key(USER))

        restored = await history.load(USER)
        assert restored.restored_from == newest
        assert [t.text for t in restored.turns] == ["viejo", "nuevo"]
        assert history_key(USER) in blob_store.objects

    @pytest.mark.asyncio
    async def test_primary_empty_array_also_restores(self, history, blob_store):
        conversation = await history.load(USER)
        history.append(conversation, turn(Role.USER, "guardado"))
        await history.save(conversation)
        await history.backup(conversation)

        blob_store.put(history_key(USER), b"[]", "application/json")

        restored = await history.load(USER)
        assert [t.text for t in restored.turns] == ["guardado"]

        history.append(restored, turn(Role.USER, "sigue"))
        await history.save(restored)
        assert [t.text for t in (await history.load(USER)).turns] == ["guardado", "sigue"]

    @pytest.mark.asyncio
    async def test_unreadable_backup_is_skipped(self, history, blob_store):
        conversation = await history.load(USER)
        history.append(conversation, turn(Role.USER, "bueno"))
        await history.save(conversation)
        await history.backup(conversation)

        blob_store.put(f"{backup_prefix(USER)}9999999999999.json", b"{not json", "application/json")
        blob_store.delete(history_key(USER))

        restored = await history.load(USER)
        assert [t.text for t in restored.turns] == ["bueno"]
