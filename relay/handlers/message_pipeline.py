"""Message processing pipeline.

Breaks handling of one inbound event into discrete, testable stages that
share a ``MessageContext``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relay.config import settings
from relay.exceptions import (
    BackendTimeout,
    BackendUnreachable,
    ErrorCode,
    IdentityMissing,
    RelayException,
)
from relay.integrations.backend import BackendReply, GenerationBackendClient, backend_client
from relay.models import (
    Channel,
    ContentPart,
    InboundPayload,
    MediaReference,
    Role,
    SourceKind,
    Turn,
    TurnMetadata,
)
from relay.services import identity as identity_resolver
from relay.services.dedup import DeduplicationGuard, dedup_guard
from relay.services.dispatcher import DispatchReport, OutboundDispatcher, dispatcher
from relay.services.extraction import ExtractedMessage, extract
from relay.services.history import ConversationHistoryStore, ConversationLog, history_store
from relay.services.identity import ResolvedIdentity
from relay.services.transcription import TranscriptionService, transcription_service
from relay.services.wire_format import is_status_callback
from relay.utils.keyed_lock import KeyedLock
from relay.utils.logger import log
from relay.utils.result import Result

STATUS_OK = "OK"
STATUS_DUPLICATE = "DUPLICATE_IGNORED"
STATUS_IGNORED = "IGNORED"


@dataclass
class MessageContext:
    """Context object passed through pipeline stages."""

    # Input
    payload: InboundPayload
    channel: Channel

    # Populated by pipeline stages
    identity: Optional[ResolvedIdentity] = None
    message: Optional[ExtractedMessage] = None
    text: str = ""
    media: List[MediaReference] = field(default_factory=list)
    transcription_failed: bool = False
    conversation: Optional[ConversationLog] = None
    user_turn: Optional[Turn] = None
    reply: Optional[BackendReply] = None
    reply_text: str = ""
    reply_committed: bool = False
    dispatch_report: Optional[DispatchReport] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    @property
    def phone_number_id(self) -> Optional[str]:
        return self.payload.fields.get("meta.phone_number_id")

    @property
    def media_info(self) -> Optional[Dict[str, Any]]:
        if not self.media:
            return None
        return {"medias": [m.model_dump(mode="json", by_alias=True) for m in self.media]}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "user_id": self.user_id,
            "channel": self.channel.value,
            "message_id": self.message.message_id if self.message else None,
            "text_len": len(self.text),
            "media": len(self.media),
            "transcription_failed": self.transcription_failed,
            "reply_committed": self.reply_committed,
        }


class MessagePipeline:
    """Pipeline for processing inbound WhatsApp and web chat messages."""

    def __init__(
        self,
        history: Optional[ConversationHistoryStore] = None,
        dedup: Optional[DeduplicationGuard] = None,
        transcription: Optional[TranscriptionService] = None,
        backend: Optional[GenerationBackendClient] = None,
        outbound: Optional[OutboundDispatcher] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.history = history or history_store
        self.dedup = dedup or dedup_guard
        self.transcription = transcription or transcription_service
        self.backend = backend or backend_client
        self.outbound = outbound or dispatcher
        self.locks = locks or KeyedLock()

    async def process(self, payload: InboundPayload, channel: Channel) -> Result[Dict[str, Any]]:
        """Process one webhook event end to end.

        Args:
            payload: Detected inbound payload
            channel: Provider to reply through

        Returns:
            Result with ``{"status": ...}`` or the failure. IDENTITY_MISSING
            means no reply destination exists.
        """
        ctx = MessageContext(payload=payload, channel=channel)

        try:
            # Stage 0: Drop delivery receipts and status notifications
            if self._is_status_only(ctx):
                log.info("Status notification without user message, ignoring")
                return Result.ok({"status": STATUS_IGNORED})

            # Stage 1: Resolve identity
            result = self._resolve_identity(ctx)
            if not result.success:
                return result  # type: ignore[return-value]

            # Stage 2: Extract text and media
            ctx.message = extract(ctx.payload)
            ctx.text = ctx.message.text

            async with self.locks.hold(ctx.user_id):
                # Stage 3: Load history
                ctx.conversation = await self.history.load(ctx.user_id)

                # Stage 4: Persist media, transcribe audio (skipped for redeliveries)
                if ctx.message.media:
                    if self.dedup.is_media_redelivery(
                        ctx.user_id, ctx.message.message_id, ctx.conversation.turns
                    ):
                        return Result.ok({"status": STATUS_DUPLICATE, "user_id": ctx.user_id})
                    await self._process_media(ctx)

                # Stage 5: Empty messages
                self._handle_empty_message(ctx)

                # Stage 6: Duplicate delivery check
                if self._is_duplicate(ctx):
                    return Result.ok({"status": STATUS_DUPLICATE, "user_id": ctx.user_id})

                # Stage 7: Commit the user turn
                await self._commit_user_turn(ctx)

                # Stage 8: Generate and commit the reply
                await self._generate_reply(ctx)

                # Stage 9: Deliver
                ctx.dispatch_report = await self.outbound.dispatch(
                    ctx.reply_text,
                    self._destination(ctx),
                    ctx.channel,
                    phone_number_id=ctx.phone_number_id,
                )

            log.info(f"✅ Message processed: {ctx.to_dict()}")
            return Result.ok(
                {
                    "status": STATUS_OK,
                    "user_id": ctx.user_id,
                    "reply_committed": ctx.reply_committed,
                    "fragments_sent": ctx.dispatch_report.sent,
                    "fragments_failed": ctx.dispatch_report.failed,
                }
            )

        except RelayException as e:
            log.error(f"Pipeline error: {e}")
            await self._send_error_notice(ctx)
            return Result.from_exception(e)
        except Exception as e:
            log.exception(f"Unexpected pipeline error: {e}")
            await self._send_error_notice(ctx)
            return Result.from_exception(e)

    async def process_web(self, user_id: Optional[str], text: Optional[str]) -> Result[Dict[str, Any]]:
        """Synchronous web chat path: reply parts and committed history are returned."""
        identity = identity_resolver.resolve_web(user_id)
        if identity.is_anonymous:
            return Result.from_exception(IdentityMissing(source="web"))

        ctx = MessageContext(
            payload=InboundPayload(source_kind=SourceKind.WEB_JSON),
            channel=Channel.WEB,
            identity=identity,
            message=ExtractedMessage(text=(text or "").strip()),
        )
        ctx.text = ctx.message.text

        try:
            async with self.locks.hold(ctx.user_id):
                ctx.conversation = await self.history.load(ctx.user_id)
                self._handle_empty_message(ctx)
                await self._commit_user_turn(ctx)
                await self._generate_reply(ctx)

            parts = ctx.reply.parts if ctx.reply_committed else [ContentPart.of_text(ctx.reply_text)]
            return Result.ok(
                {
                    "reply": [part.model_dump(mode="json", by_alias=True, exclude_none=True) for part in parts],
                    "history": [turn.to_wire() for turn in ctx.conversation.turns],
                }
            )
        except RelayException as e:
            log.error(f"Web pipeline error: {e}")
            return Result.from_exception(e)
        except Exception as e:
            log.exception(f"Unexpected web pipeline error: {e}")
            return Result.from_exception(e)

    def _is_status_only(self, ctx: MessageContext) -> bool:
        fields = ctx.payload.fields
        if ctx.payload.source_kind == SourceKind.META_JSON:
            return "meta.id" not in fields
        return is_status_callback(fields)

    def _resolve_identity(self, ctx: MessageContext) -> Result[None]:
        """Stage 1: Canonical user key; anonymous events cannot be answered."""
        ctx.identity = identity_resolver.resolve(ctx.payload)
        if ctx.identity.is_anonymous:
            return Result.from_exception(IdentityMissing(source=ctx.channel.value))
        return Result.ok(None)

    async def _process_media(self, ctx: MessageContext) -> None:
        """Stage 4: Store every inbound media item; transcribe the first audio one."""
        if not ctx.message.media:
            return

        audio = ctx.message.audio
        ctx.transcription_failed = audio is not None
        for descriptor in ctx.message.media:
            try:
                reference = await self.transcription.persist_media(descriptor, ctx.user_id)
            except Exception as e:
                log.error(f"[MEDIA] Could not store inbound media: {e}")
                continue
            ctx.media.append(reference)

            if descriptor is audio:
                log.info("🎤 Processing audio message")
                outcome = await self.transcription.transcribe_media(
                    descriptor, ctx.user_id, media=reference
                )
                if outcome.succeeded:
                    ctx.text = outcome.text
                    ctx.transcription_failed = False

        if ctx.transcription_failed:
            log.warning("Audio message could not be transcribed, using fallback text")
            ctx.text = settings.audio_fallback_message

    def _handle_empty_message(self, ctx: MessageContext) -> None:
        """Stage 5: First contact becomes a greeting, later empties a placeholder."""
        if ctx.text:
            return
        if not ctx.conversation.turns:
            ctx.text = settings.first_contact_greeting
        else:
            ctx.text = settings.empty_message_placeholder
        log.info(f"Empty message replaced with '{ctx.text}'")

    def _is_duplicate(self, ctx: MessageContext) -> bool:
        return self.dedup.is_duplicate(
            ctx.user_id,
            ctx.message.message_id,
            ctx.text,
            ctx.conversation.turns,
        )

    async def _commit_user_turn(self, ctx: MessageContext) -> None:
        """Stage 7: Append and save the inbound turn before calling the backend."""
        content = [ContentPart.of_text(ctx.text)]
        content.extend(ContentPart.of_media(reference) for reference in ctx.media)
        ctx.user_turn = Turn(
            role=Role.USER,
            content=content,
            message_id=ctx.message.message_id,
            metadata=self._turn_metadata(ctx),
        )
        self.history.append(ctx.conversation, ctx.user_turn)
        await self.history.save(ctx.conversation)

    async def _generate_reply(self, ctx: MessageContext) -> None:
        """Stage 8: Call the backend; on failure fall back to a fixed reply.

        The fallback reply is sent but never committed as an assistant turn.
        """
        window = self.history.context_window(ctx.conversation.turns)
        try:
            ctx.reply = await self.backend.generate(
                ctx.text,
                [turn.to_wire() for turn in window],
                phone=ctx.identity.phone,
                user_id=ctx.user_id,
                phone_number_id=ctx.phone_number_id,
                media_info=ctx.media_info,
            )
            if not ctx.reply.text:
                raise BackendUnreachable("reply has no text parts")
        except BackendTimeout as e:
            log.error(f"🤖 {e}")
            ctx.reply_text = settings.backend_timeout_message
            return
        except BackendUnreachable as e:
            log.error(f"🤖 {e}")
            ctx.reply_text = settings.technical_error_message
            return

        ctx.reply_text = ctx.reply.text
        self.history.append(
            ctx.conversation,
            Turn(role=Role.ASSISTANT, content=ctx.reply.parts, metadata=self._turn_metadata(ctx)),
        )
        await self.history.save(ctx.conversation)
        ctx.reply_committed = True

        # Reply already committed; backups are best effort
        try:
            await self.history.backup(ctx.conversation)
        except Exception as e:
            log.exception(f"Backup failed for {ctx.user_id}: {e}")

    def _turn_metadata(self, ctx: MessageContext) -> TurnMetadata:
        return TurnMetadata(
            phone=ctx.identity.phone,
            user_id=ctx.user_id,
            provider=ctx.channel.value,
            phone_number_id=ctx.phone_number_id,
        )

    def _destination(self, ctx: MessageContext) -> str:
        return ctx.identity.phone or identity_resolver.normalize_phone(ctx.user_id)

    async def _send_error_notice(self, ctx: MessageContext) -> None:
        """Best-effort technical-problem reply when a known user hit a failure."""
        if ctx.identity is None or ctx.identity.is_anonymous or ctx.dispatch_report is not None:
            return
        try:
            await self.outbound.dispatch(
                settings.technical_error_message,
                self._destination(ctx),
                ctx.channel,
                phone_number_id=ctx.phone_number_id,
            )
        except Exception as e:
            log.error(f"Could not deliver error notice to {ctx.user_id}: {e}")


def status_code_for(result: Result) -> int:
    """HTTP status for a pipeline result."""
    if result.success:
        return 200
    if result.error_code == ErrorCode.IDENTITY_MISSING:
        return 400
    if result.error_code == ErrorCode.INTERNAL_ERROR:
        return 500
    return 200


# Global pipeline instance
message_pipeline = MessagePipeline()
