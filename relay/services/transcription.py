"""Audio transcription orchestration using Amazon Transcribe.

One audio message goes through: download from the provider, persist to the
media bucket, submit an asynchronous job against the stored object, poll it
to a terminal state, fetch the transcript. Every failure collapses to a
``None`` text so the caller can substitute a fallback reply.
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from botocore.exceptions import ClientError

from relay.config import settings
from relay.exceptions import RelayException, TranscriptionFailed, TranscriptionTimedOut
from relay.integrations.meta import meta_client
from relay.integrations.storage import BlobStore, media_store
from relay.integrations.transcribe import JobSnapshot, TranscribeClient, transcribe_client
from relay.integrations.twilio import twilio_client
from relay.models import JobStatus, MediaDescriptor, MediaReference, TranscriptionJob
from relay.services.retry import NETWORK_ERRORS, poll_until, retry_once_inline
from relay.utils.logger import log

# Extension (or MIME subtype) -> Transcribe MediaFormat
AUDIO_FORMATS = {
    "mp3": "mp3",
    "mpeg": "mp3",
    "mp4": "mp4",
    "m4a": "mp4",
    "aac": "mp4",
    "wav": "wav",
    "wave": "wav",
    "webm": "webm",
    "ogg": "ogg",
    "oga": "ogg",
    "opus": "ogg",
    "flac": "flac",
    "amr": "amr",
}
DEFAULT_AUDIO_FORMAT = "ogg"

_FATAL_POLL_ERRORS = {"AccessDeniedException", "AccessDenied", "UnauthorizedOperation"}


def extension_for(content_type: Optional[str]) -> str:
    """File extension derived from a MIME type ('audio/ogg; codecs=opus' -> 'ogg')."""
    subtype = (content_type or "").split("/")[-1].split(";")[0].strip().lower()
    if subtype.startswith("x-"):
        subtype = subtype[2:]
    return subtype or "bin"


def media_format_for(extension: Optional[str]) -> str:
    return AUDIO_FORMATS.get((extension or "").lower(), DEFAULT_AUDIO_FORMAT)


def media_key(user_id: str, extension: str, now: Optional[datetime] = None) -> str:
    """uploads/{yyyy}/{mm}/{userId}/{uuid}.{ext}"""
    now = now or datetime.now(timezone.utc)
    return (
        f"uploads/{now.year:04d}/{now.month:02d}/"
        f"{quote(user_id, safe='')}/{uuid.uuid4()}.{extension}"
    )


@dataclass
class TranscriptionOutcome:
    text: Optional[str] = None
    job: Optional[TranscriptionJob] = None
    media: Optional[MediaReference] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.text)


class TranscriptionService:
    """Download, store and transcribe inbound audio within one request."""

    def __init__(
        self,
        transcribe: Optional[TranscribeClient] = None,
        store: Optional[BlobStore] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        language_code: Optional[str] = None,
        sleep=asyncio.sleep,
    ):
        self.transcribe = transcribe or transcribe_client
        self.store = store or media_store
        self.poll_interval = poll_interval if poll_interval is not None else settings.transcription_poll_interval
        self.max_attempts = max_attempts or settings.transcription_max_attempts
        self.language_code = language_code or settings.transcription_language_code
        self._sleep = sleep
        log.info("Transcription service initialized")

    @retry_once_inline()
    async def download(self, descriptor: MediaDescriptor) -> bytes:
        """Fetch media bytes from whichever provider owns the descriptor."""
        if descriptor.url:
            return await twilio_client.download_media(descriptor.url)
        if descriptor.blob_id:
            return await meta_client.download_media(descriptor.blob_id)
        raise ValueError("Media descriptor has neither url nor blob id")

    @retry_once_inline()
    async def upload(self, data: bytes, content_type: str, user_id: str) -> MediaReference:
        key = media_key(user_id, extension_for(content_type))
        await asyncio.to_thread(self.store.put, key, data, content_type)
        reference = MediaReference(uri=self.store.uri(key), content_type=content_type, size=len(data))
        log.info(f"[MEDIA] Stored {reference.size} bytes at {reference.uri}")
        return reference

    async def persist_media(self, descriptor: MediaDescriptor, user_id: str) -> MediaReference:
        """Download inbound media and store it durably."""
        content_type = descriptor.content_type or "application/octet-stream"
        data = await self.download(descriptor)
        return await self.upload(data, content_type, user_id)

    def start_job(self, media: MediaReference) -> TranscriptionJob:
        """Submit a job. Not retried: a duplicate submission is billed twice."""
        job = TranscriptionJob(
            job_id=f"transcribe-job-{uuid.uuid4()}",
            source_uri=media.uri,
            format=media_format_for(extension_for(media.content_type)),
        )
        try:
            self.transcribe.start(job.job_id, job.source_uri, self.language_code, job.format)
        except Exception as e:
            raise TranscriptionFailed(job.job_id, f"submission failed: {e}", original_exception=e) from e
        job.status = JobStatus.IN_PROGRESS
        return job

    async def _observe(self, job: TranscriptionJob) -> JobSnapshot:
        job.attempts += 1
        try:
            snapshot = await asyncio.to_thread(self.transcribe.poll, job.job_id)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _FATAL_POLL_ERRORS:
                raise TranscriptionFailed(job.job_id, code, original_exception=e) from e
            log.warning(f"[TRANSCRIBE] Poll {job.attempts} failed ({code}), will retry")
            return JobSnapshot(status=JobStatus.IN_PROGRESS)
        except NETWORK_ERRORS as e:
            log.warning(f"[TRANSCRIBE] Poll {job.attempts} network error: {e}")
            return JobSnapshot(status=JobStatus.IN_PROGRESS)

        if job.attempts % 10 == 0 or snapshot.status.is_terminal:
            log.info(
                f"[TRANSCRIBE] Job {job.job_id} status ({job.attempts}/{self.max_attempts}): "
                f"{snapshot.status.value}"
            )
        return snapshot

    async def wait_for_job(self, job: TranscriptionJob) -> TranscriptionJob:
        """Poll a started job to a terminal state and fill in its result.

        Raises:
            TranscriptionFailed: Job failed, produced no transcript, or polling was denied
            TranscriptionTimedOut: Poll ceiling reached before a terminal state
        """
        result = await poll_until(
            lambda: self._observe(job),
            lambda snapshot: snapshot.status.is_terminal,
            interval=self.poll_interval,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
        )
        snapshot = result.value

        if not result.terminal:
            job.status = JobStatus.TIMED_OUT
            job.failure_reason = "timeout"
            raise TranscriptionTimedOut(job.job_id, result.attempts)

        if snapshot.status == JobStatus.FAILED:
            job.status = JobStatus.FAILED
            job.failure_reason = snapshot.failure_reason or "unknown"
            raise TranscriptionFailed(job.job_id, job.failure_reason)

        if not snapshot.result_uri:
            job.status = JobStatus.FAILED
            job.failure_reason = "missing_transcript_uri"
            raise TranscriptionFailed(job.job_id, job.failure_reason)

        text = (await self.transcribe.fetch_transcript(snapshot.result_uri)).strip()
        job.status = JobStatus.COMPLETED
        if not text:
            job.failure_reason = "empty_transcript"
            raise TranscriptionFailed(job.job_id, job.failure_reason)

        job.result_text = text
        return job

    async def transcribe_media(
        self,
        descriptor: MediaDescriptor,
        user_id: str,
        media: Optional[MediaReference] = None,
    ) -> TranscriptionOutcome:
        """Turn one audio descriptor into text.

        Args:
            descriptor: Inbound audio reference
            user_id: Canonical user key (storage namespace)
            media: Already-persisted copy of the audio, if any

        Returns:
            Outcome whose ``text`` is None on any failure
        """
        outcome = TranscriptionOutcome(media=media)
        try:
            if outcome.media is None:
                outcome.media = await self.persist_media(descriptor, user_id)
            outcome.job = await asyncio.to_thread(self.start_job, outcome.media)
            await self.wait_for_job(outcome.job)
            outcome.text = outcome.job.result_text
            log.info(f"[TRANSCRIBE] Transcribed text: '{outcome.text[:80]}'")
        except RelayException as e:
            log.error(f"[TRANSCRIBE] {e}")
        except Exception as e:
            log.exception(f"[TRANSCRIBE] Unexpected transcription error: {e}")
        return outcome


# Global instance
transcription_service = TranscriptionService()
