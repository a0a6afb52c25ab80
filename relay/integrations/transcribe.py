"""Amazon Transcribe client for asynchronous speech-to-text jobs."""
from dataclasses import dataclass
from typing import Optional

import boto3
import httpx

from relay.config import settings
from relay.models import JobStatus
from relay.utils.logger import log

_STATUS_MAP = {
    "QUEUED": JobStatus.PENDING,
    "IN_PROGRESS": JobStatus.IN_PROGRESS,
    "COMPLETED": JobStatus.COMPLETED,
    "FAILED": JobStatus.FAILED,
}


@dataclass
class JobSnapshot:
    status: JobStatus
    result_uri: Optional[str] = None
    failure_reason: Optional[str] = None


class TranscribeClient:
    """Thin wrapper over the boto3 ``transcribe`` client."""

    def __init__(self, client=None):
        self.client = client or boto3.client("transcribe", region_name=settings.aws_region)

    def start(self, job_id: str, source_uri: str, language_code: str, media_format: str) -> None:
        """Submit a transcription job for an object already in S3."""
        self.client.start_transcription_job(
            TranscriptionJobName=job_id,
            LanguageCode=language_code,
            MediaFormat=media_format,
            Media={"MediaFileUri": source_uri},
            Settings={"ShowAlternatives": False},
        )
        log.info(f"[TRANSCRIBE] Job started: {job_id} ({media_format}, {language_code})")

    def poll(self, job_id: str) -> JobSnapshot:
        response = self.client.get_transcription_job(TranscriptionJobName=job_id)
        job = response.get("TranscriptionJob") or {}
        status = _STATUS_MAP.get(job.get("TranscriptionJobStatus", ""), JobStatus.IN_PROGRESS)
        return JobSnapshot(
            status=status,
            result_uri=(job.get("Transcript") or {}).get("TranscriptFileUri"),
            failure_reason=job.get("FailureReason"),
        )

    async def fetch_transcript(self, result_uri: str) -> str:
        """Download the result document and return results.transcripts[0].transcript."""
        async with httpx.AsyncClient(follow_redirects=True) as client:
            response = await client.get(result_uri, timeout=30.0)
        response.raise_for_status()
        transcripts = (response.json().get("results") or {}).get("transcripts") or [{}]
        return transcripts[0].get("transcript") or ""


# Global instance
transcribe_client = TranscribeClient()
