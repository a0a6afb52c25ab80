"""Shared pytest fixtures and configuration for all test suites.

This module provides common fixtures that can be used across all test files:
- Environment defaults (set before any relay module is imported)
- An in-memory blob store with version tags
- Mock providers (Twilio, Meta, transcription, generation backend)
- Sample inbound payloads
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-west-2")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_token")
os.environ.setdefault("TWILIO_WHATSAPP_FROM", "+14155238886")
os.environ.setdefault("META_VERIFY_TOKEN", "verify-me")
os.environ.setdefault("BACKEND_URL", "http://backend.test/api/chat")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("FRAGMENT_DELAY_SECONDS", "0")
os.environ.setdefault("TRANSCRIPTION_POLL_INTERVAL", "0")

from relay.exceptions import VersionConflict  # noqa: E402
from relay.integrations.backend import BackendReply  # noqa: E402
from relay.integrations.storage import StoredObject  # noqa: E402
from relay.models import ContentPart  # noqa: E402
from relay.services.history import ConversationHistoryStore  # noqa: E402

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test (fast)")
    config.addinivalue_line("markers", "pipeline: mark test as pipeline test")


# ============================================================================
# Fakes
# ============================================================================


class InMemoryBlobStore:
    """Dict-backed BlobStore honoring conditional writes like S3 does."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: Dict[str, StoredObject] = {}
        self.puts: List[str] = []
        self._counter = 0

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        if_version: Optional[str] = None,
        must_not_exist: bool = False,
    ) -> Optional[str]:
        current = self.objects.get(key)
        if if_version and (current is None or current.version != if_version):
            raise VersionConflict(key)
        if not if_version and must_not_exist and current is not None:
            raise VersionConflict(key)
        self._counter += 1
        version = f"etag-{self._counter}"
        self.objects[key] = StoredObject(data=data, version=version)
        self.puts.append(key)
        return version

    def get(self, key: str) -> Optional[StoredObject]:
        return self.objects.get(key)

    def list(self, prefix: str) -> List[str]:
        return [key for key in self.objects if key.startswith(prefix)]

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


class StepClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def blob_store():
    """Fresh in-memory history bucket."""
    return InMemoryBlobStore("history-bucket")


@pytest.fixture
def media_store():
    """Fresh in-memory media bucket."""
    return InMemoryBlobStore("media-bucket")


@pytest.fixture
def history(blob_store):
    """History store over the in-memory bucket with a deterministic clock."""
    return ConversationHistoryStore(
        store=blob_store, window_size=24, backup_retention=3, clock=StepClock()
    )


# ============================================================================
# Mock Service Fixtures
# ============================================================================


@pytest.fixture
def mock_twilio_client():
    """Mock Twilio client; every send succeeds."""
    mock = Mock()
    mock.send_message = Mock(return_value="SM_mock_123")
    mock.download_media = AsyncMock(return_value=b"OggS-audio-bytes")
    mock.validate_webhook = Mock(return_value=True)
    return mock


@pytest.fixture
def mock_meta_client():
    """Mock Meta Cloud API client; every send succeeds."""
    mock = Mock()
    mock.send_text = AsyncMock(return_value="wamid.mock")
    mock.download_media = AsyncMock(return_value=b"OggS-audio-bytes")
    return mock


@pytest.fixture
def mock_backend():
    """Generation backend replying with a single short text part."""
    mock = Mock()
    mock.generate = AsyncMock(
        return_value=BackendReply(parts=[ContentPart.of_text("¡Hola! ¿En qué te ayudo?")])
    )
    return mock


@pytest.fixture
def no_sleep():
    """Awaitable sleep replacement that records requested delays."""
    return AsyncMock(return_value=None)


# ============================================================================
# Sample Payloads
# ============================================================================


@pytest.fixture
def twilio_form_body():
    return "From=whatsapp%3A%2B5491122334455&WaId=5491122334455&Body=hola&MessageSid=SM123"


@pytest.fixture
def twilio_audio_body():
    return (
        "From=whatsapp%3A%2B5491122334455&WaId=5491122334455&Body=&MessageSid=SMaudio1"
        "&NumMedia=1&MessageType=audio"
        "&MediaUrl0=https%3A%2F%2Fapi.twilio.com%2F2010-04-01%2FAccounts%2FAC1%2FMedia%2FME1"
        "&MediaContentType0=audio%2Fogg"
    )


@pytest.fixture
def meta_text_event():
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {
                                "display_phone_number": "15550001111",
                                "phone_number_id": "PNID_1",
                            },
                            "contacts": [{"profile": {"name": "Ana"}, "wa_id": "5491122334455"}],
                            "messages": [
                                {
                                    "from": "5491122334455",
                                    "id": "wamid.ABC",
                                    "timestamp": "1700000000",
                                    "type": "text",
                                    "text": {"body": "hola"},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


@pytest.fixture
def meta_status_event():
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": "PNID_1"},
                            "statuses": [{"id": "wamid.ABC", "status": "delivered"}],
                        },
                    }
                ],
            }
        ],
    }
