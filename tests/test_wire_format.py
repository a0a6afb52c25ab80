"""Tests for inbound wire format detection and collapsed-payload recovery."""
import base64
import json
from urllib.parse import quote

import pytest

from relay.models import SourceKind
from relay.services import wire_format
from relay.services.wire_format import (
    RECOVERY_CHAIN,
    detect,
    flatten_meta_event,
    is_status_callback,
    looks_collapsed,
    parse_form,
    recover_base64,
    recover_by_regex,
    recover_percent_encoded,
    run_recovery_chain,
)

LONG_FORM = (
    "SmsMessageSid=SM0123456789abcdef0123456789abcdef&NumMedia=0&ProfileName=Ana"
    "&WaId=5491122334455&Body=necesito+ayuda&To=whatsapp%3A%2B14155238886"
    "&From=whatsapp%3A%2B5491122334455&MessageSid=SM0123456789abcdef0123456789abcdef"
    "&AccountSid=AC0123456789abcdef0123456789abcdef"
)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@pytest.mark.unit
class TestParseForm:
    def test_keeps_first_value_and_blanks(self):
        fields = parse_form("Body=&From=a&From=b")
        assert fields == {"Body": "", "From": "a"}

    def test_decodes_plus_and_percent(self):
        fields = parse_form("Body=hola+mundo&From=whatsapp%3A%2B549")
        assert fields["Body"] == "hola mundo"
        assert fields["From"] == "whatsapp:+549"


@pytest.mark.unit
class TestRecoveryStrategies:
    def test_chain_order_is_base64_percent_regex(self):
        assert [name for name, _ in RECOVERY_CHAIN] == ["base64", "percent", "regex"]

    def test_base64_recovers_form(self):
        encoded = base64.b64encode(LONG_FORM.encode()).decode()
        fields = recover_base64(encoded)
        assert fields["From"] == "whatsapp:+5491122334455"
        assert fields["Body"] == "necesito ayuda"

    def test_base64_rejects_non_base64(self):
        assert recover_base64("From=whatsapp:+549&Body=hi") is None

    def test_base64_rejects_decoded_garbage(self):
        garbage = base64.b64encode(b"nothing useful in here at all").decode()
        assert recover_base64(garbage) is None

    def test_percent_recovers_double_encoded_form(self):
        fields = recover_percent_encoded(quote(LONG_FORM, safe=""))
        assert fields["WaId"] == "5491122334455"
        assert fields["MessageSid"].startswith("SM0123")

    def test_percent_needs_something_to_decode(self):
        assert recover_percent_encoded("plain text without escapes") is None

    def test_regex_scrapes_known_fields(self):
        fields = recover_by_regex("garbage{From=whatsapp%3A%2B5491122334455&Body=hola+che")
        assert fields["From"] == "whatsapp:+5491122334455"
        assert fields["Body"] == "hola che"

    def test_regex_scrapes_after_unquoting(self):
        fields = recover_by_regex("payload%3A%20WaId%3D5491122334455%26Body%3Dhola")
        assert fields["WaId"] == "5491122334455"
        assert fields["Body"] == "hola"

    def test_regex_gives_up_without_known_fields(self):
        assert recover_by_regex("completely=unrelated&content=here") is None


@pytest.mark.unit
class TestRecoveryChain:
    def test_looks_collapsed_requires_single_long_key(self):
        assert looks_collapsed({"x" * 150: ""})
        assert looks_collapsed({"x" * 150: "="})
        assert not looks_collapsed({"x" * 50: ""})
        assert not looks_collapsed({"x" * 150: "value"})
        assert not looks_collapsed({"a": "", "b": ""})

    def test_first_successful_strategy_wins(self, monkeypatch):
        calls = []

        def first(raw):
            calls.append("first")
            return None

        def second(raw):
            calls.append("second")
            return {"Body": "ok"}

        def third(raw):
            calls.append("third")
            return {"Body": "never"}

        monkeypatch.setattr(
            wire_format, "RECOVERY_CHAIN", (("first", first), ("second", second), ("third", third))
        )
        fields, name = run_recovery_chain("raw")
        assert fields == {"Body": "ok"}
        assert name == "second"
        assert calls == ["first", "second"]

    def test_raising_strategy_is_skipped(self, monkeypatch):
        def broken(raw):
            raise RuntimeError("boom")

        monkeypatch.setattr(
            wire_format, "RECOVERY_CHAIN", (("broken", broken), ("regex", recover_by_regex))
        )
        fields, name = run_recovery_chain("Body=hola")
        assert name == "regex"
        assert fields["Body"] == "hola"

    def test_exhausted_chain_yields_empty_fields(self):
        fields, name = run_recovery_chain("x" * 200)
        assert fields == {}
        assert name is None


@pytest.mark.unit
class TestDetect:
    def test_plain_twilio_form(self, twilio_form_body):
        payload = detect(twilio_form_body.encode(), FORM_CONTENT_TYPE)
        assert payload.source_kind == SourceKind.TWILIO_FORM
        assert payload.fields["Body"] == "hola"
        assert payload.recovered_by is None

    def test_base64_collapsed_form(self):
        body = base64.b64encode(LONG_FORM.encode())
        payload = detect(body, FORM_CONTENT_TYPE)
        assert payload.source_kind == SourceKind.RECOVERED
        assert payload.recovered_by == "base64"
        assert payload.fields["Body"] == "necesito ayuda"

    def test_double_encoded_form(self):
        payload = detect(quote(LONG_FORM, safe=""), FORM_CONTENT_TYPE)
        assert payload.source_kind == SourceKind.RECOVERED
        assert payload.recovered_by == "percent"
        assert payload.fields["From"] == "whatsapp:+5491122334455"

    def test_unrecoverable_collapsed_body(self):
        payload = detect("z" * 300, FORM_CONTENT_TYPE)
        assert payload.source_kind == SourceKind.UNKNOWN
        assert payload.fields == {}

    def test_meta_json(self, meta_text_event):
        payload = detect(json.dumps(meta_text_event), "application/json")
        assert payload.source_kind == SourceKind.META_JSON
        assert payload.fields["meta.text"] == "hola"
        assert payload.fields["meta.phone_number_id"] == "PNID_1"

    def test_web_json(self):
        payload = detect(b'{"input": {"type": "text", "text": "hi"}, "userId": "u1"}', "application/json")
        assert payload.source_kind == SourceKind.WEB_JSON
        assert payload.fields["userId"] == "u1"

    def test_invalid_json_falls_back_to_scrape(self):
        payload = detect('{"broken": "From=whatsapp%3A%2B5491122334455&Body=hola', "application/json")
        assert payload.source_kind == SourceKind.RECOVERED
        assert payload.recovered_by == "regex"
        assert payload.fields["Body"] == "hola"

    def test_never_raises_on_binary_garbage(self):
        payload = detect(b"\xff\xfe\x00garbage", None)
        assert payload.source_kind in (SourceKind.TWILIO_FORM, SourceKind.UNKNOWN)


@pytest.mark.unit
class TestMetaFlattening:
    def test_audio_message(self):
        document = {
            "entry": [{"changes": [{"value": {
                "metadata": {"phone_number_id": "PNID_1"},
                "contacts": [{"wa_id": "5491122334455"}],
                "messages": [{
                    "from": "5491122334455",
                    "id": "wamid.AUDIO",
                    "type": "audio",
                    "audio": {"id": "MEDIA_1", "mime_type": "audio/ogg; codecs=opus"},
                }],
            }}]}]
        }
        fields = flatten_meta_event(document)
        assert fields["meta.audio_id"] == "MEDIA_1"
        assert fields["meta.media_mime_type"] == "audio/ogg; codecs=opus"
        assert fields["meta.type"] == "audio"
        assert "meta.text" not in fields

    def test_status_only_event_has_no_message_id(self, meta_status_event):
        fields = flatten_meta_event(meta_status_event)
        assert "meta.id" not in fields

    def test_malformed_document(self):
        assert flatten_meta_event({"entry": []}) == {}


@pytest.mark.unit
class TestStatusCallbacks:
    def test_message_status_is_callback(self):
        assert is_status_callback({"MessageStatus": "delivered", "MessageSid": "SM1"})

    def test_received_message_is_not_callback(self):
        assert not is_status_callback({"SmsStatus": "received", "Body": "hola"})

    def test_plain_message_is_not_callback(self):
        assert not is_status_callback({"Body": "hola", "From": "whatsapp:+549"})
