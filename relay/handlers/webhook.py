"""Webhook and chat handlers for FastAPI."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from relay.config import settings
from relay.exceptions import ErrorCode
from relay.handlers.message_pipeline import message_pipeline, status_code_for
from relay.integrations.twilio import twilio_client
from relay.models import Channel, InboundPayload, SourceKind
from relay.services import wire_format
from relay.utils.logger import log
from relay.utils.result import Result

router = APIRouter()
limiter = Limiter(key_func=get_remote_address)

RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"
TWIML_EMPTY = "<Response></Response>"


def _twiml(status_code: int = 200) -> Response:
    return Response(content=TWIML_EMPTY, status_code=status_code, media_type="application/xml")


def _json_ack(result: Result) -> JSONResponse:
    if result.success:
        return JSONResponse(content={"status": result.data["status"]})
    return JSONResponse(
        content={"status": "ERROR", "error": result.error_code.value},
        status_code=status_code_for(result),
    )


def _check_twilio_signature(request: Request, raw_body: bytes) -> None:
    if not settings.verify_webhook_signature:
        return
    params = wire_format.parse_form(raw_body.decode("utf-8", errors="replace"))
    signature = request.headers.get("X-Twilio-Signature", "")
    if not twilio_client.validate_webhook(str(request.url), params, signature):
        log.warning("🚫 Invalid Twilio webhook signature")
        raise HTTPException(status_code=403, detail="Invalid signature")


async def _run_twilio(payload: InboundPayload) -> Response:
    result = await message_pipeline.process(payload, Channel.TWILIO)
    if not result.success:
        log.warning(f"Twilio event not processed: {result.error_code}")
    return _twiml(status_code_for(result))


def _web_input_text(document: Dict[str, Any]) -> Optional[str]:
    value = document.get("input")
    if isinstance(value, dict):
        return value.get("text")
    if isinstance(value, str):
        return value
    return None


async def _run_web(document: Dict[str, Any]) -> JSONResponse:
    result = await message_pipeline.process_web(document.get("userId"), _web_input_text(document))
    if result.success:
        return JSONResponse(content=result.data)
    if result.error_code == ErrorCode.IDENTITY_MISSING:
        return JSONResponse(content={"error": "userId is required"}, status_code=400)
    return JSONResponse(
        content={"error": result.user_message or "Internal error"},
        status_code=500 if result.error_code == ErrorCode.INTERNAL_ERROR else 502,
    )


@router.post("/webhook/twilio")
@limiter.limit(RATE_LIMIT)
async def twilio_webhook(request: Request):
    """Handle incoming WhatsApp messages from Twilio.

    The body is read raw so collapsed or double-encoded forms can still be
    recovered. Always answers with TwiML so Twilio does not retry.
    """
    try:
        raw_body = await request.body()
        _check_twilio_signature(request, raw_body)
        payload = wire_format.detect(raw_body, request.headers.get("content-type"))
        return await _run_twilio(payload)
    except HTTPException:
        raise
    except Exception as e:
        log.exception(f"Error in Twilio webhook handler: {e}")
        return _twiml(500)


@router.get("/webhook/meta")
async def meta_webhook_verify(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Meta subscription handshake."""
    if mode == "subscribe" and token and token == settings.meta_verify_token:
        log.info("Meta webhook subscription verified")
        return PlainTextResponse(challenge or "")
    log.warning("🚫 Meta webhook verification failed")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook/meta")
@limiter.limit(RATE_LIMIT)
async def meta_webhook(request: Request):
    """Handle incoming WhatsApp Cloud API events."""
    try:
        raw_body = await request.body()
        payload = wire_format.detect(raw_body, "application/json")
        result = await message_pipeline.process(payload, Channel.META)
        return _json_ack(result)
    except Exception as e:
        log.exception(f"Error in Meta webhook handler: {e}")
        return JSONResponse(content={"status": "ERROR"}, status_code=500)


@router.post("/webhook")
@limiter.limit(RATE_LIMIT)
async def generic_webhook(request: Request):
    """Entry point that sniffs the body format, for either provider or web clients."""
    try:
        raw_body = await request.body()
        payload = wire_format.detect(raw_body, request.headers.get("content-type"))

        if payload.source_kind == SourceKind.WEB_JSON:
            return await _run_web(payload.fields)
        if payload.source_kind == SourceKind.META_JSON:
            return _json_ack(await message_pipeline.process(payload, Channel.META))

        _check_twilio_signature(request, raw_body)
        return await _run_twilio(payload)
    except HTTPException:
        raise
    except Exception as e:
        log.exception(f"Error in generic webhook handler: {e}")
        return _twiml(500)


@router.post("/chat")
@limiter.limit(RATE_LIMIT)
async def chat(request: Request):
    """Synchronous web chat: returns the reply and the committed history."""
    try:
        document = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(document, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return await _run_web(document)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "whatsapp-relay"}
