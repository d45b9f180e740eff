"""
routers/twilio.py — Twilio voice, call-status and recording webhooks

Form-encoded webhooks signed with X-Twilio-Signature. All logic lives in
services/call_gateway.py; this module only adapts HTTP.

Business Rules:
- Voice replies with TwiML (text/xml, Cache-Control: no-store)
- Status and recording reply "OK" once the event is persisted
- Recording processing is scheduled as a background task after the reply
- Invalid signatures → 403 via the SignatureError handler in main.py

Called by: main.py (router mount)
Depends on: dependencies, services/call_gateway.py
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from loguru import logger

from ..dependencies import get_gateway, get_pipeline_runner
from ..services.call_gateway import CallGateway

router = APIRouter(prefix="/twilio", tags=["twilio"])

SIGNATURE_HEADER = "X-Twilio-Signature"


async def _form_params(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: str(v) for k, v in form.items()}


def _twiml(xml: str) -> Response:
    return Response(content=xml, media_type="text/xml", headers={"Cache-Control": "no-store"})


@router.post("/voice")
async def voice(request: Request, gateway: CallGateway = Depends(get_gateway)):
    params = await _form_params(request)
    logger.debug("Voice webhook for {}", params.get("CallSid", ""))
    xml = gateway.on_voice_start(params, request.headers.get(SIGNATURE_HEADER))
    return _twiml(xml)


@router.post("/call-status")
async def call_status(request: Request, gateway: CallGateway = Depends(get_gateway)):
    params = await _form_params(request)
    gateway.on_status_change(params, request.headers.get(SIGNATURE_HEADER))
    return PlainTextResponse("OK")


@router.post("/recording")
async def recording(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: CallGateway = Depends(get_gateway),
    run_pipeline=Depends(get_pipeline_runner),
):
    params = await _form_params(request)
    ready = gateway.on_recording_ready(params, request.headers.get(SIGNATURE_HEADER))
    if ready is not None:
        background_tasks.add_task(run_pipeline, ready.provider_call_id, ready.recording_url)
        logger.info("Recording pipeline scheduled for {}", ready.provider_call_id)
    return PlainTextResponse("OK")
