"""Twilio connector — number inventory, webhook signatures, TwiML, recording media.

The Twilio REST SDK is blocking, so every SDK call runs in the default
executor, bounded by sdk_timeout. Recording media is fetched over the shared
httpx client with HTTP Basic auth.

Business Rules:
- Webhook signatures are computed over webhook_base_url + path and the exact posted params
- Purchased numbers point voice at /twilio/voice and status at /twilio/call-status (POST)
- Release treats Twilio error 20404 (number not found) as already released
- Only 429, 5xx and network errors are retried; other provider errors fail immediately

Called by: services/provisioning_service.py, services/call_gateway.py,
           services/recording_pipeline.py
Depends on: twilio SDK, calltrack.http_client, calltrack.utils.retry
"""

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from functools import partial
from typing import Any, Mapping

import httpx
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from ..exceptions import FatalError, SignatureError, TransientError, ValidationError
from ..utils.retry import retry_async, with_timeout

log = logging.getLogger("calltrack.telephony")

VOICE_PATH = "/twilio/voice"
STATUS_PATH = "/twilio/call-status"
RECORDING_PATH = "/twilio/recording"

TWILIO_NOT_FOUND = 20404
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

# Media above this size spills from memory to a temp file while streaming
_SPOOL_MAX_BYTES = 8 * 1024 * 1024


@dataclass
class PurchasedNumber:
    sid: str
    phone_number: str


@dataclass
class ReleaseResult:
    released: bool
    sid: str | None = None
    reason: str | None = None  # not_found | multiple_matches | no_input | lookup_failed | provider_error
    detail: str | None = None


@dataclass
class RecordingMedia:
    fileobj: Any  # seekable binary file positioned at 0
    content_type: str
    size: int


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, TwilioRestException):
        return exc.status in RETRYABLE_STATUSES
    return isinstance(exc, (httpx.TransportError, OSError, asyncio.TimeoutError))


def recording_source(recording_url: str) -> tuple[str, str]:
    """Return (download URL, default content type) for a Twilio recording URL."""
    lowered = recording_url.lower()
    if lowered.endswith(".wav"):
        return recording_url, "audio/wav"
    if lowered.endswith(".mp3"):
        return recording_url, "audio/mpeg"
    return f"{recording_url}.mp3", "audio/mpeg"


class TwilioGateway:
    """Narrow telephony interface used by the core services."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        webhook_base_url: str,
        *,
        client: Client | None = None,
        http_client: httpx.AsyncClient | None = None,
        media_attempts: int = 2,
        media_timeout: float = 25,
        sdk_timeout: float = 30,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.webhook_base_url = webhook_base_url.rstrip("/")
        self._client = client
        self._http = http_client
        self.media_attempts = media_attempts
        self.media_timeout = media_timeout
        self.sdk_timeout = sdk_timeout

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise FatalError("Twilio credentials are not configured")
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            from ..http_client import http

            self._http = http
        return self._http

    def url_for(self, path: str) -> str:
        return f"{self.webhook_base_url}{path}"

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await with_timeout(
            loop.run_in_executor(None, partial(fn, *args, **kwargs)),
            self.sdk_timeout,
            "Twilio API call timed out",
        )

    # ── Webhook signatures ──────────────────────────────────────────────

    def validate_signature(
        self, path: str, params: Mapping[str, Any] | None, signature: str | None
    ) -> None:
        """Raise SignatureError unless the X-Twilio-Signature matches."""
        if not self.auth_token:
            raise SignatureError("Missing Twilio auth token")
        if not signature:
            raise SignatureError("Missing X-Twilio-Signature header")
        validator = RequestValidator(self.auth_token)
        if not validator.validate(self.url_for(path), dict(params or {}), signature):
            raise SignatureError("Invalid Twilio signature")

    # ── Number inventory ────────────────────────────────────────────────

    async def search_available(
        self,
        *,
        country: str = "US",
        area_code: int | str | None = None,
        region: str | None = None,
        limit: int = 10,
    ) -> list[dict]:
        query: dict[str, Any] = {"voice_enabled": True, "limit": limit}
        if area_code:
            query["area_code"] = int(area_code)
        if region:
            query["in_region"] = region.upper()

        try:
            found = await self._call(
                self.client.available_phone_numbers(country.upper()).local.list, **query
            )
        except TwilioRestException as e:
            raise self._map_rest_error(e, "Available number search failed") from e

        return [
            {
                "phone_number": n.phone_number,
                "friendly_name": n.friendly_name,
                "locality": n.locality,
                "region": n.region,
                "iso_country": n.iso_country,
                "capabilities": {
                    "voice": bool((n.capabilities or {}).get("voice")),
                    "sms": bool((n.capabilities or {}).get("SMS")),
                    "mms": bool((n.capabilities or {}).get("MMS")),
                },
            }
            for n in found
        ]

    async def purchase(
        self,
        *,
        phone_number: str | None = None,
        country: str = "US",
        area_code: int | str | None = None,
    ) -> PurchasedNumber:
        """Buy a specific number, or the first voice-enabled match for an area code."""
        number = phone_number
        try:
            if not number:
                query: dict[str, Any] = {"voice_enabled": True, "limit": 1}
                if area_code is not None:
                    query["area_code"] = str(area_code)
                found = await self._call(
                    self.client.available_phone_numbers(country.upper()).local.list, **query
                )
                if not found:
                    raise ValidationError("No available phone numbers found with the specified filters")
                number = found[0].phone_number

            incoming = await self._call(
                self.client.incoming_phone_numbers.create,
                phone_number=number,
                voice_url=self.url_for(VOICE_PATH),
                voice_method="POST",
                status_callback=self.url_for(STATUS_PATH),
                status_callback_method="POST",
            )
        except TwilioRestException as e:
            if phone_number and not is_transient(e):
                raise ValidationError(
                    "Selected number is no longer available. Please refresh the list and try again."
                ) from e
            raise self._map_rest_error(e, "Number purchase failed") from e
        except OSError as e:
            raise TransientError(f"Number purchase failed: {e}") from e

        log.info(f"Purchased {incoming.phone_number} ({incoming.sid})")
        return PurchasedNumber(sid=incoming.sid, phone_number=incoming.phone_number)

    async def release(
        self,
        *,
        sid: str | None = None,
        phone_number: str | None = None,
        retries: int = 1,
    ) -> ReleaseResult:
        """Release a number by SID, resolving the SID from the number when missing."""
        sid = (sid or "").strip() or None
        number = (phone_number or "").strip() or None
        if not sid and not number:
            return ReleaseResult(released=False, reason="no_input")

        if not sid:
            try:
                matches = await self._call(
                    self.client.incoming_phone_numbers.list, phone_number=number, limit=5
                )
            except (TwilioRestException, OSError) as e:
                log.error(f"Number lookup failed for {number}: {e}")
                return ReleaseResult(released=False, reason="lookup_failed", detail=str(e))

            exact = [m for m in matches if m.phone_number == number]
            if not matches:
                log.warning(f"No Twilio number found for {number}")
                return ReleaseResult(released=False, reason="not_found")
            if len(exact) > 1 or (not exact and len(matches) > 1):
                log.warning(f"Multiple Twilio matches for {number}; refusing to guess")
                return ReleaseResult(released=False, reason="multiple_matches")
            sid = (exact or matches)[0].sid

        async def _remove():
            try:
                await self._call(self.client.incoming_phone_numbers(sid).delete)
            except TwilioRestException as e:
                if e.code == TWILIO_NOT_FOUND or e.status == 404:
                    log.info(f"Twilio SID {sid} not found (already released)")
                    return
                raise

        try:
            await retry_async(
                _remove,
                retries=retries,
                should_retry=lambda exc, attempt: is_transient(exc),
                on_retry=lambda exc, attempt, delay: log.warning(
                    f"Release retry {attempt} for {sid} in {delay:.2f}s: {exc}"
                ),
            )
        except (TwilioRestException, OSError) as e:
            log.error(f"Twilio release failed for {sid}: {e}")
            return ReleaseResult(released=False, sid=sid, reason="provider_error", detail=str(e))

        return ReleaseResult(released=True, sid=sid)

    @staticmethod
    def _map_rest_error(e: TwilioRestException, prefix: str) -> Exception:
        if e.status in RETRYABLE_STATUSES:
            return TransientError(f"{prefix}: Twilio {e.status}")
        return FatalError(f"{prefix}: {e.msg}")

    # ── TwiML ───────────────────────────────────────────────────────────

    def forward_twiml(self, forwarding_number: str, caller_id: str) -> str:
        vr = VoiceResponse()
        dial = vr.dial(
            caller_id=caller_id,
            record="record-from-answer-dual",
            recording_status_callback=self.url_for(RECORDING_PATH),
            recording_status_callback_event="completed",
        )
        dial.number(forwarding_number)
        return str(vr)

    @staticmethod
    def decline_twiml() -> str:
        vr = VoiceResponse()
        vr.say("Number not recognized.")
        vr.hangup()
        return str(vr)

    # ── Recording media ─────────────────────────────────────────────────

    async def fetch_recording(self, recording_url: str) -> RecordingMedia:
        """Download recording bytes with bounded retry on 429/5xx/network errors."""
        url, default_type = recording_source(recording_url)

        async def _download() -> RecordingMedia:
            spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES)
            try:
                async with self.http.stream(
                    "GET",
                    url,
                    auth=(self.account_sid, self.auth_token),
                    timeout=self.media_timeout,
                ) as resp:
                    if resp.status_code in RETRYABLE_STATUSES:
                        raise TransientError(f"Twilio media {resp.status_code}")
                    if resp.status_code >= 400:
                        raise FatalError(f"Twilio media download failed: {resp.status_code}")
                    size = 0
                    async for chunk in resp.aiter_bytes():
                        spool.write(chunk)
                        size += len(chunk)
                    content_type = resp.headers.get("content-type") or default_type
            except BaseException:
                spool.close()
                raise
            spool.seek(0)
            return RecordingMedia(fileobj=spool, content_type=content_type, size=size)

        try:
            return await retry_async(
                _download,
                retries=max(0, self.media_attempts - 1),
                should_retry=lambda exc, attempt: is_transient(exc),
                on_retry=lambda exc, attempt, delay: log.warning(
                    f"Twilio media retry {attempt}/{self.media_attempts} in {delay:.2f}s: {exc}"
                ),
            )
        except httpx.TransportError as e:
            raise TransientError(f"Twilio media download failed: {e}") from e
