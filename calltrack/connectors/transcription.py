"""Deepgram pre-recorded transcription over the shared httpx client.

Returns raw diarized utterances; turn building lives in
services/transcription_service.py.

Design rules:
  - Every call returns a result or None (callers fall back gracefully)
  - Failures are logged, never raised
  - Retries with exponential backoff on 429/5xx
"""

import asyncio
import logging
from dataclasses import dataclass, field

from ..http_client import http

log = logging.getLogger("calltrack.transcription")

API_URL = "https://api.deepgram.com/v1/listen"
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
MAX_RETRIES = 2
BASE_DELAY = 1.0  # seconds


@dataclass
class Utterance:
    start: float
    end: float
    transcript: str
    speaker: int | None = None


@dataclass
class RawTranscript:
    utterances: list[Utterance] = field(default_factory=list)
    duration: float | None = None
    language: str | None = "en"


def _parse(data: dict) -> RawTranscript:
    utterances = []
    for u in (data.get("results") or {}).get("utterances") or []:
        if not isinstance(u, dict) or not isinstance(u.get("start"), (int, float)):
            continue
        if not u.get("transcript"):
            continue
        speaker = u.get("speaker")
        utterances.append(
            Utterance(
                start=float(u["start"]),
                end=float(u["end"]) if isinstance(u.get("end"), (int, float)) else float(u["start"]),
                transcript=u["transcript"],
                speaker=speaker if isinstance(speaker, int) else None,
            )
        )
    duration = (data.get("metadata") or {}).get("duration")
    return RawTranscript(
        utterances=utterances,
        duration=duration if isinstance(duration, (int, float)) else None,
        language="en",
    )


class DeepgramClient:
    """Narrow speech-to-text interface used by the recording pipeline."""

    def __init__(self, api_key: str, *, model: str = "nova-2-phonecall", timeout: int = 30):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _params(self) -> dict:
        return {
            "model": self.model,
            "smart_format": "true",
            "diarize": "true",
            "punctuate": "true",
            "utterances": "true",
        }

    async def _post(self, *, headers: dict, **kwargs) -> RawTranscript | None:
        if not self.api_key:
            log.warning("DEEPGRAM_API_KEY not set, skipping transcription")
            return None

        headers = {"Authorization": f"Token {self.api_key}", **headers}
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await http.post(
                    API_URL, params=self._params(), headers=headers, timeout=self.timeout, **kwargs
                )
                if resp.status_code == 200:
                    return _parse(resp.json())
                if resp.status_code in RETRYABLE_STATUSES and attempt < MAX_RETRIES:
                    delay = BASE_DELAY * (2 ** attempt)
                    log.warning(f"Deepgram {resp.status_code} (attempt {attempt + 1}), retry in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                log.warning(f"Deepgram API {resp.status_code}: {resp.text[:200]}")
                return None
            except Exception as e:
                if attempt < MAX_RETRIES:
                    delay = BASE_DELAY * (2 ** attempt)
                    log.warning(f"Deepgram call failed (attempt {attempt + 1}), retry in {delay:.1f}s: {e}")
                    await asyncio.sleep(delay)
                    continue
                log.error(f"Deepgram transcription failed: {e}")
                return None
        return None

    async def transcribe_url(self, url: str) -> RawTranscript | None:
        return await self._post(headers={"Content-Type": "application/json"}, json={"url": url})

    async def transcribe_bytes(self, audio: bytes, mime_type: str) -> RawTranscript | None:
        return await self._post(headers={"Content-Type": mime_type}, content=audio)
