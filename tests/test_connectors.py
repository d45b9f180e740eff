"""
test_connectors.py — Tests for the storage and transcription connectors

Covers: recording object keys, GCS calls through a mocked bucket,
Deepgram response parsing and its fail-soft HTTP behaviour.

Called by: pytest
Depends on: calltrack/connectors/storage.py, calltrack/connectors/transcription.py
"""

import io
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from calltrack.connectors.storage import RecordingStore, guess_mime, recording_object_key
from calltrack.connectors.transcription import DeepgramClient, _parse
from calltrack.exceptions import FatalError

# ── Storage ──────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "content_type,key",
    [
        ("audio/wav", "calls/CA1.wav"),
        ("audio/x-wav", "calls/CA1.wav"),
        ("audio/mpeg", "calls/CA1.mp3"),
        ("", "calls/CA1.mp3"),
    ],
)
def test_recording_object_key(content_type, key):
    assert recording_object_key("CA1", content_type) == key


def test_guess_mime():
    assert guess_mime("calls/CA1.WAV") == "audio/wav"
    assert guess_mime("calls/CA1.mp3") == "audio/mpeg"


def test_store_requires_bucket():
    with pytest.raises(FatalError):
        RecordingStore("")


class TestRecordingStore:
    @pytest.fixture()
    def gcs(self):
        client = MagicMock()
        blob = client.bucket.return_value.blob.return_value
        return client, blob

    async def test_exists(self, gcs):
        client, blob = gcs
        blob.exists.return_value = True

        assert await RecordingStore("recordings", client=client).exists("calls/CA1.mp3") is True
        client.bucket.assert_called_once_with("recordings")
        client.bucket.return_value.blob.assert_called_with("calls/CA1.mp3")

    async def test_upload_rewinds(self, gcs):
        client, blob = gcs
        fileobj = io.BytesIO(b"audio")

        await RecordingStore("recordings", client=client).upload("calls/CA1.mp3", fileobj, "audio/mpeg")

        blob.upload_from_file.assert_called_once_with(fileobj, content_type="audio/mpeg", rewind=True)

    async def test_download_falls_back_to_extension_mime(self, gcs):
        client, blob = gcs
        blob.download_as_bytes.return_value = b"RIFF"
        blob.content_type = None

        data, mime = await RecordingStore("recordings", client=client).download("calls/CA1.wav")

        assert (data, mime) == (b"RIFF", "audio/wav")

    async def test_hung_call_times_out(self, gcs):
        client, blob = gcs
        blob.exists.side_effect = lambda: time.sleep(0.5)

        with pytest.raises(TimeoutError, match="GCS call timed out"):
            await RecordingStore("recordings", client=client, timeout=0.05).exists("calls/CA1.mp3")

    async def test_signed_url(self, gcs):
        client, blob = gcs
        blob.generate_signed_url.return_value = "https://storage.googleapis.com/signed"

        url = await RecordingStore("recordings", client=client).signed_read_url("calls/CA1.mp3", ttl_seconds=60)

        assert url == "https://storage.googleapis.com/signed"
        kwargs = blob.generate_signed_url.call_args.kwargs
        assert kwargs["version"] == "v4"
        assert kwargs["expiration"].total_seconds() == 60


# ── Transcription ────────────────────────────────────────────────────

DEEPGRAM_BODY = {
    "metadata": {"duration": 42.5},
    "results": {
        "utterances": [
            {"start": 0.4, "end": 2.1, "transcript": "Thanks for calling.", "speaker": 0},
            {"start": 2.5, "end": 4.0, "transcript": "Hi, is the truck available?", "speaker": 1},
            {"start": 4.2, "end": 4.3, "transcript": "", "speaker": 0},
            {"start": "bad", "transcript": "dropped"},
            {"start": 5.0, "transcript": "No end time", "speaker": "x"},
        ]
    },
}


def test_parse_filters_bad_utterances():
    raw = _parse(DEEPGRAM_BODY)

    assert [u.transcript for u in raw.utterances] == [
        "Thanks for calling.",
        "Hi, is the truck available?",
        "No end time",
    ]
    assert raw.duration == 42.5
    assert raw.utterances[2].end == 5.0
    assert raw.utterances[2].speaker is None


def test_parse_empty_body():
    raw = _parse({})
    assert raw.utterances == []
    assert raw.duration is None


class TestDeepgramClient:
    async def test_missing_key_skips(self):
        with patch("calltrack.connectors.transcription.http") as http:
            assert await DeepgramClient("").transcribe_url("https://x/a.mp3") is None
            http.post.assert_not_called()

    async def test_transcribe_url(self):
        with patch("calltrack.connectors.transcription.http") as http:
            http.post = AsyncMock(return_value=httpx.Response(200, json=DEEPGRAM_BODY))

            raw = await DeepgramClient("dg-key").transcribe_url("https://x/a.mp3")

        assert len(raw.utterances) == 3
        kwargs = http.post.call_args.kwargs
        assert kwargs["json"] == {"url": "https://x/a.mp3"}
        assert kwargs["headers"]["Authorization"] == "Token dg-key"
        assert kwargs["params"]["diarize"] == "true"

    async def test_transcribe_bytes_sends_mime(self):
        with patch("calltrack.connectors.transcription.http") as http:
            http.post = AsyncMock(return_value=httpx.Response(200, json=DEEPGRAM_BODY))

            await DeepgramClient("dg-key").transcribe_bytes(b"RIFF", "audio/wav")

        kwargs = http.post.call_args.kwargs
        assert kwargs["content"] == b"RIFF"
        assert kwargs["headers"]["Content-Type"] == "audio/wav"

    async def test_client_error_returns_none(self):
        with patch("calltrack.connectors.transcription.http") as http:
            http.post = AsyncMock(return_value=httpx.Response(400, text="bad audio"))

            assert await DeepgramClient("dg-key").transcribe_url("https://x/a.mp3") is None
            assert http.post.await_count == 1

    async def test_retries_server_errors(self):
        responses = [httpx.Response(503), httpx.Response(200, json=DEEPGRAM_BODY)]
        with (
            patch("calltrack.connectors.transcription.http") as http,
            patch("calltrack.connectors.transcription.BASE_DELAY", 0),
        ):
            http.post = AsyncMock(side_effect=responses)

            raw = await DeepgramClient("dg-key").transcribe_url("https://x/a.mp3")

        assert raw is not None
        assert http.post.await_count == 2
