"""Google Cloud Storage connector for call recordings.

The storage SDK is blocking; every call runs in the default executor and is
bounded by the store timeout.

Usage:
    store = RecordingStore.from_settings(settings)
    if not await store.exists("calls/CA123.mp3"):
        await store.upload("calls/CA123.mp3", fileobj, "audio/mpeg")
    url = await store.signed_read_url("calls/CA123.mp3", ttl_seconds=1800)
"""

import asyncio
import json
import logging
import os
from datetime import timedelta
from functools import partial
from typing import BinaryIO

from google.cloud import storage
from google.oauth2 import service_account

from ..exceptions import FatalError
from ..utils.retry import with_timeout

log = logging.getLogger("calltrack.storage")


def recording_object_key(provider_call_id: str, content_type: str) -> str:
    """Deterministic object key: calls/{call id}.wav for WAV, .mp3 otherwise."""
    ext = ".wav" if "wav" in (content_type or "").lower() else ".mp3"
    return f"calls/{provider_call_id}{ext}"


def guess_mime(key: str) -> str:
    return "audio/wav" if key.lower().endswith(".wav") else "audio/mpeg"


class RecordingStore:
    """Narrow object-storage interface used by the recording pipeline."""

    def __init__(self, bucket_name: str, client: storage.Client | None = None, *, timeout: float = 60):
        if not bucket_name:
            raise FatalError("GCS bucket not configured")
        self.bucket_name = bucket_name
        self._client = client
        self._bucket = None
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "RecordingStore":
        creds = None
        raw = settings.gcs_credentials_json
        if raw:
            # Accept either a path to the service-account file or its JSON body
            if os.path.exists(raw):
                creds = service_account.Credentials.from_service_account_file(raw)
            else:
                creds = service_account.Credentials.from_service_account_info(json.loads(raw))
        client = storage.Client(credentials=creds, project=settings.gcs_project_id or None)
        log.info(f"GCS recording store initialized: bucket={settings.gcs_bucket}")
        return cls(settings.gcs_bucket, client=client)

    @property
    def bucket(self):
        if self._bucket is None:
            if self._client is None:
                self._client = storage.Client()
            self._bucket = self._client.bucket(self.bucket_name)
        return self._bucket

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await with_timeout(
            loop.run_in_executor(None, partial(fn, *args, **kwargs)),
            self.timeout,
            "GCS call timed out",
        )

    async def exists(self, key: str) -> bool:
        return await self._run(self.bucket.blob(key).exists)

    async def upload(self, key: str, fileobj: BinaryIO, content_type: str) -> None:
        blob = self.bucket.blob(key)
        await self._run(blob.upload_from_file, fileobj, content_type=content_type, rewind=True)
        log.info(f"Uploaded recording to gs://{self.bucket_name}/{key}")

    async def download(self, key: str) -> tuple[bytes, str]:
        blob = self.bucket.blob(key)
        data = await self._run(blob.download_as_bytes)
        return data, blob.content_type or guess_mime(key)

    async def signed_read_url(self, key: str, ttl_seconds: int = 1800) -> str:
        blob = self.bucket.blob(key)
        return await self._run(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
        )
