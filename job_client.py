import asyncio
import json
from typing import Optional, Type

import httpx
from loguru import logger
from pydantic import BaseModel

from errors import RemoteFailure, StatusError, SubmitError, TransportError, UploadError, ValidationError
from settings import Settings

NEGATIVE_PROMPT = "blur, distort, and low quality"

COMPLETED = "COMPLETED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
TERMINAL_STATUSES = {COMPLETED, FAILED, CANCELLED}


class GenerationParams(BaseModel):
    duration: str = "5"            # "5" | "10" seconds
    aspect_ratio: str = "16:9"     # "16:9" | "9:16" | "1:1"
    cfg_scale: float = 0.5
    negative_prompt: str = NEGATIVE_PROMPT

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationParams":
        return cls(
            duration=settings.generation_duration,
            aspect_ratio=settings.generation_aspect_ratio,
            cfg_scale=settings.generation_cfg_scale,
        )


class AssetRef(BaseModel):
    url: str
    file_name: str


class JobHandle(BaseModel):
    request_id: str
    model_id: str


class JobStatusSnapshot(BaseModel):
    """Remote status verbatim, plus the result payload once the job completed.

    ``data`` mirrors the job API client shape: ``{"data": <output>, "requestId": ...}``,
    so the video lives at ``data["data"]["video"]["url"]``.
    """

    request_id: str
    status: str
    data: Optional[dict] = None
    error: Optional[str] = None
    logs: Optional[list] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def result_ref(self) -> Optional[str]:
        if self.status != COMPLETED:
            return None
        return _video_url(self.data)

    @property
    def failure_reason(self) -> Optional[str]:
        if self.status == CANCELLED:
            return self.error or "Video generation was cancelled"
        if self.status == FAILED:
            return self.error or "Video generation failed"
        return None

    def raise_for_failure(self) -> None:
        if self.failure_reason is not None:
            raise RemoteFailure(self.failure_reason, details=self.model_dump(exclude_none=True))


def _video_url(data: Optional[dict]) -> Optional[str]:
    try:
        url = data["data"]["video"]["url"]
    except (KeyError, TypeError):
        return None
    return url or None


def _error_text(error) -> Optional[str]:
    # The job API sends either a message or a structured error object
    if error is None or isinstance(error, str):
        return error or None
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return str(error)


def app_path(model_id: str) -> str:
    """Status/result/cancel live under owner/alias only, without the model sub-path."""
    return "/".join(model_id.strip("/").split("/")[:2])


class JobClient:
    """Single round-trip wrapper around the job API: upload, submit, status, cancel.

    Nothing here retries. The orchestrator decides whether to poll again.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None, asset_store=None):
        self.settings = settings
        self.model_id = settings.fal_model_id
        self._queue = settings.fal_queue_url.rstrip("/")
        self._storage = settings.fal_storage_url.rstrip("/")
        self._transport = transport
        self._asset_store = asset_store
        self._timeout = httpx.Timeout(settings.request_timeout_s)

    def _auth_headers(self, error_cls: Type[TransportError]) -> dict:
        if not self.settings.fal_key:
            raise error_cls("FAL_KEY or FAL_API_KEY is not set")
        return {"Authorization": f"Key {self.settings.fal_key}"}

    async def _send(self, error_cls: Type[TransportError], method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise error_cls(f"{error_cls.message}: {e}", details=str(e))
        if r.status_code >= 300:
            logger.error(f"{method} {url} returned {r.status_code}")
            raise error_cls(f"{error_cls.message}: {r.status_code} {r.text}", status=r.status_code, details=r.text)
        return r

    @staticmethod
    def _json(r: httpx.Response, error_cls: Type[TransportError]) -> dict:
        try:
            data = r.json()
        except ValueError:
            raise error_cls(f"{error_cls.message}: response is not JSON", status=r.status_code, details=r.text)
        if not isinstance(data, dict):
            raise error_cls(f"{error_cls.message}: unexpected response", status=r.status_code, details=data)
        return data

    # ---- upload ----

    async def upload(self, asset: bytes, content_type: str = "image/jpeg", file_name: str = "captured-image.jpg") -> AssetRef:
        """Make ``asset`` fetchable by the job API and return where it lives."""
        if not asset:
            raise ValidationError("No file provided")

        if self._asset_store is not None:
            url = await asyncio.to_thread(
                self._asset_store.upload_bytes_and_get_url,
                asset,
                file_name=file_name,
                content_type=content_type,
            )
            return AssetRef(url=url, file_name=file_name)

        headers = self._auth_headers(UploadError)
        r = await self._send(
            UploadError,
            "POST",
            f"{self._storage}/storage/upload/initiate",
            params={"storage_type": "fal-cdn-v3"},
            json={"content_type": content_type, "file_name": file_name},
            headers=headers,
        )
        target = self._json(r, UploadError)
        upload_url, file_url = target.get("upload_url"), target.get("file_url")
        if not upload_url or not file_url:
            raise UploadError("Failed to upload image: storage did not return an upload target", status=r.status_code, details=target)

        await self._send(UploadError, "PUT", upload_url, content=asset, headers={"Content-Type": content_type})
        logger.info(f"Uploaded {file_name} ({len(asset)} bytes) -> {file_url}")
        return AssetRef(url=file_url, file_name=file_name)

    # ---- submit ----

    async def submit(
        self,
        prompt: str,
        source_asset_ref: str,
        params: Optional[GenerationParams] = None,
        webhook_url: Optional[str] = None,
    ) -> JobHandle:
        if not prompt or not prompt.strip() or not source_asset_ref:
            raise ValidationError("Missing required fields: prompt and image_url")

        params = params or GenerationParams.from_settings(self.settings)
        payload = {
            "prompt": prompt,
            "image_url": source_asset_ref,
            "duration": params.duration,
            "aspect_ratio": params.aspect_ratio,
            "cfg_scale": params.cfg_scale,
            "negative_prompt": params.negative_prompt,
        }
        query = {"fal_webhook": webhook_url} if webhook_url else None
        headers = self._auth_headers(SubmitError)

        r = await self._send(SubmitError, "POST", f"{self._queue}/{self.model_id}", json=payload, params=query, headers=headers)
        data = self._json(r, SubmitError)
        request_id = data.get("request_id")
        if not request_id:
            raise SubmitError("Failed to start video generation: no request_id", status=r.status_code, details=data)
        logger.info(f"Submitted generation {request_id} to {self.model_id}")
        return JobHandle(request_id=request_id, model_id=self.model_id)

    # ---- status ----

    async def fetch_status(self, handle: JobHandle) -> JobStatusSnapshot:
        """Fetch the status and, once COMPLETED, the result, composed into one snapshot."""
        base = f"{self._queue}/{app_path(handle.model_id)}/requests/{handle.request_id}"
        headers = self._auth_headers(StatusError)

        r = await self._send(StatusError, "GET", f"{base}/status", params={"logs": "1"}, headers=headers)
        status = self._json(r, StatusError)
        snapshot = JobStatusSnapshot(
            request_id=handle.request_id,
            status=str(status.get("status", "")),
            error=_error_text(status.get("error")),
            logs=status.get("logs") if isinstance(status.get("logs"), list) else None,
        )
        if snapshot.status != COMPLETED:
            return snapshot

        r = await self._send(StatusError, "GET", base, headers=headers)
        output = self._json(r, StatusError)
        snapshot.data = {"data": output, "requestId": handle.request_id}
        if snapshot.result_ref is None:
            raise StatusError("Failed to fetch result: no video URL in output", status=r.status_code, details=output)
        return snapshot

    # ---- cancel ----

    async def cancel(self, handle: JobHandle) -> None:
        url = f"{self._queue}/{app_path(handle.model_id)}/requests/{handle.request_id}/cancel"
        await self._send(StatusError, "PUT", url, headers=self._auth_headers(StatusError))
        logger.info(f"Cancel requested for {handle.request_id}")
