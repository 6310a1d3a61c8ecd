"""Lifecycle of one generation attempt.

    idle -> uploading -> submitting -> polling -> completed | failed

``start`` runs the upload and submit steps and leaves the attempt in
``polling`` (or ``failed``). Each call to ``tick`` performs exactly one status
fetch and one transition, so the caller owns scheduling: ``run`` drives it
with ``asyncio.sleep`` between ticks, tests drive it directly.

Every transition is appended to ``transitions`` and passed to the listener.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from loguru import logger
from pydantic import BaseModel

from errors import AppError
from job_client import COMPLETED, AssetRef, GenerationParams, JobClient, JobHandle
from settings import Settings


class GenerationState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {GenerationState.COMPLETED, GenerationState.FAILED}


class GenerationResult(BaseModel):
    video_url: str
    image_url: str
    prompt: str


class Transition(BaseModel):
    state: GenerationState
    status_label: Optional[str] = None
    result: Optional[GenerationResult] = None
    error: Optional[str] = None


class GenerationJob(BaseModel):
    """Local projection of the remote job; exists once submit succeeded."""

    job_id: str
    prompt: str
    source_image_ref: str
    status: GenerationState = GenerationState.POLLING
    result_ref: Optional[str] = None
    failure_reason: Optional[str] = None


class GenerationOrchestrator:
    def __init__(
        self,
        client: JobClient,
        *,
        params: Optional[GenerationParams] = None,
        poll_interval: float = 2.0,
        max_poll_attempts: Optional[int] = None,
        webhook_url: Optional[str] = None,
        listener: Optional[Callable[[Transition], None]] = None,
    ):
        self.client = client
        self.params = params
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.webhook_url = webhook_url
        self._listener = listener
        self._reset()

    @classmethod
    def from_settings(cls, client: JobClient, settings: Settings, **kwargs) -> "GenerationOrchestrator":
        kwargs.setdefault("params", GenerationParams.from_settings(settings))
        kwargs.setdefault("poll_interval", settings.poll_interval_ms / 1000)
        kwargs.setdefault("max_poll_attempts", settings.poll_max_attempts or None)
        return cls(client, **kwargs)

    def _reset(self):
        self.state = GenerationState.IDLE
        self.status_label: Optional[str] = None
        self.prompt: Optional[str] = None
        self.asset: Optional[AssetRef] = None
        self.handle: Optional[JobHandle] = None
        self.job: Optional[GenerationJob] = None
        self.result: Optional[GenerationResult] = None
        self.failure_reason: Optional[str] = None
        self.polls = 0
        self.transitions: List[Transition] = []
        self._cancelled = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _emit(self, state: GenerationState, label: Optional[str] = None, **payload) -> GenerationState:
        self.state = state
        self.status_label = label
        transition = Transition(state=state, status_label=label, **payload)
        self.transitions.append(transition)
        if state == GenerationState.POLLING:
            logger.debug(f"generation {self.handle.request_id if self.handle else '-'}: {label}")
        else:
            logger.info(f"generation -> {state.value}" + (f" ({label})" if label else ""))
        if self._listener is not None:
            self._listener(transition)
        return state

    def _fail(self, reason: str) -> GenerationState:
        self.failure_reason = reason
        if self.job is not None:
            self.job.status = GenerationState.FAILED
            self.job.failure_reason = reason
        logger.warning(f"generation failed: {reason}")
        return self._emit(GenerationState.FAILED, error=reason)

    def _complete(self, video_url: str) -> GenerationState:
        self.result = GenerationResult(video_url=video_url, image_url=self.asset.url, prompt=self.prompt)
        self.job.status = GenerationState.COMPLETED
        self.job.result_ref = video_url
        return self._emit(GenerationState.COMPLETED, result=self.result)

    async def start(
        self,
        image: Optional[bytes],
        prompt: Optional[str],
        content_type: str = "image/jpeg",
        file_name: str = "captured-image.jpg",
    ) -> GenerationState:
        """Upload the image and submit the job. Ends in ``polling`` or ``failed``."""
        if self.state not in TERMINAL_STATES and self.state != GenerationState.IDLE:
            raise RuntimeError(f"generation already in progress ({self.state.value})")
        self._reset()

        if not image or not prompt or not prompt.strip():
            return self._fail("Please provide both an image and a prompt.")
        self.prompt = prompt

        self._emit(GenerationState.UPLOADING, "uploading")
        try:
            asset = await self.client.upload(image, content_type=content_type, file_name=file_name)
        except AppError as e:
            return self.state if self._cancelled else self._fail(e.message)
        if self._cancelled:
            return self.state
        self.asset = asset

        self._emit(GenerationState.SUBMITTING, "submitting")
        try:
            handle = await self.client.submit(prompt, asset.url, self.params, self.webhook_url)
        except AppError as e:
            return self.state if self._cancelled else self._fail(e.message)
        self.handle = handle
        if self._cancelled:
            await self._cancel_remote()
            return self.state

        self.job = GenerationJob(job_id=handle.request_id, prompt=prompt, source_image_ref=asset.url)
        return self._emit(GenerationState.POLLING, "initializing")

    async def tick(self) -> GenerationState:
        """One status fetch and the transition it implies. No-op outside ``polling``."""
        if self.state != GenerationState.POLLING:
            return self.state

        try:
            snapshot = await self.client.fetch_status(self.handle)
            snapshot.raise_for_failure()
        except AppError as e:
            if self.state != GenerationState.POLLING:
                return self.state
            return self._fail(e.message)
        if self.state != GenerationState.POLLING:
            # cancelled while the request was in flight
            return self.state

        self.polls += 1
        if snapshot.status == COMPLETED:
            return self._complete(snapshot.result_ref)
        if self.max_poll_attempts and self.polls >= self.max_poll_attempts:
            reason = f"Video generation timed out after {self.polls} status checks"
            await self._cancel_remote()
            return self._fail(reason)
        return self._emit(GenerationState.POLLING, snapshot.status)

    async def run(
        self,
        image: Optional[bytes],
        prompt: Optional[str],
        content_type: str = "image/jpeg",
        file_name: str = "captured-image.jpg",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> GenerationState:
        """Full attempt: start, then tick every ``poll_interval`` until terminal."""
        await self.start(image, prompt, content_type=content_type, file_name=file_name)
        return await self.poll_until_terminal(sleep)

    async def poll_until_terminal(
        self,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> GenerationState:
        # First check is immediate, later ones wait poll_interval
        while self.state == GenerationState.POLLING:
            await self.tick()
            if self.state == GenerationState.POLLING:
                await sleep(self.poll_interval)
        return self.state

    async def cancel(self) -> GenerationState:
        """Abandon a running attempt and ask the job API to stop the remote job."""
        if self.is_terminal or self.state == GenerationState.IDLE:
            return self.state
        self._cancelled = True
        self._fail("Video generation was cancelled")
        await self._cancel_remote()
        return self.state

    async def _cancel_remote(self):
        if self.handle is None:
            return
        try:
            await self.client.cancel(self.handle)
        except AppError as e:
            logger.warning(f"could not cancel remote job {self.handle.request_id}: {e.message}")
