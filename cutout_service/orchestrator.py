"""
Job orchestration for both engines.

One `Orchestrator` owns at most one `ProcessingJob` at a time and exposes the
same state machine whichever engine runs it:

    IDLE --submit--> RUNNING --> SUCCEEDED | FAILED
    any state --reset--> IDLE

Submitting while a job exists resets that job first. Express jobs can be
re-keyed with new parameters while RUNNING or SUCCEEDED; every re-run starts
from the decoded source, never from a previous result. Deep jobs cannot be
cancelled: if the job is reset while the engine is still working, whatever
the engine returns later is dropped.

Every source and result image is held through a `ResourceHandle` and is
released when its job is reset, replaced, or the orchestrator is closed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import time
from typing import Optional
import uuid

from . import config
from .deep_engine import DeepEngine
from .errors import CutoutError, EngineFailure, InvalidInput, InvalidTransition
from .express import ImageBuffer, SegmentationParams, apply_color_key
from .postprocessing import encode_png, output_name
from .preprocessing import SourceImage, decode_to_buffer, validate_submission
from .resources import HandleRegistry, ResourceHandle

logger = logging.getLogger(__name__)

STATUS_STARTING = "Initializing AI engine..."
STATUS_EXPRESS = "Removing background..."
STATUS_FETCH = "Downloading AI models..."
STATUS_COMPUTE = "Analyzing image layers..."
STATUS_SUCCESS = "Success!"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Mode(str, Enum):
    EXPRESS = "express"
    DEEP = "deep"


@dataclass
class ResultArtifact:
    handle: ResourceHandle
    name: str

    def release(self) -> None:
        self.handle.release()


@dataclass
class ProcessingJob:
    source: SourceImage
    source_handle: ResourceHandle
    mode: Mode
    params: SegmentationParams
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.RUNNING
    progress: int = 0
    status: str = STATUS_STARTING
    error: Optional[CutoutError] = None
    result: Optional[ResultArtifact] = None
    decoded: Optional[ImageBuffer] = None
    started_at: float = field(default_factory=time.monotonic)

    def release_resources(self) -> None:
        self.source_handle.release()
        if self.result is not None:
            self.result.release()
        self.decoded = None


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of the orchestrator handed to shells."""

    state: JobState
    progress: int = 0
    status: str = ""
    job_id: Optional[str] = None
    mode: Optional[Mode] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    result_name: Optional[str] = None
    result_handle: Optional[str] = None
    source_handle: Optional[str] = None
    tolerance: Optional[float] = None
    feather: Optional[float] = None


def stage_status(stage: str, percentage: int) -> str:
    """Map an engine stage key to user-facing status text."""
    key = stage.lower()
    if "fetch" in key:
        return STATUS_FETCH
    if "compute" in key:
        return STATUS_COMPUTE
    return f"Processing ({percentage}%)..."


def progress_percentage(current: float, total: float) -> int:
    if not total or total <= 0:
        return 0
    # Half-up rounding, as progress bars usually show it.
    pct = math.floor(current / total * 100 + 0.5)
    return int(min(max(pct, 0), 100))


class Orchestrator:
    def __init__(
        self,
        deep_engine: Optional[DeepEngine] = None,
        settings: Optional[config.Settings] = None,
        registry: Optional[HandleRegistry] = None,
    ):
        self._settings = settings or config.get_settings()
        self._deep_engine = deep_engine
        self._registry = registry or HandleRegistry()
        self._job: Optional[ProcessingJob] = None
        self._rejection: Optional[CutoutError] = None
        self._recompute_token = 0
        self._compute_lock = asyncio.Lock()
        self._closed = False

    @property
    def registry(self) -> HandleRegistry:
        return self._registry

    @property
    def job(self) -> Optional[ProcessingJob]:
        return self._job

    @property
    def state(self) -> JobState:
        return self._job.state if self._job is not None else JobState.IDLE

    def snapshot(self) -> JobSnapshot:
        job = self._job
        if job is None:
            rejection = self._rejection
            return JobSnapshot(
                state=JobState.IDLE,
                error=rejection.user_message if rejection else None,
                error_kind=rejection.kind if rejection else None,
            )
        return JobSnapshot(
            state=job.state,
            progress=job.progress,
            status=job.status,
            job_id=job.id,
            mode=job.mode,
            error=job.error.user_message if job.error else None,
            error_kind=job.error.kind if job.error else None,
            result_name=job.result.name if job.result else None,
            result_handle=job.result.handle.id if job.result else None,
            source_handle=job.source_handle.id,
            tolerance=job.params.tolerance,
            feather=job.params.feather,
        )

    def result_bytes(self) -> bytes:
        job = self._job
        if job is None or job.state != JobState.SUCCEEDED or job.result is None:
            raise InvalidTransition("No finished result to read")
        return job.result.handle.read()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Drop the current job and release every handle it owns."""
        job = self._job
        self._job = None
        self._rejection = None
        self._recompute_token += 1
        if job is not None:
            job.release_resources()
            logger.info("job %s reset from state=%s", job.id, job.state.value)

    def close(self) -> None:
        """Tear down: reset and refuse further submissions."""
        self.reset()
        self._closed = True
        leaked = self._registry.live_handles()
        if leaked:
            logger.warning("orchestrator closed with %d live handles: %s", len(leaked), leaked)

    async def submit(
        self,
        data: bytes,
        filename: str,
        content_type: Optional[str] = None,
        mode: Optional[str] = None,
        params: Optional[SegmentationParams] = None,
    ) -> JobSnapshot:
        """
        Start a new job for `data`.

        Raises:
            InvalidInput: the file is rejected; the orchestrator stays IDLE.
            InvalidTransition: the orchestrator has been closed.
        """
        if self._closed:
            raise InvalidTransition("Orchestrator is closed")
        self.reset()

        try:
            selected = Mode((mode or self._settings.default_mode).lower())
        except ValueError as exc:
            self._rejection = InvalidInput(f"Unknown mode {mode!r}", user_message="Unknown processing mode.")
            raise self._rejection from exc
        if selected == Mode.DEEP and self._deep_engine is None:
            self._rejection = InvalidInput(
                "Deep mode requested without a deep engine",
                user_message="AI mode is not available on this server.",
            )
            raise self._rejection

        try:
            params = params or SegmentationParams(
                tolerance=self._settings.default_tolerance,
                feather=self._settings.default_feather,
            )
            source = validate_submission(data, filename, content_type, self._settings)
        except ValueError as exc:
            self._rejection = InvalidInput(str(exc), user_message="Invalid segmentation settings.")
            raise self._rejection from exc
        except InvalidInput as exc:
            self._rejection = exc
            logger.info("submission rejected: %s", exc)
            raise

        job = ProcessingJob(
            source=source,
            source_handle=self._registry.create(source.data, source.content_type),
            mode=selected,
            params=params,
        )
        self._job = job
        logger.info(
            "job %s started mode=%s file=%s format=%s size=%dx%d",
            job.id,
            selected.value,
            source.filename,
            source.format,
            source.size[0],
            source.size[1],
        )

        if selected == Mode.EXPRESS:
            try:
                job.decoded = decode_to_buffer(source.data)
            except CutoutError as exc:
                self._fail(job, exc)
                return self.snapshot()
            job.status = STATUS_EXPRESS
            self._recompute_token += 1
            await self._run_express(job, self._recompute_token)
        else:
            await self._run_deep(job)
        return self.snapshot()

    async def recompute(self, tolerance: float, feather: float) -> JobSnapshot:
        """
        Re-key the current express job against its original source.

        When several requests overlap, only the latest one's result is kept.
        """
        job = self._job
        if job is None or job.mode != Mode.EXPRESS:
            raise InvalidTransition("Parameters can only be adjusted on an express job")
        if job.state not in (JobState.RUNNING, JobState.SUCCEEDED):
            raise InvalidTransition(f"Cannot adjust parameters in state {job.state.value}")
        try:
            params = SegmentationParams(tolerance=float(tolerance), feather=float(feather))
        except ValueError as exc:
            raise InvalidInput(str(exc), user_message="Invalid segmentation settings.") from exc

        job.params = params
        self._recompute_token += 1
        await self._run_express(job, self._recompute_token)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------

    def _is_current(self, job: ProcessingJob, token: Optional[int] = None) -> bool:
        if self._job is not job:
            return False
        return token is None or token == self._recompute_token

    def _fail(self, job: ProcessingJob, error: CutoutError) -> None:
        job.state = JobState.FAILED
        job.error = error
        job.progress = 0
        job.status = error.user_message
        if job.result is not None:
            job.result.release()
            job.result = None
        logger.info("job %s failed kind=%s: %s", job.id, error.kind, error)

    def _succeed(self, job: ProcessingJob, png: bytes) -> None:
        previous = job.result
        job.result = ResultArtifact(
            handle=self._registry.create(png, "image/png"),
            name=output_name(job.source.filename),
        )
        if previous is not None:
            previous.release()
        job.state = JobState.SUCCEEDED
        job.progress = 100
        job.status = STATUS_SUCCESS
        job.error = None
        logger.info(
            "job %s succeeded in %.3fs (%d bytes)",
            job.id,
            time.monotonic() - job.started_at,
            job.result.handle.size,
        )

    def _key_and_encode(self, source: ImageBuffer, params: SegmentationParams) -> bytes:
        keyed = apply_color_key(source, params.tolerance, params.feather)
        return encode_png(keyed, settings=self._settings)

    async def _run_express(self, job: ProcessingJob, token: int) -> None:
        source = job.decoded
        if source is None:
            return
        large = source.pixel_count > self._settings.yield_pixel_threshold

        async with self._compute_lock:
            # A newer request arrived while this one waited.
            if not self._is_current(job, token):
                logger.debug("job %s: skipping superseded recompute %d", job.id, token)
                return
            params = job.params
            try:
                if large:
                    await asyncio.sleep(0)
                    png = await asyncio.to_thread(self._key_and_encode, source, params)
                    await asyncio.sleep(0)
                else:
                    png = self._key_and_encode(source, params)
            except CutoutError as exc:
                if self._is_current(job, token):
                    self._fail(job, exc)
                return
            except Exception as exc:  # noqa: BLE001
                logger.exception("job %s: express engine failed", job.id)
                if self._is_current(job, token):
                    self._fail(job, EngineFailure(str(exc)))
                return

        if not self._is_current(job, token):
            logger.debug("job %s: discarding stale express result %d", job.id, token)
            return
        self._succeed(job, png)

    async def _run_deep(self, job: ProcessingJob) -> None:
        def on_progress(stage: str, current: float, total: float) -> None:
            if not self._is_current(job) or job.state != JobState.RUNNING:
                return
            pct = progress_percentage(current, total)
            job.progress = pct
            job.status = stage_status(str(stage), pct)
            logger.debug("job %s progress stage=%s %s/%s -> %d%%", job.id, stage, current, total, pct)

        try:
            png = await self._deep_engine.remove_background(job.source.data, on_progress)
        except Exception as exc:  # noqa: BLE001
            logger.exception("job %s: deep engine failed", job.id)
            if self._is_current(job):
                self._fail(job, EngineFailure(str(exc) or type(exc).__name__))
            return

        if not self._is_current(job):
            logger.info("job %s: deep result arrived after reset, dropping", job.id)
            return
        if not png:
            self._fail(job, EngineFailure("Deep engine returned an empty result"))
            return
        self._succeed(job, png)
