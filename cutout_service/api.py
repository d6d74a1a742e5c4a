"""
FastAPI layer around the job orchestrator.

Endpoints:
 - GET /health
 - POST /jobs
 - GET /jobs/current
 - PATCH /jobs/current/params
 - GET /jobs/current/result
 - POST /jobs/current/publish
 - DELETE /jobs/current
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from pathlib import PurePosixPath
from typing import Optional, Set
from urllib.parse import quote, urljoin, urlparse
import uuid

import boto3
from botocore.client import Config as BotoConfig
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .deep_engine import TorchDeepEngine
from .errors import CutoutError, InvalidImage, InvalidInput, InvalidTransition
from .express import SegmentationParams
from .orchestrator import JobSnapshot, Mode, Orchestrator

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def build_orchestrator() -> Orchestrator:
    deep_engine = TorchDeepEngine(settings) if settings.deep_model_path else None
    if deep_engine is None:
        logger.info("DEEP_MODEL_PATH not set; only express mode is available")
    return Orchestrator(deep_engine=deep_engine, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.orchestrator = build_orchestrator()
    app.state.tasks = set()
    yield
    app.state.orchestrator.close()


app = FastAPI(title="Cutout Background Removal Service", version="0.1.0", lifespan=lifespan)


class SubmitJobRequest(BaseModel):
    imageUrl: HttpUrl
    filename: Optional[str] = None
    mode: Optional[str] = None
    tolerance: Optional[float] = None
    feather: Optional[float] = None


class ParamsRequest(BaseModel):
    tolerance: float
    feather: float


class JobStatusResponse(BaseModel):
    state: str
    progress: int
    status: str
    jobId: Optional[str] = None
    mode: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[str] = None
    resultName: Optional[str] = None
    tolerance: Optional[float] = None
    feather: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snap: JobSnapshot) -> "JobStatusResponse":
        return cls(
            state=snap.state.value,
            progress=snap.progress,
            status=snap.status,
            jobId=snap.job_id,
            mode=snap.mode.value if snap.mode else None,
            error=snap.error,
            errorKind=snap.error_kind,
            resultName=snap.result_name,
            tolerance=snap.tolerance,
            feather=snap.feather,
        )


class PublishResponse(BaseModel):
    outputUrl: HttpUrl
    name: str


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _http_error(exc: CutoutError) -> HTTPException:
    if isinstance(exc, (InvalidInput, InvalidImage)):
        status = 400
    elif isinstance(exc, InvalidTransition):
        status = 409
    else:
        status = 500
    return HTTPException(status_code=status, detail={"kind": exc.kind, "message": exc.user_message})


def _get_s3_client():
    required = [
        settings.r2_endpoint,
        settings.r2_access_key_id,
        settings.r2_secret_access_key,
        settings.r2_bucket_name,
    ]
    if any(v is None for v in required):
        raise RuntimeError("R2 configuration is incomplete; check env vars.")
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint,
        config=BotoConfig(signature_version="s3v4"),
    )


def _build_public_url(client, key: str) -> str:
    if settings.r2_public_base_url:
        return urljoin(settings.r2_public_base_url.rstrip("/") + "/", key)
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.r2_bucket_name, "Key": key},
        ExpiresIn=3600,
    )


def _upload_png(png_bytes: bytes, key: str) -> str:
    client = _get_s3_client()
    client.put_object(
        Bucket=settings.r2_bucket_name,
        Key=key,
        Body=png_bytes,
        ContentType="image/png",
    )
    return _build_public_url(client, key)


def _download_image(url: str) -> tuple[bytes, Optional[str]]:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    content_type = resp.headers.get("Content-Type")
    if content_type:
        content_type = content_type.split(";")[0].strip()
    return resp.content, content_type


def _filename_from_url(url: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    return name or "image"


def _content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback and an RFC 5987 UTF-8 name."""
    fallback = "".join(c if 32 <= ord(c) < 127 and c not in '"\\' else "_" for c in filename)
    header = f'attachment; filename="{fallback}"'
    quoted = quote(filename)
    if quoted != filename:
        header += f"; filename*=UTF-8''{quoted}"
    return header


def _log_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, CutoutError):
        logger.error("background job task failed: %s", exc)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/jobs", response_model=JobStatusResponse)
async def submit_job(body: SubmitJobRequest, request: Request, orch: Orchestrator = Depends(get_orchestrator)):
    try:
        image_bytes, content_type = await asyncio.to_thread(_download_image, str(body.imageUrl))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to download image: %s", exc)
        raise HTTPException(status_code=400, detail="Could not download image") from exc

    params = None
    if body.tolerance is not None or body.feather is not None:
        try:
            params = SegmentationParams(
                tolerance=settings.default_tolerance if body.tolerance is None else body.tolerance,
                feather=settings.default_feather if body.feather is None else body.feather,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    filename = body.filename or _filename_from_url(str(body.imageUrl))
    mode = (body.mode or settings.default_mode).lower()
    task = asyncio.create_task(orch.submit(image_bytes, filename, content_type, mode, params))

    if mode == Mode.DEEP.value:
        # Let the job start (validation, first progress) and return while the engine works.
        await asyncio.sleep(0)
        if not task.done():
            tasks: Set[asyncio.Task] = request.app.state.tasks
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(_log_task_result)
            return JobStatusResponse.from_snapshot(orch.snapshot())

    try:
        snap = await task
    except CutoutError as exc:
        raise _http_error(exc) from exc
    return JobStatusResponse.from_snapshot(snap)


@app.get("/jobs/current", response_model=JobStatusResponse)
async def get_job(orch: Orchestrator = Depends(get_orchestrator)):
    return JobStatusResponse.from_snapshot(orch.snapshot())


@app.patch("/jobs/current/params", response_model=JobStatusResponse)
async def update_params(body: ParamsRequest, orch: Orchestrator = Depends(get_orchestrator)):
    if orch.job is None:
        raise HTTPException(status_code=404, detail="No job to update")
    try:
        snap = await orch.recompute(body.tolerance, body.feather)
    except CutoutError as exc:
        raise _http_error(exc) from exc
    return JobStatusResponse.from_snapshot(snap)


@app.get("/jobs/current/result")
async def get_result(orch: Orchestrator = Depends(get_orchestrator)):
    snap = orch.snapshot()
    try:
        png_bytes = orch.result_bytes()
    except InvalidTransition as exc:
        raise HTTPException(status_code=404, detail="No result available") from exc
    return Response(
        content=png_bytes,
        media_type="image/png",
        headers={"Content-Disposition": _content_disposition(snap.result_name)},
    )


@app.post("/jobs/current/publish", response_model=PublishResponse)
async def publish_result(orch: Orchestrator = Depends(get_orchestrator)):
    snap = orch.snapshot()
    try:
        png_bytes = orch.result_bytes()
    except InvalidTransition as exc:
        raise HTTPException(status_code=404, detail="No result available") from exc

    key = f"cutout/{uuid.uuid4()}/{snap.result_name}"
    try:
        output_url = await asyncio.to_thread(_upload_png, png_bytes, key)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to upload cutout to R2: %s", exc)
        raise HTTPException(status_code=500, detail="Upload to storage failed") from exc

    return PublishResponse(outputUrl=output_url, name=snap.result_name)


@app.delete("/jobs/current", response_model=JobStatusResponse)
async def reset_job(orch: Orchestrator = Depends(get_orchestrator)):
    orch.reset()
    return JobStatusResponse.from_snapshot(orch.snapshot())
