# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for CamVid:
#  - POST /api/upload-image      -> put a captured still where the job API can read it
#  - POST /api/generate-video    -> submit an image->video job, returns request_id
#  - GET  /api/get-video         -> status (+ result once COMPLETED) for a request_id
#  - POST /api/save-data         -> persist {imageURL, prompt, generatedVideoURL}
#  - GET  /api/save-data         -> read records back (by id, or most recent)
#  - POST /api/fal-webhook       -> completion callback sink (logged only)
#  - POST /generations           -> full attempt: upload, submit, poll, persist
#  - GET  /generations/{id}      -> poll an attempt's state
#  - DELETE /generations/{id}    -> abandon an attempt and cancel the remote job
#  Persistence:
#    * GridDB Web API container (see griddb_client.py), created on start-up
#  Storage:
#    * job API storage by default, R2 when STORAGE=r2
# ------------------------------------------------------------------------------------

from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from errors import AppError, StoreError, ValidationError
from griddb_client import GridDBClient
from job_client import GenerationParams, JobClient, JobHandle
from job_store import Attempt, AttemptStore
from logger import setup_logger
from orchestrator import GenerationOrchestrator, GenerationState
from persistence import PersistenceCoordinator, PersistOutcome
from r2_client import R2AssetStore
from settings import settings

GRIDDB_NOT_CONFIGURED = "GridDB configuration not found. Please check your environment variables."


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logger(settings.log_level)
    logger.info(f"camvid-api starting (storage={settings.storage}, model={settings.fal_model_id})")

    asset_store = R2AssetStore(settings) if settings.storage == "r2" else None
    app.state.job_client = JobClient(settings, asset_store=asset_store)
    app.state.attempts = AttemptStore(ttl_seconds=settings.attempt_ttl_s)
    app.state.coordinator = None

    if settings.griddb_configured:
        coordinator = PersistenceCoordinator(
            GridDBClient.from_settings(settings),
            verify_ids=settings.verify_record_ids,
        )
        try:
            await coordinator.ensure_ready()
        except StoreError as e:
            # persist() checks the container again, so the app can still start
            logger.error(f"Failed to initialize GridDB container: {e.message}")
        app.state.coordinator = coordinator
    else:
        logger.warning("Missing GridDB environment variables; records will not be saved")

    yield

    logger.info("Shutting down")


# ------------- FastAPI app --------------
app = FastAPI(title="CamVid API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    status = exc.status if exc.status and exc.status >= 400 else exc.http_status
    return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})


# ---------- Dependencies ----------
def get_job_client(request: Request) -> JobClient:
    return request.app.state.job_client


def get_attempts(request: Request) -> AttemptStore:
    return request.app.state.attempts


def get_coordinator(request: Request) -> Optional[PersistenceCoordinator]:
    return request.app.state.coordinator


def get_orchestrator(client: JobClient = Depends(get_job_client)) -> GenerationOrchestrator:
    return GenerationOrchestrator.from_settings(client, settings, webhook_url=settings.webhook_url)


def _require(coordinator: Optional[PersistenceCoordinator]) -> PersistenceCoordinator:
    if coordinator is None:
        logger.error("Missing GridDB environment variables")
        raise StoreError(GRIDDB_NOT_CONFIGURED)
    return coordinator


# ---------- Schemas ----------
class UploadImageResponse(BaseModel):
    success: bool = True
    url: str
    file_name: str


class GenerateVideoRequest(BaseModel):
    prompt: Optional[str] = None
    image_url: Optional[str] = None
    duration: Literal["5", "10"] = "5"
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"
    cfg_scale: float = Field(0.5, ge=0, le=1)


class GenerateVideoResponse(BaseModel):
    success: bool = True
    request_id: str


class SaveDataRequest(BaseModel):
    imageURL: Optional[str] = None
    prompt: Optional[str] = None
    generatedVideoURL: Optional[str] = None


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "storage": settings.storage, "griddb": settings.griddb_configured}


# ---------- Job API passthrough ----------
@app.post("/api/upload-image", response_model=UploadImageResponse)
async def upload_image(file: Optional[UploadFile] = File(None), client: JobClient = Depends(get_job_client)):
    if file is None:
        raise ValidationError("No file provided")
    data = await file.read()
    asset = await client.upload(
        data,
        content_type=file.content_type or "image/jpeg",
        file_name=file.filename or "captured-image.jpg",
    )
    return UploadImageResponse(url=asset.url, file_name=asset.file_name)


@app.post("/api/generate-video", response_model=GenerateVideoResponse)
async def generate_video(payload: GenerateVideoRequest, client: JobClient = Depends(get_job_client)):
    params = GenerationParams(
        duration=payload.duration,
        aspect_ratio=payload.aspect_ratio,
        cfg_scale=payload.cfg_scale,
    )
    handle = await client.submit(payload.prompt or "", payload.image_url or "", params, settings.webhook_url)
    return GenerateVideoResponse(request_id=handle.request_id)


@app.get("/api/get-video")
async def get_video(request_id: Optional[str] = None, client: JobClient = Depends(get_job_client)):
    if not request_id:
        raise ValidationError("Missing request_id")
    snapshot = await client.fetch_status(JobHandle(request_id=request_id, model_id=client.model_id))
    return {"success": True, **snapshot.model_dump(exclude_none=True)}


@app.post("/api/fal-webhook")
async def fal_webhook(request: Request):
    try:
        payload = await request.json()
    except ValueError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to handle webhook", "details": str(e)},
        )
    # Polling is authoritative; the callback is only recorded
    if isinstance(payload, dict):
        logger.info(f"webhook: request {payload.get('request_id')} -> {payload.get('status')}")
    else:
        logger.info(f"webhook: unrecognised {type(payload).__name__} payload")
    return {"success": True}


# ---------- Records ----------
@app.post("/api/save-data")
async def save_data(payload: SaveDataRequest, coordinator=Depends(get_coordinator)):
    if not payload.imageURL or not (payload.prompt or "").strip() or not payload.generatedVideoURL:
        raise ValidationError(
            "Missing required fields. You need to provide an image, a prompt, and a generated video URL."
        )
    outcome = await _require(coordinator).persist(payload.imageURL, payload.prompt, payload.generatedVideoURL)
    if not outcome.success:
        return JSONResponse(
            status_code=outcome.code if outcome.code and outcome.code >= 400 else 500,
            content={"success": False, "error": "GridDB operation failed", "details": outcome.error, "code": outcome.code},
        )
    return outcome.model_dump(include={"success", "message", "id", "result"})


@app.get("/api/save-data")
async def read_data(
    id: Optional[int] = Query(None),
    limit: int = Query(10, ge=1, le=1000),
    coordinator=Depends(get_coordinator),
):
    records = await _require(coordinator).fetch(record_id=id, limit=limit)
    return {"success": True, "data": [r.model_dump() for r in records]}


# ---------- Generations ----------
async def _finish_attempt(
    attempt: Attempt,
    attempts: AttemptStore,
    coordinator: Optional[PersistenceCoordinator],
):
    """Background worker: poll to a terminal state, then save the record."""
    orchestrator = attempt.orchestrator
    state = await orchestrator.poll_until_terminal()
    if state != GenerationState.COMPLETED:
        return

    result = orchestrator.result
    if coordinator is None:
        outcome = PersistOutcome(success=False, error=GRIDDB_NOT_CONFIGURED)
    else:
        outcome = await coordinator.persist(result.image_url, result.prompt, result.video_url)
    if not outcome.success:
        # generation stays completed; the save failure is reported beside it
        logger.warning(f"attempt {attempt.id}: video ready but record not saved: {outcome.error}")
    attempts.set_persisted(attempt.id, outcome)


@app.post("/generations")
async def create_generation(
    background: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    prompt: str = Form(""),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    attempts: AttemptStore = Depends(get_attempts),
    coordinator=Depends(get_coordinator),
):
    attempt = attempts.create(orchestrator)
    image = await file.read() if file is not None else None
    await orchestrator.start(
        image,
        prompt,
        content_type=(file.content_type if file is not None else None) or "image/jpeg",
        file_name=(file.filename if file is not None else None) or "captured-image.jpg",
    )
    if orchestrator.state == GenerationState.POLLING:
        background.add_task(_finish_attempt, attempt, attempts, coordinator)
    return attempt.to_dict()


@app.get("/generations/{attempt_id}")
def get_generation(attempt_id: str, attempts: AttemptStore = Depends(get_attempts)):
    attempt = attempts.get(attempt_id)
    if not attempt:
        raise HTTPException(status_code=404, detail="generation not found")
    return attempt.to_dict()


@app.delete("/generations/{attempt_id}")
async def cancel_generation(attempt_id: str, attempts: AttemptStore = Depends(get_attempts)):
    attempt = attempts.get(attempt_id)
    if not attempt:
        raise HTTPException(status_code=404, detail="generation not found")
    await attempt.orchestrator.cancel()
    return attempt.to_dict()


# ---------- Debug (hide in prod) ----------
if settings.debug:
    @app.get("/debug/config")
    def debug_config():
        return {
            "STORAGE": settings.storage,
            "FAL_MODEL_ID": settings.fal_model_id,
            "FAL_KEY_SET": bool(settings.fal_key),
            "GRIDDB_WEBAPI_URL": settings.griddb_webapi_url,
            "GRIDDB_CONTAINER": settings.griddb_container,
            "POLL_INTERVAL_MS": settings.poll_interval_ms,
            "POLL_MAX_ATTEMPTS": settings.poll_max_attempts,
            "ATTEMPT_TTL_S": settings.attempt_ttl_s,
        }
