import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.middleware.cors import CORSMiddleware

from config import LOG_LEVEL, REFINEMENT_MODEL
from errors import InputError, TranscodeError
from media import crop_video_ffmpeg, probe_dimensions
from pipeline import detect_crop
from schemas import CropDetection, DetectionParams, DetectResponse, Profile, Rectangle, new_request_id, now_iso
from storage import new_temp_path, remove_files, save_upload

# -----------------------------------------------------------------------------
# Logging: force stdout handler so logs are visible in Docker
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True,
)
for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    logging.getLogger(name).setLevel(logging.INFO)
logger = logging.getLogger("app")

# ---------------------------------
# App & CORS
# ---------------------------------
app = FastAPI(title="FFmpeg Crop Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

ENDPOINTS = ["/detect-ai", "/detect", "/detect-box", "/detect-overlay", "/crop"]


def _error(status_code: int, error: str, details: Any = None, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed form fields -> 400 instead of FastAPI's default 422."""
    errors = exc.errors()
    if any(tuple(e.get("loc", ()))[-1:] == ("file",) for e in errors):
        return _error(400, "No file uploaded. Use field name 'file'.")
    details = [
        {"param": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
        for e in errors
    ]
    return _error(400, "Invalid parameters", details)


def _build_params(**overrides: Any) -> DetectionParams:
    return DetectionParams(**{k: v for k, v in overrides.items() if v is not None})


def _detection_response(
    request_id: str,
    detection: CropDetection,
    params: DetectionParams,
    sample_time: Optional[float],
) -> DetectResponse:
    rect = detection.rect
    refinement = detection.refinement
    ai_profile = detection.profile == Profile.AI
    return DetectResponse(
        request_id=request_id,
        profile=detection.profile,
        crop_w=rect.width,
        crop_h=rect.height,
        x=rect.x,
        y=rect.y,
        src_w=detection.src_w,
        src_h=detection.src_h,
        frames_analyzed=len(detection.results),
        timestamps_sampled=detection.timestamps,
        safe_margin=params.safe_margin,
        top_cut=detection.bands.top if detection.bands else None,
        bottom_cut=detection.bands.bottom if detection.bands else None,
        sample_time=sample_time,
        heuristic_enforced_top=detection.enforced_top if ai_profile else None,
        heuristic_enforced_bottom=detection.enforced_bottom if ai_profile else None,
        ai_powered=refinement is not None,
        model_used=refinement.model if refinement else None,
        confidence=refinement.confidence if refinement else None,
        reasoning=refinement.reasoning if refinement else None,
        refinement_error=detection.refinement_error,
        completed_at=now_iso(),
    )


async def _run_detection(
    file: UploadFile,
    profile: Profile,
    *,
    num_frames: Optional[int] = None,
    sample_time: Optional[float] = None,
    **overrides: Any,
) -> JSONResponse:
    request_id = new_request_id()
    try:
        params = _build_params(**overrides)
    except ValidationError as e:
        details = [
            {"param": ".".join(str(p) for p in err["loc"]) or "params", "message": err["msg"]} for err in e.errors()
        ]
        return _error(400, "Invalid parameters", details)

    input_path: Optional[Path] = None
    try:
        input_path = await save_upload(file)
        logger.info(f"[TASK {request_id}] Upload saved: {input_path.name} profile={profile.value}")
        detection = await detect_crop(
            input_path,
            params,
            profile,
            num_frames=num_frames,
            sample_time=sample_time,
            request_id=request_id,
        )
    except InputError as e:
        logger.error(f"[TASK {request_id}] Input error: {e}")
        if e.stage == "sampler" and e.param is None:
            return _error(500, e.detail, stage=e.stage)
        return _error(400, e.detail, stage=e.stage, param=e.param)
    except Exception as e:
        logger.exception(f"[TASK {request_id}] Detection failed")
        return _error(500, "detect failed", f"{type(e).__name__}: {e}")
    finally:
        remove_files(input_path)

    return JSONResponse(_detection_response(request_id, detection, params, sample_time).model_dump(mode="json"))


# ---------------------------------
# API Endpoints
# ---------------------------------
@app.post("/detect-ai")
async def detect_ai(
    file: UploadFile = File(...),
    num_frames: Optional[int] = Form(None),
    safe_margin: int = Form(14),
    dark_threshold: Optional[float] = Form(None),
    scan_top_ratio: Optional[float] = Form(None),
    scan_bottom_ratio: Optional[float] = Form(None),
    full_width_ratio: Optional[float] = Form(None),
):
    """Heuristic safe region + vision model suggestion, clamped into the region."""
    return await _run_detection(
        file,
        Profile.AI,
        num_frames=num_frames,
        safe_margin=safe_margin,
        dark_threshold=dark_threshold,
        scan_top_ratio=scan_top_ratio,
        scan_bottom_ratio=scan_bottom_ratio,
        full_width_ratio=full_width_ratio,
    )


@app.post("/detect")
async def detect(
    file: UploadFile = File(...),
    sample_time: float = Form(0.5),
    dark_threshold: Optional[float] = Form(None),
    safe_margin: int = Form(10),
):
    """Basic dark-band detection on a single frame (no AI)."""
    return await _run_detection(
        file,
        Profile.BANDS,
        sample_time=sample_time,
        dark_threshold=dark_threshold,
        safe_margin=safe_margin,
    )


@app.post("/detect-box")
async def detect_box(
    file: UploadFile = File(...),
    num_frames: Optional[int] = Form(None),
    lum_threshold: Optional[float] = Form(None),
    row_frac: Optional[float] = Form(None),
    col_frac: Optional[float] = Form(None),
    consecutive: Optional[int] = Form(None),
    safe_margin: Optional[int] = Form(None),
    min_box_size: Optional[int] = Form(None),
):
    """Content-box detection on several frames, reconciled by intersection."""
    return await _run_detection(
        file,
        Profile.CONTENT,
        num_frames=num_frames,
        lum_threshold=lum_threshold,
        row_frac=row_frac,
        col_frac=col_frac,
        consecutive=consecutive,
        safe_margin=safe_margin,
        min_box_size=min_box_size,
    )


@app.post("/detect-overlay")
async def detect_overlay(
    file: UploadFile = File(...),
    num_frames: Optional[int] = Form(None),
    safe_margin: Optional[int] = Form(None),
    dark_threshold: Optional[float] = Form(None),
    scan_top_ratio: Optional[float] = Form(None),
    scan_bottom_ratio: Optional[float] = Form(None),
):
    """Dark bands + text-on-dark overlays on several frames (no AI)."""
    return await _run_detection(
        file,
        Profile.OVERLAY,
        num_frames=num_frames,
        safe_margin=safe_margin,
        dark_threshold=dark_threshold,
        scan_top_ratio=scan_top_ratio,
        scan_bottom_ratio=scan_bottom_ratio,
    )


@app.post("/crop")
async def crop(
    file: UploadFile = File(...),
    crop_w: Optional[float] = Form(None),
    crop_h: Optional[float] = Form(None),
    x: Optional[float] = Form(None),
    y: Optional[float] = Form(None),
    start: Optional[float] = Form(None),
    duration: Optional[float] = Form(None),
):
    """Применяет crop и отдаёт mp4. Временные файлы удаляются после отправки."""
    received = {"crop_w": crop_w, "crop_h": crop_h, "x": x, "y": y, "start": start, "duration": duration}
    values = [crop_w, crop_h, x, y]
    if not all(v is not None and math.isfinite(v) for v in values):
        return _error(
            400,
            "Missing/invalid crop params. Required: crop_w,crop_h,x,y (numbers).",
            received=received,
        )
    try:
        rect = Rectangle(math.floor(x), math.floor(y), math.floor(crop_w), math.floor(crop_h))
    except ValueError as e:
        return _error(400, "Invalid crop rectangle", str(e), received=received)
    for name, value in (("start", start), ("duration", duration)):
        if value is not None and (not math.isfinite(value) or value < 0):
            return _error(400, f"Invalid {name}", "must be a non-negative number", received=received)

    request_id = new_request_id()
    input_path = await save_upload(file)
    try:
        src_w, src_h = await probe_dimensions(input_path)
    except InputError as e:
        remove_files(input_path)
        return _error(400, e.detail, stage=e.stage, received=received)
    except BaseException:
        remove_files(input_path)
        raise
    if not rect.fits_within(src_w, src_h):
        remove_files(input_path)
        logger.warning(f"[TASK {request_id}] Crop {rect.to_dict()} outside source {src_w}x{src_h}")
        return _error(
            400,
            "Crop rectangle exceeds source frame",
            f"source is {src_w}x{src_h}",
            received=received,
        )

    output_path = new_temp_path("cropped", ".mp4")
    try:
        await crop_video_ffmpeg(input_path, output_path, rect, start=start, duration=duration)
    except TranscodeError as e:
        remove_files(input_path, output_path)
        logger.error(f"[TASK {request_id}] Crop failed")
        return _error(500, "ffmpeg failed", e.detail)
    except BaseException:
        remove_files(input_path, output_path)
        raise

    logger.info(f"[TASK {request_id}] Cropped {rect.to_dict()}, streaming result")
    return FileResponse(
        str(output_path),
        media_type="video/mp4",
        filename="cropped.mp4",
        background=BackgroundTask(remove_files, input_path, output_path),
    )


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "model_configured": bool(os.getenv("OPENAI_API_KEY")),
        "model": REFINEMENT_MODEL,
        "endpoints": ENDPOINTS,
    }


@app.get("/")
async def root():
    """Health check."""
    return {"status": "ok", "service": "ffmpeg-crop-service"}
