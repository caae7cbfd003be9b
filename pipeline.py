import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from config import DEFAULT_SAMPLE_FRAMES, FULL_WIDTH_RATIO, MAX_SAMPLE_FRAMES
from errors import InputError, RefinementError
from media import probe_dimensions, probe_duration, representative_timestamps, sample_frames
from processing import (
    band_crop_rect,
    consensus_band_cuts,
    consensus_box,
    detect_content_box,
    detect_dark_bands,
    detect_text_on_dark_bands,
    enforced_bounds,
)
from refinement import refine_crop
from schemas import (
    BandCuts,
    CropDetection,
    DetectionParams,
    DetectionResult,
    FrameSample,
    Profile,
    Rectangle,
    RefinementRequest,
)

logger = logging.getLogger("app.pipeline")


@dataclass(frozen=True)
class DetectionProfile:
    """Which stages run for a detection request."""
    name: Profile
    dark_bands: bool = False
    text_overlay: bool = False
    content_box: bool = False
    refinement: bool = False


PROFILES: Dict[Profile, DetectionProfile] = {
    Profile.BANDS: DetectionProfile(Profile.BANDS, dark_bands=True),
    Profile.CONTENT: DetectionProfile(Profile.CONTENT, content_box=True),
    Profile.OVERLAY: DetectionProfile(Profile.OVERLAY, dark_bands=True, text_overlay=True),
    Profile.AI: DetectionProfile(Profile.AI, dark_bands=True, text_overlay=True, refinement=True),
}


def clamp_sample_count(num_frames: Optional[int]) -> int:
    if num_frames is None:
        num_frames = DEFAULT_SAMPLE_FRAMES
    return max(1, min(MAX_SAMPLE_FRAMES, int(num_frames)))


def detect_frame(frame: FrameSample, params: DetectionParams, profile: DetectionProfile) -> DetectionResult:
    """
    Runs the enabled detectors on one frame. A detector that blows up is
    logged and treated as "nothing detected" for that frame.
    """
    W, H = frame.width, frame.height
    rect = Rectangle.full(W, H)
    result = DetectionResult(timestamp=frame.timestamp, rect=rect, params=params)

    if profile.dark_bands:
        try:
            result.bands = detect_dark_bands(frame, params)
        except Exception as e:
            logger.exception(f"[BANDS] Detector failed at t={frame.timestamp}s")
            result.errors.append(f"dark_bands: {e}")

    if profile.text_overlay:
        try:
            result.overlay = detect_text_on_dark_bands(frame, params)
        except Exception as e:
            logger.exception(f"[OVERLAY] Detector failed at t={frame.timestamp}s")
            result.errors.append(f"text_overlay: {e}")

    if profile.dark_bands or profile.text_overlay:
        top, bottom = enforced_bounds(H, result.bands or BandCuts(), result.overlay, params)
        rect = band_crop_rect(W, H, top, bottom, 0, params.min_crop_size)

    if profile.content_box:
        try:
            box = detect_content_box(frame, params)
            rect = rect.intersect(box) or rect
        except Exception as e:
            logger.exception(f"[CONTENT] Detector failed at t={frame.timestamp}s")
            result.errors.append(f"content_box: {e}")

    result.rect = rect
    return result


def _same_size_frames(frames: List[FrameSample]) -> List[FrameSample]:
    W, H = frames[0].width, frames[0].height
    kept = [f for f in frames if (f.width, f.height) == (W, H)]
    if len(kept) != len(frames):
        logger.warning(f"[SAMPLER] Dropped {len(frames) - len(kept)} frame(s) not matching {W}x{H}")
    return kept


async def detect_crop(
    video_path: Path,
    params: DetectionParams,
    profile_name: Profile,
    *,
    num_frames: Optional[int] = None,
    sample_time: Optional[float] = None,
    request_id: str = "-",
) -> CropDetection:
    """Полный цикл детекции: кадры -> детекторы -> консенсус -> (опционально) модель."""
    profile = PROFILES[profile_name]
    if params.full_width_ratio is None:
        params = params.model_copy(update={"full_width_ratio": FULL_WIDTH_RATIO})

    if sample_time is not None and (not math.isfinite(sample_time) or sample_time < 0):
        raise InputError("sampler", "sample_time must be a finite number >= 0", param="sample_time")

    src_w, src_h = await probe_dimensions(video_path)

    if sample_time is not None:
        timestamps = [float(sample_time)]
    else:
        duration = await probe_duration(video_path)
        timestamps = representative_timestamps(duration, clamp_sample_count(num_frames))

    logger.info(f"[TASK {request_id}] profile={profile.name.value} src={src_w}x{src_h} timestamps={timestamps}")
    frames = _same_size_frames(await sample_frames(video_path, timestamps))

    # ffmpeg applies rotation metadata when decoding; crop coordinates follow the decoded frames.
    if (frames[0].width, frames[0].height) != (src_w, src_h):
        logger.warning(
            f"[TASK {request_id}] Decoded frames are {frames[0].width}x{frames[0].height}, "
            f"probe said {src_w}x{src_h}; using decoded size"
        )
        src_w, src_h = frames[0].width, frames[0].height

    results = [detect_frame(f, params, profile) for f in frames]
    rect = consensus_box([r.rect for r in results], params.consensus_floor)

    cuts = [r.bands for r in results if r.bands is not None]
    bands = consensus_band_cuts(cuts, src_h, params.consensus_floor) if cuts else None

    detection = CropDetection(
        profile=profile.name,
        rect=rect,
        src_w=src_w,
        src_h=src_h,
        timestamps=[f.timestamp for f in frames],
        results=results,
        bands=bands,
        enforced_top=rect.y,
        enforced_bottom=src_h - rect.bottom,
    )

    if profile.refinement:
        request = RefinementRequest(frames=frames, safe_region=rect, src_w=src_w, src_h=src_h)
        try:
            detection.refinement = await refine_crop(request, params)
            detection.rect = detection.refinement.rect
        except RefinementError as e:
            logger.warning(f"[TASK {request_id}] Refinement failed, using consensus box: {e}")
            detection.refinement_error = str(e)

    logger.info(f"[TASK {request_id}] Final crop {detection.rect.to_dict()}")
    return detection
