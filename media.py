import asyncio
import json
import logging
import math
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from config import DEFAULT_DURATION_S, FFMPEG_BIN, FFPROBE_BIN
from errors import InputError, TranscodeError
from schemas import FrameSample, Rectangle
from storage import new_temp_path, remove_files

logger = logging.getLogger("app.media")

# Share of the duration skipped at each end when picking sample timestamps
EDGE_SKIP_RATIO = 0.05


async def run_tool(cmd: List[str]) -> subprocess.CompletedProcess:
    """
    Запускает ffmpeg/ffprobe как asyncio-подпроцесс, не блокируя event loop.
    При отмене запроса процесс убивается и дожидается завершения, поэтому
    после выхода из этой функции он уже ничего не запишет на диск.
    """
    proc = await asyncio.create_subprocess_exec(*cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
        raise
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


# ---- Probing ------------------------------------------------------------------
def _rotation(stream: dict) -> float:
    """Rotation in degrees from the display matrix side data or the legacy `rotate` tag."""
    raw = (stream.get("tags") or {}).get("rotate", 0)
    for side in stream.get("side_data_list") or []:
        if "rotation" in side:
            raw = side["rotation"]
            break
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) else 0.0


def parse_dimensions(stdout: bytes) -> Tuple[int, int]:
    """Display size of the first video stream (width/height swapped for 90/270 rotation)."""
    try:
        parsed = json.loads(stdout or b"{}")
    except json.JSONDecodeError as e:
        raise InputError("probe", f"ffprobe returned invalid JSON: {e}") from e

    streams = parsed.get("streams") or [{}]
    stream = streams[0] or {}
    try:
        w = float(stream.get("width"))
        h = float(stream.get("height"))
    except (TypeError, ValueError):
        raise InputError("probe", "Could not read video dimensions.")
    if not (math.isfinite(w) and math.isfinite(h)) or w <= 0 or h <= 0:
        raise InputError("probe", f"Could not read video dimensions (got {w}x{h}).")
    if round(_rotation(stream)) % 180 == 90:
        w, h = h, w
    return int(w), int(h)


def parse_duration(stdout: bytes, default: float = DEFAULT_DURATION_S) -> float:
    try:
        parsed = json.loads(stdout or b"{}")
        d = float((parsed.get("format") or {}).get("duration"))
    except (json.JSONDecodeError, TypeError, ValueError):
        return default
    return d if math.isfinite(d) and d > 0 else default


async def probe_dimensions(video_path: Path) -> Tuple[int, int]:
    cmd = [
        FFPROBE_BIN,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=width,height:stream_tags=rotate:stream_side_data=rotation",
        "-of",
        "json",
        str(video_path),
    ]
    result = await run_tool(cmd)
    if result.returncode != 0:
        raise InputError("probe", f"ffprobe failed: {result.stderr.decode(errors='replace')[:500]}")
    return parse_dimensions(result.stdout)


async def probe_duration(video_path: Path) -> float:
    cmd = [
        FFPROBE_BIN,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(video_path),
    ]
    result = await run_tool(cmd)
    if result.returncode != 0:
        logger.warning(f"[PROBE] Duration unavailable, using default {DEFAULT_DURATION_S}s")
        return DEFAULT_DURATION_S
    return parse_duration(result.stdout)


# ---- Frame sampling -----------------------------------------------------------
def representative_timestamps(duration: float, count: int) -> List[float]:
    """
    Равномерно распределяет `count` точек по середине видео.
    Первые и последние 5% пропускаются: переходы в начале/конце ненадёжны.
    """
    count = max(1, int(count))
    start = duration * EDGE_SKIP_RATIO
    span = duration * (1.0 - 2 * EDGE_SKIP_RATIO)
    return [round(start + span * (i + 1) / (count + 1), 3) for i in range(count)]


def decode_frame(data: bytes, timestamp: float) -> FrameSample:
    """PNG/JPEG bytes -> RGBA FrameSample."""
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Frame could not be decoded")
    rgba = cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    h, w = rgba.shape[:2]
    return FrameSample(width=w, height=h, timestamp=float(timestamp), pixels=rgba, encoded=data)


def build_frame_command(video_path: Path, timestamp: float, frame_path: Path) -> List[str]:
    return [
        FFMPEG_BIN,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-ss",
        str(timestamp),
        "-i",
        str(video_path),
        "-vframes",
        "1",
        str(frame_path),
    ]


async def extract_frame(video_path: Path, timestamp: float) -> FrameSample:
    frame_path = new_temp_path("frame", ".png")
    cmd = build_frame_command(video_path, timestamp, frame_path)
    try:
        result = await run_tool(cmd)
        if result.returncode != 0 or not frame_path.exists():
            raise RuntimeError(f"ffmpeg exited with {result.returncode}: {result.stderr.decode(errors='replace')[:300]}")
        return decode_frame(frame_path.read_bytes(), timestamp)
    finally:
        remove_files(frame_path)


async def sample_frames(video_path: Path, timestamps: Sequence[float]) -> List[FrameSample]:
    """
    Extract one frame per timestamp, sequentially (each extraction writes a
    temporary PNG). A failed timestamp is skipped; zero frames is fatal.
    """
    frames: List[FrameSample] = []
    for t in timestamps:
        try:
            frames.append(await extract_frame(video_path, t))
        except (RuntimeError, ValueError, OSError) as e:
            logger.warning(f"[SAMPLER] Skipping frame at t={t}s: {e}")

    if not frames:
        raise InputError("sampler", "Failed to extract frames.")

    logger.info(f"[SAMPLER] Extracted {len(frames)}/{len(timestamps)} frame(s)")
    return frames


# ---- Video crop -----------------------------------------------------------------
def build_crop_command(
    src: Path,
    dst: Path,
    rect: Rectangle,
    start: Optional[float] = None,
    duration: Optional[float] = None,
) -> List[str]:
    cmd = [FFMPEG_BIN, "-y", "-hide_banner", "-loglevel", "error"]
    if start is not None:
        cmd += ["-ss", str(start)]
    cmd += ["-i", str(src)]
    if duration is not None:
        cmd += ["-t", str(duration)]
    cmd += [
        "-vf",
        f"crop={rect.width}:{rect.height}:{rect.x}:{rect.y}",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-crf",
        "23",
        "-c:a",
        "aac",
        "-movflags",
        "+faststart",
        str(dst),
    ]
    return cmd


async def crop_video_ffmpeg(
    src: Path,
    dst: Path,
    rect: Rectangle,
    start: Optional[float] = None,
    duration: Optional[float] = None,
) -> Path:
    """Обрезка видео через ffmpeg. Ошибка ffmpeg -> TranscodeError с его stderr."""
    cmd = build_crop_command(src, dst, rect, start, duration)
    logger.info(f"[FFMPEG] crop={rect.width}:{rect.height}:{rect.x}:{rect.y} start={start} duration={duration}")
    result = await run_tool(cmd)
    if result.returncode != 0:
        detail = result.stderr.decode(errors="replace")[:4000] or f"exit code {result.returncode}"
        logger.error(f"[FFMPEG] Failed: {detail[:300]}")
        raise TranscodeError(detail)
    return dst
