import logging
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from errors import InputError
from schemas import BandCuts, DetectionParams, FrameSample, OverlayBounds, Rectangle

logger = logging.getLogger("app.processing")

# Rec. 709 luma weights
LUMA_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float32)


# ---- Pixel statistics -------------------------------------------------------
def luma_plane(frame: FrameSample) -> np.ndarray:
    """Яркость каждого пикселя (H x W, float32, 0-255)."""
    rgb = frame.pixels[:, :, :3].astype(np.float32)
    return rgb @ LUMA_WEIGHTS


def _run_bounds(mask: np.ndarray, run: int) -> Optional[Tuple[int, int]]:
    """
    First index where a run of `run` consecutive True values starts and the
    last index where such a run ends. None if the mask never has one.
    """
    n = len(mask)
    run = max(1, run)
    if n < run:
        return None
    counts = np.convolve(mask.astype(np.int32), np.ones(run, dtype=np.int32), mode="valid")
    starts = np.flatnonzero(counts == run)
    if starts.size == 0:
        return None
    return int(starts[0]), int(starts[-1] + run - 1)


# ---- Dark bands (solid letterbox bars) ---------------------------------------
def detect_dark_bands(frame: FrameSample, params: DetectionParams) -> BandCuts:
    """Solid dark header/footer bars, walked inward from the top and bottom edges."""
    h = frame.height
    row_mean = luma_plane(frame).mean(axis=1)

    min_band = int(np.floor(h * params.min_band_ratio))
    max_band = int(np.floor(h * params.max_band_ratio))

    top_cut = 0
    while top_cut < max_band and row_mean[top_cut] < params.dark_threshold:
        top_cut += 1

    bottom_cut = 0
    while bottom_cut < max_band and row_mean[h - 1 - bottom_cut] < params.dark_threshold:
        bottom_cut += 1

    # Short runs are noise, not a real band
    if top_cut < min_band:
        top_cut = 0
    if bottom_cut < min_band:
        bottom_cut = 0

    logger.debug(f"[BANDS] t={frame.timestamp:.2f}s top={top_cut} bottom={bottom_cut} (min={min_band}, max={max_band})")
    return BandCuts(top=top_cut, bottom=bottom_cut)


# ---- Text on dark overlays (captions, watermarks) -----------------------------
def _overlay_run_end(qualifies: Iterable[Tuple[int, bool]], min_run: int) -> Optional[int]:
    """Last row of the first accepted run of qualifying rows, scanning from the edge."""
    run = 0
    last_good = -1
    for y, ok in qualifies:
        if ok:
            run += 1
            last_good = y
        else:
            if run >= min_run:
                break
            run = 0
            last_good = -1
    if run >= min_run and last_good >= 0:
        return last_good
    return None


def detect_text_on_dark_bands(frame: FrameSample, params: DetectionParams) -> OverlayBounds:
    """
    Catch overlays the plain band detector misses: a mostly dark strip with a
    sprinkle of near-white pixels (caption text, logos) whose row mean is no
    longer dark.

    Returns:
        OverlayBounds with `top_end` (exclusive) and `bottom_start` (inclusive).
    """
    W, H = frame.width, frame.height
    lum = luma_plane(frame)

    dark_ratio = (lum <= params.dark_lum).sum(axis=1) / W
    white_ratio = (lum >= params.white_lum).sum(axis=1) / W
    qualifying = (dark_ratio >= params.min_dark_ratio) & (white_ratio >= params.min_white_ratio)

    if params.min_band_px is not None:
        min_run = params.min_band_px
    else:
        min_run = max(1, int(np.floor(H * 0.015)))
    max_top_px = int(np.floor(H * params.max_top_ratio))
    max_bottom_px = int(np.floor(H * params.max_bottom_ratio))
    top_scan_h = min(int(np.floor(H * params.scan_top_ratio)), max_top_px + 1)
    bot_scan_h = min(int(np.floor(H * params.scan_bottom_ratio)), max_bottom_px + 1)

    last_top = _overlay_run_end(((y, bool(qualifying[y])) for y in range(top_scan_h)), min_run)
    top_end = last_top + 1 if last_top is not None else 0

    bottom_rows = ((H - 1 - i, bool(qualifying[H - 1 - i])) for i in range(bot_scan_h))
    last_bottom = _overlay_run_end(bottom_rows, min_run)
    bottom_start = last_bottom if last_bottom is not None else H

    if top_end or bottom_start < H:
        logger.info(f"[OVERLAY] t={frame.timestamp:.2f}s top_end={top_end} bottom_start={bottom_start} (H={H})")
    return OverlayBounds(top_end=top_end, bottom_start=bottom_start)


# ---- Content box (density of non-dark pixels) --------------------------------
def detect_content_box(frame: FrameSample, params: DetectionParams) -> Rectangle:
    """
    Maximal rectangle of real content, found from the share of non-dark
    pixels per row and per column. Works for solid bars and textured
    overlays alike.

    Steps:
        1. row is content if share(luma >= lum_threshold) >= row_frac
        2. same for columns against col_frac
        3. bounds = first start / last end of a run of `consecutive` content lines
        4. shrink by safe_margin
        5. an axis that ends up below min_box_size falls back to the full extent
    """
    W, H = frame.width, frame.height
    bright = luma_plane(frame) >= params.lum_threshold

    row_content = bright.mean(axis=1) >= params.row_frac
    col_content = bright.mean(axis=0) >= params.col_frac

    rows = _run_bounds(row_content, params.consecutive)
    cols = _run_bounds(col_content, params.consecutive)
    top, bottom = rows if rows else (0, H - 1)
    left, right = cols if cols else (0, W - 1)

    m = params.safe_margin
    left, top, right, bottom = left + m, top + m, right - m, bottom - m

    min_w = max(1, min(params.min_box_size, W))
    min_h = max(1, min(params.min_box_size, H))
    if right - left + 1 < min_w:
        logger.warning(f"[CONTENT] Width {right - left + 1} < min {min_w}, using full width")
        left, right = 0, W - 1
    if bottom - top + 1 < min_h:
        logger.warning(f"[CONTENT] Height {bottom - top + 1} < min {min_h}, using full height")
        top, bottom = 0, H - 1

    rect = Rectangle.from_edges(left, top, right, bottom)
    logger.debug(f"[CONTENT] t={frame.timestamp:.2f}s box={rect.to_dict()}")
    return rect


# ---- Band cuts -> rectangles ---------------------------------------------------
def band_crop_rect(src_w: int, src_h: int, top: int, bottom: int, margin: int, min_size: int) -> Rectangle:
    """Full-width crop between the top and bottom cuts, shrunk by `margin`."""
    min_h = min(min_size, src_h)
    crop_h = max(min_h, src_h - top - bottom - margin * 2)
    crop_h = min(crop_h, src_h)
    y = min(max(0, top + margin), src_h - crop_h)
    return Rectangle(0, y, src_w, crop_h)


def enforced_bounds(
    src_h: int,
    bands: BandCuts,
    overlay: Optional[OverlayBounds],
    params: DetectionParams,
) -> Tuple[int, int]:
    """Rows that must be cut at the top and bottom, with margin and hard caps."""
    top = bands.top
    bottom = bands.bottom
    if overlay is not None:
        top = max(top, overlay.top_end)
        bottom = max(bottom, src_h - overlay.bottom_start)

    top += params.safe_margin
    bottom += params.safe_margin

    top = min(max(0, top), int(np.floor(src_h * params.max_enforced_top_ratio)))
    bottom = min(max(0, bottom), int(np.floor(src_h * params.max_enforced_bottom_ratio)))
    return top, bottom


# ---- Multi-frame consensus ---------------------------------------------------
def consensus_box(boxes: Sequence[Rectangle], floor: int = 10) -> Rectangle:
    """
    Running intersection of per-frame boxes. A step that would shrink the box
    below `floor` on either axis is skipped, so one outlier frame cannot wipe
    out an otherwise good consensus.
    """
    if not boxes:
        raise InputError("consensus", "No boxes to reconcile")

    acc = boxes[0]
    for idx, box in enumerate(boxes[1:], start=1):
        left = max(acc.x, box.x)
        top = max(acc.y, box.y)
        right = min(acc.right, box.right)
        bottom = min(acc.bottom, box.bottom)
        if right - left < floor or bottom - top < floor:
            logger.warning(f"[CONSENSUS] Box #{idx} {box.to_dict()} collapses intersection, skipped")
            continue
        acc = Rectangle(left, top, right - left, bottom - top)

    logger.info(f"[CONSENSUS] {len(boxes)} box(es) -> {acc.to_dict()}")
    return acc


def consensus_band_cuts(cuts: Sequence[BandCuts], height: int, floor: int = 10) -> BandCuts:
    """Same reconciliation for band cuts: the largest cuts win unless they leave less than `floor` rows."""
    if not cuts:
        raise InputError("consensus", "No band cuts to reconcile")

    acc = cuts[0]
    for c in cuts[1:]:
        top = max(acc.top, c.top)
        bottom = max(acc.bottom, c.bottom)
        if height - top - bottom < floor:
            logger.warning(f"[CONSENSUS] Band cuts top={c.top} bottom={c.bottom} collapse the frame, skipped")
            continue
        acc = BandCuts(top=top, bottom=bottom)
    return acc
