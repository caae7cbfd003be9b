"""
Pytest configuration and shared fixtures.
"""

from typing import Iterable, Tuple

import numpy as np
import pytest

from schemas import FrameSample


def make_frame(
    width: int,
    height: int,
    fill: int = 128,
    rows: Iterable[Tuple[int, int, int]] = (),
    timestamp: float = 0.0,
) -> FrameSample:
    """Gray frame; `rows` holds (start, stop, value) horizontal strips."""
    pixels = np.full((height, width, 4), fill, dtype=np.uint8)
    pixels[:, :, 3] = 255
    for start, stop, value in rows:
        pixels[start:stop, :, :3] = value
    return FrameSample(width=width, height=height, timestamp=timestamp, pixels=pixels)


def sprinkle(frame: FrameSample, start: int, stop: int, share: float, value: int = 255) -> FrameSample:
    """Paint the first `share` of each row in [start, stop) with `value` (text pixels)."""
    n = max(1, int(frame.width * share))
    frame.pixels[start:stop, :n, :3] = value
    return frame


def boxed_frame(
    width: int,
    height: int,
    box: Tuple[int, int, int, int],
    value: int = 128,
    timestamp: float = 0.0,
    background: int = 0,
) -> FrameSample:
    """Black frame with a gray content rectangle (x, y, w, h)."""
    frame = make_frame(width, height, fill=background, timestamp=timestamp)
    x, y, w, h = box
    frame.pixels[y : y + h, x : x + w, :3] = value
    return frame


@pytest.fixture
def temp_dir(tmp_path, monkeypatch):
    """Redirect temp files of the service into tmp_path."""
    import storage

    monkeypatch.setattr(storage, "TEMP_DIR", tmp_path)
    return tmp_path

