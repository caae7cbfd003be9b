import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

CHANNELS = 4


class Profile(str, Enum):
    BANDS = "bands"
    CONTENT = "content"
    OVERLAY = "overlay"
    AI = "ai"


@dataclass
class FrameSample:
    """Один декодированный кадр (RGBA, row-major)."""
    width: int
    height: int
    timestamp: float
    pixels: np.ndarray
    encoded: Optional[bytes] = None  # PNG bytes as produced by ffmpeg

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Frame dimensions must be positive, got {self.width}x{self.height}")
        if self.pixels.size != self.width * self.height * CHANNELS:
            raise ValueError(
                f"Pixel buffer has {self.pixels.size} values, expected "
                f"{self.width}x{self.height}x{CHANNELS}"
            )
        self.pixels = self.pixels.reshape(self.height, self.width, CHANNELS)


@dataclass(frozen=True)
class Rectangle:
    """Crop region in source pixels. `right`/`bottom` are exclusive."""
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.x < 0 or self.y < 0:
            raise ValueError(f"Rectangle origin must be non-negative, got ({self.x}, {self.y})")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Rectangle must be at least 1x1, got {self.width}x{self.height}")

    @classmethod
    def from_edges(cls, left: int, top: int, right: int, bottom: int) -> "Rectangle":
        """Build from inclusive edge indices."""
        return cls(int(left), int(top), int(right - left + 1), int(bottom - top + 1))

    @classmethod
    def full(cls, width: int, height: int) -> "Rectangle":
        return cls(0, 0, int(width), int(height))

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def intersect(self, other: "Rectangle") -> Optional["Rectangle"]:
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        if right <= left or bottom <= top:
            return None
        return Rectangle(left, top, right - left, bottom - top)

    def contains(self, other: "Rectangle") -> bool:
        return (
            self.x <= other.x
            and self.y <= other.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )

    def fits_within(self, src_w: int, src_h: int) -> bool:
        return self.right <= src_w and self.bottom <= src_h

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "w": self.width, "h": self.height}


@dataclass(frozen=True)
class BandCuts:
    top: int = 0
    bottom: int = 0


@dataclass(frozen=True)
class OverlayBounds:
    top_end: int  # exclusive
    bottom_start: int  # inclusive


class DetectionParams(BaseModel):
    """Thresholds for one detection run. Luma values are on the 0-255 scale."""

    model_config = ConfigDict(frozen=True, extra="forbid", allow_inf_nan=False)

    # Dark bands
    dark_threshold: float = Field(35.0, ge=0, le=255)
    min_band_ratio: float = Field(0.03, ge=0, le=1)
    max_band_ratio: float = Field(0.35, ge=0, le=1)

    # Text on dark overlays
    scan_top_ratio: float = Field(0.40, ge=0, le=1)
    scan_bottom_ratio: float = Field(0.30, ge=0, le=1)
    dark_lum: float = Field(40.0, ge=0, le=255)
    white_lum: float = Field(235.0, ge=0, le=255)
    min_dark_ratio: float = Field(0.55, ge=0, le=1)
    min_white_ratio: float = Field(0.003, ge=0, le=1)
    min_band_px: Optional[int] = Field(None, ge=0)
    max_top_ratio: float = Field(0.45, ge=0, le=1)
    max_bottom_ratio: float = Field(0.30, ge=0, le=1)

    # Content box
    lum_threshold: float = Field(26.0, ge=0, le=255)
    row_frac: float = Field(0.12, ge=0, le=1)
    col_frac: float = Field(0.10, ge=0, le=1)
    consecutive: int = Field(6, ge=0)
    safe_margin: int = Field(8, ge=0)
    min_box_size: int = Field(200, ge=0)

    # Consensus / refinement
    consensus_floor: int = Field(10, ge=1)
    min_crop_size: int = Field(10, ge=1)
    max_enforced_top_ratio: float = Field(0.55, ge=0, le=1)
    max_enforced_bottom_ratio: float = Field(0.40, ge=0, le=1)
    full_width_ratio: Optional[float] = Field(None, ge=0, le=1)

    @model_validator(mode="after")
    def _check_ranges(self) -> "DetectionParams":
        # lower bound of each pair must not exceed the upper one
        pairs = (
            ("min_band_ratio", "max_band_ratio"),
            ("scan_top_ratio", "max_top_ratio"),
            ("scan_bottom_ratio", "max_bottom_ratio"),
            ("dark_lum", "white_lum"),
        )
        for low, high in pairs:
            if getattr(self, low) > getattr(self, high):
                raise ValueError(f"{low} ({getattr(self, low)}) must not exceed {high} ({getattr(self, high)})")
        return self


@dataclass
class DetectionResult:
    timestamp: float
    rect: Rectangle
    params: DetectionParams
    bands: Optional[BandCuts] = None
    overlay: Optional[OverlayBounds] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class RefinementRequest:
    frames: List[FrameSample]
    safe_region: Rectangle
    src_w: int
    src_h: int


@dataclass
class RefinementResult:
    rect: Rectangle  # clamped into the safe region
    raw_rect: Dict[str, int]  # what the model actually answered
    confidence: float
    reasoning: str
    model: str


@dataclass
class CropDetection:
    profile: Profile
    rect: Rectangle
    src_w: int
    src_h: int
    timestamps: List[float]
    results: List[DetectionResult]
    bands: Optional[BandCuts] = None
    enforced_top: int = 0
    enforced_bottom: int = 0
    refinement: Optional[RefinementResult] = None
    refinement_error: Optional[str] = None


class DetectResponse(BaseModel):
    request_id: str
    profile: Profile
    crop_w: int
    crop_h: int
    x: int
    y: int
    src_w: int
    src_h: int
    frames_analyzed: int
    timestamps_sampled: List[float]
    safe_margin: int
    top_cut: Optional[int] = None
    bottom_cut: Optional[int] = None
    sample_time: Optional[float] = None
    heuristic_enforced_top: Optional[int] = None
    heuristic_enforced_bottom: Optional[int] = None
    ai_powered: bool = False
    model_used: Optional[str] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    refinement_error: Optional[str] = None
    completed_at: str


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
