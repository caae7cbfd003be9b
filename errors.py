from typing import Optional


class CropServiceError(Exception):
    """Base error of the crop service."""


class InputError(CropServiceError):
    """Unusable input: unreadable media, zero frames, malformed parameters."""

    def __init__(self, stage: str, detail: str, param: Optional[str] = None):
        self.stage = stage
        self.detail = detail
        self.param = param
        where = f"{stage}:{param}" if param else stage
        super().__init__(f"[{where}] {detail}")


class RefinementError(CropServiceError):
    """The vision model could not produce a usable rectangle."""


class TranscodeError(CropServiceError):
    """ffmpeg failed; `detail` holds its diagnostic output."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"ffmpeg failed: {detail}")
