"""Vision-model crop refinement via LiteLLM.

The model only suggests a rectangle. Whatever it answers is clamped into the
safe region computed by the pixel heuristics before anyone uses it.
"""

import asyncio
import base64
import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

import cv2
import litellm
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from config import REFINEMENT_MAX_TOKENS, REFINEMENT_MODEL, REFINEMENT_TEMPERATURE, REFINEMENT_TIMEOUT_S
from errors import RefinementError
from schemas import DetectionParams, FrameSample, Rectangle, RefinementRequest, RefinementResult

logger = logging.getLogger("app.refinement")


class _ModelCrop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    crop_x: int
    crop_y: int
    crop_w: int
    crop_h: int
    reasoning: str = ""
    confidence: float = 0.0

    @field_validator("crop_x", "crop_y", "crop_w", "crop_h", mode="before")
    @classmethod
    def _floor_int(cls, v: Any) -> int:
        if isinstance(v, bool):
            raise ValueError("boolean is not a coordinate")
        f = float(v)
        if not math.isfinite(f):
            raise ValueError("coordinate must be finite")
        return int(math.floor(f))

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> float:
        try:
            f = float(v)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(f):
            return 0.0
        return min(100.0, max(0.0, f))


# ---- Response parsing -------------------------------------------------------
def _extract_json(text: str) -> Optional[str]:
    """Extract the JSON object from a possibly noisy model response."""
    if not text:
        return None
    # Common case: fenced JSON block
    if "```" in text:
        parts = text.split("```")
        for i in range(1, len(parts), 2):
            body = parts[i].strip()
            if body.lower().startswith("json"):
                body = body[4:].strip()
            if body.startswith("{") and body.endswith("}"):
                return body
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return stripped
    i = text.find("{")
    j = text.rfind("}")
    if i != -1 and j > i:
        return text[i : j + 1]
    return None


def _content_to_text(content: Any) -> str:
    """Best-effort normalization of provider content to a single text string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # OpenAI-style content blocks: [{"type":"text","text":"..."} , ...]
    if isinstance(content, list):
        chunks: List[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        return "\n".join(chunks).strip()
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    return str(content)


def _response_to_dict(resp: Any) -> Dict[str, Any]:
    """Normalize a LiteLLM completion response object to a plain dict."""
    if isinstance(resp, dict):
        return resp
    if isinstance(resp, BaseModel):
        return resp.model_dump()
    raise RefinementError(f"Unsupported completion response type: {type(resp)!r}")


def _extract_choice_text(resp: Dict[str, Any]) -> Tuple[str, str]:
    """Assistant content and finish_reason from a Chat Completions-style response."""
    choices = resp.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return "", ""
    c0 = choices[0]
    finish_reason = str(c0.get("finish_reason") or "")
    msg = c0.get("message") or {}
    if isinstance(msg, dict) and "content" in msg:
        return _content_to_text(msg.get("content")), finish_reason
    if "text" in c0:
        return _content_to_text(c0.get("text")), finish_reason
    return "", finish_reason


def parse_model_crop(text: str) -> _ModelCrop:
    """Strict parse-or-fail boundary for the model's free-text answer."""
    payload = _extract_json(text)
    if payload is None:
        raise RefinementError("No JSON found in model response")
    try:
        return _ModelCrop.model_validate_json(payload)
    except ValidationError as e:
        raise RefinementError(f"Model JSON does not match the crop schema: {e.error_count()} error(s)") from e


# ---- Geometry enforcement ---------------------------------------------------
def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def apply_full_width_policy(
    x: int, w: int, safe: Rectangle, src_w: int, ratio: Optional[float]
) -> Tuple[int, int]:
    """Widen narrow suggestions to the full safe-region width."""
    if ratio and w < src_w * ratio:
        return safe.x, safe.width
    return x, w


def clamp_to_region(x: int, y: int, w: int, h: int, safe: Rectangle, min_size: int = 10) -> Rectangle:
    """Force a suggested rectangle inside `safe`, at least `min_size` on each axis."""
    min_w = max(1, min(min_size, safe.width))
    min_h = max(1, min(min_size, safe.height))

    x = _clamp(x, safe.x, safe.right - min_w)
    y = _clamp(y, safe.y, safe.bottom - min_h)
    w = _clamp(w, min_w, safe.right - x)
    h = _clamp(h, min_h, safe.bottom - y)
    return Rectangle(x, y, w, h)


# ---- Model call -------------------------------------------------------------
def _frame_data_url(frame: FrameSample) -> str:
    data = frame.encoded
    if data is None:
        ok, buf = cv2.imencode(".png", cv2.cvtColor(frame.pixels, cv2.COLOR_RGBA2BGR))
        if not ok:
            raise RefinementError(f"Could not encode frame at t={frame.timestamp}s")
        data = buf.tobytes()
    return f"data:image/png;base64,{base64.b64encode(data).decode('ascii')}"


def build_prompt(request: RefinementRequest) -> str:
    safe = request.safe_region
    schema_hint = {
        "crop_x": "<int>",
        "crop_y": "<int>",
        "crop_w": "<int>",
        "crop_h": "<int>",
        "reasoning": "<1-2 sentences>",
        "confidence": "<0-100>",
    }
    return f"""
You are cropping a social media video ({request.src_w}x{request.src_h}). You see {len(request.frames)} frame(s).

NON-NEGOTIABLE:
- The crop MUST REMOVE ALL UI overlays (headers, captions, watermarks, usernames, logos, text).
- If you must choose between keeping scene content vs removing overlay text, ALWAYS remove overlay text.
- Return ONE crop rectangle that works across all frames.

Hard bounds you MUST respect:
- crop_x MUST be >= {safe.x} and crop_x + crop_w MUST be <= {safe.right}
- crop_y MUST be >= {safe.y} and crop_y + crop_h MUST be <= {safe.bottom}

Return ONLY valid JSON:
{json.dumps(schema_hint, indent=2)}
    """.strip()


async def refine_crop(
    request: RefinementRequest,
    params: DetectionParams,
    *,
    model: str = REFINEMENT_MODEL,
    timeout_s: float = REFINEMENT_TIMEOUT_S,
    max_tokens: int = REFINEMENT_MAX_TOKENS,
    temperature: float = REFINEMENT_TEMPERATURE,
) -> RefinementResult:
    """Ask a vision model for a crop rectangle and clamp it into the safe region.

    Raises:
        RefinementError: on any service, timeout or parsing failure.
    """
    if not request.frames:
        raise RefinementError("No frames to send")

    content: List[Dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": _frame_data_url(f), "detail": "high"}}
        for f in request.frames
    ]
    content.append({"type": "text", "text": build_prompt(request)})

    logger.info(f"[REFINE] Requesting crop from model={model} frames={len(request.frames)} safe={request.safe_region.to_dict()}")
    try:
        raw_resp = await asyncio.wait_for(
            litellm.acompletion(
                model=model,
                messages=[{"role": "user", "content": content}],
                max_tokens=max_tokens,
                temperature=temperature,
                timeout=timeout_s,
                drop_params=True,
            ),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError as e:
        raise RefinementError(f"Model call timed out after {timeout_s}s") from e
    except Exception as e:
        raise RefinementError(f"Model call failed: {type(e).__name__}: {e}") from e

    text, finish_reason = _extract_choice_text(_response_to_dict(raw_resp))
    logger.info(f"[REFINE] Response received: finish_reason={finish_reason!r} chars={len(text)}")
    if not text:
        raise RefinementError(f"Model returned empty content (finish_reason={finish_reason!r})")

    crop = parse_model_crop(text)
    raw_rect = {"x": crop.crop_x, "y": crop.crop_y, "w": crop.crop_w, "h": crop.crop_h}

    safe = request.safe_region
    x, w = apply_full_width_policy(crop.crop_x, crop.crop_w, safe, request.src_w, params.full_width_ratio)
    rect = clamp_to_region(x, crop.crop_y, w, crop.crop_h, safe, params.min_crop_size)
    if rect.to_dict() != raw_rect:
        logger.info(f"[REFINE] Clamped model suggestion {raw_rect} -> {rect.to_dict()}")

    return RefinementResult(
        rect=rect,
        raw_rect=raw_rect,
        confidence=crop.confidence,
        reasoning=crop.reasoning,
        model=model,
    )
