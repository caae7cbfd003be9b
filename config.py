import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

# Load .env early so all modules can read env vars.
load_dotenv()

# Paths
TEMP_DIR = Path(os.getenv("TEMP_DIR", tempfile.gettempdir()))
TEMP_DIR.mkdir(parents=True, exist_ok=True)

# External binaries
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

# Sampling
DEFAULT_SAMPLE_FRAMES = int(os.getenv("DEFAULT_SAMPLE_FRAMES", "3"))
MAX_SAMPLE_FRAMES = int(os.getenv("MAX_SAMPLE_FRAMES", "5"))
DEFAULT_DURATION_S = float(os.getenv("DEFAULT_DURATION_S", "10"))

# Vision model refinement (provider keys such as OPENAI_API_KEY are read by litellm)
REFINEMENT_MODEL = os.getenv("REFINEMENT_MODEL", "gpt-5-mini")
REFINEMENT_TIMEOUT_S = float(os.getenv("REFINEMENT_TIMEOUT_S", "60"))
REFINEMENT_MAX_TOKENS = int(os.getenv("REFINEMENT_MAX_TOKENS", "650"))
REFINEMENT_TEMPERATURE = float(os.getenv("REFINEMENT_TEMPERATURE", "0.1"))

# Widen model suggestions narrower than this share of the source width; 0 disables.
FULL_WIDTH_RATIO = float(os.getenv("FULL_WIDTH_RATIO", "0.85"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
