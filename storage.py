import logging
import uuid
from pathlib import Path
from typing import Optional, Union

from fastapi import UploadFile

from config import TEMP_DIR

logger = logging.getLogger("app.storage")

CHUNK_SIZE = 1024 * 1024
ALLOWED_SUFFIXES = {".mp4", ".mov", ".mkv", ".avi", ".webm", ".mpg", ".mpeg"}


def new_temp_path(prefix: str, suffix: str, base_dir: Optional[Path] = None) -> Path:
    """Уникальный путь во временной директории (файл не создаётся)."""
    return (base_dir or TEMP_DIR) / f"{prefix}-{uuid.uuid4().hex}{suffix}"


async def save_upload(upload: UploadFile, base_dir: Optional[Path] = None) -> Path:
    """Сохраняет загруженный файл на диск по частям."""
    suffix = Path(upload.filename or "").suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        suffix = ".mp4"

    temp_path = new_temp_path("upload", suffix, base_dir)
    try:
        with open(temp_path, "wb") as f:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
    except Exception:
        remove_files(temp_path)
        raise
    finally:
        await upload.close()

    return temp_path


def remove_files(*paths: Union[Path, str, None]) -> None:
    """Удаляет временные файлы; отсутствующие пропускаются."""
    for path in paths:
        if path is None:
            continue
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[CLEANUP] Could not remove {path}: {e}")
