# dripfeed/services/storage.py
from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional

logger = logging.getLogger("storage")

_WHITESPACE = re.compile(r"\s+")
_CHUNK = 1024 * 1024


def safe_filename(original: str, now_ms: Optional[int] = None) -> str:
    """`<epoch ms>-<name>` with whitespace runs replaced by underscores and any directory part dropped."""
    stamp = int(time.time() * 1000) if now_ms is None else int(now_ms)
    name = os.path.basename(original.replace("\\", "/"))
    return f"{stamp}-{_WHITESPACE.sub('_', name)}"


def allowed(filename: str, extensions: Iterable[str]) -> bool:
    ext = os.path.splitext(filename)[1].lower()
    return ext in {e.lower() for e in extensions}


def save_upload(stream: BinaryIO, original: str, uploads_dir: str) -> Path:
    """Copy an uploaded file into `uploads_dir` under a collision-resistant name."""
    dest_dir = Path(uploads_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / safe_filename(original)
    with dest.open("wb") as out:
        while True:
            chunk = stream.read(_CHUNK)
            if not chunk:
                break
            out.write(chunk)
    logger.info("Stored upload %s (%d bytes)", dest.name, dest.stat().st_size)
    return dest.resolve()


def cleanup_uploads(uploads_dir: str, max_age_days: float = 30, now: Optional[float] = None) -> List[str]:
    """
    Delete files older than `max_age_days` (by mtime). Per-file errors are logged and skipped.
    Returns the names that were deleted.
    """
    root = Path(uploads_dir)
    if not root.is_dir():
        return []
    now = time.time() if now is None else now
    deleted: List[str] = []
    for entry in root.iterdir():
        try:
            age_days = (now - entry.stat().st_mtime) / 86400.0
            if entry.is_file() and age_days > max_age_days:
                entry.unlink()
                deleted.append(entry.name)
                logger.info("Deleted old file: %s", entry.name)
        except OSError as e:
            logger.error("Error deleting file %s: %s", entry.name, e)
    return deleted
