from __future__ import annotations

import os
import tempfile
import threading
import time
from pathlib import Path

ENGINE_LOG_PATH_ENV = "BASKET_ENGINE_LOG_PATH"
ENGINE_LOG_PATH = Path(
    os.environ.get(ENGINE_LOG_PATH_ENV) or Path(tempfile.gettempdir()) / "basket-engine.log"
)
LOG_ROTATE_MAX_BYTES_DEFAULT = 5 * 1024 * 1024
LOG_ROTATE_BACKUP_COUNT_DEFAULT = 3

_LOG_LOCK = threading.Lock()
_rotate_max_bytes = LOG_ROTATE_MAX_BYTES_DEFAULT
_rotate_backup_count = LOG_ROTATE_BACKUP_COUNT_DEFAULT


def configure_log_rotation(*, max_bytes: int, backup_count: int) -> None:
    global _rotate_max_bytes, _rotate_backup_count
    with _LOG_LOCK:
        _rotate_max_bytes = max(1024, int(max_bytes))
        _rotate_backup_count = max(0, int(backup_count))


def _backup_path(path: Path, index: int) -> Path:
    return path.with_name(f"{path.name}.{index}")


def _rotate(path: Path, backup_count: int) -> None:
    if backup_count <= 0:
        path.unlink(missing_ok=True)
        return
    _backup_path(path, backup_count).unlink(missing_ok=True)
    for idx in range(backup_count - 1, 0, -1):
        src = _backup_path(path, idx)
        if src.exists():
            os.replace(src, _backup_path(path, idx + 1))
    os.replace(path, _backup_path(path, 1))


def write_engine_log_line(message: str) -> None:
    timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{timestamp}] {message}\n"
    try:
        with _LOG_LOCK:
            ENGINE_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
            if ENGINE_LOG_PATH.exists():
                size = ENGINE_LOG_PATH.stat().st_size
                if size + len(line.encode("utf-8", errors="replace")) > _rotate_max_bytes:
                    _rotate(ENGINE_LOG_PATH, _rotate_backup_count)
            with open(ENGINE_LOG_PATH, "a", encoding="utf-8") as handle:
                handle.write(line)
    except Exception:
        # Logging must never break runtime flow.
        pass
