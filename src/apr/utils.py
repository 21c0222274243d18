"""APR utility functions for timestamps, file I/O and the project log."""

from __future__ import annotations

import importlib.metadata as importlib_metadata
import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from apr.constants import (
    APR_DIR_NAME,
    LOG_FILE_NAME,
    LOGS_DIR_NAME,
    PACKAGE_ROOT,
)

PYPROJECT_VERSION_PATTERN = re.compile(r'^version\s*=\s*"(?P<version>[^"]+)"\s*$')


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


# ---------------------------------------------------------------------------
# JSON / text I/O helpers
# ---------------------------------------------------------------------------


def _write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    _write_text_atomic(path, json.dumps(payload, indent=2) + "\n")


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None


def _safe_read_text(path: Path) -> str:
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(project_root: Path, message: str) -> None:
    apr_dir = project_root / APR_DIR_NAME
    if not apr_dir.is_dir():
        return
    log_path = apr_dir / LOGS_DIR_NAME / LOG_FILE_NAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{_utc_now()} pid={os.getpid()} {_compact_log_text(message, limit=400)}\n")
    except OSError:
        return


# ---------------------------------------------------------------------------
# Version
# ---------------------------------------------------------------------------


def _read_local_pyproject_version() -> str:
    pyproject_path = PACKAGE_ROOT.parents[1] / "pyproject.toml"
    if not pyproject_path.exists():
        return "0.0.0"
    for raw_line in pyproject_path.read_text(encoding="utf-8").splitlines():
        match = PYPROJECT_VERSION_PATTERN.match(raw_line.strip())
        if match is not None:
            return match.group("version")
    return "0.0.0"


def get_version() -> str:
    try:
        return importlib_metadata.version("apr")
    except importlib_metadata.PackageNotFoundError:
        return _read_local_pyproject_version()
