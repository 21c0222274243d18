"""APR round locks: one live revision per (workflow, round).

A lock is a file holding the owner's PID.  It is live only while that PID
resolves to a running process; anything else is stale and gets reclaimed by
the next ``acquire``.
"""

from __future__ import annotations

import contextlib
import os
import shutil
from pathlib import Path
from typing import Callable, Iterator

from apr.models import LockHeldError
from apr.oracle import is_process_alive
from apr.utils import _append_log

_ACQUIRE_ATTEMPTS = 3


def lock_path_for(locks_dir: Path, workflow: str, round_number: int) -> Path:
    return locks_dir / f"{workflow}_round_{int(round_number)}.lock"


def _read_lock_pid(lock_path: Path) -> int | None:
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    first = text.splitlines()[0].strip() if text else ""
    return int(first) if first.isdigit() else None


def _write_lock_exclusive(lock_path: Path, pid: int) -> None:
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(f"{pid}\n")


class LockManager:
    def __init__(
        self,
        locks_dir: Path,
        *,
        project_root: Path | None = None,
        is_alive: Callable[[int], bool] | None = None,
        pid: int | None = None,
    ) -> None:
        self.locks_dir = locks_dir
        self.project_root = project_root
        self.is_alive = is_alive or is_process_alive
        self.pid = os.getpid() if pid is None else pid
        self.held_path: Path | None = None
        self.temp_dir: Path | None = None

    def _log(self, message: str) -> None:
        if self.project_root is not None:
            _append_log(self.project_root, message)

    def path_for(self, workflow: str, round_number: int) -> Path:
        return lock_path_for(self.locks_dir, workflow, round_number)

    def acquire(self, workflow: str, round_number: int) -> Path:
        lock_path = self.path_for(workflow, round_number)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(_ACQUIRE_ATTEMPTS):
            try:
                _write_lock_exclusive(lock_path, self.pid)
            except FileExistsError:
                holder = _read_lock_pid(lock_path)
                if holder is not None and self.is_alive(holder):
                    raise LockHeldError(
                        f"round {round_number} of workflow '{workflow}' is locked by running process {holder}",
                        pid=holder,
                        hint=f"Wait for PID {holder} to finish or pick another round",
                    )
                self._log(f"lock reclaim {lock_path.name} stale_pid={holder}")
                lock_path.unlink(missing_ok=True)
                continue
            self.held_path = lock_path
            self._log(f"lock acquired {lock_path.name}")
            return lock_path
        raise LockHeldError(
            f"could not acquire lock for round {round_number} of workflow '{workflow}'",
            hint="Another apr process is racing for the same round; retry shortly",
        )

    def release(self) -> None:
        lock_path = self.held_path
        self.held_path = None
        if lock_path is None or not lock_path.exists():
            return
        if _read_lock_pid(lock_path) not in {None, self.pid}:
            return
        lock_path.unlink(missing_ok=True)
        self._log(f"lock released {lock_path.name}")

    def transfer(self, pid: int) -> None:
        """Hand the held lock to another process and stop tracking it here."""
        lock_path = self.held_path
        if lock_path is None:
            return
        lock_path.write_text(f"{pid}\n", encoding="utf-8")
        self.held_path = None
        self._log(f"lock transferred {lock_path.name} pid={pid}")

    def inspect(self, workflow: str, round_number: int) -> dict[str, object] | None:
        lock_path = self.path_for(workflow, round_number)
        if not lock_path.exists():
            return None
        holder = _read_lock_pid(lock_path)
        return {
            "path": str(lock_path),
            "pid": holder,
            "alive": holder is not None and self.is_alive(holder),
        }

    def set_temp_dir(self, path: Path) -> None:
        self.temp_dir = path

    def cleanup_temp(self) -> None:
        temp_dir = self.temp_dir
        self.temp_dir = None
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)
        try:
            self.release()
        except OSError as exc:
            self._log(f"lock cleanup failed: {exc}")

    @contextlib.contextmanager
    def held(self, workflow: str, round_number: int) -> Iterator[Path]:
        lock_path = self.acquire(workflow, round_number)
        try:
            yield lock_path
        finally:
            self.cleanup_temp()
