from __future__ import annotations

from pathlib import Path

import pytest

from apr.locking import LockManager, lock_path_for
from apr.models import LockHeldError


def _manager(locks_dir: Path, *, pid: int, alive: bool | set[int] = False) -> LockManager:
    if isinstance(alive, set):
        return LockManager(locks_dir, is_alive=lambda candidate: candidate in alive, pid=pid)
    return LockManager(locks_dir, is_alive=lambda candidate: alive, pid=pid)


def test_acquire_then_release_leaves_no_lock_and_can_reacquire(tmp_path: Path) -> None:
    manager = _manager(tmp_path / ".locks", pid=1111)
    lock_path = manager.acquire("default", 1)
    assert lock_path == lock_path_for(tmp_path / ".locks", "default", 1)
    assert lock_path.read_text(encoding="utf-8") == "1111\n"

    manager.release()
    assert not lock_path.exists()

    assert manager.acquire("default", 1) == lock_path
    manager.release()


def test_live_holder_blocks_same_key_but_not_other_keys(tmp_path: Path) -> None:
    locks_dir = tmp_path / ".locks"
    holder = _manager(locks_dir, pid=1111)
    holder.acquire("default", 3)

    contender = _manager(locks_dir, pid=2222, alive={1111})
    with pytest.raises(LockHeldError) as excinfo:
        contender.acquire("default", 3)
    assert excinfo.value.pid == 1111
    assert "1111" in (excinfo.value.hint or "")
    assert lock_path_for(locks_dir, "default", 3).read_text(encoding="utf-8") == "1111\n"

    contender.acquire("default", 4)
    contender.acquire("other", 3)
    assert lock_path_for(locks_dir, "other", 3).read_text(encoding="utf-8") == "2222\n"


def test_own_live_pid_still_counts_as_held(tmp_path: Path) -> None:
    locks_dir = tmp_path / ".locks"
    _manager(locks_dir, pid=1111).acquire("default", 1)
    again = _manager(locks_dir, pid=1111, alive=True)
    with pytest.raises(LockHeldError):
        again.acquire("default", 1)


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    locks_dir = tmp_path / ".locks"
    locks_dir.mkdir()
    stale = lock_path_for(locks_dir, "default", 2)
    stale.write_text("999999\n", encoding="utf-8")

    manager = _manager(locks_dir, pid=1111, alive=False)
    assert manager.acquire("default", 2) == stale
    assert stale.read_text(encoding="utf-8") == "1111\n"


@pytest.mark.parametrize("content", ["", "not-a-pid\n", "\n\n"])
def test_unreadable_lock_is_reclaimed(tmp_path: Path, content: str) -> None:
    locks_dir = tmp_path / ".locks"
    locks_dir.mkdir()
    lock_path_for(locks_dir, "default", 1).write_text(content, encoding="utf-8")

    manager = _manager(locks_dir, pid=1111, alive=True)
    manager.acquire("default", 1)
    assert lock_path_for(locks_dir, "default", 1).read_text(encoding="utf-8") == "1111\n"


def test_release_and_cleanup_are_idempotent(tmp_path: Path) -> None:
    manager = _manager(tmp_path / ".locks", pid=1111)
    manager.release()
    manager.cleanup_temp()

    scratch = tmp_path / "scratch"
    scratch.mkdir()
    (scratch / "prompt.txt").write_text("x", encoding="utf-8")
    lock_path = manager.acquire("default", 1)
    manager.set_temp_dir(scratch)

    for _ in range(3):
        manager.cleanup_temp()
        manager.release()
    assert not scratch.exists()
    assert not lock_path.exists()


def test_release_does_not_remove_transferred_lock(tmp_path: Path) -> None:
    manager = _manager(tmp_path / ".locks", pid=1111)
    lock_path = manager.acquire("default", 5)
    manager.transfer(4242)
    manager.release()
    assert lock_path.read_text(encoding="utf-8") == "4242\n"

    info = _manager(tmp_path / ".locks", pid=1, alive={4242}).inspect("default", 5)
    assert info == {"path": str(lock_path), "pid": 4242, "alive": True}


def test_held_context_releases_on_error(tmp_path: Path) -> None:
    manager = _manager(tmp_path / ".locks", pid=1111)
    lock_path = lock_path_for(tmp_path / ".locks", "default", 1)

    with manager.held("default", 1) as held_path:
        assert held_path == lock_path
        assert lock_path.exists()
    assert not lock_path.exists()

    with pytest.raises(RuntimeError):
        with manager.held("default", 1):
            raise RuntimeError("boom")
    assert not lock_path.exists()


def test_inspect_reports_missing_lock_as_none(tmp_path: Path) -> None:
    assert _manager(tmp_path / ".locks", pid=1).inspect("default", 1) is None
