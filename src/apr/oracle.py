"""Oracle integration: detection, command construction and launching.

Everything here touches the operating system directly.  Callers receive an
``OracleProbe`` or a ``ProcessHandle`` and never a raw ``Popen``.
"""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Sequence

from apr.constants import ORACLE_COMMAND, ORACLE_NPX_PACKAGE
from apr.models import OracleError, OracleProbe, ProcessHandle

Launcher = Callable[[Sequence[str], Path, str, Path], ProcessHandle]


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return False
    return True


def probe_oracle(oracle_bin: str = "") -> OracleProbe:
    explicit = oracle_bin.strip()
    if explicit:
        resolved = shutil.which(explicit)
        if resolved is not None:
            return OracleProbe(True, "env", (resolved,))
        return OracleProbe(False, "none")
    resolved = shutil.which(ORACLE_COMMAND)
    if resolved is not None:
        return OracleProbe(True, "global", (resolved,))
    if shutil.which("npx") is not None:
        return OracleProbe(True, "npx", ("npx", "-y", ORACLE_NPX_PACKAGE))
    return OracleProbe(False, "none")


def make_slug(workflow: str, round_number: int, *, include_impl: bool = False) -> str:
    slug = f"apr-{workflow}-round-{round_number}"
    if include_impl:
        slug += "-with-impl"
    return slug


def build_oracle_command(
    probe: OracleProbe,
    *,
    model: str,
    prompt: str,
    slug: str,
    output_file: Path,
    login: bool = False,
    keep_browser: bool = False,
    notify: bool = True,
) -> list[str]:
    if not probe.available:
        raise OracleError("oracle is not available")
    argv = [
        *probe.argv,
        "--engine",
        "browser",
        "--browser-attachments",
        "never",
        "-m",
        model,
        "-p",
        prompt,
        "--slug",
        slug,
        "--write-output",
        str(output_file),
    ]
    if notify:
        argv.append("--notify")
    if login:
        argv.append("--browser-manual-login")
    if keep_browser:
        argv.append("--browser-keep-browser")
    return argv


def format_command_for_display(argv: Sequence[str]) -> str:
    shown: list[str] = []
    previous = ""
    for token in argv:
        if previous == "-p":
            shown.append(f"<prompt: {len(token)} chars>")
        else:
            shown.append(shlex.quote(token))
        previous = token
    return " ".join(shown)


def launch_oracle(argv: Sequence[str], output_file: Path, slug: str, log_path: Path) -> ProcessHandle:
    """Start oracle detached from this process and return immediately."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        with log_path.open("ab") as log_handle:
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except (FileNotFoundError, PermissionError) as exc:
        raise OracleError(f"failed to start oracle: {exc}", hint="Check `apr robot status` for oracle availability") from exc
    except OSError as exc:
        raise OracleError(f"failed to start oracle: {exc}") from exc
    return ProcessHandle(pid=proc.pid, output_file=output_file, slug=slug, command=tuple(argv))


def run_oracle_blocking(argv: Sequence[str]) -> int:
    try:
        completed = subprocess.run(list(argv), check=False)
    except (FileNotFoundError, PermissionError) as exc:
        raise OracleError(f"failed to start oracle: {exc}") from exc
    return completed.returncode
