"""Robot-mode response envelopes and their wire encodings.

Every robot command answers with ``{ok, code, data, hint?, meta}``.  The JSON
form is always available; the denser TOON form is produced by an external
encoder binary that may be absent, in which case JSON is still written to
stdout and a single ``[warn]`` line explains why on stderr.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
from typing import Any, Callable, Mapping, TextIO

from apr.constants import (
    CODE_OK,
    CODE_USAGE_ERROR,
    DEFAULT_OUTPUT_FORMAT,
    DEFAULT_TOON_BIN,
    ENV_OUTPUT_FORMAT,
    ENV_SUITE_OUTPUT_FORMAT,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    OUTPUT_FORMATS,
    TOON_ENCODE_TIMEOUT_SECONDS,
)
from apr.models import EncoderUnavailableError, InvocationContext, UsageError
from apr.utils import _utc_now, get_version

Encoder = Callable[[str, str], str]


def build_envelope(
    ok: bool,
    code: str,
    data: Mapping[str, Any] | None = None,
    hint: str | None = None,
    *,
    version: str | None = None,
    now: str | None = None,
) -> dict[str, Any]:
    if bool(ok) != (code == CODE_OK):
        raise ValueError(f"envelope ok={ok} is inconsistent with code '{code}'")
    envelope: dict[str, Any] = {
        "ok": bool(ok),
        "code": code,
        "data": dict(data) if data is not None else {},
    }
    if hint:
        envelope["hint"] = hint
    envelope["meta"] = {
        "v": version if version is not None else get_version(),
        "ts": now if now is not None else _utc_now(),
    }
    return envelope


def success_envelope(data: Mapping[str, Any] | None = None, *, hint: str | None = None) -> dict[str, Any]:
    return build_envelope(True, CODE_OK, data, hint)


def error_envelope(
    code: str,
    message: str,
    *,
    data: Mapping[str, Any] | None = None,
    hint: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": message}
    if data:
        payload.update(data)
    return build_envelope(False, code, payload, hint)


def exit_code_for(envelope: Mapping[str, Any]) -> int:
    if envelope.get("ok"):
        return EXIT_OK
    if envelope.get("code") == CODE_USAGE_ERROR:
        return EXIT_USAGE
    return EXIT_FAILURE


def render_json(envelope: Mapping[str, Any], *, compact: bool = False) -> str:
    if compact:
        return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(envelope, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Output format selection
# ---------------------------------------------------------------------------


def _normalize_format(value: str | None) -> str:
    return str(value or "").strip().lower()


def resolve_output_format(flag_value: str | None, environ: Mapping[str, str]) -> str:
    """Pick the format: ``-f`` flag, then APR_OUTPUT_FORMAT, then TOON_DEFAULT_FORMAT."""
    flag = _normalize_format(flag_value)
    if flag:
        if flag not in OUTPUT_FORMATS:
            raise UsageError(
                f"unsupported output format '{flag_value}'",
                hint=f"Use -f {' or -f '.join(OUTPUT_FORMATS)}",
            )
        return flag
    for variable in (ENV_OUTPUT_FORMAT, ENV_SUITE_OUTPUT_FORMAT):
        candidate = _normalize_format(environ.get(variable))
        if candidate in OUTPUT_FORMATS:
            return candidate
    return DEFAULT_OUTPUT_FORMAT


# ---------------------------------------------------------------------------
# TOON encoding
# ---------------------------------------------------------------------------


def resolve_toon_bin(toon_bin: str = "") -> str | None:
    candidate = toon_bin.strip() or DEFAULT_TOON_BIN
    return shutil.which(candidate)


def encode_toon(json_text: str, toon_bin: str = "") -> str:
    resolved = resolve_toon_bin(toon_bin)
    if resolved is None:
        raise EncoderUnavailableError(f"TOON encoder '{toon_bin or DEFAULT_TOON_BIN}' not found")
    try:
        proc = subprocess.run(
            [resolved, "--encode"],
            input=json_text,
            capture_output=True,
            text=True,
            check=False,
            timeout=TOON_ENCODE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired as exc:
        raise EncoderUnavailableError("TOON encoder timed out") from exc
    except OSError as exc:
        raise EncoderUnavailableError(f"TOON encoder could not be started: {exc}") from exc
    if proc.returncode != 0:
        detail = (proc.stderr or "").strip().splitlines()
        reason = detail[0] if detail else f"exit {proc.returncode}"
        raise EncoderUnavailableError(f"TOON encoder failed: {reason}")
    if not proc.stdout.strip():
        raise EncoderUnavailableError("TOON encoder produced no output")
    return proc.stdout


def _savings_line(emitted: str, json_text: str, toon_text: str | None) -> str:
    json_bytes = len(json_text.encode("utf-8"))
    if toon_text is None:
        return f"[stats] format={emitted} json_bytes={json_bytes} toon_bytes=n/a savings=n/a"
    toon_bytes = len(toon_text.encode("utf-8"))
    savings = (json_bytes - toon_bytes) * 100.0 / json_bytes if json_bytes else 0.0
    return (
        f"[stats] format={emitted} json_bytes={json_bytes} "
        f"toon_bytes={toon_bytes} savings={savings:.1f}%"
    )


def emit_envelope(
    envelope: Mapping[str, Any],
    ctx: InvocationContext,
    *,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
    encoder: Encoder = encode_toon,
) -> str:
    """Write exactly one document to stdout and diagnostics to stderr.

    Returns the format that was actually emitted.
    """
    out = stdout if stdout is not None else sys.stdout
    err = stderr if stderr is not None else sys.stderr
    json_text = render_json(envelope, compact=ctx.compact)

    toon_text: str | None = None
    toon_failure = ""
    if ctx.output_format == "toon" or ctx.stats:
        try:
            toon_text = encoder(json_text, ctx.toon_bin)
        except EncoderUnavailableError as exc:
            toon_failure = str(exc)

    emitted = "json"
    if ctx.output_format == "toon" and toon_text is not None:
        emitted = "toon"
        out.write(toon_text if toon_text.endswith("\n") else toon_text + "\n")
    else:
        out.write(json_text + "\n")
    out.flush()

    if ctx.output_format == "toon" and toon_text is None:
        print(f"[warn] TOON output unavailable ({toon_failure}); emitted JSON instead", file=err)
    if ctx.stats:
        print(_savings_line(emitted, json_text, toon_text), file=err)
    if not envelope.get("ok"):
        print(f"APR_ERROR_CODE={envelope.get('code')}", file=err)
    return emitted
