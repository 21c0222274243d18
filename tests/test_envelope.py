from __future__ import annotations

import io
import json
import os
import re
import stat
from pathlib import Path

import pytest

from apr.envelope import (
    build_envelope,
    emit_envelope,
    encode_toon,
    error_envelope,
    render_json,
    resolve_output_format,
)
from apr.models import EncoderUnavailableError, InvocationContext, UsageError

STATS_LINE = re.compile(r"^\[stats\] format=(json|toon) json_bytes=\d+ toon_bytes=(\d+|n/a) savings=(-?\d+\.\d%|n/a)$")


def _context(tmp_path: Path, **overrides) -> InvocationContext:
    return InvocationContext(project_root=tmp_path, **overrides)


def _fake_encoder(json_text: str, toon_bin: str) -> str:
    return "ok: true\n"


def _missing_encoder(json_text: str, toon_bin: str) -> str:
    raise EncoderUnavailableError("TOON encoder 'tru' not found")


def _executable(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ---------------------------------------------------------------------------
# Envelope construction
# ---------------------------------------------------------------------------


def test_hint_is_omitted_unless_supplied() -> None:
    without = build_envelope(True, "ok", {"x": 1}, None, version="1.0.0")
    assert "hint" not in without
    assert "hint" not in build_envelope(True, "ok", {}, "", version="1.0.0")

    with_hint = build_envelope(False, "not_found", {}, "try again", version="1.0.0")
    assert with_hint["hint"] == "try again"
    assert list(with_hint) == ["ok", "code", "data", "hint", "meta"]


def test_meta_carries_version_and_timestamp() -> None:
    envelope = build_envelope(True, "ok", {}, version="9.9.9", now="2026-01-01T00:00:00Z")
    assert envelope["meta"] == {"v": "9.9.9", "ts": "2026-01-01T00:00:00Z"}
    assert build_envelope(True, "ok", {})["meta"]["v"]


@pytest.mark.parametrize(("ok", "code"), [(True, "not_found"), (False, "ok")])
def test_ok_must_agree_with_code(ok: bool, code: str) -> None:
    with pytest.raises(ValueError):
        build_envelope(ok, code, {})


def test_identical_inputs_differ_only_in_timestamp() -> None:
    first = build_envelope(True, "ok", {"rounds": [1, 2]}, version="1.0.0", now="a")
    second = build_envelope(True, "ok", {"rounds": [1, 2]}, version="1.0.0", now="b")
    first["meta"].pop("ts")
    second["meta"].pop("ts")
    assert render_json(first) == render_json(second)


def test_error_envelope_keeps_details() -> None:
    envelope = error_envelope("lock_held", "busy", data={"pid": 42}, hint="wait")
    assert envelope["ok"] is False
    assert envelope["data"] == {"error": "busy", "pid": 42}
    assert envelope["hint"] == "wait"


def test_compact_output_is_canonical_minified_json() -> None:
    envelope = build_envelope(True, "ok", {"text": "a b", "nested": {"k": [1, 2]}}, version="1.0.0")
    compact = render_json(envelope, compact=True)
    assert "\n" not in compact
    assert ": " not in compact and ", " not in compact
    canonical = json.dumps(json.loads(compact), separators=(",", ":"), ensure_ascii=False)
    assert compact == canonical

    pretty = render_json(envelope)
    assert pretty.startswith("{\n  \"ok\": true,")


# ---------------------------------------------------------------------------
# Output format selection
# ---------------------------------------------------------------------------


def test_output_format_precedence() -> None:
    env = {"APR_OUTPUT_FORMAT": "toon", "TOON_DEFAULT_FORMAT": "json"}
    assert resolve_output_format("json", env) == "json"
    assert resolve_output_format(None, env) == "toon"
    assert resolve_output_format(None, {"TOON_DEFAULT_FORMAT": "toon"}) == "toon"
    assert resolve_output_format(None, {"APR_OUTPUT_FORMAT": "yaml", "TOON_DEFAULT_FORMAT": "toon"}) == "toon"
    assert resolve_output_format(None, {}) == "json"
    with pytest.raises(UsageError):
        resolve_output_format("xml", {})


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


def test_toon_fallback_writes_json_and_one_warning(tmp_path: Path) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    envelope = build_envelope(True, "ok", {"count": 2})
    emitted = emit_envelope(
        envelope,
        _context(tmp_path, output_format="toon"),
        stdout=stdout,
        stderr=stderr,
        encoder=_missing_encoder,
    )
    assert emitted == "json"
    assert json.loads(stdout.getvalue()) == envelope
    lines = stderr.getvalue().splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("[warn]")


def test_toon_output_when_encoder_works(tmp_path: Path) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    emitted = emit_envelope(
        build_envelope(True, "ok", {}),
        _context(tmp_path, output_format="toon"),
        stdout=stdout,
        stderr=stderr,
        encoder=_fake_encoder,
    )
    assert emitted == "toon"
    assert stdout.getvalue() == "ok: true\n"
    assert stderr.getvalue() == ""


@pytest.mark.parametrize("output_format", ["json", "toon"])
def test_stats_line_reports_both_sizes(tmp_path: Path, output_format: str) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    emit_envelope(
        build_envelope(True, "ok", {"rounds": list(range(20))}),
        _context(tmp_path, output_format=output_format, stats=True),
        stdout=stdout,
        stderr=stderr,
        encoder=_fake_encoder,
    )
    lines = stderr.getvalue().splitlines()
    assert len(lines) == 1
    match = STATS_LINE.match(lines[0])
    assert match is not None
    assert match.group(1) == output_format
    assert match.group(2) == str(len("ok: true\n"))


def test_stats_line_without_encoder(tmp_path: Path) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    emit_envelope(
        build_envelope(True, "ok", {}),
        _context(tmp_path, stats=True),
        stdout=stdout,
        stderr=stderr,
        encoder=_missing_encoder,
    )
    assert STATS_LINE.match(stderr.getvalue().strip()) is not None
    assert "toon_bytes=n/a" in stderr.getvalue()


def test_failure_writes_error_code_line(tmp_path: Path) -> None:
    stdout, stderr = io.StringIO(), io.StringIO()
    emit_envelope(
        error_envelope("not_configured", "no .apr"),
        _context(tmp_path),
        stdout=stdout,
        stderr=stderr,
    )
    assert json.loads(stdout.getvalue())["code"] == "not_configured"
    assert stderr.getvalue().splitlines() == ["APR_ERROR_CODE=not_configured"]


# ---------------------------------------------------------------------------
# External encoder
# ---------------------------------------------------------------------------


def test_encode_toon_missing_binary(tmp_path: Path) -> None:
    with pytest.raises(EncoderUnavailableError):
        encode_toon("{}", str(tmp_path / "missing-tru"))


@pytest.mark.skipif(os.name != "posix", reason="uses a shell script as the encoder")
def test_encode_toon_uses_binary_stdout(tmp_path: Path) -> None:
    encoder = _executable(tmp_path / "tru", "#!/bin/sh\necho \"encoded $1\"\ncat\n")
    assert encode_toon('{"ok":true}', str(encoder)) == 'encoded --encode\n{"ok":true}'


@pytest.mark.skipif(os.name != "posix", reason="uses a shell script as the encoder")
def test_encode_toon_nonzero_exit_is_unavailable(tmp_path: Path) -> None:
    encoder = _executable(tmp_path / "tru", "#!/bin/sh\necho 'bad input' >&2\nexit 3\n")
    with pytest.raises(EncoderUnavailableError) as excinfo:
        encode_toon("{}", str(encoder))
    assert "bad input" in str(excinfo.value)
