"""APR data models: exceptions and dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from apr.constants import (
    CODE_DEPENDENCY_MISSING,
    CODE_LOCK_HELD,
    CODE_NOT_CONFIGURED,
    CODE_NOT_FOUND,
    CODE_ORACLE_ERROR,
    CODE_USAGE_ERROR,
    CODE_VALIDATION_FAILED,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_positive_int(value: Any) -> int | None:
    text = str(value).strip()
    if not text.isdigit():
        return None
    parsed = int(text)
    return parsed if parsed > 0 else None


class AprError(RuntimeError):
    """Base error carrying a robot status code and an optional remediation hint."""

    code = CODE_VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = dict(details or {})


class NotConfiguredError(AprError):
    code = CODE_NOT_CONFIGURED


class NotFoundError(AprError):
    code = CODE_NOT_FOUND


class UsageError(AprError):
    code = CODE_USAGE_ERROR


class DependencyMissingError(AprError):
    code = CODE_DEPENDENCY_MISSING


class OracleError(AprError):
    code = CODE_ORACLE_ERROR


class LockHeldError(AprError):
    code = CODE_LOCK_HELD

    def __init__(self, message: str, *, pid: int | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint, details={"pid": pid} if pid is not None else None)
        self.pid = pid


class ValidationFailedError(AprError):
    code = CODE_VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        *,
        errors: list[str] | None = None,
        warnings: list[str] | None = None,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.errors = list(errors or [message])
        self.warnings = list(warnings or [])
        self.details.setdefault("errors", list(self.errors))
        self.details.setdefault("warnings", list(self.warnings))


class EncoderUnavailableError(RuntimeError):
    """Raised when the TOON encoder cannot be located or fails to encode."""


@dataclass(frozen=True)
class WorkflowConfig:
    name: str
    path: Path
    description: str
    documents: dict[str, str]
    model: str
    output_dir: Path
    template: str
    # Falls back to ``template`` when the workflow file has no impl variant.
    template_with_impl: str
    integration_template: str = ""

    def document_path(self, role: str, project_root: Path) -> Path | None:
        raw = self.documents.get(role, "").strip()
        if not raw:
            return None
        candidate = Path(raw).expanduser()
        if candidate.is_absolute():
            return candidate
        return project_root / candidate


@dataclass(frozen=True)
class Round:
    round: int
    workflow: str
    path: Path

    @property
    def content(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def summary(self) -> dict[str, Any]:
        stat = self.path.stat()
        return {
            "round": self.round,
            "file": str(self.path),
            "size": stat.st_size,
            "modified": _format_mtime(stat.st_mtime),
        }


@dataclass(frozen=True)
class InvocationContext:
    """Per-process settings resolved once from arguments and environment."""

    project_root: Path
    workflow: str | None = None
    output_format: str = "json"
    compact: bool = False
    stats: bool = False
    include_impl: bool = False
    quiet: bool = False
    toon_bin: str = ""
    data_dir: Path | None = None
    cache_dir: Path | None = None
    check_updates: bool = True
    no_color: bool = False
    ci: bool = False
    no_gum: bool = False
    oracle_bin: str = ""


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    output_file: Path
    slug: str
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class OracleProbe:
    available: bool
    method: str
    argv: tuple[str, ...] = ()


@dataclass
class ValidationReport:
    workflow: str
    round: int | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    oracle_missing: bool = False

    @property
    def valid(self) -> bool:
        return not self.errors

    def payload(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "workflow": self.workflow,
            "round": self.round,
        }


def _format_mtime(mtime: float) -> str:
    return (
        datetime.fromtimestamp(mtime, tz=timezone.utc)
        .isoformat(timespec="seconds")
        .replace("+00:00", "Z")
    )
