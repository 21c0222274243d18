"""APR configuration: restricted YAML reader and workflow resolution.

Workflow and project files under ``.apr/`` are written by hand or by
``apr setup``.  They are read with a small line-oriented reader; every lookup
returns an empty string for anything missing instead of raising.  PyYAML
writes files and reports malformed workflow files during validation.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from apr.constants import (
    ANALYTICS_DIR_NAME,
    APR_DIR_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_ORACLE_MODEL,
    DEFAULT_WORKFLOW_NAME,
    LOCKS_DIR_NAME,
    ROUNDS_DIR_NAME,
    TEMPLATES_DIR_NAME,
    WORKFLOW_NAME_PATTERN,
    WORKFLOWS_DIR_NAME,
)
from apr.models import NotConfiguredError, UsageError, WorkflowConfig
from apr.utils import _append_log, _safe_read_text, _write_text_atomic

_KEY_LINE_PATTERN = re.compile(r"^(?P<key>[A-Za-z_][A-Za-z0-9_.-]*)\s*:(?:\s+(?P<value>.*?))?\s*$")
_BLOCK_INDICATORS = ("|", "|-", "|+")


class LineKind(enum.Enum):
    KEY = "key"
    BLOCK_START = "block_start"
    INDENTED = "indented"
    OTHER = "other"


@dataclass(frozen=True)
class Line:
    kind: LineKind
    indent: int
    raw: str
    key: str = ""
    value: str = ""


# ---------------------------------------------------------------------------
# Project layout
# ---------------------------------------------------------------------------


def _apr_dir(project_root: Path) -> Path:
    return project_root / APR_DIR_NAME


def _config_path(project_root: Path) -> Path:
    return _apr_dir(project_root) / CONFIG_FILE_NAME


def _workflows_dir(project_root: Path) -> Path:
    return _apr_dir(project_root) / WORKFLOWS_DIR_NAME


def _workflow_path(project_root: Path, name: str) -> Path:
    return _workflows_dir(project_root) / f"{name}.yaml"


def _rounds_root(project_root: Path) -> Path:
    return _apr_dir(project_root) / ROUNDS_DIR_NAME


def _analytics_dir(project_root: Path, workflow: str) -> Path:
    return _apr_dir(project_root) / ANALYTICS_DIR_NAME / workflow


def _templates_dir(project_root: Path) -> Path:
    return _apr_dir(project_root) / TEMPLATES_DIR_NAME


def _locks_dir(project_root: Path) -> Path:
    return _apr_dir(project_root) / LOCKS_DIR_NAME


# ---------------------------------------------------------------------------
# Line tokenizer
# ---------------------------------------------------------------------------


def _strip_inline_comment(value: str) -> str:
    text = value.strip()
    for marker in (" #", "\t#"):
        idx = text.find(marker)
        if idx != -1:
            text = text[:idx]
    return text.rstrip()


def _classify(raw: str) -> Line:
    stripped = raw.lstrip(" \t")
    indent = len(raw) - len(stripped)
    if not stripped.strip() or stripped.startswith("#"):
        return Line(LineKind.OTHER, indent, raw)
    match = _KEY_LINE_PATTERN.match(stripped)
    if match is None:
        kind = LineKind.INDENTED if indent > 0 else LineKind.OTHER
        return Line(kind, indent, raw)
    key = match.group("key")
    value = match.group("value") or ""
    if _strip_inline_comment(value) in _BLOCK_INDICATORS:
        return Line(LineKind.BLOCK_START, indent, raw, key, _strip_inline_comment(value))
    return Line(LineKind.KEY, indent, raw, key, value)


def tokenize_yaml_lines(text: str) -> list[Line]:
    return [_classify(raw) for raw in text.splitlines()]


def _clean_scalar(value: str) -> str:
    text = value.strip()
    if not text:
        return ""
    quote = text[0]
    if quote in {'"', "'"}:
        closing = text.find(quote, 1)
        while quote == '"' and closing > 0 and text[closing - 1] == "\\":
            closing = text.find(quote, closing + 1)
        if closing == -1:
            return text[1:]
        return text[1:closing]
    return _strip_inline_comment(text)


def _find_key(lines: list[Line], key: str, *, indent: int = 0, start: int = 0, stop: int | None = None) -> int:
    end = len(lines) if stop is None else stop
    for idx in range(start, end):
        line = lines[idx]
        if line.kind in {LineKind.KEY, LineKind.BLOCK_START} and line.indent == indent and line.key == key:
            return idx
    return -1


def _section_end(lines: list[Line], start: int, indent: int) -> int:
    for idx in range(start + 1, len(lines)):
        line = lines[idx]
        if line.kind is LineKind.OTHER and (not line.raw.strip() or line.raw.strip().startswith("#")):
            continue
        if line.indent <= indent:
            return idx
    return len(lines)


# ---------------------------------------------------------------------------
# Public readers
# ---------------------------------------------------------------------------


def get_config_value(key: str, path: Path) -> str:
    """Return the scalar at ``key`` (or ``parent.child``) or "" when absent."""
    text = _safe_read_text(path)
    if not text:
        return ""
    lines = tokenize_yaml_lines(text)
    parent, _, child = key.partition(".")
    top = _find_key(lines, parent)
    if top == -1:
        return ""
    if not child:
        line = lines[top]
        return _clean_scalar(line.value) if line.kind is LineKind.KEY else ""

    end = _section_end(lines, top, lines[top].indent)
    nested_indent = None
    for idx in range(top + 1, end):
        line = lines[idx]
        if line.kind in {LineKind.KEY, LineKind.BLOCK_START}:
            nested_indent = line.indent
            break
    if nested_indent is None:
        return ""
    found = _find_key(lines, child, indent=nested_indent, start=top + 1, stop=end)
    if found == -1 or lines[found].kind is not LineKind.KEY:
        return ""
    return _clean_scalar(lines[found].value)


def get_yaml_block(key: str, path: Path) -> str:
    """Return the literal block scalar ``key: |`` with interior indentation kept."""
    text = _safe_read_text(path)
    if not text:
        return ""
    lines = tokenize_yaml_lines(text)
    start = -1
    for idx, line in enumerate(lines):
        if line.kind is LineKind.BLOCK_START and line.key == key:
            start = idx
            break
    if start == -1:
        return ""

    header = lines[start]
    collected: list[str] = []
    content_indent: int | None = None
    for line in lines[start + 1 :]:
        if not line.raw.strip():
            collected.append("")
            continue
        if line.indent <= header.indent:
            break
        if content_indent is None:
            content_indent = line.indent
        if line.indent < content_indent:
            break
        collected.append(line.raw[content_indent:])

    trailing: list[str] = []
    while collected and collected[-1] == "":
        trailing.append(collected.pop())
    if not collected:
        return ""
    body = "\n".join(collected)
    if header.value == "|-":
        return body
    if header.value == "|+":
        return body + "\n" + "\n" * len(trailing)
    return body + "\n"


def load_prompt_template(include_impl: bool, path: Path) -> str:
    if include_impl:
        with_impl = get_yaml_block("template_with_impl", path)
        if with_impl:
            return with_impl
    return get_yaml_block("template", path)


def read_workflow_yaml(path: Path) -> tuple[dict[str, Any] | None, str]:
    if not path.exists():
        return (None, f"workflow file not found: {path}")
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        return (None, f"workflow file is not readable: {path}: {exc}")
    except yaml.YAMLError as exc:
        return (None, f"workflow file is not valid YAML: {path}: {exc}")
    if not isinstance(loaded, dict):
        return (None, f"workflow file must contain a mapping: {path}")
    return (loaded, "")


# ---------------------------------------------------------------------------
# Workflow resolution
# ---------------------------------------------------------------------------


def _validate_workflow_name(name: str) -> str:
    candidate = str(name).strip()
    if not WORKFLOW_NAME_PATTERN.match(candidate):
        raise UsageError(
            f"invalid workflow name '{name}'",
            hint="Workflow names may contain letters, digits, '.', '_' and '-'",
        )
    return candidate


def list_workflows(project_root: Path) -> list[dict[str, str]]:
    workflows_dir = _workflows_dir(project_root)
    if not workflows_dir.is_dir():
        return []
    entries: list[dict[str, str]] = []
    for path in sorted(workflows_dir.glob("*.yaml")):
        entries.append(
            {
                "name": path.stem,
                "description": get_config_value("description", path),
            }
        )
    return entries


def get_default_workflow(project_root: Path) -> str:
    return get_config_value("default_workflow", _config_path(project_root))


def load_workflow_config(name: str, project_root: Path) -> WorkflowConfig:
    name = _validate_workflow_name(name)
    path = _workflow_path(project_root, name)
    documents = {
        role: get_config_value(f"documents.{role}", path)
        for role in ("readme", "spec", "implementation")
    }
    raw_output_dir = get_config_value("rounds.output_dir", path)
    if raw_output_dir:
        output_dir = Path(raw_output_dir).expanduser()
        if not output_dir.is_absolute():
            output_dir = project_root / output_dir
    else:
        output_dir = _rounds_root(project_root) / name
    return WorkflowConfig(
        name=name,
        path=path,
        description=get_config_value("description", path),
        documents={role: value for role, value in documents.items() if value},
        model=get_config_value("oracle.model", path) or DEFAULT_ORACLE_MODEL,
        output_dir=output_dir,
        template=load_prompt_template(False, path),
        template_with_impl=load_prompt_template(True, path),
        integration_template=get_yaml_block("integration_template", path),
    )


def resolve_workflow(explicit: str | None, project_root: Path) -> WorkflowConfig:
    """Resolve ``-w`` first, then ``default_workflow`` from ``.apr/config.yaml``."""
    if not _apr_dir(project_root).is_dir():
        raise NotConfiguredError(
            f"no {APR_DIR_NAME}/ directory in {project_root}",
            hint="Run `apr setup` or `apr robot init` to create one",
        )
    name = (explicit or "").strip() or get_default_workflow(project_root)
    if not name:
        raise NotConfiguredError(
            "no workflow specified and no default_workflow configured",
            hint="Pass -w NAME or set default_workflow in .apr/config.yaml",
        )
    name = _validate_workflow_name(name)
    if not _workflow_path(project_root, name).exists():
        available = [entry["name"] for entry in list_workflows(project_root)]
        hint = (
            f"Available workflows: {', '.join(available)}"
            if available
            else "Run `apr setup` to create a workflow"
        )
        raise NotConfiguredError(f"workflow '{name}' is not defined", hint=hint)
    return load_workflow_config(name, project_root)


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def _render_block(key: str, text: str) -> str:
    body = text.rstrip("\n")
    indented = "\n".join(f"  {line}" if line else "" for line in body.splitlines())
    return f"{key}: |\n{indented}\n"


def render_workflow_yaml(
    *,
    name: str,
    description: str,
    documents: dict[str, str],
    model: str,
    output_dir: str,
    template: str,
    template_with_impl: str = "",
) -> str:
    header = yaml.safe_dump(
        {
            "name": name,
            "description": description,
            "documents": documents,
            "oracle": {"model": model},
            "rounds": {"output_dir": output_dir},
        },
        sort_keys=False,
        default_flow_style=False,
    )
    parts = [header, "\n", _render_block("template", template)]
    if template_with_impl:
        parts.extend(["\n", _render_block("template_with_impl", template_with_impl)])
    return "".join(parts)


def write_workflow_config(project_root: Path, name: str, content: str) -> Path:
    path = _workflow_path(project_root, _validate_workflow_name(name))
    _write_text_atomic(path, content)
    return path


def write_project_config(project_root: Path, *, default_workflow: str) -> Path:
    path = _config_path(project_root)
    _write_text_atomic(
        path,
        yaml.safe_dump({"default_workflow": default_workflow}, sort_keys=False),
    )
    return path


def _relative(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


def init_project(project_root: Path, *, default_workflow: str = DEFAULT_WORKFLOW_NAME) -> dict[str, list[str]]:
    """Create the ``.apr/`` skeleton; anything already present is left alone."""
    created: list[str] = []
    existed: list[str] = []
    for directory in (
        _apr_dir(project_root),
        _workflows_dir(project_root),
        _rounds_root(project_root),
        _apr_dir(project_root) / ANALYTICS_DIR_NAME,
        _templates_dir(project_root),
    ):
        if directory.is_dir():
            existed.append(_relative(directory, project_root))
            continue
        directory.mkdir(parents=True, exist_ok=True)
        created.append(_relative(directory, project_root))
    config_path = _config_path(project_root)
    if config_path.exists():
        existed.append(_relative(config_path, project_root))
    else:
        write_project_config(project_root, default_workflow=default_workflow)
        created.append(_relative(config_path, project_root))
    if created:
        _append_log(project_root, f"init created={created}")
    return {"created": created, "existed": existed}
