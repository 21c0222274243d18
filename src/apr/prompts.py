from __future__ import annotations

import re
from pathlib import Path

from apr.constants import (
    DEFAULT_INTEGRATION_TEMPLATE,
    DEFAULT_TEMPLATE,
    DEFAULT_TEMPLATE_WITH_IMPL,
    PROMPT_PLACEHOLDER_PATTERN,
)
from apr.models import ValidationFailedError, WorkflowConfig

DOCUMENT_PLACEHOLDERS = {
    "README": "readme",
    "SPEC": "spec",
    "IMPL": "implementation",
}


def _substitute(template: str, values: dict[str, str]) -> str:
    """Replace known ``{{NAME}}`` tokens in one pass; unknown tokens are kept."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return PROMPT_PLACEHOLDER_PATTERN.sub(_replace, template)


def select_template(workflow: WorkflowConfig, *, include_impl: bool) -> str:
    if include_impl:
        return workflow.template_with_impl or DEFAULT_TEMPLATE_WITH_IMPL
    return workflow.template or DEFAULT_TEMPLATE


def required_document_roles(*, include_impl: bool) -> tuple[str, ...]:
    if include_impl:
        return ("readme", "spec", "implementation")
    return ("readme", "spec")


def render_prompt(
    workflow: WorkflowConfig,
    project_root: Path,
    *,
    include_impl: bool = False,
    round_number: int | None = None,
) -> str:
    values: dict[str, str] = {"WORKFLOW": workflow.name}
    if round_number is not None:
        values["ROUND"] = str(round_number)
    missing: list[str] = []
    for placeholder, role in DOCUMENT_PLACEHOLDERS.items():
        if role == "implementation" and not include_impl:
            continue
        path = workflow.document_path(role, project_root)
        if path is None or not path.is_file():
            missing.append(f"{role} document not found: {path or '<not configured>'}")
            continue
        values[placeholder] = path.read_text(encoding="utf-8")
    if missing:
        raise ValidationFailedError(
            "cannot render prompt: required documents are missing",
            errors=missing,
            hint=f"Fix the documents section of {workflow.path}",
        )
    return _substitute(select_template(workflow, include_impl=include_impl), values)


def render_integration_prompt(
    workflow: WorkflowConfig,
    project_root: Path,
    *,
    round_number: int,
    feedback: str,
) -> str:
    template = workflow.integration_template or DEFAULT_INTEGRATION_TEMPLATE
    values = {
        "WORKFLOW": workflow.name,
        "ROUND": str(round_number),
        "FEEDBACK": feedback.rstrip("\n"),
        "README_PATH": workflow.documents.get("readme", "README.md"),
        "SPEC_PATH": workflow.documents.get("spec", "the specification"),
    }
    spec_path = workflow.document_path("spec", project_root)
    if spec_path is not None and spec_path.is_file():
        values["SPEC"] = spec_path.read_text(encoding="utf-8")
    return _substitute(template, values)
