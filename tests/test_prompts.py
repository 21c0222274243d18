from __future__ import annotations

from pathlib import Path

import pytest

from apr.config import load_workflow_config
from apr.constants import DEFAULT_TEMPLATE, DEFAULT_TEMPLATE_WITH_IMPL
from apr.models import ValidationFailedError, WorkflowConfig
from apr.prompts import (
    _substitute,
    render_integration_prompt,
    render_prompt,
    required_document_roles,
    select_template,
)


def test_substitute_is_single_pass_and_keeps_unknown_tokens() -> None:
    rendered = _substitute(
        "{{README}} | {{ SPEC }} | {{UNKNOWN}}",
        {"README": "literal {{SPEC}} inside", "SPEC": "spec body"},
    )
    assert rendered == "literal {{SPEC}} inside | spec body | {{UNKNOWN}}"


def _workflow(tmp_path: Path, **overrides: str) -> WorkflowConfig:
    fields = {"template": "", "template_with_impl": ""}
    fields.update(overrides)
    return WorkflowConfig(
        name="demo",
        path=tmp_path / "demo.yaml",
        description="",
        documents={},
        model="",
        output_dir=tmp_path,
        **fields,
    )


def test_select_template_falls_back_in_order(tmp_path: Path) -> None:
    bare = _workflow(tmp_path)
    assert select_template(bare, include_impl=False) == DEFAULT_TEMPLATE
    assert select_template(bare, include_impl=True) == DEFAULT_TEMPLATE_WITH_IMPL

    custom = _workflow(tmp_path, template="plain", template_with_impl="with impl")
    assert select_template(custom, include_impl=False) == "plain"
    assert select_template(custom, include_impl=True) == "with impl"


def test_plain_template_is_used_for_impl_rounds_when_no_variant(project: Path, make_workflow) -> None:
    make_workflow("default")
    path = project / ".apr" / "workflows" / "default.yaml"
    text = path.read_text(encoding="utf-8")
    head, _, _ = text.partition("\ntemplate:")
    path.write_text(head + "\ntemplate: |\n  Only plain {{SPEC}}\n", encoding="utf-8")

    workflow = load_workflow_config("default", project)
    assert workflow.template_with_impl == workflow.template
    assert select_template(workflow, include_impl=True).startswith("Only plain")
    assert render_prompt(workflow, project, include_impl=True).startswith("Only plain")


def test_required_document_roles() -> None:
    assert required_document_roles(include_impl=False) == ("readme", "spec")
    assert required_document_roles(include_impl=True) == ("readme", "spec", "implementation")


def test_render_prompt_embeds_documents_verbatim(project: Path, make_workflow) -> None:
    make_workflow("default")
    (project / "README.md").write_text("mentions {{SPEC}} literally\n", encoding="utf-8")
    workflow = load_workflow_config("default", project)

    prompt = render_prompt(workflow, project, round_number=2)
    assert "mentions {{SPEC}} literally" in prompt
    assert "Requirement A" in prompt
    assert "<implementation>" not in prompt

    with_impl = render_prompt(workflow, project, include_impl=True)
    assert "Description of the implementation." in with_impl


def test_render_prompt_reports_every_missing_document(project: Path, make_workflow) -> None:
    make_workflow("default")
    (project / "README.md").unlink()
    (project / "IMPLEMENTATION.md").unlink()
    workflow = load_workflow_config("default", project)

    with pytest.raises(ValidationFailedError) as excinfo:
        render_prompt(workflow, project, include_impl=True)
    assert len(excinfo.value.errors) == 2
    assert any("readme" in error for error in excinfo.value.errors)

    with pytest.raises(ValidationFailedError):
        render_prompt(workflow, project)


def test_integration_prompt_includes_feedback_and_paths(project: Path, make_workflow) -> None:
    make_workflow("default")
    workflow = load_workflow_config("default", project)
    prompt = render_integration_prompt(workflow, project, round_number=3, feedback="Tighten section 2.\n\n")
    assert "Tighten section 2." in prompt
    assert "SPECIFICATION.md" in prompt
    assert "README.md" in prompt
    assert "{{FEEDBACK}}" not in prompt
