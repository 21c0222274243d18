from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

import apr.commands as commands_module
import apr.robot as robot_module
from apr.models import OracleProbe

README_TEXT = """# Test Project

This is a test project for APR testing.

## Features
- Feature 1
- Feature 2
"""

SPEC_TEXT = """# Specification

## Overview
This is the specification document.

## Requirements
1. Requirement A
2. Requirement B
"""

IMPL_TEXT = """# Implementation

## Architecture
Description of the implementation.
"""

WORKFLOW_TEMPLATE = """name: {name}
description: Test workflow for {name}

documents:
  readme: README.md
  spec: SPECIFICATION.md
  implementation: IMPLEMENTATION.md

oracle:
  model: "5.2 Thinking"
  thinking_time: heavy

rounds:
  output_dir: .apr/rounds/{name}

template: |
  First, read this README:

  <readme>
  {{{{README}}}}
  </readme>

  Now read the specification:

  <spec>
  {{{{SPEC}}}}
  </spec>

  Please analyze and provide feedback.

template_with_impl: |
  First, read this README:

  <readme>
  {{{{README}}}}
  </readme>

  Now read the specification:

  <spec>
  {{{{SPEC}}}}
  </spec>

  And the implementation:

  <implementation>
  {{{{IMPL}}}}
  </implementation>

  Please analyze and provide feedback.
"""

_ENV_CLEARED = (
    "APR_OUTPUT_FORMAT",
    "TOON_DEFAULT_FORMAT",
    "APR_ORACLE_BIN",
    "XDG_DATA_HOME",
    "XDG_CACHE_HOME",
)


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    monkeypatch.chdir(root)
    for variable in _ENV_CLEARED:
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setenv("APR_NO_GUM", "1")
    monkeypatch.setenv("CI", "true")
    monkeypatch.setenv("APR_CHECK_UPDATES", "0")
    monkeypatch.setenv("TOON_TRU_BIN", str(tmp_path / "missing-tru"))
    monkeypatch.setenv("APR_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("APR_CACHE", str(tmp_path / "cache"))
    return root


@pytest.fixture
def make_workflow(project: Path) -> Callable[..., Path]:
    def _make(name: str = "default", *, make_default: bool = True) -> Path:
        (project / "README.md").write_text(README_TEXT, encoding="utf-8")
        (project / "SPECIFICATION.md").write_text(SPEC_TEXT, encoding="utf-8")
        (project / "IMPLEMENTATION.md").write_text(IMPL_TEXT, encoding="utf-8")
        for directory in (".apr/workflows", f".apr/rounds/{name}", ".apr/templates"):
            (project / directory).mkdir(parents=True, exist_ok=True)
        if make_default:
            (project / ".apr" / "config.yaml").write_text(f"default_workflow: {name}\n", encoding="utf-8")
        path = project / ".apr" / "workflows" / f"{name}.yaml"
        path.write_text(WORKFLOW_TEMPLATE.format(name=name), encoding="utf-8")
        return path

    return _make


@pytest.fixture
def make_round(project: Path) -> Callable[..., Path]:
    def _make(round_number: int, name: str = "default", content: str | None = None) -> Path:
        rounds_dir = project / ".apr" / "rounds" / name
        rounds_dir.mkdir(parents=True, exist_ok=True)
        if content is None:
            content = (
                f"# Round {round_number} Analysis\n\n"
                "## Summary\n"
                f"This is the analysis for round {round_number}.\n\n"
                "## Recommendations\n"
                "1. First recommendation\n"
                "2. Second recommendation\n\n"
                "## Conclusion\n"
                f"Round {round_number} complete.\n"
            )
        path = rounds_dir / f"round_{round_number}.md"
        path.write_text(content, encoding="utf-8")
        return path

    return _make


@pytest.fixture
def oracle_available(monkeypatch: pytest.MonkeyPatch) -> OracleProbe:
    probe = OracleProbe(True, "global", ("/usr/local/bin/oracle",))
    monkeypatch.setattr(robot_module, "probe_oracle", lambda oracle_bin="": probe)
    monkeypatch.setattr(commands_module, "probe_oracle", lambda oracle_bin="": probe)
    return probe


@pytest.fixture
def oracle_missing(monkeypatch: pytest.MonkeyPatch) -> OracleProbe:
    probe = OracleProbe(False, "none")
    monkeypatch.setattr(robot_module, "probe_oracle", lambda oracle_bin="": probe)
    monkeypatch.setattr(commands_module, "probe_oracle", lambda oracle_bin="": probe)
    return probe
