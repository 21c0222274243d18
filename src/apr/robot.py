"""Robot mode: a JSON/TOON command surface for coding agents and scripts.

Each command returns a plain ``data`` mapping or raises an ``AprError``; the
dispatcher turns either outcome into exactly one envelope.  Collaborators
that touch the operating system are passed in to ``dispatch``.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from apr.config import (
    _apr_dir,
    _locks_dir,
    get_default_workflow,
    init_project,
    list_workflows,
    read_workflow_yaml,
    resolve_workflow,
)
from apr.constants import (
    APR_DIR_NAME,
    LOGS_DIR_NAME,
    ORACLE_INSTALL_HINT,
)
from apr.envelope import error_envelope, exit_code_for, success_envelope
from apr.locking import LockManager
from apr.models import (
    AprError,
    DependencyMissingError,
    InvocationContext,
    NotConfiguredError,
    OracleProbe,
    ProcessHandle,
    UsageError,
    ValidationFailedError,
    ValidationReport,
    WorkflowConfig,
    _coerce_positive_int,
)
from apr.oracle import Launcher, build_oracle_command, launch_oracle, make_slug, probe_oracle
from apr.prompts import render_integration_prompt, render_prompt, required_document_roles
from apr.rounds import RoundStore, parse_rounds_range
from apr.utils import _append_log, _write_text_atomic, get_version

LockFactory = Callable[[Path], LockManager]
OracleProber = Callable[[str], OracleProbe]

ROBOT_COMMAND_HELP = {
    "status": "Configuration and environment snapshot (never fails)",
    "workflows": "List workflows with their descriptions",
    "init": "Create the .apr/ skeleton (idempotent)",
    "validate": "validate <round>: check preconditions for a round",
    "run": "run <round>: launch a revision round in the background",
    "show": "show <round>: print the content of a round",
    "diff": "diff <a> [b]: diff round a -> b (or a-1 -> a)",
    "history": "List the rounds of a workflow in ascending order",
    "stats": "Round statistics (--export json|csv|md, --rounds A-B, --detailed)",
    "integrate": "integrate <round>: render the integration prompt (--output FILE)",
    "help": "Describe robot commands and flags",
}


@dataclass(frozen=True)
class RobotCollaborators:
    launcher: Launcher
    lock_factory: LockFactory
    oracle_probe: OracleProber


def _default_lock_factory(project_root: Path) -> LockManager:
    return LockManager(_locks_dir(project_root), project_root=project_root)


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _positional(args: argparse.Namespace, index: int) -> str | None:
    values = list(getattr(args, "robot_args", None) or [])
    if index < len(values):
        return str(values[index])
    return None


def require_round(raw: str | None, command: str) -> int:
    if raw is None:
        raise UsageError(
            f"{command} requires a round number",
            hint=f"Usage: {command} <round>",
        )
    parsed = _coerce_positive_int(raw)
    if parsed is None:
        raise UsageError(
            f"round must be a positive integer, got '{raw}'",
            hint=f"Usage: {command} <round>",
        )
    return parsed


# ---------------------------------------------------------------------------
# Shared round preparation (also used by human-mode `run`)
# ---------------------------------------------------------------------------


def validate_round(
    ctx: InvocationContext,
    round_raw: str | None,
    *,
    oracle_probe: OracleProber,
    lock_manager: LockManager | None = None,
) -> tuple[ValidationReport, WorkflowConfig | None, OracleProbe | None]:
    """Collect every precondition problem for a round instead of stopping at the first."""
    root = ctx.project_root
    report = ValidationReport(workflow=(ctx.workflow or "").strip(), round=None)
    if round_raw is None:
        report.errors.append("round number is required")
    else:
        report.round = _coerce_positive_int(round_raw)
        if report.round is None:
            report.errors.append(f"round must be a positive integer, got '{round_raw}'")

    apr_dir = _apr_dir(root)
    if not apr_dir.is_dir():
        report.errors.append(f"configuration directory not found: {apr_dir}")
        return (report, None, None)
    try:
        workflow = resolve_workflow(ctx.workflow, root)
    except AprError as exc:
        report.errors.append(exc.message)
        return (report, None, None)
    report.workflow = workflow.name

    _payload, yaml_error = read_workflow_yaml(workflow.path)
    if yaml_error:
        report.errors.append(yaml_error)

    for role in required_document_roles(include_impl=ctx.include_impl):
        path = workflow.document_path(role, root)
        if path is None:
            report.errors.append(f"{role} document is not configured in {workflow.path.name}")
        elif not path.is_file():
            report.errors.append(f"{role} document not found: {path}")
        elif path.stat().st_size == 0:
            report.warnings.append(f"{role} document is empty: {path}")

    if not (workflow.template_with_impl if ctx.include_impl else workflow.template):
        report.warnings.append(f"no template in {workflow.path.name}; the built-in template will be used")

    probe = oracle_probe(ctx.oracle_bin)
    if not probe.available:
        report.oracle_missing = True
        report.errors.append(f"oracle is not available. {ORACLE_INSTALL_HINT}")

    if report.round is not None:
        store = RoundStore(workflow, root)
        if report.round > 1:
            previous = store.round_path(report.round - 1)
            if not previous.is_file():
                report.errors.append(f"previous round {report.round - 1} output not found: {previous}")
        current = store.round_path(report.round)
        if current.exists():
            report.warnings.append(f"round {report.round} output already exists and will be overwritten: {current}")
        if lock_manager is not None:
            info = lock_manager.inspect(workflow.name, report.round)
            if info is not None and info["alive"]:
                report.warnings.append(f"round {report.round} is locked by running process {info['pid']}")
    return (report, workflow, probe)


def _validation_failure(report: ValidationReport) -> ValidationFailedError:
    return ValidationFailedError(
        f"validation failed with {len(report.errors)} error(s)",
        errors=report.errors,
        warnings=report.warnings,
        hint="Fix the problems listed in data.errors and retry",
        details=report.payload(),
    )


def raise_for_report(report: ValidationReport) -> None:
    """A missing oracle on its own is a dependency problem, not a validation one."""
    if report.valid:
        return
    if report.oracle_missing and len(report.errors) == 1:
        raise DependencyMissingError(report.errors[0], hint=ORACLE_INSTALL_HINT)
    raise _validation_failure(report)


def session_log_path(ctx: InvocationContext, slug: str) -> Path:
    base = ctx.cache_dir if ctx.cache_dir is not None else _apr_dir(ctx.project_root) / LOGS_DIR_NAME
    return base / "sessions" / f"{slug}.log"


def launch_round(
    workflow: WorkflowConfig,
    round_number: int,
    ctx: InvocationContext,
    *,
    probe: OracleProbe,
    launcher: Launcher,
    lock_manager: LockManager,
    login: bool = False,
    keep_browser: bool = False,
) -> ProcessHandle:
    """Lock the round, start oracle detached, and hand the lock to its PID."""
    with lock_manager.held(workflow.name, round_number):
        prompt = render_prompt(
            workflow,
            ctx.project_root,
            include_impl=ctx.include_impl,
            round_number=round_number,
        )
        output_file = RoundStore(workflow, ctx.project_root).round_path(round_number)
        slug = make_slug(workflow.name, round_number, include_impl=ctx.include_impl)
        argv = build_oracle_command(
            probe,
            model=workflow.model,
            prompt=prompt,
            slug=slug,
            output_file=output_file,
            login=login,
            keep_browser=keep_browser,
        )
        handle = launcher(argv, output_file, slug, session_log_path(ctx, slug))
        lock_manager.transfer(handle.pid)
    _append_log(
        ctx.project_root,
        f"run launched workflow={workflow.name} round={round_number} slug={handle.slug} pid={handle.pid}",
    )
    return handle


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _robot_status(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    root = ctx.project_root
    configured = _apr_dir(root).is_dir()
    workflows = [entry["name"] for entry in list_workflows(root)] if configured else []
    probe = services.oracle_probe(ctx.oracle_bin)
    return {
        "configured": configured,
        "default_workflow": get_default_workflow(root) if configured else "",
        "workflow_count": len(workflows),
        "workflows": workflows,
        "oracle_available": probe.available,
        "oracle_method": probe.method,
        "version": get_version(),
        "output_format": ctx.output_format,
        "check_updates": ctx.check_updates,
        "paths": {
            "project_root": str(root),
            "config_dir": str(_apr_dir(root)),
            "data_dir": str(ctx.data_dir) if ctx.data_dir is not None else "",
            "cache_dir": str(ctx.cache_dir) if ctx.cache_dir is not None else "",
        },
        "environment": {
            "no_color": ctx.no_color,
            "ci": ctx.ci,
            "no_gum": ctx.no_gum,
        },
    }


def _robot_workflows(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    if not _apr_dir(ctx.project_root).is_dir():
        raise NotConfiguredError(
            f"no {APR_DIR_NAME}/ directory in {ctx.project_root}",
            hint="Run `apr robot init` to create one",
        )
    workflows = list_workflows(ctx.project_root)
    return {"workflows": workflows, "count": len(workflows)}


def _robot_init(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    result = init_project(ctx.project_root)
    return {**result, "config_dir": str(_apr_dir(ctx.project_root))}


def _robot_validate(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    report, _workflow, _probe = validate_round(
        ctx,
        _positional(args, 0),
        oracle_probe=services.oracle_probe,
        lock_manager=services.lock_factory(ctx.project_root),
    )
    if not report.valid:
        raise _validation_failure(report)
    return report.payload()


def _robot_run(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    round_number = require_round(_positional(args, 0), "run")
    resolve_workflow(ctx.workflow, ctx.project_root)
    lock_manager = services.lock_factory(ctx.project_root)
    report, workflow, probe = validate_round(
        ctx,
        str(round_number),
        oracle_probe=services.oracle_probe,
        lock_manager=lock_manager,
    )
    raise_for_report(report)
    if workflow is None or probe is None:
        raise NotConfiguredError(f"workflow could not be resolved for round {round_number}")
    overwrites = RoundStore(workflow, ctx.project_root).round_path(round_number).exists()
    handle = launch_round(
        workflow,
        round_number,
        ctx,
        probe=probe,
        launcher=services.launcher,
        lock_manager=lock_manager,
    )
    return {
        "slug": handle.slug,
        "pid": handle.pid,
        "output_file": str(handle.output_file),
        "workflow": workflow.name,
        "round": round_number,
        "include_impl": ctx.include_impl,
        "status": "running",
        "model": workflow.model,
        "overwrites": overwrites,
        "warnings": list(report.warnings),
    }


def _robot_show(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    round_number = require_round(_positional(args, 0), "show")
    workflow = resolve_workflow(ctx.workflow, ctx.project_root)
    item = RoundStore(workflow, ctx.project_root).read_round(round_number)
    content = item.content
    return {
        "workflow": workflow.name,
        "round": item.round,
        "file": str(item.path),
        "content": content,
        "chars": len(content),
        "lines": len(content.splitlines()),
    }


def _robot_diff(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    first = require_round(_positional(args, 0), "diff")
    raw_second = _positional(args, 1)
    second = require_round(raw_second, "diff") if raw_second is not None else None
    workflow = resolve_workflow(ctx.workflow, ctx.project_root)
    return RoundStore(workflow, ctx.project_root).diff_rounds(first, second)


def _robot_history(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    workflow = resolve_workflow(ctx.workflow, ctx.project_root)
    rounds = RoundStore(workflow, ctx.project_root).history()
    return {
        "workflow": workflow.name,
        "count": len(rounds),
        "rounds": [item.summary() for item in rounds],
    }


def _robot_stats(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    rounds_text = getattr(args, "rounds", None)
    rounds = parse_rounds_range(rounds_text) if rounds_text else None
    workflow = resolve_workflow(ctx.workflow, ctx.project_root)
    store = RoundStore(workflow, ctx.project_root)
    export = getattr(args, "export", None)
    if not export:
        return store.compute_stats(detailed=bool(getattr(args, "detailed", False)), rounds=rounds)
    payload = store.export_stats(export, rounds=rounds)
    if export == "json":
        return payload
    return {"format": export, "workflow": workflow.name, "content": payload}


def _robot_integrate(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    round_number = require_round(_positional(args, 0), "integrate")
    workflow = resolve_workflow(ctx.workflow, ctx.project_root)
    item = RoundStore(workflow, ctx.project_root).read_round(round_number)
    prompt = render_integration_prompt(
        workflow,
        ctx.project_root,
        round_number=round_number,
        feedback=item.content,
    )
    data: dict[str, Any] = {"workflow": workflow.name, "round": round_number, "chars": len(prompt)}
    output = getattr(args, "output", None)
    if output:
        output_path = Path(output).expanduser()
        if not output_path.is_absolute():
            output_path = ctx.project_root / output_path
        _write_text_atomic(output_path, prompt)
        data["output_file"] = str(output_path)
    else:
        data["prompt"] = prompt
    return data


def _describe_options(parser: argparse.ArgumentParser) -> list[dict[str, Any]]:
    options: list[dict[str, Any]] = []
    for action in parser._actions:
        if not action.option_strings or action.help == argparse.SUPPRESS:
            continue
        options.append({"flags": list(action.option_strings), "help": action.help or ""})
    return options


def _robot_help(args: argparse.Namespace, ctx: InvocationContext, services: RobotCollaborators) -> dict[str, Any]:
    from apr.commands import _build_parser, _find_subparser

    robot_parser = _find_subparser(_build_parser(), "robot")
    return {
        "usage": robot_parser.format_usage().strip(),
        "commands": [{"name": name, "help": text} for name, text in ROBOT_COMMAND_HELP.items()],
        "options": _describe_options(robot_parser),
        "text": robot_parser.format_help(),
    }


_HANDLERS: dict[str, Callable[[argparse.Namespace, InvocationContext, RobotCollaborators], dict[str, Any]]] = {
    "status": _robot_status,
    "workflows": _robot_workflows,
    "init": _robot_init,
    "validate": _robot_validate,
    "run": _robot_run,
    "show": _robot_show,
    "diff": _robot_diff,
    "history": _robot_history,
    "stats": _robot_stats,
    "integrate": _robot_integrate,
    "help": _robot_help,
}


def dispatch(
    command: str,
    args: argparse.Namespace,
    ctx: InvocationContext,
    *,
    launcher: Launcher | None = None,
    lock_factory: LockFactory | None = None,
    oracle_probe: OracleProber | None = None,
) -> tuple[dict[str, Any], int]:
    services = RobotCollaborators(
        launcher=launcher or launch_oracle,
        lock_factory=lock_factory or _default_lock_factory,
        oracle_probe=oracle_probe or probe_oracle,
    )
    handler = _HANDLERS.get(command)
    try:
        if handler is None:
            raise UsageError(
                f"unknown robot command '{command}'",
                hint="Run `apr robot help` for the command list",
            )
        data = handler(args, ctx, services)
    except AprError as exc:
        _append_log(ctx.project_root, f"robot {command} failed code={exc.code}: {exc.message}")
        envelope = error_envelope(exc.code, exc.message, data=exc.details, hint=exc.hint)
    else:
        envelope = success_envelope(data)
    return (envelope, exit_code_for(envelope))
