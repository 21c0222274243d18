from __future__ import annotations

import argparse
import contextlib
import json
import os
import re
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any, Iterator, Mapping, NoReturn

from apr import robot as robot_module
from apr.config import (
    _locks_dir,
    _workflow_path,
    _validate_workflow_name,
    get_default_workflow,
    init_project,
    list_workflows,
    render_workflow_yaml,
    resolve_workflow,
    write_project_config,
    write_workflow_config,
)
from apr.constants import (
    APR_DIR_NAME,
    CLIPBOARD_COMMANDS,
    CODE_USAGE_ERROR,
    DEFAULT_ORACLE_MODEL,
    DEFAULT_STATUS_HOURS,
    DEFAULT_TEMPLATE,
    DEFAULT_TEMPLATE_WITH_IMPL,
    DEFAULT_WORKFLOW_NAME,
    ENV_CACHE,
    ENV_CHECK_UPDATES,
    ENV_CI,
    ENV_HOME,
    ENV_NO_COLOR,
    ENV_NO_GUM,
    ENV_ORACLE_BIN,
    ENV_TOON_BIN,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    ORACLE_COMMAND,
    ORACLE_INSTALL_HINT,
    OUTPUT_FORMATS,
    STATS_EXPORT_FORMATS,
)
from apr.envelope import emit_envelope, error_envelope, exit_code_for, resolve_output_format
from apr.locking import LockManager
from apr.models import (
    AprError,
    DependencyMissingError,
    InvocationContext,
    NotConfiguredError,
    OracleError,
    OracleProbe,
    UsageError,
    WorkflowConfig,
    _coerce_bool,
)
from apr.oracle import (
    build_oracle_command,
    format_command_for_display,
    launch_oracle,
    make_slug,
    probe_oracle,
    run_oracle_blocking,
)
from apr.prompts import render_integration_prompt, render_prompt
from apr.rounds import RoundStore, parse_rounds_range
from apr.ui import Console
from apr.utils import _append_log, _write_text_atomic, get_version

_LOCK_FILE_PATTERN = re.compile(r"^(?P<workflow>.+)_round_(?P<round>\d+)\.lock$")


# ---------------------------------------------------------------------------
# Invocation context
# ---------------------------------------------------------------------------


def _xdg_dir(environ: Mapping[str, str], override: str, xdg_var: str, fallback: str) -> Path:
    explicit = environ.get(override, "").strip()
    if explicit:
        return Path(explicit).expanduser()
    base = environ.get(xdg_var, "").strip()
    root = Path(base).expanduser() if base else Path.home() / fallback
    return root / "apr"


def _build_context(
    args: argparse.Namespace,
    environ: Mapping[str, str],
    *,
    output_format: str = "json",
) -> InvocationContext:
    return InvocationContext(
        project_root=Path.cwd(),
        workflow=getattr(args, "workflow", None),
        output_format=output_format,
        compact=bool(getattr(args, "compact", False)),
        stats=bool(getattr(args, "stats", False)),
        include_impl=bool(getattr(args, "include_impl", False)),
        quiet=bool(getattr(args, "quiet", False)),
        toon_bin=environ.get(ENV_TOON_BIN, "").strip(),
        data_dir=_xdg_dir(environ, ENV_HOME, "XDG_DATA_HOME", ".local/share"),
        cache_dir=_xdg_dir(environ, ENV_CACHE, "XDG_CACHE_HOME", ".cache"),
        check_updates=environ.get(ENV_CHECK_UPDATES, "1").strip() != "0",
        no_color=bool(environ.get(ENV_NO_COLOR, "")),
        ci=_coerce_bool(environ.get(ENV_CI, "")),
        no_gum=_coerce_bool(environ.get(ENV_NO_GUM, "")),
        oracle_bin=environ.get(ENV_ORACLE_BIN, "").strip(),
    )


def _console(ctx: InvocationContext) -> Console:
    return Console(quiet=ctx.quiet, color=False if (ctx.no_color or ctx.ci) else None)


def _fail(console: Console, exc: AprError) -> int:
    console.error(exc.message, hint=exc.hint)
    for detail in getattr(exc, "errors", []):
        if detail != exc.message:
            console.error(detail)
    return EXIT_USAGE if exc.code == CODE_USAGE_ERROR else EXIT_FAILURE


# ---------------------------------------------------------------------------
# Robot mode
# ---------------------------------------------------------------------------


def _emit_robot_error(exc: AprError, args: argparse.Namespace) -> int:
    environ = os.environ
    ctx = _build_context(args, environ, output_format=resolve_output_format(None, environ))
    envelope = error_envelope(exc.code, exc.message, data=exc.details, hint=exc.hint)
    emit_envelope(envelope, ctx)
    return exit_code_for(envelope)


def _cmd_robot(args: argparse.Namespace) -> int:
    environ = os.environ
    try:
        output_format = resolve_output_format(args.format, environ)
    except UsageError as exc:
        return _emit_robot_error(exc, args)
    ctx = _build_context(args, environ, output_format=output_format)
    envelope, exit_code = robot_module.dispatch(args.robot_command, args, ctx)
    emit_envelope(envelope, ctx)
    return exit_code


class _AprArgumentParser(argparse.ArgumentParser):
    """Parser whose errors become ``UsageError`` when ``raise_usage_errors`` is set."""

    def __init__(self, *args: Any, raise_usage_errors: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.raise_usage_errors = raise_usage_errors

    def error(self, message: str) -> NoReturn:
        if self.raise_usage_errors:
            raise UsageError(message, hint="Run `apr robot help` for commands and flags")
        super().error(message)


# ---------------------------------------------------------------------------
# Human mode: run
# ---------------------------------------------------------------------------


def _dry_run_probe(oracle_bin: str) -> OracleProbe:
    probe = probe_oracle(oracle_bin)
    if probe.available:
        return probe
    return OracleProbe(True, "none", (ORACLE_COMMAND,))


def _copy_to_clipboard(text: str) -> str:
    for argv in CLIPBOARD_COMMANDS:
        if shutil.which(argv[0]) is None:
            continue
        proc = subprocess.run(list(argv), input=text, text=True, check=False)
        if proc.returncode == 0:
            return argv[0]
    raise DependencyMissingError(
        "no clipboard command available",
        hint="Install one of: " + ", ".join(argv[0] for argv in CLIPBOARD_COMMANDS),
    )


@contextlib.contextmanager
def _exit_on_sigterm() -> Iterator[None]:
    """Turn SIGTERM into ``SystemExit`` so lock cleanup runs on the way out."""

    def _handle(signum: int, frame: Any) -> None:
        raise SystemExit(128 + signum)

    previous = signal.signal(signal.SIGTERM, _handle)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _run_and_wait(
    workflow: WorkflowConfig,
    round_number: int,
    ctx: InvocationContext,
    *,
    probe: OracleProbe,
    lock_manager: LockManager,
    args: argparse.Namespace,
    console: Console,
) -> int:
    store = RoundStore(workflow, ctx.project_root)
    output_file = store.round_path(round_number)
    with _exit_on_sigterm(), lock_manager.held(workflow.name, round_number):
        prompt = render_prompt(workflow, ctx.project_root, include_impl=ctx.include_impl, round_number=round_number)
        argv = build_oracle_command(
            probe,
            model=workflow.model,
            prompt=prompt,
            slug=make_slug(workflow.name, round_number, include_impl=ctx.include_impl),
            output_file=output_file,
            login=args.login,
            keep_browser=args.keep_browser,
        )
        output_file.parent.mkdir(parents=True, exist_ok=True)
        console.info(f"waiting for oracle (round {round_number}, model {workflow.model})")
        _append_log(ctx.project_root, f"run wait workflow={workflow.name} round={round_number}")
        returncode = run_oracle_blocking(argv)
    if returncode != 0:
        raise OracleError(f"oracle exited with status {returncode}")
    if not output_file.is_file():
        raise OracleError(f"oracle finished without writing {output_file}")
    entry = store.record_round(round_number)
    console.ok(f"round {round_number} written to {output_file} ({entry['output_chars']} chars)")
    return EXIT_OK


def _cmd_run(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    try:
        round_number = robot_module.require_round(args.round, "run")
        workflow = resolve_workflow(ctx.workflow, root)

        if args.render or args.copy:
            prompt = render_prompt(workflow, root, include_impl=ctx.include_impl, round_number=round_number)
            if args.render:
                sys.stdout.write(prompt if prompt.endswith("\n") else prompt + "\n")
            if args.copy:
                tool = _copy_to_clipboard(prompt)
                console.ok(f"prompt copied to clipboard with {tool} ({len(prompt)} chars)")
            return EXIT_OK

        lock_manager = LockManager(_locks_dir(root), project_root=root)
        report, workflow, probe = robot_module.validate_round(
            ctx,
            str(round_number),
            oracle_probe=_dry_run_probe if args.dry_run else probe_oracle,
            lock_manager=lock_manager,
        )
        for warning in report.warnings:
            console.warn(warning)
        robot_module.raise_for_report(report)
        if workflow is None or probe is None:
            raise NotConfiguredError(f"workflow could not be resolved for round {round_number}")

        if args.dry_run:
            output_file = RoundStore(workflow, root).round_path(round_number)
            prompt = render_prompt(workflow, root, include_impl=ctx.include_impl, round_number=round_number)
            argv = build_oracle_command(
                probe,
                model=workflow.model,
                prompt=prompt,
                slug=make_slug(workflow.name, round_number, include_impl=ctx.include_impl),
                output_file=output_file,
                login=args.login,
                keep_browser=args.keep_browser,
            )
            print(format_command_for_display(argv))
            return EXIT_OK

        if args.wait:
            return _run_and_wait(
                workflow,
                round_number,
                ctx,
                probe=probe,
                lock_manager=lock_manager,
                args=args,
                console=console,
            )

        handle = robot_module.launch_round(
            workflow,
            round_number,
            ctx,
            probe=probe,
            launcher=launch_oracle,
            lock_manager=lock_manager,
            login=args.login,
            keep_browser=args.keep_browser,
        )
    except AprError as exc:
        return _fail(console, exc)

    console.ok(f"round {round_number} started: slug={handle.slug} pid={handle.pid}")
    console.info(f"output: {handle.output_file}")
    console.info(f"attach: apr attach {handle.slug}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Human mode: setup / status / attach / list
# ---------------------------------------------------------------------------


def _ask(label: str, default: str, *, interactive: bool) -> str:
    if not interactive:
        return default
    suffix = f" [{default}]" if default else ""
    answer = input(f"{label}{suffix}: ").strip()
    return answer or default


def _cmd_setup(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    interactive = sys.stdin.isatty() and not ctx.ci
    try:
        name = _validate_workflow_name(args.name or _ask("Workflow name", DEFAULT_WORKFLOW_NAME, interactive=interactive))
        readme = args.readme or _ask("README path", "README.md", interactive=interactive)
        spec = args.spec or _ask("Specification path", "", interactive=interactive)
        if not spec:
            raise UsageError("setup requires a specification path", hint="Pass --spec PATH")
        impl = args.impl if args.impl is not None else _ask("Implementation path (optional)", "", interactive=interactive)
        model = args.model or _ask("Oracle model", DEFAULT_ORACLE_MODEL, interactive=interactive)
        if _workflow_path(root, name).exists() and not args.force:
            raise UsageError(f"workflow '{name}' already exists", hint="Pass --force to overwrite it")

        init_project(root)
        documents = {"readme": readme, "spec": spec}
        if impl:
            documents["implementation"] = impl
        for role, raw in documents.items():
            candidate = Path(raw).expanduser()
            if not candidate.is_absolute():
                candidate = root / candidate
            if not candidate.exists():
                console.warn(f"{role} document does not exist yet: {raw}")
        content = render_workflow_yaml(
            name=name,
            description=args.description or f"Revision workflow for {spec}",
            documents=documents,
            model=model,
            output_dir=f"{APR_DIR_NAME}/rounds/{name}",
            template=DEFAULT_TEMPLATE,
            template_with_impl=DEFAULT_TEMPLATE_WITH_IMPL if impl else "",
        )
        path = write_workflow_config(root, name, content)
        current_default = get_default_workflow(root)
        if args.default or not current_default or not _workflow_path(root, current_default).exists():
            write_project_config(root, default_workflow=name)
            console.info(f"default workflow: {name}")
    except AprError as exc:
        return _fail(console, exc)
    _append_log(root, f"setup workflow={name} path={path}")
    console.ok(f"workflow '{name}' written to {path}")
    return EXIT_OK


def _active_locks(root: Path) -> list[dict[str, Any]]:
    locks_dir = _locks_dir(root)
    if not locks_dir.is_dir():
        return []
    manager = LockManager(locks_dir, project_root=root)
    entries: list[dict[str, Any]] = []
    for path in sorted(locks_dir.glob("*.lock")):
        match = _LOCK_FILE_PATTERN.match(path.name)
        if match is None:
            continue
        info = manager.inspect(match.group("workflow"), int(match.group("round")))
        if info is not None:
            entries.append({"workflow": match.group("workflow"), "round": int(match.group("round")), **info})
    return entries


def _cmd_status(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    configured = (root / APR_DIR_NAME).is_dir()

    print("apr status")
    print(f"version: {get_version()}")
    print(f"project_root: {root}")
    print(f"configured: {'yes' if configured else 'no'}")
    if configured:
        print(f"default_workflow: {get_default_workflow(root) or '<none>'}")
        names = [entry["name"] for entry in list_workflows(root)]
        print(f"workflows: {', '.join(names) if names else '<none>'}")
        locks = _active_locks(root)
        if locks:
            print("locks:")
            for lock in locks:
                state = f"held by PID {lock['pid']}" if lock["alive"] else "stale"
                print(f"  {lock['workflow']} round {lock['round']}: {state}")
        else:
            print("locks: none")

    probe = probe_oracle(ctx.oracle_bin)
    print(f"oracle: {probe.method if probe.available else 'not found'}")
    if not probe.available:
        console.warn(ORACLE_INSTALL_HINT)
        return EXIT_OK
    try:
        proc = subprocess.run([*probe.argv, "status", "--hours", str(args.hours)], check=False)
    except OSError as exc:
        return _fail(console, OracleError(f"failed to query oracle sessions: {exc}"))
    return EXIT_OK if proc.returncode == 0 else EXIT_FAILURE


def _cmd_attach(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    probe = probe_oracle(ctx.oracle_bin)
    try:
        if not probe.available:
            raise DependencyMissingError("oracle is not available", hint=ORACLE_INSTALL_HINT)
        returncode = run_oracle_blocking([*probe.argv, "session", args.slug])
    except AprError as exc:
        return _fail(console, exc)
    return EXIT_OK if returncode == 0 else EXIT_FAILURE


def _cmd_list(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    if not (root / APR_DIR_NAME).is_dir():
        return _fail(
            console,
            NotConfiguredError(f"no {APR_DIR_NAME}/ directory in {root}", hint="Run `apr setup` to create one"),
        )
    workflows = list_workflows(root)
    if not workflows:
        console.info("no workflows yet; run `apr setup`")
        return EXIT_OK
    default = get_default_workflow(root)
    width = max(len(entry["name"]) for entry in workflows)
    for entry in workflows:
        marker = "*" if entry["name"] == default else " "
        print(f"{marker} {entry['name']:<{width}}  {entry['description']}".rstrip())
    return EXIT_OK


# ---------------------------------------------------------------------------
# Human mode: rounds
# ---------------------------------------------------------------------------


def _cmd_history(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    try:
        workflow = resolve_workflow(ctx.workflow, ctx.project_root)
        rounds = RoundStore(workflow, ctx.project_root).history()
    except AprError as exc:
        return _fail(console, exc)
    if not rounds:
        console.info(f"no rounds yet for workflow '{workflow.name}'")
        return EXIT_OK
    print(f"workflow: {workflow.name} ({len(rounds)} rounds)")
    for item in rounds:
        summary = item.summary()
        print(f"  round {summary['round']:>3}  {summary['size']:>8} bytes  {summary['modified']}  {summary['file']}")
    return EXIT_OK


def _cmd_show(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    try:
        round_number = robot_module.require_round(args.round, "show")
        workflow = resolve_workflow(ctx.workflow, ctx.project_root)
        content = RoundStore(workflow, ctx.project_root).read_round(round_number).content
    except AprError as exc:
        return _fail(console, exc)
    sys.stdout.write(content if content.endswith("\n") else content + "\n")
    return EXIT_OK


def _cmd_diff(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    try:
        first = robot_module.require_round(args.first, "diff")
        second = robot_module.require_round(args.second, "diff") if args.second is not None else None
        workflow = resolve_workflow(ctx.workflow, ctx.project_root)
        result = RoundStore(workflow, ctx.project_root).diff_rounds(first, second)
    except AprError as exc:
        return _fail(console, exc)
    comparing = result["comparing"]
    if result["identical"]:
        console.info(f"round {comparing['from']} and round {comparing['to']} are identical")
        return EXIT_OK
    sys.stdout.write(result["diff"])
    console.info(f"+{result['added_lines']} -{result['removed_lines']} lines (round {comparing['from']} -> {comparing['to']})")
    return EXIT_OK


def _print_stats(stats: dict[str, Any]) -> None:
    print(f"workflow: {stats['workflow']}")
    print(f"rounds: {stats['count']}")
    print(f"output chars: total {stats['total_chars']}, avg {stats['avg_chars']}, min {stats['min_chars']}, max {stats['max_chars']}")
    convergence = stats["convergence"]
    if convergence["score"] is None:
        print("convergence: not enough rounds")
    else:
        print(f"convergence: {convergence['score']} ({convergence['trend']})")
    for detail in stats.get("rounds", []):
        change = detail["change_ratio"]
        change_text = "-" if change is None else f"{change:+.1%}"
        flag = " (backfilled)" if detail["backfilled"] else ""
        print(f"  round {detail['round']:>3}  {detail['output_chars']:>8} chars  {change_text:>8}{flag}")


def _cmd_stats(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    try:
        rounds = parse_rounds_range(args.rounds) if args.rounds else None
        workflow = resolve_workflow(ctx.workflow, ctx.project_root)
        store = RoundStore(workflow, ctx.project_root)
        if args.export:
            payload = store.export_stats(args.export, rounds=rounds)
            if isinstance(payload, dict):
                print(json.dumps(payload, indent=2))
            else:
                sys.stdout.write(payload)
            return EXIT_OK
        stats = store.compute_stats(detailed=args.detailed, rounds=rounds)
    except AprError as exc:
        return _fail(console, exc)
    if args.json:
        print(json.dumps(stats, indent=2))
    else:
        _print_stats(stats)
    return EXIT_OK


def _cmd_backfill(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    try:
        if args.all:
            if not (root / APR_DIR_NAME).is_dir():
                raise NotConfiguredError(f"no {APR_DIR_NAME}/ directory in {root}", hint="Run `apr setup` to create one")
            names = [entry["name"] for entry in list_workflows(root)]
        else:
            names = [resolve_workflow(ctx.workflow, root).name]
    except AprError as exc:
        return _fail(console, exc)

    failures = 0
    for name in names:
        try:
            workflow = resolve_workflow(name, root)
            result = RoundStore(workflow, root).backfill(force=args.force)
        except AprError as exc:
            if not args.all:
                return _fail(console, exc)
            console.warn(f"{name}: {exc.message}")
            failures += 1
            continue
        console.ok(
            f"{name}: backfilled {len(result['backfilled'])} round(s), "
            f"skipped {len(result['skipped'])}, {result['total']} total"
        )
    return EXIT_FAILURE if failures and failures == len(names) else EXIT_OK


def _cmd_integrate(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    root = ctx.project_root
    try:
        round_number = robot_module.require_round(args.round, "integrate")
        workflow = resolve_workflow(ctx.workflow, root)
        feedback = RoundStore(workflow, root).read_round(round_number).content
        prompt = render_integration_prompt(workflow, root, round_number=round_number, feedback=feedback)
        if args.copy:
            tool = _copy_to_clipboard(prompt)
            console.ok(f"integration prompt copied to clipboard with {tool} ({len(prompt)} chars)")
            return EXIT_OK
    except AprError as exc:
        return _fail(console, exc)
    if args.output:
        output_path = Path(args.output).expanduser()
        if not output_path.is_absolute():
            output_path = root / output_path
        _write_text_atomic(output_path, prompt)
        console.ok(f"integration prompt written to {output_path}")
        return EXIT_OK
    sys.stdout.write(prompt if prompt.endswith("\n") else prompt + "\n")
    return EXIT_OK


def _cmd_dashboard(args: argparse.Namespace) -> int:
    ctx = _build_context(args, os.environ)
    console = _console(ctx)
    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        console.error("dashboard requires an interactive terminal")
        return EXIT_FAILURE
    root = ctx.project_root
    if not (root / APR_DIR_NAME).is_dir():
        return _fail(console, NotConfiguredError(f"no {APR_DIR_NAME}/ directory in {root}", hint="Run `apr setup` to create one"))

    live_locks = {(lock["workflow"], lock["round"]) for lock in _active_locks(root) if lock["alive"]}
    default = get_default_workflow(root)
    print(f"APR dashboard  {root}")
    print(f"{'workflow':<20} {'rounds':>6} {'latest':>7} {'convergence':>12}  running")
    for entry in list_workflows(root):
        try:
            workflow = resolve_workflow(entry["name"], root)
        except AprError as exc:
            console.warn(f"{entry['name']}: {exc.message}")
            continue
        store = RoundStore(workflow, root)
        rounds = store.list_rounds()
        latest = str(rounds[-1].round) if rounds else "-"
        try:
            score = store.compute_stats()["convergence"]["score"]
        except AprError:
            score = None
        convergence = "-" if score is None else f"{score:.3f}"
        running = ", ".join(str(number) for name, number in sorted(live_locks) if name == workflow.name) or "-"
        label = f"{workflow.name}{' *' if workflow.name == default else ''}"
        print(f"{label:<20} {len(rounds):>6} {latest:>7} {convergence:>12}  {running}")
    return EXIT_OK


def _cmd_help(args: argparse.Namespace) -> int:
    _build_parser().print_help()
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _find_subparser(parser: argparse.ArgumentParser, name: str) -> argparse.ArgumentParser:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction) and name in action.choices:
            return action.choices[name]
    raise KeyError(name)


def _robot_epilog() -> str:
    width = max(len(name) for name in robot_module.ROBOT_COMMAND_HELP)
    lines = ["commands:"]
    for name, text in robot_module.ROBOT_COMMAND_HELP.items():
        lines.append(f"  {name:<{width}}  {text}")
    lines.extend(
        [
            "",
            "Every command prints one {ok, code, data, hint?, meta} envelope on stdout.",
            "Failures also print APR_ERROR_CODE=<code> on stderr.",
        ]
    )
    return "\n".join(lines)


def _add_workflow_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-w", "--workflow", default=None, help="Workflow name (default: default_workflow in .apr/config.yaml)")


def _add_quiet_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print errors and command output")


def _build_parser() -> argparse.ArgumentParser:
    parser = _AprArgumentParser(prog="apr", description="Automated Plan Reviser: iterative specification review rounds")
    parser.add_argument("-V", "--version", action="version", version=f"apr {get_version()}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a revision round")
    run.add_argument("round", help="Round number")
    _add_workflow_option(run)
    _add_quiet_option(run)
    run.add_argument("-i", "--include-impl", action="store_true", help="Include the implementation document in the prompt")
    run.add_argument("-d", "--dry-run", action="store_true", help="Print the oracle command without running it")
    run.add_argument("-r", "--render", action="store_true", help="Print the rendered prompt to stdout")
    run.add_argument("-c", "--copy", action="store_true", help="Copy the rendered prompt to the clipboard")
    run.add_argument("--wait", action="store_true", help="Block until oracle finishes and record metrics")
    run.add_argument("--login", action="store_true", help="Let oracle open the browser for a manual login")
    run.add_argument("--keep-browser", action="store_true", help="Keep the browser open after the session")
    run.set_defaults(handler=_cmd_run)

    setup = subparsers.add_parser("setup", help="Create or replace a workflow")
    _add_quiet_option(setup)
    setup.add_argument("--name", default=None, help=f"Workflow name (default: {DEFAULT_WORKFLOW_NAME})")
    setup.add_argument("--description", default=None, help="One-line workflow description")
    setup.add_argument("--readme", default=None, help="Path to the README document")
    setup.add_argument("--spec", default=None, help="Path to the specification document")
    setup.add_argument("--impl", default=None, help="Path to the implementation document (optional)")
    setup.add_argument("--model", default=None, help=f"Oracle model (default: {DEFAULT_ORACLE_MODEL})")
    setup.add_argument("--default", action="store_true", help="Make this the default workflow")
    setup.add_argument("--force", action="store_true", help="Overwrite an existing workflow")
    setup.set_defaults(handler=_cmd_setup)

    status = subparsers.add_parser("status", help="Show project status and recent oracle sessions")
    _add_quiet_option(status)
    status.add_argument("--hours", type=int, default=DEFAULT_STATUS_HOURS, help=f"Session window in hours (default: {DEFAULT_STATUS_HOURS})")
    status.set_defaults(handler=_cmd_status)

    attach = subparsers.add_parser("attach", help="Attach to a running oracle session")
    attach.add_argument("slug", help="Session slug, e.g. apr-default-round-3")
    _add_quiet_option(attach)
    attach.set_defaults(handler=_cmd_attach)

    list_parser = subparsers.add_parser("list", help="List workflows")
    _add_quiet_option(list_parser)
    list_parser.set_defaults(handler=_cmd_list)

    history = subparsers.add_parser("history", help="List the rounds of a workflow")
    _add_workflow_option(history)
    _add_quiet_option(history)
    history.set_defaults(handler=_cmd_history)

    show = subparsers.add_parser("show", help="Print a round")
    show.add_argument("round", help="Round number")
    _add_workflow_option(show)
    _add_quiet_option(show)
    show.set_defaults(handler=_cmd_show)

    diff = subparsers.add_parser("diff", help="Diff two rounds (or a round against the previous one)")
    diff.add_argument("first", help="Round to diff from (or the round to compare with its predecessor)")
    diff.add_argument("second", nargs="?", default=None, help="Round to diff to")
    _add_workflow_option(diff)
    _add_quiet_option(diff)
    diff.set_defaults(handler=_cmd_diff)

    stats = subparsers.add_parser("stats", help="Round statistics")
    _add_workflow_option(stats)
    _add_quiet_option(stats)
    stats.add_argument("--json", action="store_true", help="Print statistics as JSON")
    stats.add_argument("--detailed", action="store_true", help="Include per-round details")
    stats.add_argument("--export", choices=STATS_EXPORT_FORMATS, default=None, help="Export format")
    stats.add_argument("--rounds", default=None, help="Inclusive round range A-B")
    stats.set_defaults(handler=_cmd_stats)

    backfill = subparsers.add_parser("backfill", help="Compute metrics for rounds that have none")
    _add_workflow_option(backfill)
    _add_quiet_option(backfill)
    backfill.add_argument("--all", action="store_true", help="Backfill every workflow")
    backfill.add_argument("--force", action="store_true", help="Recompute existing entries")
    backfill.set_defaults(handler=_cmd_backfill)

    integrate = subparsers.add_parser("integrate", help="Render the prompt that integrates a round into the spec")
    integrate.add_argument("round", help="Round number")
    _add_workflow_option(integrate)
    _add_quiet_option(integrate)
    integrate.add_argument("-o", "--output", default=None, help="Write the prompt to FILE instead of stdout")
    integrate.add_argument("-c", "--copy", action="store_true", help="Copy the prompt to the clipboard")
    integrate.set_defaults(handler=_cmd_integrate)

    dashboard = subparsers.add_parser("dashboard", help="Overview of every workflow (interactive terminals only)")
    _add_quiet_option(dashboard)
    dashboard.set_defaults(handler=_cmd_dashboard)

    help_parser = subparsers.add_parser("help", help="Show this help")
    help_parser.set_defaults(handler=_cmd_help)

    robot = subparsers.add_parser(
        "robot",
        help="Machine-readable JSON/TOON interface",
        description="Machine-readable interface for coding agents and scripts.",
        epilog=_robot_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        raise_usage_errors=True,
    )
    robot.add_argument("robot_command", nargs="?", default="help", help="Robot command (see below)")
    robot.add_argument("robot_args", nargs="*", help="Command arguments, e.g. a round number")
    _add_workflow_option(robot)
    robot.add_argument("-f", "--format", default=None, help=f"Output format: {' or '.join(OUTPUT_FORMATS)}")
    robot.add_argument("--compact", action="store_true", help="Minified JSON output")
    robot.add_argument("--stats", action="store_true", help="Report JSON vs TOON byte sizes on stderr")
    robot.add_argument("-i", "--include-impl", action="store_true", help="Include the implementation document")
    robot.add_argument("--export", default=None, help="stats: export format (json, csv or md)")
    robot.add_argument("--rounds", default=None, help="stats: inclusive round range A-B")
    robot.add_argument("--detailed", action="store_true", help="stats: include per-round details")
    robot.add_argument("--output", default=None, help="integrate: write the prompt to FILE")
    robot.set_defaults(handler=_cmd_robot)

    return parser


def main(argv: list[str] | None = None) -> int:
    arguments = list(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    try:
        args, extras = parser.parse_known_args(arguments)
        if getattr(args, "command", None) == "robot":
            # Options may sit between a robot command and its positional arguments.
            robot_argv = arguments[arguments.index("robot") + 1 :]
            args = _find_subparser(parser, "robot").parse_intermixed_args(robot_argv)
        elif extras:
            parser.error(f"unrecognized arguments: {' '.join(extras)}")
    except UsageError as exc:
        return _emit_robot_error(exc, argparse.Namespace())
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return EXIT_USAGE
    return int(handler(args))
