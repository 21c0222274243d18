"""APR round store: round files, diffs and metrics.

Rounds live at ``<output_dir>/round_<N>.md`` and are never modified once
written.  Metrics live at ``.apr/analytics/<workflow>/metrics.json`` keyed by
round number; an existing entry is only replaced when the caller forces it.
"""

from __future__ import annotations

import csv
import difflib
import io
from pathlib import Path
from typing import Any

from apr.config import _analytics_dir
from apr.constants import (
    CONVERGENCE_CONVERGING_THRESHOLD,
    CONVERGENCE_STABILIZING_THRESHOLD,
    CONVERGENCE_WINDOW,
    METRICS_FILE_NAME,
    METRICS_SCHEMA_VERSION,
    ROUND_FILE_PATTERN,
    ROUNDS_RANGE_PATTERN,
    STATS_CSV_HEADER,
    STATS_EXPORT_FORMATS,
    STATS_MD_TITLE,
)
from apr.models import (
    NotFoundError,
    Round,
    UsageError,
    ValidationFailedError,
    WorkflowConfig,
    _format_mtime,
)
from apr.utils import _append_log, _load_json_if_exists, _utc_now, _write_json


def parse_rounds_range(text: str) -> tuple[int, int]:
    """Parse ``A-B`` (inclusive on both ends) or a single ``N``."""
    match = ROUNDS_RANGE_PATTERN.match(str(text))
    if match is None:
        raise UsageError(f"invalid rounds range '{text}'", hint="Use --rounds A-B, e.g. --rounds 1-5")
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) is not None else start
    if start < 1 or end < start:
        raise UsageError(f"invalid rounds range '{text}'", hint="Range bounds must satisfy 1 <= A <= B")
    return (start, end)


def _measure(path: Path) -> dict[str, Any]:
    content = path.read_text(encoding="utf-8")
    return {
        "timestamp": _format_mtime(path.stat().st_mtime),
        "output_chars": len(content),
        "output_lines": len(content.splitlines()),
        "output_words": len(content.split()),
    }


def _convergence(entries: list[dict[str, Any]]) -> dict[str, Any]:
    window = entries[-CONVERGENCE_WINDOW:]
    considered = [int(entry["round"]) for entry in window]
    if len(window) < 2:
        return {"score": None, "trend": "insufficient_data", "rounds_considered": considered}
    ratios: list[float] = []
    for previous, current in zip(window, window[1:]):
        before = int(previous.get("output_chars", 0))
        after = int(current.get("output_chars", 0))
        ratios.append(abs(after - before) / max(before, 1))
    score = round(max(0.0, 1.0 - sum(ratios) / len(ratios)), 3)
    if score >= CONVERGENCE_CONVERGING_THRESHOLD:
        trend = "converging"
    elif score >= CONVERGENCE_STABILIZING_THRESHOLD:
        trend = "stabilizing"
    else:
        trend = "evolving"
    return {"score": score, "trend": trend, "rounds_considered": considered}


class RoundStore:
    def __init__(self, workflow: WorkflowConfig, project_root: Path) -> None:
        self.workflow = workflow
        self.project_root = project_root

    @property
    def output_dir(self) -> Path:
        return self.workflow.output_dir

    @property
    def metrics_path(self) -> Path:
        return _analytics_dir(self.project_root, self.workflow.name) / METRICS_FILE_NAME

    def round_path(self, round_number: int) -> Path:
        return self.output_dir / f"round_{int(round_number)}.md"

    def _require_output_dir(self) -> None:
        if not self.output_dir.is_dir():
            raise ValidationFailedError(
                f"rounds directory does not exist: {self.output_dir}",
                hint=f"Run `apr run 1 -w {self.workflow.name}` to create the first round",
            )

    # -- rounds ------------------------------------------------------------

    def list_rounds(self) -> list[Round]:
        if not self.output_dir.is_dir():
            return []
        found: list[Round] = []
        for path in self.output_dir.iterdir():
            match = ROUND_FILE_PATTERN.match(path.name)
            if match is None or not path.is_file():
                continue
            number = int(match.group(1))
            if number < 1:
                continue
            found.append(Round(round=number, workflow=self.workflow.name, path=path))
        return sorted(found, key=lambda item: item.round)

    def history(self) -> list[Round]:
        self._require_output_dir()
        return self.list_rounds()

    def read_round(self, round_number: int) -> Round:
        path = self.round_path(round_number)
        if not path.is_file():
            raise NotFoundError(
                f"round {round_number} not found for workflow '{self.workflow.name}'",
                hint=f"Expected {path}; list rounds with `apr history -w {self.workflow.name}`",
            )
        return Round(round=int(round_number), workflow=self.workflow.name, path=path)

    def diff_rounds(self, first: int, second: int | None = None) -> dict[str, Any]:
        """Diff ``first -> second``; with one argument diff ``first - 1 -> first``."""
        if second is None:
            if first <= 1:
                raise UsageError(
                    f"round {first} has no previous round to compare against",
                    hint="Pass two rounds, e.g. `diff 1 2`",
                )
            from_round, to_round = first - 1, first
        else:
            from_round, to_round = first, second
        before = self.read_round(from_round)
        after = self.read_round(to_round)
        diff_lines = list(
            difflib.unified_diff(
                before.content.splitlines(keepends=True),
                after.content.splitlines(keepends=True),
                fromfile=before.path.name,
                tofile=after.path.name,
            )
        )
        added = sum(1 for line in diff_lines if line.startswith("+") and not line.startswith("+++"))
        removed = sum(1 for line in diff_lines if line.startswith("-") and not line.startswith("---"))
        rendered = "".join(line if line.endswith("\n") else line + "\n" for line in diff_lines)
        return {
            "workflow": self.workflow.name,
            "comparing": {"from": from_round, "to": to_round},
            "identical": not diff_lines,
            "added_lines": added,
            "removed_lines": removed,
            "diff": rendered,
        }

    # -- metrics -----------------------------------------------------------

    def load_metrics(self) -> dict[str, Any] | None:
        payload = _load_json_if_exists(self.metrics_path)
        if not isinstance(payload, dict) or not isinstance(payload.get("rounds"), dict):
            return None
        return payload

    def _empty_metrics(self) -> dict[str, Any]:
        now = _utc_now()
        return {
            "schema_version": METRICS_SCHEMA_VERSION,
            "workflow": self.workflow.name,
            "created_at": now,
            "updated_at": now,
            "rounds": {},
        }

    def record_round(self, round_number: int, *, force: bool = True) -> dict[str, Any]:
        """Capture metrics for a round just written by a live session."""
        item = self.read_round(round_number)
        metrics = self.load_metrics() or self._empty_metrics()
        key = str(item.round)
        if key in metrics["rounds"] and not force:
            return metrics["rounds"][key]
        entry = {"round": item.round, **_measure(item.path), "backfilled": False}
        metrics["rounds"][key] = entry
        metrics["updated_at"] = _utc_now()
        _write_json(self.metrics_path, metrics)
        return entry

    def backfill(self, *, force: bool = False) -> dict[str, Any]:
        self._require_output_dir()
        metrics = self.load_metrics() or self._empty_metrics()
        backfilled: list[int] = []
        skipped: list[int] = []
        for item in self.list_rounds():
            key = str(item.round)
            if key in metrics["rounds"] and not force:
                skipped.append(item.round)
                continue
            metrics["rounds"][key] = {"round": item.round, **_measure(item.path), "backfilled": True}
            backfilled.append(item.round)
        metrics["rounds"] = dict(sorted(metrics["rounds"].items(), key=lambda pair: int(pair[0])))
        metrics["updated_at"] = _utc_now()
        _write_json(self.metrics_path, metrics)
        _append_log(
            self.project_root,
            f"backfill workflow={self.workflow.name} backfilled={backfilled} skipped={len(skipped)} force={force}",
        )
        return {
            "workflow": self.workflow.name,
            "backfilled": backfilled,
            "skipped": skipped,
            "total": len(metrics["rounds"]),
            "metrics_file": str(self.metrics_path),
        }

    def _metric_entries(self, rounds: tuple[int, int] | None) -> list[dict[str, Any]]:
        metrics = self.load_metrics()
        if metrics is None:
            raise ValidationFailedError(
                f"no metrics recorded for workflow '{self.workflow.name}'",
                hint=f"Run `apr backfill -w {self.workflow.name}` to compute metrics from existing rounds",
            )
        entries: list[dict[str, Any]] = []
        for key, entry in metrics["rounds"].items():
            if isinstance(entry, dict) and str(key).isdigit():
                entries.append({**entry, "round": int(key)})
        entries.sort(key=lambda entry: int(entry["round"]))
        if rounds is not None:
            start, end = rounds
            entries = [entry for entry in entries if start <= int(entry["round"]) <= end]
        return entries

    def compute_stats(self, *, detailed: bool = False, rounds: tuple[int, int] | None = None) -> dict[str, Any]:
        entries = self._metric_entries(rounds)
        sizes = [int(entry.get("output_chars", 0)) for entry in entries]
        stats: dict[str, Any] = {
            "workflow": self.workflow.name,
            "count": len(entries),
            "total_chars": sum(sizes),
            "avg_chars": round(sum(sizes) / len(sizes), 1) if sizes else 0,
            "min_chars": min(sizes) if sizes else 0,
            "max_chars": max(sizes) if sizes else 0,
            "sizes": [
                {"round": int(entry["round"]), "output_chars": size}
                for entry, size in zip(entries, sizes)
            ],
            "convergence": _convergence(entries),
        }
        if rounds is not None:
            stats["rounds_filter"] = {"from": rounds[0], "to": rounds[1]}
        if detailed:
            details: list[dict[str, Any]] = []
            previous: int | None = None
            for entry, size in zip(entries, sizes):
                change = None if previous is None else round((size - previous) / max(previous, 1), 3)
                details.append(
                    {
                        "round": int(entry["round"]),
                        "timestamp": entry.get("timestamp", ""),
                        "output_chars": size,
                        "output_lines": entry.get("output_lines", 0),
                        "output_words": entry.get("output_words", 0),
                        "backfilled": bool(entry.get("backfilled", False)),
                        "change_ratio": change,
                    }
                )
                previous = size
            stats["rounds"] = details
        return stats

    def export_stats(self, fmt: str, *, rounds: tuple[int, int] | None = None) -> Any:
        if fmt not in STATS_EXPORT_FORMATS:
            raise UsageError(
                f"unsupported export format '{fmt}'",
                hint=f"Choose one of: {', '.join(STATS_EXPORT_FORMATS)}",
            )
        entries = self._metric_entries(rounds)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(STATS_CSV_HEADER.split(","))
            for entry in entries:
                writer.writerow([int(entry["round"]), entry.get("timestamp", ""), int(entry.get("output_chars", 0))])
            return buffer.getvalue()

        summary = self.compute_stats(rounds=rounds)
        if fmt == "json":
            return {
                "schema_version": METRICS_SCHEMA_VERSION,
                "workflow": self.workflow.name,
                "generated_at": _utc_now(),
                "rounds": entries,
                "summary": {
                    key: summary[key]
                    for key in ("count", "total_chars", "avg_chars", "min_chars", "max_chars")
                },
                "convergence": summary["convergence"],
            }

        lines = [
            STATS_MD_TITLE,
            "",
            f"- Workflow: `{self.workflow.name}`",
            f"- Generated: {_utc_now()}",
            f"- Rounds: {summary['count']}",
            f"- Average output: {summary['avg_chars']} chars",
        ]
        convergence = summary["convergence"]
        if convergence["score"] is not None:
            lines.append(f"- Convergence: {convergence['score']} ({convergence['trend']})")
        lines.extend(
            [
                "",
                "| Round | Timestamp | Output chars | Backfilled |",
                "|---:|---|---:|:---:|",
            ]
        )
        for entry in entries:
            backfilled = "yes" if entry.get("backfilled") else "no"
            lines.append(
                f"| {int(entry['round'])} | {entry.get('timestamp', '')} | {int(entry.get('output_chars', 0))} | {backfilled} |"
            )
        return "\n".join(lines) + "\n"
