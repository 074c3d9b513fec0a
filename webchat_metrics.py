"""Run log for browser-mode calls, and the report built from it.

Each call can append one JSON line to ~/.webchat/logs/runs.jsonl. The
``webchat-metrics`` command folds those lines into failure counts per error
code and per phase, plus timing per model.

Usage:
    webchat-metrics              # Markdown report
    webchat-metrics --json       # Raw numbers
    webchat-metrics --last 50    # Only the most recent runs
"""

import argparse
import json
import logging
from collections import Counter, defaultdict
from pathlib import Path
from typing import Optional

from webchat_config import RUN_LOG_PATH

logger = logging.getLogger(__name__)


def append_run_log(entry: dict, log_path: Optional[Path] = None) -> None:
    """Append one run summary. A log that cannot be written only warns."""
    path = log_path or RUN_LOG_PATH
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except OSError as e:
        logger.warning("Failed to write run log %s: %s", path, e)


def load_runs(log_path: Optional[Path] = None) -> list[dict]:
    path = log_path or RUN_LOG_PATH
    if not path.exists():
        return []
    runs = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                runs.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed run log line %d in %s", lineno, path)
    return runs


def _failed(run: dict) -> bool:
    return run.get("status") != "success"


def _mean(values: list) -> int:
    return round(sum(values) / len(values)) if values else 0


def compute_metrics(runs: list[dict]) -> dict:
    """Aggregate run log entries into totals and breakdowns."""
    if not runs:
        return {"total_runs": 0}

    failed = [r for r in runs if _failed(r)]
    succeeded = [r for r in runs if not _failed(r)]

    models: dict[str, list[dict]] = defaultdict(list)
    for r in runs:
        models[r.get("model") or "unknown"].append(r)

    by_model = {}
    for model, entries in models.items():
        errors = sum(1 for r in entries if _failed(r))
        by_model[model] = {
            "count": len(entries),
            "errors": errors,
            "avg_time_ms": _mean([r["took_ms"] for r in entries if r.get("took_ms")]),
            "error_rate": round(errors / len(entries), 3),
        }

    return {
        "total_runs": len(runs),
        "runs_with_errors": len(failed),
        "error_rate": round(len(failed) / len(runs), 3),
        "cancelled": sum(1 for r in runs if r.get("status") == "cancelled"),
        "headless_runs": sum(1 for r in runs if r.get("headless")),
        "avg_time_ms": _mean([r["took_ms"] for r in runs if r.get("took_ms")]),
        "avg_answer_chars": _mean([r["answer_chars"] for r in succeeded if r.get("answer_chars")]),
        "by_error": dict(Counter(r.get("error_code") or "UNKNOWN" for r in failed)),
        "by_phase": dict(Counter(r.get("phase") or "unknown" for r in failed)),
        "by_model": by_model,
    }


def format_report(metrics: dict) -> str:
    if not metrics.get("total_runs"):
        return "No browser runs recorded yet."

    total = metrics["total_runs"]
    lines = [
        "# Browser Run Metrics",
        "",
        f"**Total runs:** {total} ({metrics['headless_runs']} headless)",
        f"**Error rate:** {metrics['error_rate']:.1%} ({metrics['runs_with_errors']}/{total})",
        f"**Avg time:** {metrics['avg_time_ms'] / 1000:.1f}s",
        f"**Avg answer size:** {metrics['avg_answer_chars']} chars",
    ]
    if metrics["cancelled"]:
        lines.append(f"**Cancelled:** {metrics['cancelled']}")

    if metrics["by_error"]:
        lines += ["", "## Failures", "", "| Error | Runs |", "|-------|------|"]
        for code, count in Counter(metrics["by_error"]).most_common():
            lines.append(f"| {code} | {count} |")
        lines += ["", "| Phase | Runs |", "|-------|------|"]
        for phase, count in Counter(metrics["by_phase"]).most_common():
            lines.append(f"| {phase} | {count} |")

    lines += [
        "",
        "## By Model",
        "",
        "| Model | Runs | Errors | Avg Time | Error Rate |",
        "|-------|------|--------|----------|------------|",
    ]
    for model, stats in sorted(metrics["by_model"].items(), key=lambda kv: -kv[1]["count"]):
        lines.append(
            f"| {model} | {stats['count']} | {stats['errors']} "
            f"| {stats['avg_time_ms'] / 1000:.1f}s | {stats['error_rate']:.1%} |"
        )
    return "\n".join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description="Browser-mode run log report")
    parser.add_argument("--json", action="store_true", help="Print the raw metrics as JSON")
    parser.add_argument("--log-path", type=str, help=f"Run log to read (default: {RUN_LOG_PATH})")
    parser.add_argument("--last", type=int, help="Only count the N most recent runs")
    args = parser.parse_args()

    runs = load_runs(Path(args.log_path) if args.log_path else None)
    if args.last:
        runs = runs[-args.last:]
    metrics = compute_metrics(runs)

    if args.json:
        print(json.dumps(metrics, indent=2))
    else:
        print(format_report(metrics))


if __name__ == "__main__":
    main()
