"""Tests for webchat_metrics module."""

import json
from pathlib import Path

from webchat_metrics import append_run_log, compute_metrics, format_report, load_runs


def _runs() -> list[dict]:
    return [
        {"status": "success", "took_ms": 20_000, "answer_chars": 300, "model": "GPT-5"},
        {"status": "success", "took_ms": 40_000, "answer_chars": 100, "model": "GPT-5"},
        {"status": "error", "error_code": "RESPONSE_TIMEOUT", "took_ms": 600_000, "model": "GPT-5"},
        {"status": "error", "error_code": "BLOCKED_HEADLESS", "took_ms": 3_000, "model": None},
    ]


class TestRunLog:
    def test_append_then_load(self, tmp_path: Path) -> None:
        log_path = tmp_path / "logs" / "runs.jsonl"
        append_run_log({"status": "success", "took_ms": 1}, log_path)
        append_run_log({"status": "error", "error_code": "INPUT_NOT_READY"}, log_path)
        runs = load_runs(log_path)
        assert [r["status"] for r in runs] == ["success", "error"]

    def test_load_skips_malformed_lines(self, tmp_path: Path) -> None:
        log_path = tmp_path / "runs.jsonl"
        log_path.write_text('{"status": "success"}\nnot json\n\n' + json.dumps({"status": "error"}) + "\n", encoding="utf-8")
        assert len(load_runs(log_path)) == 2

    def test_missing_log_is_empty(self, tmp_path: Path) -> None:
        assert load_runs(tmp_path / "none.jsonl") == []


class TestComputeMetrics:
    def test_empty(self) -> None:
        assert compute_metrics([])["total_runs"] == 0

    def test_aggregates(self) -> None:
        metrics = compute_metrics(_runs())
        assert metrics["total_runs"] == 4
        assert metrics["error_rate"] == 0.5
        assert metrics["by_error"] == {"RESPONSE_TIMEOUT": 1, "BLOCKED_HEADLESS": 1}
        assert metrics["avg_answer_chars"] == 200
        assert metrics["by_model"]["GPT-5"]["count"] == 3
        assert metrics["by_model"]["unknown"]["errors"] == 1

    def test_failures_grouped_by_phase(self) -> None:
        runs = _runs() + [{"status": "cancelled", "phase": "awaiting_response", "headless": True}]
        metrics = compute_metrics(runs)
        assert metrics["by_phase"] == {"unknown": 2, "awaiting_response": 1}
        assert metrics["cancelled"] == 1
        assert metrics["headless_runs"] == 1
        assert metrics["by_error"]["UNKNOWN"] == 1


class TestFormatReport:
    def test_report_lists_errors_and_models(self) -> None:
        report = format_report(compute_metrics(_runs()))
        assert "**Total runs:** 4" in report
        assert "| RESPONSE_TIMEOUT | 1 |" in report
        assert "| GPT-5 | 3 |" in report

    def test_empty_report(self) -> None:
        assert format_report(compute_metrics([])) == "No browser runs recorded yet."

    def test_cancelled_runs_listed(self) -> None:
        report = format_report(compute_metrics(_runs() + [{"status": "cancelled"}]))
        assert "**Cancelled:** 1" in report
        assert "| unknown | 3 |" in report
