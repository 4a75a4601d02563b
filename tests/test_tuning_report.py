from __future__ import annotations

import os
import tempfile
import unittest
from datetime import datetime, timezone

from tuning.report import MarkdownReportRenderer
from tuning.types import (
    BacktestResult,
    Configuration,
    LiveRuleSet,
    PerformanceEvidence,
    Proposal,
    ProposalStatus,
    ShadowMetrics,
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _result() -> list[BacktestResult]:
    evidence = PerformanceEvidence.from_counts(tp=70, fp=18, fn=30, window_hours=48)
    proposal = Proposal(
        id="ethereum-abc",
        chain="ethereum",
        rules=Configuration.from_dict({"SCORE_ALERT": 70}),
        evidence=evidence,
        status=ProposalStatus.SHADOW_TESTING,
        created_at=NOW,
    )
    return [
        BacktestResult(
            chain="ethereum",
            total_configurations=3,
            current_performance=PerformanceEvidence.from_counts(tp=90, fp=135, fn=10, window_hours=48),
            proposals=[proposal],
            bucket_count=16,
            data_points=255,
        ),
        BacktestResult(chain="bsc", total_configurations=3, current_performance=None, error="no historical signals in window"),
    ]


class MarkdownReportTests(unittest.TestCase):
    def test_build_lists_results_live_rules_and_shadow_tests(self) -> None:
        shadow = {
            "ethereum-abc": ShadowMetrics(
                proposal_id="ethereum-abc",
                precision_estimate=0.66,
                alerts_per_hour=1.2,
                sample_size=14,
                window_started_at=NOW,
                chain="ethereum",
                true_positives=6,
                false_positives=3,
                false_negatives=2,
            )
        }
        live = [LiveRuleSet(chain="polygon", rules=Configuration.from_dict({"SCORE_ALERT": 65}), applied_at=NOW)]

        text = MarkdownReportRenderer("unused").build(_result(), shadow, NOW, live)

        self.assertIn("Generated: 2026-03-02 08:00 UTC", text)
        self.assertIn("- Chains backtested: 2 (1 failed)", text)
        self.assertIn("- Best candidate: ethereum f1=0.745 (SCORE_ALERT=70)", text)
        self.assertIn("| polygon | SCORE_ALERT=65 | 2026-03-02 08:00 | - |", text)
        self.assertIn("| ethereum | 3 | 255 | 0.554 | 0.745 | 1.83 | ok |", text)
        self.assertIn("failed: no historical signals in window", text)
        self.assertIn("### ETHEREUM top proposals", text)
        self.assertIn("| ethereum-abc | ethereum | 0.660 |", text)
        self.assertIn("| open | 0.351-0.969 | 0.333 | 0.250 |", text)

    def test_empty_report_has_summary_only(self) -> None:
        text = MarkdownReportRenderer("unused").build([], {}, NOW)
        self.assertIn("## Summary", text)
        self.assertNotIn("## Backtest Results", text)
        self.assertNotIn("## Shadow Testing", text)

    def test_render_writes_timestamped_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            renderer = MarkdownReportRenderer(os.path.join(tmp_dir, "reports"))

            path = renderer.render(_result(), {}, date=NOW)

            self.assertEqual(os.path.basename(path), "tuning-report-20260302-080000.md")
            with open(path, "r", encoding="utf-8") as f:
                self.assertTrue(f.read().startswith("# Alert Threshold Tuning Report"))


if __name__ == "__main__":
    unittest.main()
