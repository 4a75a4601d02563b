"""Markdown tuning report."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from tuning.types import BacktestResult, LiveRuleSet, ShadowMetrics, utc_now
from utils.state_file import atomic_write_text

logger = logging.getLogger(__name__)


def _fmt(value: float | None, digits: int = 3) -> str:
    return "n/a" if value is None else f"{value:.{digits}f}"


def _fmt_interval(bounds: tuple[float, float]) -> str:
    return f"{_fmt(bounds[0])}-{_fmt(bounds[1])}"


def _table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> list[str]:
    out = ["| " + " | ".join(headers) + " |", "|" + "---|" * len(headers)]
    for row in rows:
        out.append("| " + " | ".join(str(c) for c in row) + " |")
    return out


class MarkdownReportRenderer:
    def __init__(self, reports_dir: str) -> None:
        self.reports_dir = reports_dir

    def build(
        self,
        results: Sequence[BacktestResult],
        shadow_metrics: Mapping[str, ShadowMetrics],
        generated_at: datetime,
        live_rules: Sequence[LiveRuleSet] = (),
    ) -> str:
        lines = [
            "# Alert Threshold Tuning Report",
            "",
            f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M UTC')}",
            "",
            "## Summary",
            "",
        ]
        ok = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        best = max(
            (r for r in ok if r.proposals),
            key=lambda r: r.proposals[0].evidence.f1,
            default=None,
        )
        lines.append(f"- Chains backtested: {len(results)} ({len(failed)} failed)")
        lines.append(f"- Proposals: {sum(len(r.proposals) for r in results)}")
        lines.append(f"- Shadow tests active: {len(shadow_metrics)}")
        if best is not None:
            top = best.proposals[0]
            lines.append(f"- Best candidate: {best.chain} f1={_fmt(top.evidence.f1)} ({top.rules.describe()})")
        lines.append("")

        if live_rules:
            lines += ["## Live Configuration", ""]
            lines += _table(
                ["Chain", "Rules", "Applied", "Proposal"],
                [(r.chain, r.rules.describe(), r.applied_at.strftime("%Y-%m-%d %H:%M"), r.proposal_id or "-") for r in live_rules],
            )
            lines.append("")

        if results:
            lines += ["## Backtest Results", ""]
            lines += _table(
                ["Chain", "Configurations", "Events", "Current F1", "Best F1", "Best alerts/h", "Status"],
                [
                    (
                        r.chain,
                        r.total_configurations,
                        r.data_points,
                        _fmt(r.current_performance.f1 if r.current_performance else None),
                        _fmt(r.proposals[0].evidence.f1 if r.proposals else None),
                        _fmt(r.proposals[0].evidence.alerts_per_hour if r.proposals else None, 2),
                        "ok" if r.ok else f"failed: {r.error}",
                    )
                    for r in results
                ],
            )
            lines.append("")
            for r in ok:
                if not r.proposals:
                    continue
                lines += [f"### {r.chain.upper()} top proposals", ""]
                lines += _table(
                    ["Rank", "Rules", "Precision", "Recall", "F1", "Alerts/h", "Status"],
                    [
                        (
                            i + 1,
                            p.rules.describe(),
                            _fmt(p.evidence.precision),
                            _fmt(p.evidence.recall),
                            _fmt(p.evidence.f1),
                            _fmt(p.evidence.alerts_per_hour, 2),
                            p.status.value,
                        )
                        for i, p in enumerate(r.proposals[:5])
                    ],
                )
                lines.append("")

        if shadow_metrics:
            lines += ["## Shadow Testing", ""]
            lines += _table(
                ["Proposal", "Chain", "Precision", "Recall", "Alerts/h", "Samples", "Window", "Precision 95% CI", "FP rate", "FN rate"],
                [
                    (
                        m.proposal_id,
                        m.chain,
                        _fmt(m.precision_estimate),
                        _fmt(m.recall_estimate),
                        _fmt(m.alerts_per_hour, 2),
                        m.sample_size,
                        "closed" if m.frozen else "open",
                        _fmt_interval(m.confidence_interval()["precision"]),
                        _fmt(m.false_positive_rate),
                        _fmt(m.false_negative_rate),
                    )
                    for m in shadow_metrics.values()
                ],
            )
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def render(
        self,
        results: Sequence[BacktestResult],
        shadow_metrics: Mapping[str, ShadowMetrics],
        date: datetime | None = None,
        live_rules: Sequence[LiveRuleSet] = (),
    ) -> str:
        generated_at = date or utc_now()
        path = os.path.join(self.reports_dir, f"tuning-report-{generated_at.strftime('%Y%m%d-%H%M%S')}.md")
        atomic_write_text(path, self.build(results, shadow_metrics, generated_at, live_rules))
        logger.info("REPORT_WRITTEN path=%s chains=%s shadow=%s", path, len(results), len(shadow_metrics))
        return path
