"""Per-run report artifacts: JSON report, HTML summary and SVG coverage chart.

Rendering is pure (string in, string out). ``write_artifacts`` writes the three
files under ``{output_dir}/{run_id}/`` in the thread pool and returns their
metadata for the store.
"""

from __future__ import annotations

import asyncio
import html
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .schemas import Artifact, CoverageReport, OracleResult, ORACLE_NAMES

BAR_AREA_OFFSET = 150
CHART_WIDTH = 400
ROW_HEIGHT = 30


def coverage_color(percentage: float) -> str:
    """Green above 80%, amber above 60%, red otherwise (percentage in 0-100)."""

    if percentage > 80:
        return "#4CAF50"
    if percentage > 60:
        return "#FFC107"
    return "#F44336"


def render_json_report(report: Mapping[str, Any]) -> str:
    return json.dumps(report, indent=2, sort_keys=True, default=str)


def render_html_summary(
    *,
    run_id: str,
    world: str,
    adventure: str,
    mode: str,
    status: str,
    turns_completed: int,
    coverage: CoverageReport,
    oracles: OracleResult,
    passed: bool,
) -> str:
    coverage_rows = "".join(
        f'<div class="metric"><strong>{html.escape(name)}:</strong> {value * 100:.1f}%</div>'
        for name, value in coverage.model_dump().items()
    )
    oracle_rows = "".join(
        f'<div class="metric {"fail" if getattr(oracles, name) else "pass"}">'
        f'<strong>{html.escape(name)}:</strong> {"FAIL" if getattr(oracles, name) else "PASS"}</div>'
        for name in ORACLE_NAMES
    )
    verdict_class = "pass" if passed else "fail"
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Autoplay Run Report</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 20px; }}
        .header {{ background: #f0f0f0; padding: 10px; border-radius: 5px; }}
        .section {{ margin: 20px 0; }}
        .metric {{ display: inline-block; margin: 10px; padding: 10px; background: #e8f4f8; border-radius: 3px; }}
        .pass {{ color: green; font-weight: bold; }}
        .fail {{ color: red; font-weight: bold; }}
    </style>
</head>
<body>
    <div class="header">
        <h1>Autoplay Run Report</h1>
        <p><strong>Run ID:</strong> {html.escape(run_id)}</p>
        <p><strong>Scenario:</strong> {html.escape(world)}/{html.escape(adventure)}</p>
        <p><strong>Mode:</strong> {html.escape(mode)}</p>
        <p><strong>Status:</strong> {html.escape(status)}</p>
        <p><strong>Turns:</strong> {turns_completed}</p>
        <p class="{verdict_class}">{"PASS" if passed else "FAIL"}</p>
    </div>
    <div class="section">
        <h2>Coverage Metrics</h2>
        {coverage_rows}
    </div>
    <div class="section">
        <h2>Oracle Results</h2>
        {oracle_rows}
    </div>
</body>
</html>
"""


def render_coverage_svg(coverage: CoverageReport) -> str:
    """Horizontal bar chart, one row per dimension plus overall."""

    entries = list(coverage.model_dump().items())
    bar_span = CHART_WIDTH - BAR_AREA_OFFSET
    parts = [
        f'<svg width="{CHART_WIDTH}" height="{len(entries) * ROW_HEIGHT}" '
        'xmlns="http://www.w3.org/2000/svg">'
    ]
    for index, (name, value) in enumerate(entries):
        percentage = value * 100
        bar_width = value * bar_span
        y = index * ROW_HEIGHT
        parts.append(
            f'<rect x="{BAR_AREA_OFFSET}" y="{y + 5}" width="{bar_width:.1f}" height="20" '
            f'fill="{coverage_color(percentage)}"/>'
        )
        parts.append(
            f'<text x="10" y="{y + 20}" font-family="Arial" font-size="12">{html.escape(name)}</text>'
        )
        parts.append(
            f'<text x="{bar_width + BAR_AREA_OFFSET + 10:.1f}" y="{y + 20}" font-family="Arial" '
            f'font-size="12">{percentage:.1f}%</text>'
        )
    parts.append("</svg>")
    return "\n".join(parts)


async def write_artifacts(
    output_dir: Path | str,
    run_id: str,
    *,
    report: Dict[str, Any],
    html_summary: str,
    coverage: CoverageReport,
) -> List[Artifact]:
    run_dir = Path(output_dir) / run_id
    await asyncio.to_thread(run_dir.mkdir, parents=True, exist_ok=True)

    outputs = [
        ("json", run_dir / "report.json", render_json_report(report)),
        ("html", run_dir / "summary.html", html_summary),
        ("svg", run_dir / "coverage.svg", render_coverage_svg(coverage)),
    ]

    artifacts: List[Artifact] = []
    for kind, path, text in outputs:
        await asyncio.to_thread(path.write_text, text, "utf-8")
        artifacts.append(Artifact(kind=kind, path=str(path), bytes=len(text.encode("utf-8"))))
    return artifacts
