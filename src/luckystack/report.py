"""
Report generation for the luckystack pipeline.

Produces:
- report.json: machine-readable record of parameters, frame accounting,
  quality statistics, transforms and stack statistics
- report.md: human-readable Markdown summary
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

import numpy as np

from .config import ProcessingParams, RejectedFrame
from .local_align import LocalField
from .pipeline import PipelineResult
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)


def _to_native(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        value = float(obj)
        return value if np.isfinite(value) else str(value)
    elif isinstance(obj, float) and not np.isfinite(obj):
        return str(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {k: _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _serialize_params(params: ProcessingParams) -> dict[str, Any]:
    data = asdict(params)
    data["wavelet_layers"] = list(params.wavelet_layers.gains)
    return data


def _count_rejection_reasons(rejected: list[RejectedFrame]) -> dict[str, int]:
    """Count frames by rejection reason."""
    counts: dict[str, int] = {}
    for r in rejected:
        reason = r.reason.value
        counts[reason] = counts.get(reason, 0) + 1
    return counts


def build_report(
    result: PipelineResult,
    params: ProcessingParams,
    input_name: str = "",
    outputs: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Collect a JSON-compatible report of a pipeline run."""
    analysis = result.analysis
    selection = result.selection
    alignment = result.alignment

    transforms = []
    if alignment is not None:
        for t in alignment.transforms:
            entry = {
                "frame_index": t.frame_index,
                "success": t.success,
                "dx": t.global_.dx,
                "dy": t.global_.dy,
                "rotation": t.global_.rotation,
                "scale": t.global_.scale,
                "confidence": t.global_.confidence,
            }
            if isinstance(t.local, LocalField):
                entry["local_tiles"] = t.local.n_tiles
                entry["local_inherited"] = t.local.n_inherited
                entry["local_max_shift"] = t.local.max_displacement()
            if t.error_message:
                entry["error"] = t.error_message
            transforms.append(entry)

    report = {
        "luckystack_version": get_version(),
        "timestamp": get_timestamp_iso(),
        "platform": get_platform_info(),
        "input": input_name,
        "outcome": result.outcome.value,
        "stage": result.stage.value,
        "error_kind": result.error_kind.value if result.error_kind else None,
        "message": result.message,
        "elapsed_s": result.elapsed_s,
        "params": _serialize_params(params),
        "frames": {
            "total": analysis.total_frames if analysis else 0,
            "analyzed": len(analysis.scores) if analysis else 0,
            "decode_failures": analysis.decode_failures if analysis else 0,
            "selected": len(selection.selected) if selection else 0,
            "usable": alignment.n_usable if alignment else 0,
            "stacked": result.stack_stats.n_frames if result.stack_stats else 0,
        },
        "reference_frame": alignment.reference_index if alignment else None,
        "quality": asdict(analysis.stats) if analysis else {},
        "rejection_reasons": _count_rejection_reasons(result.rejected),
        "rejected": [
            {"frame_index": r.frame_index, "reason": r.reason.value, "detail": r.detail}
            for r in result.rejected
        ],
        "warnings": list(result.warnings),
        "statistics": asdict(result.stack_stats) if result.stack_stats else {},
        "transforms": transforms,
        "outputs": outputs or {},
    }
    return _to_native(report)


def write_report_json(report: dict[str, Any], output_dir: Path) -> Path:
    """
    Write the report as JSON.

    Parameters
    ----------
    report : dict
        Output of ``build_report``.
    output_dir : Path
        Output directory.

    Returns
    -------
    Path
        Path to written report file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / "report.json"
    with open(report_path, "w") as f:
        json.dump(report, f, indent=2)

    logger.info("Wrote report: %s", report_path)
    return report_path


def write_report_markdown(report: dict[str, Any], output_dir: Path) -> Path:
    """
    Write a human-readable Markdown report.

    Parameters
    ----------
    report : dict
        Output of ``build_report``.
    output_dir : Path
        Output directory.

    Returns
    -------
    Path
        Path to written report file.
    """
    frames = report["frames"]
    lines = [
        f"# Stacking Report: {report['input'] or 'unnamed'}",
        "",
        f"**Generated:** {report['timestamp']}",
        f"**luckystack version:** {report['luckystack_version']}",
        f"**Platform:** {report['platform']}",
        f"**Outcome:** {report['outcome']}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Frames in source | {frames['total']} |",
        f"| Frames analysed | {frames['analyzed']} |",
        f"| Decode failures | {frames['decode_failures']} |",
        f"| Frames selected | {frames['selected']} |",
        f"| Frames usable after alignment | {frames['usable']} |",
        f"| Frames stacked | {frames['stacked']} |",
        f"| Reference frame | {report['reference_frame'] if report['reference_frame'] is not None else 'N/A'} |",
        f"| Elapsed | {report['elapsed_s']:.1f} s |",
        "",
    ]

    if report["message"]:
        lines.extend([f"> {report['error_kind']}: {report['message']}", ""])

    params = report["params"]
    lines.extend([
        "## Configuration",
        "",
        "| Parameter | Value |",
        "|-----------|-------|",
    ])
    for key in (
        "keep_percentage",
        "min_frames",
        "max_frames",
        "sample_step",
        "enable_local_align",
        "tile_size",
        "sigma_clip_threshold",
        "sigma_iterations",
        "wavelet_layers",
    ):
        lines.append(f"| {key} | {params[key]} |")
    lines.append("")

    if report["quality"]:
        lines.extend([
            "## Quality",
            "",
            "| Statistic | Value |",
            "|-----------|-------|",
        ])
        for key, value in report["quality"].items():
            lines.append(f"| {key} | {value:.4f} |")
        lines.append("")

    if report["statistics"]:
        lines.extend([
            "## Stack Statistics",
            "",
            "| Metric | Value |",
            "|--------|-------|",
        ])
        for key, value in report["statistics"].items():
            if isinstance(value, float):
                lines.append(f"| {key} | {value:.4f} |")
            else:
                lines.append(f"| {key} | {value} |")
        lines.append("")

    if report["rejection_reasons"]:
        lines.extend([
            "## Rejection Breakdown",
            "",
            "| Reason | Count |",
            "|--------|-------|",
        ])
        for reason, count in sorted(report["rejection_reasons"].items()):
            lines.append(f"| {reason} | {count} |")
        lines.append("")

    if report["warnings"]:
        lines.extend(["## Warnings", ""])
        lines.extend(f"- {w}" for w in report["warnings"])
        lines.append("")

    if report["outputs"]:
        lines.extend(["## Outputs", ""])
        for name, path in report["outputs"].items():
            lines.append(f"- **{name}:** `{path}`")
        lines.append("")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / "report.md"
    with open(report_path, "w") as f:
        f.write("\n".join(lines))

    logger.info("Wrote Markdown report: %s", report_path)
    return report_path


def write_all_reports(report: dict[str, Any], output_dir: Path) -> dict[str, Path]:
    """Write report.json and report.md into ``output_dir``."""
    return {
        "json": write_report_json(report, output_dir),
        "markdown": write_report_markdown(report, output_dir),
    }
