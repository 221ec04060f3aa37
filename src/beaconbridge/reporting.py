"""Summaries of the dated error trail."""
from __future__ import annotations

import re
from pathlib import Path

import pandas as pd

from .trail import TRAIL_FILE_PATTERN, TRAIL_TIMESTAMP_FORMAT

TRAIL_LINE_RE = re.compile(r"^(?P<timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}): Error at (?P<device>\S+) - (?P<message>.*)$")

COLUMNS = ["timestamp", "device", "message"]


def load_error_trail(directory: Path) -> pd.DataFrame:
    """Read every trail file under *directory*; malformed lines are skipped."""

    rows: list[dict[str, str]] = []
    for path in sorted(Path(directory).glob(TRAIL_FILE_PATTERN)):
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            match = TRAIL_LINE_RE.match(line.strip())
            if match:
                rows.append(match.groupdict())
    df = pd.DataFrame(rows, columns=COLUMNS)
    df["timestamp"] = pd.to_datetime(df["timestamp"], format=TRAIL_TIMESTAMP_FORMAT)
    return df.sort_values("timestamp", kind="mergesort").reset_index(drop=True)


def summarize_errors(df: pd.DataFrame) -> pd.DataFrame:
    """Per-device error count with first/last occurrence, busiest device first."""

    if df.empty:
        return pd.DataFrame(columns=["device", "errors", "first", "last"])
    grouped = df.groupby("device")["timestamp"]
    summary = pd.DataFrame(
        {
            "errors": grouped.size(),
            "first": grouped.min(),
            "last": grouped.max(),
        }
    ).reset_index()
    return summary.sort_values(["errors", "device"], ascending=[False, True], kind="mergesort").reset_index(
        drop=True
    )


def export_report(df: pd.DataFrame, output_dir: Path, *, trail_dir: Path | None = None) -> pd.DataFrame:
    """Write `errors.csv`, `summary.csv` and `report.md` to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    summary = summarize_errors(df)
    df.to_csv(output_dir / "errors.csv", index=False)
    summary.to_csv(output_dir / "summary.csv", index=False)

    lines: list[str] = []
    lines.append("# Sensor Error Report")
    if trail_dir is not None:
        lines.append(f"*Trail directory:* `{trail_dir}`  ")
    lines.append(f"*Errors:* {len(df)}  ")
    lines.append(f"*Devices affected:* {len(summary)}  ")
    if not df.empty:
        lines.append(f"*Span:* {df['timestamp'].min()} to {df['timestamp'].max()}  ")
    lines.append("")
    lines.append("| Device | Errors | First | Last |")
    lines.append("| --- | ---: | --- | --- |")
    for row in summary.itertuples(index=False):
        lines.append(f"| {row.device} | {row.errors} | {row.first} | {row.last} |")
    lines.append("")
    if not df.empty:
        lines.append("## Most frequent messages")
        top = df["message"].value_counts().head(10)
        for message, count in top.items():
            lines.append(f"- {count} x `{message}`")
    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
    return summary
