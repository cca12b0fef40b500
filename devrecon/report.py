"""Rendering utilities for machine-readable and human-readable outputs."""
from __future__ import annotations

from collections import Counter
from pathlib import Path

from .models import ReconciliationResult, SyncMetadata, format_timestamp, utcnow


def write_json(path: Path, result: ReconciliationResult) -> None:
    import json

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(result.as_json(), handle, indent=2)


def generate_markdown_summary(
    result: ReconciliationResult,
    *,
    previous: SyncMetadata | None = None,
) -> str:
    kinds = Counter(error.kind for error in result.errors)

    lines = ["# Device Inventory Reconciliation Report", ""]
    lines.append(f"Generated: {format_timestamp(utcnow())}")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- Run: `{result.run_id}`")
    lines.append(f"- Status: **{result.status.value}** (reached phase `{result.phase}`)")
    lines.append(f"- Protection devices fetched: **{result.protection_fetched}**")
    lines.append(f"- MDM devices fetched: **{result.mdm_fetched}**")
    lines.append(f"- Reconciled documents: **{result.total_processed}**")
    lines.append(f"- Written: **{result.devices_processed}**, failed: **{result.devices_failed}**")
    lines.append(f"- Previous documents removed: **{result.deleted}**")
    lines.append("")

    if result.total_processed:
        lines.append("## Sync states")
        lines.append("")
        lines.append("| State | Devices | Share |")
        lines.append("| --- | --- | --- |")
        for label, count, key in (
            ("Matched", result.matched, "matched"),
            ("Only protection", result.only_protection, "onlyProtection"),
            ("Only MDM", result.only_mdm, "onlyMdm"),
        ):
            lines.append(f"| {label} | {count} | {result.percentages.get(key, 0.0):.2f}% |")
        lines.append("")

    ambiguous = {key: count for key, count in result.ambiguous.items() if count}
    if ambiguous:
        lines.append("## Ambiguous identities left unmatched")
        lines.append("")
        for key, count in sorted(ambiguous.items()):
            lines.append(f"- {key}: {count}")
        lines.append("")

    lines.append("## Performance")
    lines.append("")
    lines.append(f"- Total execution time: {result.total_execution_ms:.0f} ms")
    lines.append(f"- Total cost: {result.total_cost:.2f}")
    lines.append(f"- API calls: {result.api_calls} over {result.api_pages} page(s)")
    lines.append("")
    lines.append("| Phase | Time (ms) | Cost |")
    lines.append("| --- | --- | --- |")
    for name, elapsed in result.phase_ms.items():
        cost = result.phase_cost.get(name)
        lines.append(f"| {name} | {elapsed:.0f} | {'' if cost is None else f'{cost:.2f}'} |")
    lines.append("")

    snapshot = previous.snapshot() if previous is not None else None
    if snapshot:
        lines.append("## Previous run")
        lines.append("")
        lines.append(
            f"- {snapshot.get('syncTime')}: {snapshot.get('status')}, "
            f"{snapshot.get('deviceCount')} devices ({snapshot.get('matched')} matched)"
        )
        lines.append("")

    if result.errors:
        lines.append("## Errors by kind")
        lines.append("")
        for kind, count in sorted(kinds.items()):
            lines.append(f"- {kind}: {count}")
        lines.append("")
        lines.append("| Key | Kind | Error |")
        lines.append("| --- | --- | --- |")
        for error in result.errors:
            lines.append(
                "| {key} | {kind} | {message} |".format(
                    key=error.key,
                    kind=error.kind,
                    message=error.message.replace("|", "\\|"),
                )
            )
        lines.append("")
    else:
        lines.append("No errors. Every reconciled document was written.")

    return "\n".join(lines)


def write_markdown(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write(content)
