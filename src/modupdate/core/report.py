"""
Module Update Manager - Run Report
Summarizes a run: counts plus per-package detail, as text or JSON.
"""

import json
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Optional
import logging

from modupdate.core.pipeline import InstallOutcome, OutcomeStatus
from modupdate.core.resolver import Resolution, REASON_UP_TO_DATE
from modupdate.core.scanner import PackageInventory

logger = logging.getLogger(__name__)


@dataclass
class PackageReport:
    """One line of the per-package detail."""
    name: str
    status: str
    installed_version: Optional[str] = None
    target_version: Optional[str] = None
    repository: Optional[str] = None
    message: Optional[str] = None


@dataclass
class RunSummary:
    """Counts and detail for a complete run."""
    processed: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    up_to_date: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    packages: list = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def get_stats(self) -> dict:
        """Get run statistics."""
        attempted = self.updated + self.failed
        return {
            "processed": self.processed,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "up_to_date": self.up_to_date,
            "success_rate": self.updated / attempted if attempted > 0 else 1.0,
        }


def build_summary(
    inventory: PackageInventory,
    resolution: Resolution,
    outcomes: Optional[list] = None,
) -> RunSummary:
    """
    Build the summary for a run.

    Packages with an outcome are reported by outcome; the rest by the
    resolver's reason for not producing a decision.
    """
    outcomes = outcomes or []
    by_name: dict[str, InstallOutcome] = {o.name: o for o in outcomes}
    decisions = {d.name: d for d in resolution.decisions}
    summary = RunSummary(processed=len(inventory))

    for name in inventory:
        highest = inventory.highest(name)
        installed = str(highest.version) if highest else None
        decision = decisions.get(name)
        outcome = by_name.get(name)

        if outcome is not None:
            status = outcome.status
            if status == OutcomeStatus.UPDATED:
                summary.updated += 1
            elif status in (OutcomeStatus.FAILED, OutcomeStatus.PARTIAL):
                summary.failed += 1
            else:
                summary.skipped += 1
            message = "; ".join(outcome.messages[-3:]) or None
            summary.packages.append(PackageReport(
                name=name,
                status=status.value,
                installed_version=installed,
                target_version=outcome.target_version,
                repository=outcome.repository,
                message=message,
            ))
        elif decision is not None:
            summary.skipped += 1
            summary.packages.append(PackageReport(
                name=name,
                status="available",
                installed_version=installed,
                target_version=str(decision.target_version),
                repository=decision.repository,
            ))
        else:
            reason = resolution.skipped.get(name, REASON_UP_TO_DATE)
            if reason == REASON_UP_TO_DATE:
                summary.up_to_date += 1
                status = "current"
            else:
                summary.skipped += 1
                status = "skipped"
            summary.packages.append(PackageReport(
                name=name,
                status=status,
                installed_version=installed,
                message=None if status == "current" else reason,
            ))

    return summary


def format_summary(summary: RunSummary, show_current: bool = False) -> str:
    """Render the summary as plain text for the console."""
    lines = []
    for pkg in summary.packages:
        if pkg.status == "current" and not show_current:
            continue
        versions = pkg.installed_version or "?"
        if pkg.target_version:
            versions = f"{versions} -> {pkg.target_version}"
        line = f"  {pkg.name:<40} {versions:<28} {pkg.status}"
        if pkg.message:
            line += f"  ({pkg.message})"
        lines.append(line)

    lines.append(
        f"Processed {summary.processed}: {summary.updated} updated, "
        f"{summary.failed} failed, {summary.skipped} skipped, "
        f"{summary.up_to_date} up to date"
    )
    return "\n".join(lines)


def write_json_report(path: Path, summary: RunSummary, outcomes: Optional[list] = None) -> None:
    """Write the summary (and raw outcomes) to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "summary": summary.get_stats(),
        "timestamp": summary.timestamp,
        "packages": [asdict(p) for p in summary.packages],
        "outcomes": [o.to_dict() for o in outcomes or []],
    }
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.info(f"Report written to {path}")
