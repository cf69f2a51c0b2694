"""Run metrics for the scheduling loop: batch classifications and deferred stage outcomes."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from batchnet.common.constants import BatchOutcome, OperationKind
from batchnet.common.schemas import BatchReport


def _fresh_deferred_bucket() -> Dict[str, int]:
    return {"ok": 0, "late": 0, "preempted": 0}


class RunMetrics:
    """Counters accumulated over one scheduling run"""

    def __init__(self) -> None:
        self.batches: Dict[str, int] = {
            "queued": 0,
            "total": 0,
            BatchOutcome.SUCCESS.value: 0,
            BatchOutcome.PARTIAL.value: 0,
            BatchOutcome.OUT_OF_ORDER.value: 0,
        }
        self.deferred: Dict[str, Dict[str, int]] = {
            OperationKind.PRIMARY.value: _fresh_deferred_bucket(),
            OperationKind.SECONDARY.value: _fresh_deferred_bucket(),
        }
        self.oom = 0
        self.rejected = 0
        self.launch_failures = 0
        self.errors = 0
        self.reports: List[BatchReport] = []

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    def record_queued(self) -> None:
        self.batches["queued"] += 1

    def record_report(self, report: BatchReport) -> None:
        self.batches["total"] += 1
        self.batches[report.outcome.value] += 1
        self.reports.append(report)

    def record_deferred(self, kind: OperationKind, result: str) -> None:
        bucket = self.deferred.setdefault(kind.value, _fresh_deferred_bucket())
        bucket[result] += 1

    @property
    def stage_aborts(self) -> int:
        return sum(b["late"] + b["preempted"] for b in self.deferred.values())

    # ------------------------------------------------------------------ #
    # Reporting
    # ------------------------------------------------------------------ #

    def snapshot(self) -> Dict[str, Any]:
        return {
            "batches": dict(self.batches),
            "deferred": {kind: dict(bucket) for kind, bucket in self.deferred.items()},
            "stage_aborts": self.stage_aborts,
            "oom": self.oom,
            "rejected": self.rejected,
            "launch_failures": self.launch_failures,
            "errors": self.errors,
        }

    def summary_lines(self, target_id: Optional[str] = None) -> List[str]:
        b = self.batches
        lines = [
            "-" * 60,
            f"Results for {target_id}" if target_id else "Results",
            "-" * 60,
            f"Queued batches: {b['queued']}",
            f"Finished batches: {b['total']}",
            f"    {b['success']} successful, {b['partial']} partial, {b['out_of_order']} out of order",
            "Deferred stages:",
        ]
        for kind, bucket in self.deferred.items():
            lines.append(
                f"    {kind}: {bucket['ok']} ok, {bucket['late']} late, {bucket['preempted']} preempted"
            )
        lines.append(f"Out-of-capacity waits: {self.oom}")
        if self.launch_failures:
            lines.append(f"Stages with no worker started: {self.launch_failures}")
        lines.append("-" * 60)
        return lines

    def write(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot(), indent=2), encoding="utf-8")
