"""Collect step results into TestResult and BatchSummary records."""

from __future__ import annotations

import time
from typing import Dict, Iterable, List, Optional

from .types import BatchSummary, StepResult, StepStatus, TestResult, generate_run_id


class ResultAggregator:
    """Accumulates the StepResults of one run of one file.

    Markers are kept in the step list (they structure the report) but are
    never counted as passed or failed.
    """

    def __init__(
        self,
        file_id: str,
        file_name: str,
        batch_id: Optional[str] = None,
        folder_name: Optional[str] = None,
    ) -> None:
        self.file_id = file_id
        self.file_name = file_name
        self.batch_id = batch_id
        self.folder_name = folder_name
        self.run_id = generate_run_id()
        self.timestamp = time.time()
        self._started = time.perf_counter()
        self._steps: List[StepResult] = []

    @property
    def steps(self) -> List[StepResult]:
        return list(self._steps)

    @property
    def passed(self) -> int:
        return sum(1 for s in self._steps if not s.marker and s.status == StepStatus.PASSED)

    @property
    def failed(self) -> int:
        return sum(1 for s in self._steps if not s.marker and s.status == StepStatus.FAILED)

    def add(self, result: StepResult) -> None:
        """Append a settled step result."""
        self._steps.append(result)

    def replace_all(self, results: Iterable[StepResult]) -> None:
        """Replace the collected steps (used when results come from a reconciler)."""
        self._steps = list(results)

    def _elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def _build(self, status: StepStatus) -> TestResult:
        return TestResult(
            id=self.run_id,
            file_id=self.file_id,
            file_name=self.file_name,
            status=status,
            timestamp=self.timestamp,
            total_duration=self._elapsed_ms(),
            passed=self.passed,
            failed=self.failed,
            steps=list(self._steps),
            batch_id=self.batch_id,
            folder_name=self.folder_name,
        )

    def snapshot(self) -> TestResult:
        """Partial result of a run still in progress."""
        return self._build(StepStatus.RUNNING)

    def finalize(self, cancelled: bool = False) -> TestResult:
        """Build the final TestResult.

        Args:
            cancelled: Whether the run was cancelled

        Returns:
            Failed if any step failed, else cancelled if the run was
            cancelled, else passed
        """
        if self.failed:
            status = StepStatus.FAILED
        elif cancelled:
            status = StepStatus.CANCELLED
        else:
            status = StepStatus.PASSED
        return self._build(status)


def summarize_batches(results: Iterable[TestResult]) -> List[BatchSummary]:
    """Group TestResults by batch id, in order of first appearance.

    Results without a batch id are ignored.
    """
    summaries: Dict[str, BatchSummary] = {}
    for result in results:
        if not result.batch_id:
            continue
        summary = summaries.get(result.batch_id)
        if summary is None:
            summary = BatchSummary(
                batch_id=result.batch_id,
                folder_name=result.folder_name,
                timestamp=result.timestamp,
            )
            summaries[result.batch_id] = summary
        summary.runs.append(result)
        summary.passed += result.passed
        summary.failed += result.failed
        summary.total_duration += result.total_duration
        summary.timestamp = min(summary.timestamp, result.timestamp)
    return list(summaries.values())
