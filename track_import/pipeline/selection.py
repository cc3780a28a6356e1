"""Helpers for the selector/progress UI: selection state and summaries."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from track_import.pipeline.jobs import JobSnapshot, JobStatus


class SelectionIndicator(StrEnum):
    NONE = "none"
    SOME = "some"
    ALL = "all"


class SelectionState:
    """Checkbox selection over a list of candidate ids.

    Client-side helper: the service keeps no selection state. A client holds
    one of these per listing and sends ``selected`` as the ordered
    ``paths`` of ``POST /api/v1/imports``.
    """

    def __init__(self, available: Iterable[str] = ()) -> None:
        self._available: list[str] = list(dict.fromkeys(available))
        self._selected: set[str] = set()

    @property
    def selected(self) -> list[str]:
        """Selected ids in listing order."""
        return [item for item in self._available if item in self._selected]

    def set_available(self, available: Iterable[str]) -> None:
        """Replace the listing; selections not in the new listing are dropped."""
        self._available = list(dict.fromkeys(available))
        self._selected &= set(self._available)

    def toggle(self, item: str) -> None:
        if item not in self._available:
            raise KeyError(item)
        if item in self._selected:
            self._selected.discard(item)
        else:
            self._selected.add(item)

    def toggle_all(self) -> None:
        """Select everything, or clear the selection when everything is already selected."""
        if self.indicator == SelectionIndicator.ALL:
            self._selected.clear()
        else:
            self._selected = set(self._available)

    def clear(self) -> None:
        self._selected.clear()

    @property
    def indicator(self) -> SelectionIndicator:
        if not self._selected:
            return SelectionIndicator.NONE
        if len(self._selected) == len(self._available):
            return SelectionIndicator.ALL
        return SelectionIndicator.SOME


@dataclass(frozen=True)
class ProgressSummary:
    succeeded: int
    failed: int
    in_progress: int

    @property
    def text(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.failed} failed, {self.in_progress} in progress"
        )


def can_retry(snapshot: JobSnapshot) -> bool:
    return snapshot.status == JobStatus.FAILED


def summarize(snapshots: Iterable[JobSnapshot]) -> ProgressSummary:
    succeeded = failed = in_progress = 0
    for snap in snapshots:
        if snap.status == JobStatus.SUCCEEDED:
            succeeded += 1
        elif snap.status == JobStatus.FAILED:
            failed += 1
        else:
            in_progress += 1
    return ProgressSummary(succeeded=succeeded, failed=failed, in_progress=in_progress)


def batch_message(completed: int, failed: int, total: int) -> str:
    """Text for the end-of-batch notification."""
    if failed > 0:
        return (
            f"Successfully imported {completed} of {total} files. "
            f"{failed} failed - check status below."
        )
    return f"Successfully imported all {completed} files to your library."
