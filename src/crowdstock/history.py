"""Write-through report history.

The ledger hands every accepted report to a :class:`ReportLog` before
the new aggregate becomes visible.  On restart the engine rebuilds its
state by replaying the log in submission order.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from crowdstock.exceptions import HistoryLogError
from crowdstock.models.report import Report

_logger = logging.getLogger(__name__)


class ReportLog(Protocol):
    """Structural interface for durable report history.

    Any storage collaborator (database table, event stream, file) can
    back the ledger as long as it appends in order and iterates in the
    same order.
    """

    def append(self, report: Report) -> None: ...

    def __iter__(self) -> Iterator[Report]: ...


class MemoryReportLog:
    """In-process log, mostly useful for tests and short-lived engines."""

    def __init__(self) -> None:
        self._reports: list[Report] = []
        self._lock = threading.Lock()

    def append(self, report: Report) -> None:
        with self._lock:
            self._reports.append(report)

    def __iter__(self) -> Iterator[Report]:
        with self._lock:
            snapshot = list(self._reports)
        return iter(snapshot)

    def __len__(self) -> int:
        return len(self._reports)


class JsonlReportLog:
    """Append-only JSON-lines file, one report per line."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, report: Report) -> None:
        line = report.model_dump_json()
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
                    fh.flush()
            except OSError as exc:
                raise HistoryLogError(f"Failed to append report to {self._path}: {exc}") from exc

    def __iter__(self) -> Iterator[Report]:
        if not self._path.exists():
            _logger.debug("History log %s does not exist yet", self._path)
            return
        _logger.debug("Reading history log %s", self._path)
        with self._path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    yield Report.model_validate_json(text)
                except ValidationError as exc:
                    raise HistoryLogError(f"Corrupt report at {self._path}:{lineno}: {exc}") from exc
