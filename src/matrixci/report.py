# report.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

from .model import PipelineReport
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


class ReportSink(Protocol):
    def emit(self, report: PipelineReport) -> None:
        ...


class ConsoleSink:
    """Renders the report through the (global) Console."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console

    def emit(self, report: PipelineReport) -> None:
        (self._console or get_console()).print_report(report)


class JsonReportSink:
    """Writes report.to_dict() as pretty JSON; parent directories are created."""

    def __init__(self, path: str | Path, *, output_limit: int = 4000):
        self.path = Path(path)
        self.output_limit = output_limit

    def emit(self, report: PipelineReport) -> None:
        data = report.to_dict(self.output_limit)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=False) + "\n", encoding="utf-8")
        logger.info("report written to %s", self.path)


class MemorySink:
    """Keeps every emitted report; handy for embedding and tests."""

    def __init__(self):
        self.reports: List[PipelineReport] = []

    def emit(self, report: PipelineReport) -> None:
        self.reports.append(report)

    @property
    def last(self) -> Optional[PipelineReport]:
        return self.reports[-1] if self.reports else None


class MultiSink:
    """Fans a report out to several sinks; one failing sink does not stop the others."""

    def __init__(self, sinks: Iterable[ReportSink]):
        self.sinks = list(sinks)

    def emit(self, report: PipelineReport) -> None:
        errors = []
        for sink in self.sinks:
            try:
                sink.emit(report)
            except Exception as e:
                logger.error("report sink %s failed: %s", type(sink).__name__, e)
                errors.append(e)
        if errors:
            raise errors[0]
