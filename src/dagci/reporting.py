# reporting.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .controller import PipelineRun


class ReportError(Exception):
    """Raised when a report could not be delivered."""


class Reporter(Protocol):
    def report(self, run: "PipelineRun") -> None: ...


class ConsoleReporter:
    """Prints the per-instance table and the final status."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def report(self, run: "PipelineRun") -> None:
        console = self.console or get_console()
        console.print_results(run.status.value, run.table())
        for w in run.warnings:
            console.print_warning(w)


class JsonFileReporter:
    """Writes `PipelineRun.to_dict()` as JSON to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def report(self, run: "PipelineRun") -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(run.to_dict(), indent=2, sort_keys=True), encoding="utf-8")


class HttpReporter:
    """POSTs the run result as JSON to a notification endpoint."""

    def __init__(self, url: str, *, timeout: float = 10.0, headers: Optional[dict] = None):
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})

    def report(self, run: "PipelineRun") -> None:
        req_headers = {"Content-Type": "application/json"}
        req_headers.update(self.headers)
        req_data = json.dumps(run.to_dict()).encode("utf-8")
        req = urllib.request.Request(self.url, data=req_data, headers=req_headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise ReportError(f"Report rejected: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise ReportError(f"Network error: {e.reason}") from e
