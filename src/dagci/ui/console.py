"""Console output formatting utilities for dagci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout at print time)
        """
        self.debug = debug
        self.stream = stream
        # jobs print from worker threads; keep lines whole
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        target = sys.stderr if err else (self.stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, event: str | None, job_count: int) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event or '-'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str, env_class: str) -> None:
        self._out(f"[{name}] JOB STARTED ({env_class})")

    def print_step(self, name: str, step: str) -> None:
        self._out(f"[{name}] ▶ {step}")

    def print_step_failed(self, name: str, step: str, exit_code: int, tolerated: bool = False) -> None:
        suffix = " (continue-on-error)" if tolerated else ""
        self._out(f"[{name}] STEP FAILED: {step} (exit={exit_code}){suffix}")

    def print_job_finished(self, name: str, state: str, tolerated: bool = False, duration: float | None = None) -> None:
        extra = " (tolerated failure)" if tolerated else ""
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] STATUS: {state}{extra}{took}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_cache_hit(self, name: str, path: str, origin: str) -> None:
        self._out(f"[{name}] CACHE: hit {path} (from {origin})")

    def print_cache_miss(self, name: str, path: str) -> None:
        self._out(f"[{name}] CACHE: miss {path}")

    def print_cache_saved(self, name: str, path: str, key: str) -> None:
        short_key = key[:24] + "..." if len(key) > 24 else key
        self._out(f"[{name}] CACHE: saved {path} ({short_key})")

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print parallel stages of a plan."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"Stage {idx}: {', '.join(level)}")

    def print_results(self, status: str, rows: Iterable[dict]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for row in rows:
            state = row["state"].upper()
            if row.get("tolerated_failure"):
                state += " (tolerated failure)"
            lines.append(f"  {row['instance']}: {state}")
        lines.append(f"\nPIPELINE: {status.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
