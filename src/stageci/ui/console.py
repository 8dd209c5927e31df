"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """`debug` shows full tracebacks; `quiet` keeps only errors and the results table."""
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        trigger: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Run: {run_id}",
            f"Trigger: {trigger}",
            f"Jobs: {job_count}",
        )

    def print_stage(self, name: str, jobs: list[str]) -> None:
        self._out(f"\n=== Stage {name}: {', '.join(jobs) if jobs else '(no jobs)'} ===")

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_job_finished(self, name: str, status: str, reason: Optional[str] = None) -> None:
        if status == "succeeded":
            self._out(f"✓ {name}")
        else:
            suffix = f": {reason}" if reason else ""
            self._out(f"✗ {name} ({status}){suffix}")

    def print_cache(self, job: str, message: str) -> None:
        self._out(f"[{job}] CACHE: {message}")

    def print_plan_job(self, name: str, reason: str) -> None:
        self._out(f"  ✓ {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"  ⏭ {name} (skipped: {reason})")

    def print_results(self, result) -> None:
        """Print final results summary for a RunResult."""
        with self._lock:
            print("\n" + "=" * 40)
            print(f"RESULTS ({result.status.value.upper()})")
            print("=" * 40)
            for e in result.jobs:
                line = f"  {e.job}: {e.status.value.upper()}"
                if e.duration is not None:
                    line += f" [{e.duration:.1f}s]"
                if e.reason and e.status.value != "succeeded":
                    line += f" ({e.reason})"
                print(line)
            if result.cancelled:
                print("Run was cancelled.")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Error block on stderr: title, message, indented details, then a hint."""
        with self._lock:
            print(f"\nERROR: {title}", file=sys.stderr)
            print(f"{message}", file=sys.stderr)
            if details:
                for detail in details:
                    print(f"  {detail}", file=sys.stderr)
            if suggestion:
                print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """One-line error, or the whole traceback with --debug."""
        if self.debug:
            import traceback
            traceback.print_exception(exc)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Plain line, suppressed when quiet."""
        self._out(message)


# Process-wide console, replaced by the CLI at startup
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
