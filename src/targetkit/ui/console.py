"""Console output formatting utilities for targetkit."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from targetkit.runner import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-target progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def _progress(self, line: str) -> None:
        if not self.quiet:
            print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, pipeline: str, target_count: int, store: str) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Targets: {target_count}")
        print(f"Store: {store}")
        print()

    def print_target_started(self, name: str, reason: str, remote: bool = False) -> None:
        where = " [remote]" if remote else ""
        if self.debug:
            self._progress(f"▶ {name}{where} ({reason})")
        else:
            self._progress(f"▶ {name}{where}")

    def print_target_cached(self, name: str) -> None:
        self._progress(f"✓ {name} (cached)")

    def print_target_succeeded(self, name: str, seconds: float) -> None:
        self._progress(f"✓ {name} ({seconds:.2f}s)")

    def print_target_errored(self, name: str, error: str, traceback_text: Optional[str] = None) -> None:
        """Print a failed target; the full traceback only in debug mode."""
        self._progress(f"✗ {name}")
        if self.debug and traceback_text:
            print(traceback_text, file=sys.stderr)
        else:
            error_line = error.split("\n")[0] if error else "Unknown error"
            print(f"  Error: {error_line}", file=sys.stderr)

    def print_target_skipped(self, name: str, reason: str) -> None:
        self._progress(f"⏭ {name} ({reason})")

    def print_branches(self, name: str, count: int, elements: int) -> None:
        self._progress(f"⑂ {name}: {elements} element(s) in {count} batch(es)")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, result in report.results.items():
            if result.parent is not None and not self.debug:
                continue
            print(f"  {name}: {result.status.value.upper()}")
        counts = ", ".join(f"{k}={v}" for k, v in report.counts().items() if v)
        print(f"\n{counts or 'nothing to do'}")
        if report.cancelled:
            print("Run was cancelled before all targets were dispatched.")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
