"""Console output formatting utilities for flare."""

from __future__ import annotations

import sys
from typing import Optional

from flare.errors import FlareError
from flare.runner import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        script: str,
        nodes: list[str],
        action_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Script: {script}")
        print(f"Nodes: {', '.join(nodes)}")
        print(f"Actions: {action_count}")
        print()

    def print_results(self, result: RunResult) -> None:
        """Print final run summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        print(f"  Workdir: {result.workdir}")
        print(f"  Captured: {len(result.captured)} file(s)")
        print(f"  Copied: {len(result.copied)} file(s)")
        if result.delegated:
            print(f"  Delegated: {len(result.delegated)} action(s)")
        if result.copy_errors:
            print(f"  Copy errors: {len(result.copy_errors)}")
            for err in result.copy_errors:
                print(f"    line {err.line}: {err.message}")
        if result.archive:
            print(f"  Archive: {result.archive}")

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

    def print_script_error(self, err: FlareError) -> None:
        """Print a script or run failure with its line and directive."""
        where = []
        if err.line:
            where.append(f"line {err.line}")
        if err.directive:
            where.append(err.directive)
        self.print_error(
            err.kind,
            f"{' '.join(where)}: {err.message}" if where else err.message,
            details=[f"{k}: {v}" for k, v in err.details.items()] or None,
        )

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
