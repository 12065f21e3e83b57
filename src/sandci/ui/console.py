"""Console output formatting utilities for sandci."""

from __future__ import annotations

import codecs
import sys
from typing import Callable, Dict, List, Optional

LEVELS = {"trace": 5, "debug": 10, "info": 20, "warning": 30, "error": 40}

OUTCOME_DISPLAY = {
    "passed": "PASSED",
    "failed": "FAILED",
    "soft_failed": "PASSED (soft fail)",
    "skipped": "SKIPPED",
    "broken": "BROKEN",
    "blocked": "BLOCKED",
}


class _LiveStream:
    """
    One relayed output stream. Holds back the unfinished last line so a value
    split across reads is still redacted as a whole.
    """

    def __init__(self, console: "Console", err: bool):
        self._console = console
        self._err = err
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> None:
        text = self._pending + self._decoder.decode(chunk)
        cut = max(text.rfind("\n"), text.rfind("\r")) + 1
        self._pending = text[cut:]
        if cut:
            self._write(text[:cut])

    def close(self) -> None:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        self._decoder.reset()
        if text:
            self._write(text)

    def _write(self, text: str) -> None:
        stream = sys.stderr if self._err else sys.stdout
        stream.write(self._console._clean(text))
        stream.flush()


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, level: str = "info"):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            level: Minimum message level (trace, debug, info, warning, error)
        """
        if level not in LEVELS:
            raise ValueError(f"unknown log level {level!r}; expected one of {list(LEVELS)}")
        self.debug = debug
        self.level = "debug" if debug and LEVELS[level] > LEVELS["debug"] else level
        self._filters: List[Callable[[str], str]] = []
        self._live = {False: _LiveStream(self, err=False), True: _LiveStream(self, err=True)}

    def enabled(self, level: str) -> bool:
        return LEVELS[level] >= LEVELS[self.level]

    def add_filter(self, fn: Callable[[str], str]) -> None:
        """Every line printed passes through `fn` (secret redaction)."""
        self._filters.append(fn)

    def _clean(self, text: str) -> str:
        for fn in self._filters:
            text = fn(text)
        return text

    def _out(self, text: str = "", err: bool = False) -> None:
        print(self._clean(text), file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, pipeline: str, step_count: int, backend: str) -> None:
        """Print run start information."""
        if not self.enabled("info"):
            return
        self._out("\nRUN STARTED")
        self._out(f"Pipeline: {pipeline}")
        self._out(f"Steps: {step_count}")
        self._out(f"Builder: {backend}")
        self._out()

    def print_step_start(self, name: str, where: Optional[str] = None) -> None:
        if not self.enabled("info"):
            return
        suffix = f" ({where})" if where else ""
        self._out(f"\nSTEP STARTED: {name}{suffix}")

    def print_command(self, command: str) -> None:
        if self.enabled("info"):
            self._out(f"$ {command}")

    def relay(self, chunk: bytes, err: bool = False) -> None:
        """
        Live step output. Chunks are decoded incrementally and only whole
        lines are redacted and written; `end_relay` flushes what is left.
        """
        self._live[err].feed(chunk)

    def end_relay(self) -> None:
        """Flush partial lines once a process' output streams are closed."""
        for live in self._live.values():
            live.close()

    def print_status(self, name: str, outcome: str, detail: Optional[str] = None) -> None:
        if not self.enabled("info"):
            return
        line = f"STATUS: {outcome}"
        if detail:
            line = f"{line} ({detail})"
        self._out(line)

    def print_retry(self, name: str, attempt: int, limit: int, exit_code: int) -> None:
        if self.enabled("info"):
            self._out(f"RETRY: {name} exited {exit_code}, attempt {attempt}/{limit}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        self._out(f"STEP FAILED: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            self._out(f"Error: {error_line}")

    def print_step_skipped(self, name: str, reason: str) -> None:
        if self.enabled("info"):
            self._out(f"\nSTEP SKIPPED: {name} ({reason})")

    def print_plan_level(self, index: int, entries: List[str]) -> None:
        self._out(f"Level {index}:")
        for entry in entries:
            self._out(f"  {entry}")

    def print_results(self, results: Dict[str, str]) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for step, outcome in results.items():
            self._out(f"  {step}: {OUTCOME_DISPLAY.get(outcome, outcome.upper())}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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
        self._out(f"\nERROR: {title}", err=True)
        self._out(message, err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(exc, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        if self.enabled("info"):
            self._out(message)

    def print_warning(self, message: str) -> None:
        if self.enabled("warning"):
            self._out(f"WARNING: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug level enabled)."""
        if self.enabled("debug"):
            self._out(f"[DEBUG] {message}", err=True)

    def print_trace(self, message: str) -> None:
        if self.enabled("trace"):
            self._out(f"[TRACE] {message}", err=True)


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
