# process.py
# The single place where sandci starts external processes. Every step command,
# docker/tart/hdiutil invocation and buildkite-agent call goes through here.
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

from .errors import CommandTimeout, ProcessError

Listener = Callable[[bytes], None]

CHUNK_SIZE = 64 * 1024

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "tart": "Install Tart (brew install cirruslabs/cli/tart).",
    "sshpass": "Install sshpass to reach the VM over ssh.",
    "hdiutil": "hdiutil is only available on macOS.",
    "ditto": "ditto is only available on macOS.",
    "buildkite-agent": "Run inside a Buildkite job or install buildkite-agent.",
    "bash": "Install bash or fix PATH.",
    "pwsh": "Install PowerShell 7 (pwsh) or fix PATH.",
}


@dataclass
class ExecListeners:
    """Callbacks receiving raw output chunks. A stream with a listener is piped."""
    stdout: Optional[Listener] = None
    stderr: Optional[Listener] = None
    # Called once after every piped stream hit EOF.
    closed: Optional[Callable[[], None]] = None


@dataclass
class ExecOptions:
    cwd: Optional[str] = None
    # Overlay on top of os.environ, not a replacement.
    env: Dict[str, str] = field(default_factory=dict)
    # Written to stdin, which is then closed.
    input: Union[str, bytes, None] = None
    # Discard output that has no listener.
    silent: bool = False
    ignore_return_code: bool = False
    timeout: Optional[float] = None
    listeners: Optional[ExecListeners] = None


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    exit_code: int


def command_line(command: str, args: Sequence[str] = ()) -> str:
    return shlex.join([command, *args])


def _stream_target(listener: Optional[Listener], silent: bool):
    if listener is not None:
        return subprocess.PIPE
    if silent:
        return subprocess.DEVNULL
    return None  # inherit


def _drain(stream, listener: Listener) -> None:
    try:
        while True:
            chunk = stream.read1(CHUNK_SIZE)
            if not chunk:
                break
            listener(chunk)
    finally:
        stream.close()


class Process:
    """A running child process plus the reader threads relaying its output."""

    def __init__(
        self,
        popen: subprocess.Popen,
        readers: List[threading.Thread],
        line: str,
        closed: Optional[Callable[[], None]] = None,
    ):
        self._popen = popen
        self._readers = readers
        self._closed = closed
        self.command_line = line

    def poll(self) -> Optional[int]:
        return self._popen.poll()

    def _join_readers(self) -> None:
        # Trailing output is part of the result; never return before it is relayed.
        for t in self._readers:
            t.join()
        if self._readers and self._closed is not None:
            closed, self._closed = self._closed, None
            closed()

    def wait(self, timeout: Optional[float] = None) -> int:
        try:
            code = self._popen.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.kill()
            self._popen.wait()
            self._join_readers()
            raise CommandTimeout(self.command_line, timeout)
        except BaseException:
            # KeyboardInterrupt and friends: do not leave an orphan behind.
            self.kill()
            self._popen.wait()
            self._join_readers()
            raise
        self._join_readers()
        return code

    def kill(self) -> None:
        """Kill the child and everything it started (the whole process group on POSIX)."""
        if self._popen.returncode is not None:
            return  # reaped; its pid may already belong to someone else
        if os.name == "posix":
            try:
                os.killpg(self._popen.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass  # group already gone
        elif self._popen.poll() is None:
            self._popen.kill()


def spawn(command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> Process:
    """
    Start one external command and return immediately.

    Output modes:
      - inherited (default): the child writes straight to our stdout/stderr
      - piped: each stream with a listener is read on a background thread
      - discarded: ``silent=True`` sends streams without listeners to /dev/null
    """
    options = options or ExecOptions()
    listeners = options.listeners or ExecListeners()
    line = command_line(command, args)

    env = os.environ.copy()
    env.update(options.env or {})

    try:
        popen = subprocess.Popen(
            [command, *args],
            cwd=options.cwd,
            env=env,
            stdin=subprocess.PIPE if options.input is not None else None,
            stdout=_stream_target(listeners.stdout, options.silent),
            stderr=_stream_target(listeners.stderr, options.silent),
            # Own process group, so a timeout also reaches what a shell line started.
            start_new_session=os.name == "posix",
        )
    except FileNotFoundError:
        err = ProcessError(line, 127)
        err.details["hint"] = TOOL_HINTS.get(command, f"Install {command} or fix PATH.")
        raise err from None

    readers: List[threading.Thread] = []
    for stream, listener in ((popen.stdout, listeners.stdout), (popen.stderr, listeners.stderr)):
        if stream is not None and listener is not None:
            t = threading.Thread(target=_drain, args=(stream, listener), daemon=True)
            t.start()
            readers.append(t)

    if options.input is not None:
        payload = options.input.encode("utf-8") if isinstance(options.input, str) else options.input
        try:
            popen.stdin.write(payload)
        except BrokenPipeError:
            pass  # child exited without reading; its status tells the story
        finally:
            popen.stdin.close()

    return Process(popen, readers, line, closed=listeners.closed)


def exec_command(command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> int:
    """
    Run a command to completion and return its exit status.

    Raises ProcessError on non-zero exit unless ``ignore_return_code`` is set.
    """
    options = options or ExecOptions()
    proc = spawn(command, args, options)
    code = proc.wait(timeout=options.timeout)
    if code != 0 and not options.ignore_return_code:
        raise ProcessError(proc.command_line, code)
    return code


def output(command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> CommandOutput:
    """Run a command and capture stdout/stderr as text."""
    base = options or ExecOptions()
    out: List[bytes] = []
    err: List[bytes] = []
    opts = ExecOptions(
        cwd=base.cwd,
        env=base.env,
        input=base.input,
        silent=True,
        ignore_return_code=True,
        timeout=base.timeout,
        listeners=ExecListeners(stdout=out.append, stderr=err.append),
    )
    code = exec_command(command, args, opts)
    result = CommandOutput(
        stdout=b"".join(out).decode("utf-8", errors="replace"),
        stderr=b"".join(err).decode("utf-8", errors="replace"),
        exit_code=code,
    )
    if code != 0 and not base.ignore_return_code:
        raise ProcessError(command_line(command, args), code)
    return result


def shell_argv(script: str, platform: Optional[str] = None) -> List[str]:
    """argv running one command line through the platform shell."""
    platform = platform or ("windows" if sys.platform.startswith("win") else "posix")
    if platform == "windows":
        return ["pwsh", "-NoProfile", "-Command", script]
    return ["bash", "-c", script]


def run_shell(script: str, options: Optional[ExecOptions] = None, platform: Optional[str] = None) -> int:
    argv = shell_argv(script, platform)
    return exec_command(argv[0], argv[1:], options)


def signal_name(exit_code: int) -> Optional[str]:
    """
    Name of the signal behind an exit status, e.g. "SIGTERM".

    Popen reports a signal death as -N; a shell reports a killed child as 128+N.
    """
    if exit_code < 0:
        number = -exit_code
    elif 128 < exit_code < 128 + signal.NSIG:
        number = exit_code - 128
    else:
        return None
    try:
        return signal.Signals(number).name
    except ValueError:
        return None
