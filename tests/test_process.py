import sys
import time

import pytest

from sandci.errors import CommandTimeout, ProcessError
from sandci.process import (
    ExecListeners,
    ExecOptions,
    exec_command,
    output,
    run_shell,
    shell_argv,
    signal_name,
    spawn,
)

PY = sys.executable


def test_exit_status_is_returned_or_raised():
    assert exec_command(PY, ["-c", "pass"]) == 0

    with pytest.raises(ProcessError) as exc:
        exec_command(PY, ["-c", "import sys; sys.exit(3)"], ExecOptions(silent=True))
    assert exc.value.exit_code == 3

    code = exec_command(PY, ["-c", "import sys; sys.exit(3)"], ExecOptions(ignore_return_code=True))
    assert code == 3


def test_output_captures_both_streams():
    out = output(PY, ["-c", "import sys; print('out'); print('err', file=sys.stderr)"])
    assert out.stdout == "out\n"
    assert out.stderr == "err\n"
    assert out.exit_code == 0


def test_stdin_is_fed_and_closed():
    out = output(PY, ["-c", "import sys; print(sys.stdin.read().upper(), end='')"], ExecOptions(input="secret value"))
    assert out.stdout == "SECRET VALUE"


def test_env_is_an_overlay():
    out = output(
        PY,
        ["-c", "import os; print(os.environ['SANDCI_PROBE'], 'PATH' in os.environ)"],
        ExecOptions(env={"SANDCI_PROBE": "here"}),
    )
    assert out.stdout.split() == ["here", "True"]


def test_listeners_receive_every_chunk_before_return():
    chunks = []
    exec_command(
        PY,
        ["-c", "import sys\nfor i in range(200): print('line', i)"],
        ExecOptions(listeners=ExecListeners(stdout=chunks.append)),
    )
    text = b"".join(chunks).decode()
    assert text.splitlines()[-1] == "line 199"


def test_timeout_kills_the_process():
    with pytest.raises(CommandTimeout) as exc:
        exec_command(PY, ["-c", "import time; time.sleep(30)"], ExecOptions(timeout=0.3))
    assert exc.value.exit_code == -9
    assert exc.value.timeout == 0.3


def test_timeout_reaches_commands_started_by_a_shell_line():
    chunks = []
    started = time.monotonic()
    with pytest.raises(CommandTimeout):
        run_shell(
            "echo begin; sleep 30; echo done",
            ExecOptions(timeout=0.5, listeners=ExecListeners(stdout=chunks.append)),
            platform="linux",
        )
    assert time.monotonic() - started < 10
    assert b"".join(chunks) == b"begin\n"


def test_closed_runs_once_after_output_is_drained():
    events = []
    exec_command(
        PY,
        ["-c", "print('last')"],
        ExecOptions(
            listeners=ExecListeners(
                stdout=lambda chunk: events.append(chunk),
                closed=lambda: events.append("closed"),
            )
        ),
    )
    assert events[-1] == "closed"
    assert events.count("closed") == 1
    assert b"".join(e for e in events if isinstance(e, bytes)) == b"last\n"


def test_signal_name():
    assert signal_name(-15) == "SIGTERM"
    assert signal_name(128 + 9) == "SIGKILL"
    assert signal_name(0) is None
    assert signal_name(2) is None
    assert signal_name(128) is None


def test_missing_binary_is_exit_127_with_hint():
    with pytest.raises(ProcessError) as exc:
        spawn("sandci-definitely-not-installed")
    assert exc.value.exit_code == 127
    assert "Install sandci-definitely-not-installed" in exc.value.details["hint"]


def test_missing_known_tool_has_specific_hint(monkeypatch):
    monkeypatch.setenv("PATH", "")
    with pytest.raises(ProcessError) as exc:
        spawn("docker", ["version"])
    assert "Docker" in exc.value.details["hint"]


def test_non_zero_output_raises_unless_ignored():
    with pytest.raises(ProcessError):
        output(PY, ["-c", "import sys; sys.exit(4)"])
    assert output(PY, ["-c", "import sys; sys.exit(4)"], ExecOptions(ignore_return_code=True)).exit_code == 4


def test_shell_argv_per_platform():
    assert shell_argv("echo hi", "linux") == ["bash", "-c", "echo hi"]
    assert shell_argv("echo hi", "windows") == ["pwsh", "-NoProfile", "-Command", "echo hi"]
