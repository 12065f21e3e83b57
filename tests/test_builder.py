import stat
import sys

import pytest

from sandci.builder import BuildkiteBuilder, LocalBuilder, Redactor, select_builder
from sandci.errors import SecretNotFound, TransferError
from sandci.process import ExecOptions
from sandci.secrets import EnvSecretProvider, SecretsSession


def test_redactor_masks_longest_first():
    r = Redactor()
    r.add("abc")
    r.add("abcdef")
    r.add("")
    assert len(r) == 2
    assert r("x abcdef y abc") == "x [REDACTED] y [REDACTED]"


def test_metadata_round_trips_through_state_file(builder, metadata):
    builder.set_metadata("RELEASE_VERSION", "1.2")
    builder.set_metadata("CHANNEL", "beta")
    assert builder.get_metadata("RELEASE_VERSION") == "1.2"
    assert builder.get_metadata("missing") is None
    assert metadata() == {"CHANNEL": "beta", "RELEASE_VERSION": "1.2"}


def test_artifacts_upload_and_download(builder, workspace, tmp_path):
    (workspace / "dist").mkdir()
    (workspace / "dist" / "app.tar").write_text("payload")
    builder.upload_artifact("dist/*.tar")
    assert (builder.artifacts_dir / "dist" / "app.tar").read_text() == "payload"

    got = builder.download_artifact("dist/*.tar", str(tmp_path / "out"))
    assert [p.read_text() for p in got] == ["payload"]


def test_artifact_without_matches(builder, tmp_path):
    with pytest.raises(TransferError):
        builder.upload_artifact("nothing/*.zip")
    with pytest.raises(TransferError):
        builder.download_artifact("nothing/*.zip", str(tmp_path))


def test_secrets_are_redacted_in_step_output(config, workspace, capfd):
    session = SecretsSession(EnvSecretProvider({"SANDCI_SECRET_TOKEN": "hunter2"}))
    b = LocalBuilder(config.runner.artifacts_dir, config.runner.state_dir, secrets=session, workspace=workspace)
    assert b.get_secret("TOKEN") == "hunter2"

    b.exec(sys.executable, ["-c", "print('token is hunter2')"])
    out = capfd.readouterr().out
    assert "hunter2" not in out
    assert "token is [REDACTED]" in out


def test_secret_split_across_reads_is_redacted(builder, console, capsys):
    builder.redact("hunter2")
    console.relay(b"token=hun")
    console.relay(b"ter2\n")
    assert capsys.readouterr().out == "token=[REDACTED]\n"


def test_relay_flushes_partial_line_on_close(builder, console, capsys):
    builder.redact("hunter2")
    console.relay(b"progress ")
    assert capsys.readouterr().out == ""
    console.relay(b"hunter2")
    console.end_relay()
    assert capsys.readouterr().out == "progress [REDACTED]"


def test_relay_keeps_multibyte_characters_split_across_reads(console, capsys):
    console.relay(b"caf\xc3")
    console.relay(b"\xa9\n")
    console.relay(b"\xe2\x9c", err=True)
    console.relay(b"\x93 ok\n", err=True)
    captured = capsys.readouterr()
    assert captured.out == "café\n"
    assert captured.err == "✓ ok\n"


def test_local_builder_without_secrets(builder):
    with pytest.raises(SecretNotFound):
        builder.get_secret("ANY")


def test_select_builder(config):
    assert isinstance(select_builder(config, env={}), LocalBuilder)
    assert isinstance(select_builder(config, env={"BUILDKITE": "true"}), BuildkiteBuilder)


@pytest.fixture
def fake_agent(tmp_path):
    log = tmp_path / "agent.log"
    script = tmp_path / "buildkite-agent"
    script.write_text(
        f"""#!/bin/sh
echo "$*" >> "{log}"
case "$1 $2" in
  "redactor add"|"meta-data set") echo "stdin=$(cat)" >> "{log}" ;;
  "meta-data get") printf "value-of-%s" "$3" ;;
  "secret get")
    if [ "$3" = "TOKEN" ]; then echo "s3cr3t"; else exit 1; fi ;;
esac
"""
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script, log


def test_buildkite_builder_shells_out_to_agent(fake_agent):
    script, log = fake_agent
    b = BuildkiteBuilder(agent=str(script))

    assert b.get_secret("TOKEN") == "s3cr3t"
    b.set_metadata("CHANNEL", "beta")
    assert b.get_metadata("CHANNEL") == "value-of-CHANNEL"

    lines = log.read_text().splitlines()
    assert lines == [
        "secret get TOKEN",
        "redactor add",
        "stdin=s3cr3t",
        "meta-data set CHANNEL",
        "stdin=beta",
        "meta-data get CHANNEL",
    ]
    # The secret itself never appears in an argv.
    assert b.redactor("s3cr3t") == "[REDACTED]"


def test_buildkite_missing_secret(fake_agent):
    script, _ = fake_agent
    with pytest.raises(SecretNotFound):
        BuildkiteBuilder(agent=str(script)).get_secret("NOPE")


def test_exec_relays_through_console(builder, capfd):
    builder.exec(sys.executable, ["-c", "import sys; sys.stderr.write('warned\\n')"], ExecOptions())
    assert "warned" in capfd.readouterr().err
