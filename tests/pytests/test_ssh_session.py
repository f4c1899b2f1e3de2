from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

from hostdeploy.config import DeploySettings, HostTarget
from hostdeploy.remote_script import RemoteScript
from hostdeploy.results import FailureKind
from hostdeploy.ssh_session import BatchResult, RemoteSession, build_ssh_cmd, failure_from_batch

TARGET = HostTarget(ssh_user="root", host_address="203.0.113.10", ssh_key_path=Path("/keys/id_ed25519"))
SETTINGS = DeploySettings(remote_log_path="/root/deploy.log", ssh_connect_timeout=12)


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def test_build_ssh_cmd():
    cmd = build_ssh_cmd(target=TARGET, settings=SETTINGS, remote_command="echo SSH_OK")
    assert cmd == [
        "ssh",
        "-i",
        "/keys/id_ed25519",
        "-o",
        "BatchMode=yes",
        "-o",
        "ConnectTimeout=12",
        "-o",
        "StrictHostKeyChecking=accept-new",
        "root@203.0.113.10",
        "echo SSH_OK",
    ]


def test_run_batch_passes_script_as_single_argument_with_stdin_closed():
    echoed: list[str] = []
    session = RemoteSession(TARGET, SETTINGS, echo=echoed.append)
    script = RemoteScript(remote_log_path=SETTINGS.remote_log_path, name="demo")
    script.run("echo", "hi")

    with patch("subprocess.run", return_value=_completed(stdout="hi\n")) as mock_run:
        batch = session.run_batch(script)

    assert batch.ok
    assert batch.name == "demo"
    assert echoed == ["hi\n"]

    args, kwargs = mock_run.call_args
    cmd = args[0]
    assert cmd[0] == "ssh"
    assert cmd[-1] == f"sh -c {shlex.quote(script.render())}"
    assert kwargs["stdin"] is subprocess.DEVNULL
    assert kwargs["check"] is False


def test_connectivity_requires_marker():
    session = RemoteSession(TARGET, SETTINGS)
    with patch("subprocess.run", return_value=_completed(stdout="SSH_OK\n")):
        assert session.check_connectivity().ok
    with patch("subprocess.run", return_value=_completed(stdout="motd only\n")):
        assert not session.check_connectivity().ok


def test_exit_255_is_connection_failure():
    session = RemoteSession(TARGET, SETTINGS)
    with patch("subprocess.run", return_value=_completed(returncode=255, stderr="Connection refused")):
        batch = session.run_query("noop", "true")

    assert batch.connection_failed
    result = failure_from_batch(step="provision", kind=FailureKind.PROVISION, message="Provisioning failed", batch=batch)
    assert result.failure_kind == FailureKind.CONNECTION
    assert result.detail == "Connection refused"


def test_command_failure_keeps_component_kind():
    batch = BatchResult(name="provision", returncode=100, stdout="", stderr="E: Unable to locate package")
    result = failure_from_batch(step="provision", kind=FailureKind.PROVISION, message="Provisioning failed", batch=batch)
    assert result.failure_kind == FailureKind.PROVISION
    assert result.message == "Provisioning failed"


def test_missing_ssh_client_reported_as_connection_failure():
    session = RemoteSession(TARGET, SETTINGS)
    with patch("subprocess.run", side_effect=FileNotFoundError("ssh")):
        batch = session.check_connectivity()
    assert batch.connection_failed
    assert "ssh client not found" in batch.error_text()


def test_run_query_quotes_arguments():
    session = RemoteSession(TARGET, SETTINGS)
    with patch("subprocess.run", return_value=_completed(stdout="{}\n")) as mock_run:
        session.run_query("docker-ps", "docker", "ps", "--format", "{{json .}}")
    assert mock_run.call_args[0][0][-1] == "docker ps --format '{{json .}}'"
