from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import FakeSession, failed_batch, ok_batch

from hostdeploy.deploy import EXIT_FAILURE, EXIT_INPUT, EXIT_OK, build_parser, main, run_cleanup, run_deploy
from hostdeploy.deploy_log import StepReporter, close_file_logging
from hostdeploy.env_schema import SecretsEnum, VarsEnum
from hostdeploy.results import FailureKind

RUNNING = ok_batch("docker-ps", json.dumps({"ID": "abc", "Names": "app", "Labels": ""}) + "\n")


class SessionFactory:
    def __init__(self, **responses):
        self.responses = {"docker-ps": RUNNING, **responses}
        self.sessions: list[FakeSession] = []

    def __call__(self, target, settings, *, echo=None):
        session = FakeSession(target, settings, echo=echo, responses=self.responses)
        self.sessions.append(session)
        return session


def _local_commands(files: dict[str, str]):
    calls: list[list[str]] = []

    def fake_run(cmd, **kwargs):
        calls.append(list(cmd))
        if cmd[:2] == ["git", "clone"]:
            dest = Path(cmd[-1])
            dest.mkdir(parents=True)
            for name, text in files.items():
                (dest / name).write_text(text, encoding="utf-8")
        return MagicMock(returncode=0, stdout="", stderr="")

    return fake_run, calls


@pytest.fixture(autouse=True)
def _close_logging():
    yield
    close_file_logging()


def test_run_deploy_end_to_end(tmp_path: Path, deploy_config, settings):
    factory = SessionFactory()
    fake_run, local = _local_commands({"Dockerfile": "FROM scratch\n"})

    with patch("subprocess.run", side_effect=fake_run), patch(
        "hostdeploy.validate_deploy.requests.get", return_value=MagicMock(status_code=200)
    ):
        result = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=factory)

    assert result.ok
    assert [c[0] for c in local] == ["git", "rsync"]
    (session,) = factory.sessions
    assert session.calls == [
        "connectivity",
        "provision",
        "deploy-containers",
        "docker-ps",
        "container-logs",
        "nginx-apply",
        "nginx-reload",
        "docker-active",
        "docker-ps",
        "app-direct",
    ]
    assert "docker run -d -p 8000:8000 --name app app" in session.scripts["deploy-containers"].render()
    assert "proxy_pass http://localhost:8000;" in session.scripts["nginx-apply"].render()


def test_second_run_pulls_instead_of_cloning(tmp_path: Path, deploy_config, settings):
    fake_run, local = _local_commands({"Dockerfile": "FROM scratch\n"})
    with patch("subprocess.run", side_effect=fake_run), patch(
        "hostdeploy.validate_deploy.requests.get", return_value=MagicMock(status_code=200)
    ):
        first = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=SessionFactory())
        second = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=SessionFactory())

    assert first.ok and second.ok
    git_calls = [c for c in local if c[0] == "git"]
    assert git_calls[0][1] == "clone"
    assert git_calls[1][:4] == ["git", "-C", str(tmp_path / "app"), "pull"]


def test_no_artifact_never_touches_remote(tmp_path: Path, deploy_config, settings):
    factory = MagicMock()
    fake_run, local = _local_commands({"README.md": "nothing to build\n"})
    with patch("subprocess.run", side_effect=fake_run):
        result = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=factory)

    assert result.failure_kind == FailureKind.SYNC
    factory.assert_not_called()
    assert [c[0] for c in local] == ["git"]


def test_connectivity_failure_stops_pipeline(tmp_path: Path, deploy_config, settings):
    factory = SessionFactory(connectivity=failed_batch("connectivity", 255, "Permission denied (publickey)"))
    fake_run, local = _local_commands({"Dockerfile": "FROM scratch\n"})
    with patch("subprocess.run", side_effect=fake_run):
        result = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=factory)

    assert result.failure_kind == FailureKind.CONNECTION
    assert factory.sessions[0].calls == ["connectivity"]
    assert [c[0] for c in local] == ["git"]


def test_invalid_nginx_config_leaves_proxy_untouched(tmp_path: Path, deploy_config, settings):
    factory = SessionFactory(**{"nginx-apply": failed_batch("nginx-apply", 1, "nginx: [emerg] unexpected")})
    fake_run, _ = _local_commands({"Dockerfile": "FROM scratch\n"})
    with patch("subprocess.run", side_effect=fake_run), patch("hostdeploy.validate_deploy.requests.get") as mock_get:
        result = run_deploy(deploy_config, settings, workdir=tmp_path, reporter=StepReporter(), session_factory=factory)

    assert result.failure_kind == FailureKind.PROXY
    calls = factory.sessions[0].calls
    assert "nginx-reload" not in calls
    assert calls[-1] == "nginx-apply"
    mock_get.assert_not_called()


def test_run_cleanup(deploy_config, settings):
    from hostdeploy.config import CleanupConfig

    config = CleanupConfig(
        repo_url=deploy_config.repo_url,
        ssh_user=deploy_config.ssh_user,
        host_address=deploy_config.host_address,
        ssh_key_path=deploy_config.ssh_key_path,
    )
    factory = SessionFactory()
    result = run_cleanup(config, settings, reporter=StepReporter(), session_factory=factory)
    assert result.ok
    assert factory.sessions[0].calls == ["connectivity", "cleanup"]


# --- main() exit codes ---


@pytest.fixture
def clean_env(monkeypatch, tmp_path: Path):
    for key in (*VarsEnum, *SecretsEnum):
        monkeypatch.delenv(key.value, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _cli(ssh_key: Path, *, port: str = "8000") -> list[str]:
    return [
        "--repo-url",
        "https://example.com/sample/app",
        "--branch",
        "main",
        "--ssh-user",
        "root",
        "--host",
        "203.0.113.10",
        "--ssh-key",
        str(ssh_key),
        "--app-port",
        port,
    ]


def _no_prompt(text: str) -> str:
    raise AssertionError(f"unexpected prompt: {text}")


def test_main_rejects_bad_port_without_side_effects(clean_env: Path, ssh_key: Path, monkeypatch):
    monkeypatch.setenv("DEPLOY_GIT_TOKEN", "tok-123")
    with patch("subprocess.run") as mock_run:
        code = main(_cli(ssh_key, port="abc"), prompt=_no_prompt)

    assert code == EXIT_INPUT
    mock_run.assert_not_called()
    (log_file,) = clean_env.glob("deploy_*.log")
    assert "Application port must be a number" in log_file.read_text(encoding="utf-8")


def test_main_eof_on_prompt_is_input_error(clean_env: Path):
    def eof(_: str) -> str:
        raise EOFError

    assert main([], prompt=eof) == EXIT_INPUT


def test_main_deploy_success(clean_env: Path, ssh_key: Path, monkeypatch):
    monkeypatch.setenv("DEPLOY_GIT_TOKEN", "tok-123")
    fake_run, _ = _local_commands({"Dockerfile": "FROM scratch\n"})
    with patch("subprocess.run", side_effect=fake_run), patch(
        "hostdeploy.validate_deploy.requests.get", return_value=MagicMock(status_code=200)
    ), patch("hostdeploy.deploy.RemoteSession", SessionFactory()):
        code = main(_cli(ssh_key), prompt=_no_prompt)

    assert code == EXIT_OK
    log_text = next(clean_env.glob("deploy_*.log")).read_text(encoding="utf-8")
    assert "completed successfully" in log_text
    assert "tok-123" not in log_text


def test_main_step_failure_exits_nonzero(clean_env: Path, ssh_key: Path, monkeypatch):
    monkeypatch.setenv("DEPLOY_GIT_TOKEN", "tok-123")
    fake_run, _ = _local_commands({"Dockerfile": "FROM scratch\n"})
    factory = SessionFactory(provision=failed_batch("provision", 100, "E: dpkg was interrupted"))
    with patch("subprocess.run", side_effect=fake_run), patch("hostdeploy.deploy.RemoteSession", factory):
        code = main(_cli(ssh_key), prompt=_no_prompt)

    assert code == EXIT_FAILURE
    log_text = next(clean_env.glob("deploy_*.log")).read_text(encoding="utf-8")
    assert "ERROR [provision/provision]" in log_text
    assert "dpkg was interrupted" in log_text


def test_main_cleanup(clean_env: Path, ssh_key: Path):
    factory = SessionFactory()
    argv = ["--cleanup", "--repo-url", "https://example.com/sample/app", "--ssh-user", "root", "--host", "203.0.113.10", "--ssh-key", str(ssh_key)]
    with patch("hostdeploy.deploy.RemoteSession", factory):
        code = main(argv, prompt=_no_prompt)

    assert code == EXIT_OK
    assert factory.sessions[0].calls == ["connectivity", "cleanup"]


def test_main_rejects_unsafe_remote_log_before_any_command(clean_env: Path, ssh_key: Path, monkeypatch):
    monkeypatch.setenv("DEPLOY_GIT_TOKEN", "tok-123")
    monkeypatch.setenv("DEPLOY_REMOTE_LOG", "/var/log/my deploy.log")
    factory = MagicMock()
    with patch("subprocess.run") as mock_run, patch("hostdeploy.deploy.RemoteSession", factory):
        code = main(_cli(ssh_key), prompt=_no_prompt)

    assert code == EXIT_INPUT
    mock_run.assert_not_called()
    factory.assert_not_called()


def test_help_mentions_remote_log_location():
    assert "DEPLOY_REMOTE_LOG" in build_parser().format_help()
