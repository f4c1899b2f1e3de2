"""Run shell batches on the remote host over `ssh`.

A new ssh process (and session) is opened for every batch and closed once it
returns. Authentication is key-only: `BatchMode=yes` disables password prompts.

Security note: this module shells out to `ssh`. Remote scripts are passed as a
single `sh -c` argument with stdin closed, so commands that read stdin cannot
swallow the rest of the batch.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable

from hostdeploy.config import DeploySettings, HostTarget
from hostdeploy.remote_script import RemoteScript
from hostdeploy.results import FailureKind, StepResult

logger = logging.getLogger("hostdeploy")

# OpenSSH reserves exit status 255 for its own errors (unreachable host, auth rejected).
SSH_CONNECTION_FAILURE = 255


@dataclass(frozen=True)
class BatchResult:
    name: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def connection_failed(self) -> bool:
        return self.returncode == SSH_CONNECTION_FAILURE

    def error_text(self) -> str:
        err = str(self.stderr or "").strip() or str(self.stdout or "").strip()
        return err or f"exit status {self.returncode}"


def build_ssh_options(*, target: HostTarget, settings: DeploySettings) -> list[str]:
    return [
        "-i",
        str(target.ssh_key_path),
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={settings.ssh_connect_timeout}",
        "-o",
        "StrictHostKeyChecking=accept-new",
    ]


def build_ssh_cmd(*, target: HostTarget, settings: DeploySettings, remote_command: str) -> list[str]:
    return ["ssh", *build_ssh_options(target=target, settings=settings), target.destination, remote_command]


class RemoteSession:
    """Executor for remote batches against one host."""

    def __init__(self, target: HostTarget, settings: DeploySettings, *, echo: Callable[[str], None] | None = None):
        self.target = target
        self.settings = settings
        self.echo = echo

    def _execute(self, name: str, remote_command: str) -> BatchResult:
        cmd = build_ssh_cmd(target=self.target, settings=self.settings, remote_command=remote_command)
        logger.info("ssh %s: running batch '%s'", self.target.destination, name)
        try:
            result = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return BatchResult(name=name, returncode=SSH_CONNECTION_FAILURE, stdout="", stderr="ssh client not found")
        batch = BatchResult(
            name=name,
            returncode=result.returncode,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )
        if not batch.ok:
            logger.info("ssh %s: batch '%s' failed: %s", self.target.destination, name, batch.error_text())
        return batch

    def check_connectivity(self) -> BatchResult:
        result = self._execute("connectivity", "echo SSH_OK")
        if result.ok and "SSH_OK" not in result.stdout:
            return BatchResult(name="connectivity", returncode=1, stdout=result.stdout, stderr="unexpected ssh output")
        return result

    def run_batch(self, script: RemoteScript) -> BatchResult:
        result = self._execute(script.name, f"sh -c {shlex.quote(script.render())}")
        if self.echo is not None and result.stdout:
            self.echo(result.stdout)
        return result

    def run_query(self, name: str, *argv: str) -> BatchResult:
        """Run one read-only command and capture its stdout for parsing."""
        return self._execute(name, " ".join(shlex.quote(a) for a in argv))


def failure_from_batch(*, step: str, kind: FailureKind, message: str, batch: BatchResult) -> StepResult:
    """Map a failed batch to a step failure; ssh-level errors become CONNECTION."""
    if batch.connection_failed:
        return StepResult.failure(
            step,
            FailureKind.CONNECTION,
            f"{message}: could not establish SSH session",
            detail=batch.error_text(),
        )
    return StepResult.failure(step, kind, message, detail=batch.error_text())
