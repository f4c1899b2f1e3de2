from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from hostdeploy.config import DeploySettings, HostTarget, RemoteLayout
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import build_ssh_options

logger = logging.getLogger("hostdeploy")

STEP = "transfer"


def build_rsync_cmd(*, source_dir: Path, target: HostTarget, settings: DeploySettings, remote_dir: str) -> list[str]:
    ssh_command = " ".join(shlex.quote(p) for p in ["ssh", *build_ssh_options(target=target, settings=settings)])
    # Trailing slashes copy the directory contents into remote_dir.
    # --whole-file skips delta transfer; --delete drops files that no longer exist locally.
    # The parent of remote_dir is the SSH user's home; rsync creates remote_dir itself.
    return [
        "rsync",
        "-a",
        "--delete",
        "--whole-file",
        "-e",
        ssh_command,
        f"{source_dir}/",
        f"{target.destination}:{remote_dir}/",
    ]


def transfer_repository(
    *,
    source_dir: Path,
    target: HostTarget,
    settings: DeploySettings,
    layout: RemoteLayout,
) -> StepResult:
    cmd = build_rsync_cmd(source_dir=source_dir, target=target, settings=settings, remote_dir=layout.deploy_dir)
    logger.info("Transferring %s to %s:%s", source_dir, target.destination, layout.deploy_dir)
    try:
        result = subprocess.run(cmd, check=False, capture_output=True, text=True, stdin=subprocess.DEVNULL)
    except FileNotFoundError:
        return StepResult.failure(STEP, FailureKind.TRANSFER, "rsync is not installed on the local machine")
    if result.returncode != 0:
        err = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        return StepResult.failure(STEP, FailureKind.TRANSFER, "Failed to transfer files", detail=err)
    return StepResult.success(STEP, f"Files transferred to {layout.deploy_dir}")
