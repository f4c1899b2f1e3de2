"""Clone or update the local working copy of the application repository.

The access token is handed to git as an `http.extraHeader` through the
`GIT_CONFIG_*` environment variables. It never appears in the URL, in the
command line, or in the clone's `.git/config`.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from hostdeploy.config import DeploymentConfig
from hostdeploy.docker_compose_helpers import (
    BuildDescriptor,
    COMPOSE_FILENAMES,
    DOCKERFILE_NAME,
    count_published_ports,
    detect_build_descriptor,
    load_docker_compose_config,
)
from hostdeploy.results import FailureKind, StepResult

logger = logging.getLogger("hostdeploy")

STEP = "sync"


@dataclass(frozen=True)
class RepositoryCheckout:
    path: Path
    descriptor: BuildDescriptor


def build_git_auth_env(*, token: str, base_env: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env.update(
        {
            "GIT_CONFIG_COUNT": "1",
            "GIT_CONFIG_KEY_0": "http.extraHeader",
            "GIT_CONFIG_VALUE_0": f"Authorization: Bearer {token}",
            # Fail instead of blocking on a credential prompt.
            "GIT_TERMINAL_PROMPT": "0",
        }
    )
    return env


def build_git_clone_cmd(*, repo_url: str, branch: str, dest: Path) -> list[str]:
    return ["git", "clone", "--branch", branch, "--", repo_url, str(dest)]


def build_git_pull_cmd(*, repo_dir: Path, branch: str) -> list[str]:
    return ["git", "-C", str(repo_dir), "pull", "origin", branch]


def redact(text: str, secret: str) -> str:
    if not secret:
        return text
    return text.replace(secret, "***")


def sync_repository(config: DeploymentConfig, *, workdir: Path) -> tuple[StepResult, RepositoryCheckout | None]:
    repo_dir = workdir / config.repo_name

    if repo_dir.exists():
        logger.info("Repository directory %s exists, pulling latest changes...", repo_dir)
        cmd = build_git_pull_cmd(repo_dir=repo_dir, branch=config.branch)
        action = "pull"
    else:
        logger.info("Cloning repository %s (branch %s)...", config.repo_url, config.branch)
        cmd = build_git_clone_cmd(repo_url=config.repo_url, branch=config.branch, dest=repo_dir)
        action = "clone"

    try:
        result = subprocess.run(
            cmd,
            cwd=str(workdir),
            env=build_git_auth_env(token=config.auth_token),
            check=False,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        return StepResult.failure(STEP, FailureKind.SYNC, "git is not installed on the local machine"), None
    if result.returncode != 0:
        err = str(result.stderr or "").strip() or str(result.stdout or "").strip()
        return (
            StepResult.failure(
                STEP,
                FailureKind.SYNC,
                f"Failed to {action} repository",
                detail=redact(err, config.auth_token),
            ),
            None,
        )

    descriptor = detect_build_descriptor(repo_dir)
    if descriptor is None:
        expected = ", ".join((DOCKERFILE_NAME, *COMPOSE_FILENAMES))
        return (
            StepResult.failure(
                STEP,
                FailureKind.SYNC,
                f"No buildable artifact found in repository (expected one of: {expected})",
            ),
            None,
        )

    if descriptor.is_compose:
        ports = count_published_ports(load_docker_compose_config(repo_dir / descriptor.filename))
        if ports > 1:
            logger.warning(
                "%s publishes %d ports; only port %s is routed through the proxy",
                descriptor.filename,
                ports,
                config.app_port,
            )

    return (
        StepResult.success(STEP, f"Repository {action} complete; found {descriptor.filename}"),
        RepositoryCheckout(path=repo_dir, descriptor=descriptor),
    )
