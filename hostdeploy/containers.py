"""Container lifecycle on the remote host: teardown, build/run, verify, capture logs.

Container state is read with `docker ps --format '{{json .}}'` and parsed into a
`ContainerStatus`, rather than grepping the human-readable table.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from hostdeploy.config import DeploymentConfig, DeploySettings
from hostdeploy.docker_compose_helpers import COMPOSE_FILENAMES, BuildDescriptor
from hostdeploy.remote_script import RemoteScript, command, require_safe
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import BatchResult, RemoteSession, failure_from_batch

logger = logging.getLogger("hostdeploy")

STEP = "lifecycle"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
APPEND_TO_REMOTE_LOG = '>> "$DEPLOY_LOG" 2>&1'


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    running: bool
    container_ids: tuple[str, ...] = ()


def image_tag(repo_name: str) -> str:
    # Image references must be lowercase.
    return repo_name.lower()


def compose_project_name(repo_name: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "-", repo_name.lower())


def compose_cmd(*, repo_name: str, compose_file: str, args: list[str]) -> list[str]:
    return ["docker", "compose", "-p", compose_project_name(repo_name), "-f", compose_file, *args]


def add_teardown(script: RemoteScript, *, repo_name: str, compose_file: str | None) -> RemoteScript:
    """Stop whatever a previous run left behind; absence is not an error."""
    name = require_safe(repo_name, what="repository name")
    if compose_file:
        script.run(*compose_cmd(repo_name=name, compose_file=compose_file, args=["down"]), tolerate_failure=True)
    else:
        script.run("docker", "stop", name, tolerate_failure=True)
        script.run("docker", "rm", name, tolerate_failure=True)
    return script


def add_detected_teardown(script: RemoteScript, *, repo_name: str) -> RemoteScript:
    """Teardown for the current directory, picking compose vs single container remotely."""
    name = require_safe(repo_name, what="repository name")
    script.raw("COMPOSE_FILE=''")
    script.raw(f"for f in {' '.join(COMPOSE_FILENAMES)}; do")
    script.raw('if [ -f "$f" ]; then COMPOSE_FILE="$f"; break; fi')
    script.raw("done")
    script.raw('if [ -n "$COMPOSE_FILE" ]; then')
    script.raw(
        f"{command('docker', 'compose', '-p', compose_project_name(name))} -f \"$COMPOSE_FILE\" down || true"
    )
    script.raw("else")
    add_teardown(script, repo_name=name, compose_file=None)
    script.raw("fi")
    return script


def build_deploy_script(
    *,
    config: DeploymentConfig,
    descriptor: BuildDescriptor,
    settings: DeploySettings,
) -> RemoteScript:
    name = require_safe(config.repo_name, what="repository name")
    port = require_safe(config.app_port, what="application port")
    deploy_dir = require_safe(config.layout.deploy_dir, what="deployment directory")
    compose_file = descriptor.filename if descriptor.is_compose else None

    script = RemoteScript(remote_log_path=settings.remote_log_path, name="deploy-containers")
    script.run("cd", deploy_dir)
    script.log(f"Stopping previous deployment of {name}...")
    add_teardown(script, repo_name=name, compose_file=compose_file)

    script.log("Building and running Docker containers...")
    if compose_file:
        script.run(*compose_cmd(repo_name=name, compose_file=compose_file, args=["up", "-d", "--build"]))
    else:
        script.run("docker", "build", "-t", image_tag(name), ".")
        script.run("docker", "run", "-d", "-p", f"{port}:{port}", "--name", name, image_tag(name))
    script.log(f"Containers for {name} started")
    return script


def build_diagnostics_script(
    *,
    repo_name: str,
    deploy_dir: str,
    compose_file: str | None,
    settings: DeploySettings,
) -> RemoteScript:
    name = require_safe(repo_name, what="repository name")
    script = RemoteScript(remote_log_path=settings.remote_log_path, name="container-logs")
    script.log(f"Container logs for {name}:")
    if compose_file:
        script.run("cd", require_safe(deploy_dir, what="deployment directory"))
        script.run(
            *compose_cmd(repo_name=name, compose_file=compose_file, args=["logs", "--no-color"]),
            redirect=APPEND_TO_REMOTE_LOG,
            tolerate_failure=True,
        )
    else:
        script.run("docker", "logs", name, redirect=APPEND_TO_REMOTE_LOG, tolerate_failure=True)
    return script


def _split_csv(value: object) -> list[str]:
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


def _labels(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    out: dict[str, str] = {}
    for item in _split_csv(value):
        key, _, val = item.partition("=")
        out[key] = val
    return out


def parse_container_status(stdout: str, *, name: str, compose: bool) -> ContainerStatus:
    """Parse `docker ps --format '{{json .}}'` output (one JSON object per line)."""
    project = compose_project_name(name)
    ids: list[str] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable docker ps line: %s", line)
            continue
        if not isinstance(row, dict):
            continue
        if compose:
            matched = _labels(row.get("Labels")).get(COMPOSE_PROJECT_LABEL) == project
        else:
            matched = name in [n.lstrip("/") for n in _split_csv(row.get("Names"))]
        if matched:
            ids.append(str(row.get("ID") or ""))
    return ContainerStatus(name=name, running=bool(ids), container_ids=tuple(ids))


def query_container_status(
    session: RemoteSession,
    *,
    repo_name: str,
    compose: bool,
) -> tuple[BatchResult, ContainerStatus | None]:
    batch = session.run_query("docker-ps", "docker", "ps", "--format", "{{json .}}")
    if not batch.ok:
        return batch, None
    return batch, parse_container_status(batch.stdout, name=repo_name, compose=compose)


def deploy_containers(
    session: RemoteSession,
    *,
    config: DeploymentConfig,
    descriptor: BuildDescriptor,
) -> StepResult:
    script = build_deploy_script(config=config, descriptor=descriptor, settings=session.settings)
    batch = session.run_batch(script)
    if batch.connection_failed:
        return failure_from_batch(step=STEP, kind=FailureKind.LIFECYCLE, message="Failed to deploy application", batch=batch)

    if not batch.ok:
        result = failure_from_batch(
            step=STEP,
            kind=FailureKind.LIFECYCLE,
            message="Failed to build and start containers",
            batch=batch,
        )
    else:
        query, status = query_container_status(session, repo_name=config.repo_name, compose=descriptor.is_compose)
        if status is None:
            result = failure_from_batch(
                step=STEP,
                kind=FailureKind.LIFECYCLE,
                message="Failed to query running containers",
                batch=query,
            )
        elif not status.running:
            result = StepResult.failure(
                STEP,
                FailureKind.LIFECYCLE,
                f"Container {config.repo_name} is not running after start",
            )
        else:
            result = StepResult.success(
                STEP,
                f"Container {config.repo_name} is running ({', '.join(status.container_ids)})",
            )

    # Logs are captured whatever the outcome, for post-mortem on the host.
    diagnostics = build_diagnostics_script(
        repo_name=config.repo_name,
        deploy_dir=config.layout.deploy_dir,
        compose_file=descriptor.filename if descriptor.is_compose else None,
        settings=session.settings,
    )
    logs_batch = session.run_batch(diagnostics)
    if not logs_batch.ok:
        logger.warning("Could not append container logs to the remote log: %s", logs_batch.error_text())
    return result
