"""Post-deploy health probes.

The four probes run in order and stop at the first failure. Each one maps to a
different failure class:

- docker_service     container runtime is broken
- container_running  the app container crashed or never started
- proxy_http         nginx is misconfigured (public endpoint does not answer 200)
- app_direct         the app does not answer even when bypassing the proxy
"""

from __future__ import annotations

import logging

import requests

from hostdeploy.config import DeploymentConfig
from hostdeploy.containers import query_container_status
from hostdeploy.docker_compose_helpers import BuildDescriptor
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import RemoteSession, failure_from_batch

logger = logging.getLogger("hostdeploy")

STEP = "validate"
PROXY_PROBE_TIMEOUT = 15


def public_url(host_address: str) -> str:
    return f"http://{host_address}/"


def _probe_failure(probe: str, message: str, *, detail: str = "") -> StepResult:
    return StepResult.failure(f"{STEP}:{probe}", FailureKind.VALIDATION, message, detail=detail)


def check_docker_service(session: RemoteSession) -> StepResult:
    batch = session.run_query("docker-active", "systemctl", "is-active", "--quiet", "docker")
    if not batch.ok:
        return failure_from_batch(
            step=f"{STEP}:docker_service",
            kind=FailureKind.VALIDATION,
            message="Docker service is not active",
            batch=batch,
        )
    return StepResult.success(f"{STEP}:docker_service", "Docker service is running")


def check_container_running(session: RemoteSession, *, repo_name: str, compose: bool) -> StepResult:
    batch, status = query_container_status(session, repo_name=repo_name, compose=compose)
    if status is None:
        return failure_from_batch(
            step=f"{STEP}:container_running",
            kind=FailureKind.VALIDATION,
            message="Could not list running containers",
            batch=batch,
        )
    if not status.running:
        return _probe_failure("container_running", f"Container {repo_name} is not running")
    return StepResult.success(f"{STEP}:container_running", f"Container {repo_name} is healthy")


def check_proxy_http(host_address: str, *, timeout: float = PROXY_PROBE_TIMEOUT) -> StepResult:
    url = public_url(host_address)
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException as exc:
        return _probe_failure("proxy_http", f"Public endpoint {url} is unreachable", detail=str(exc))
    if int(response.status_code) != 200:
        return _probe_failure(
            "proxy_http",
            f"Public endpoint {url} returned HTTP {response.status_code}, expected 200",
        )
    return StepResult.success(f"{STEP}:proxy_http", "Nginx is proxying correctly")


def check_app_direct(session: RemoteSession, *, app_port: str) -> StepResult:
    batch = session.run_query(
        "app-direct",
        "curl",
        "-s",
        "-o",
        "/dev/null",
        f"http://localhost:{app_port}",
    )
    if not batch.ok:
        return failure_from_batch(
            step=f"{STEP}:app_direct",
            kind=FailureKind.VALIDATION,
            message=f"Application is not accessible on port {app_port}",
            batch=batch,
        )
    return StepResult.success(f"{STEP}:app_direct", f"Application is accessible on port {app_port}")


def validate_deployment(
    session: RemoteSession,
    *,
    config: DeploymentConfig,
    descriptor: BuildDescriptor,
) -> list[StepResult]:
    """Run the probes in order; the returned list ends at the first failure."""
    probes = [
        lambda: check_docker_service(session),
        lambda: check_container_running(session, repo_name=config.repo_name, compose=descriptor.is_compose),
        lambda: check_proxy_http(config.host_address),
        lambda: check_app_direct(session, app_port=config.app_port),
    ]
    results: list[StepResult] = []
    for probe in probes:
        result = probe()
        results.append(result)
        logger.info(result.format())
        if not result.ok:
            break
    return results
