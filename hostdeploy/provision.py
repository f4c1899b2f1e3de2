"""Idempotent host preparation: package index, git, curl, rsync, docker, compose plugin, nginx.

Each tool is probed first and only installed when missing. Services are enabled
and started only right after a fresh install, so a re-run never restarts them.
"""

from __future__ import annotations

from hostdeploy.config import DeploySettings, HostTarget
from hostdeploy.remote_script import RemoteScript, command, require_safe
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import RemoteSession, failure_from_batch

STEP = "provision"
DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
DOCKER_GROUP = "docker"

APT_ENV = "DEBIAN_FRONTEND=noninteractive"


def _apt_install(package: str) -> str:
    return f"{APT_ENV} {command('apt-get', 'install', '-y', package)}"


def build_provision_script(*, target: HostTarget, settings: DeploySettings) -> RemoteScript:
    user = require_safe(target.ssh_user, what="SSH user")
    script = RemoteScript(remote_log_path=settings.remote_log_path, name="provision")

    script.log("Updating package index and upgrading packages...")
    script.raw(f"{APT_ENV} apt-get update -y")
    script.raw(f"{APT_ENV} apt-get upgrade -y")

    for tool in ("git", "curl", "rsync"):
        script.raw(f"if ! command -v {tool} >/dev/null 2>&1; then")
        script.log(f"Installing {tool}...")
        script.raw(_apt_install(tool))
        script.raw("fi")

    script.raw("if ! command -v docker >/dev/null 2>&1; then")
    script.log("Installing Docker...")
    script.raw(f"curl -fsSL {command(DOCKER_INSTALL_SCRIPT_URL)} -o /tmp/get-docker.sh")
    script.raw("sh /tmp/get-docker.sh")
    script.raw("rm -f /tmp/get-docker.sh")
    script.run("systemctl", "enable", "docker")
    script.run("systemctl", "start", "docker")
    script.raw("fi")
    script.raw("log \"Docker installed: $(docker --version)\"")

    if user != "root":
        script.raw(f"if ! id -nG {command(user)} | tr ' ' '\\n' | grep -qx {DOCKER_GROUP}; then")
        script.log(f"Adding {user} to the {DOCKER_GROUP} group (effective on next login)...")
        script.run("usermod", "-aG", DOCKER_GROUP, user)
        script.raw("fi")

    script.raw("if ! docker compose version >/dev/null 2>&1; then")
    script.log("Installing Docker Compose plugin...")
    script.raw(_apt_install("docker-compose-plugin"))
    script.raw("fi")
    script.raw("log \"Docker Compose installed: $(docker compose version)\"")

    script.raw("if ! command -v nginx >/dev/null 2>&1; then")
    script.log("Installing Nginx...")
    script.raw(_apt_install("nginx"))
    script.run("systemctl", "enable", "nginx")
    script.run("systemctl", "start", "nginx")
    script.raw("fi")
    script.raw("log \"Nginx installed: $(nginx -v 2>&1)\"")

    script.log("Prerequisites installed successfully")
    return script


def provision_host(session: RemoteSession) -> StepResult:
    script = build_provision_script(target=session.target, settings=session.settings)
    batch = session.run_batch(script)
    if not batch.ok:
        return failure_from_batch(
            step=STEP,
            kind=FailureKind.PROVISION,
            message="Failed to install prerequisites",
            batch=batch,
        )
    return StepResult.success(STEP, "Host prerequisites are installed and running")
