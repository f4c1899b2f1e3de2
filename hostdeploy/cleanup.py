"""Symmetric teardown of a deployment: containers, files, nginx site.

Every statement tolerates absence, so cleaning a host that never saw a
deployment succeeds.
"""

from __future__ import annotations

from hostdeploy.config import CleanupConfig, DeploySettings
from hostdeploy.containers import add_detected_teardown
from hostdeploy.remote_script import RemoteScript, command, require_safe
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import RemoteSession, failure_from_batch

STEP = "cleanup"


def build_cleanup_script(*, config: CleanupConfig, settings: DeploySettings) -> RemoteScript:
    layout = config.layout
    deploy_dir = require_safe(layout.deploy_dir, what="deployment directory")

    script = RemoteScript(remote_log_path=settings.remote_log_path, name="cleanup")
    script.log(f"Cleaning up {config.repo_name}...")
    script.raw(f"if [ -d {command(deploy_dir)} ]; then")
    script.run("cd", deploy_dir)
    add_detected_teardown(script, repo_name=config.repo_name)
    script.run("cd", "/")
    script.run("rm", "-rf", deploy_dir)
    script.raw("fi")
    script.run("rm", "-f", layout.nginx_available)
    script.run("rm", "-f", layout.nginx_enabled)
    script.run("systemctl", "reload", "nginx", tolerate_failure=True)
    script.log("Cleanup completed")
    return script


def cleanup_deployment(session: RemoteSession, *, config: CleanupConfig) -> StepResult:
    batch = session.run_batch(build_cleanup_script(config=config, settings=session.settings))
    if not batch.ok:
        return failure_from_batch(step=STEP, kind=FailureKind.CLEANUP, message="Cleanup failed", batch=batch)
    return StepResult.success(STEP, f"Removed deployment of {config.repo_name}")
