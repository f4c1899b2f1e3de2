"""Nginx site configuration for the deployed app.

Apply and reload are two separate batches. The reload batch only runs when
`nginx -t` accepted the new site. On a failed test the previous site file is
restored, so the daemon keeps serving the old configuration and a later restart
still finds a valid one.
"""

from __future__ import annotations

import logging
from textwrap import dedent

from hostdeploy.config import DeploymentConfig, DeploySettings, RemoteLayout
from hostdeploy.remote_script import RemoteScript, command, require_safe
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import RemoteSession, failure_from_batch

logger = logging.getLogger("hostdeploy")

STEP = "proxy"
BACKUP_SUFFIX = ".hostdeploy-bak"


def render_site_config(*, server_name: str, app_port: str, listen: str = "80") -> str:
    return dedent(
        f"""\
        server {{
            listen {listen};
            server_name {require_safe(server_name, what="server name")};

            location / {{
                proxy_pass http://localhost:{require_safe(app_port, what="application port")};
                proxy_set_header Host $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
            }}
        }}
        """
    )


def build_apply_script(*, layout: RemoteLayout, site_config: str, settings: DeploySettings) -> RemoteScript:
    available = require_safe(layout.nginx_available, what="nginx site path")
    enabled = require_safe(layout.nginx_enabled, what="nginx link path")
    backup = available + BACKUP_SUFFIX
    q_available, q_enabled, q_backup = command(available), command(enabled), command(backup)

    script = RemoteScript(remote_log_path=settings.remote_log_path, name="nginx-apply")
    script.log("Writing nginx site configuration...")
    script.raw("HAD_PREVIOUS=0")
    script.raw(f"if [ -f {q_available} ]; then cp -p {q_available} {q_backup}; HAD_PREVIOUS=1; fi")
    script.write_file(available, site_config)
    script.run("ln", "-sfn", available, enabled)
    script.raw("if ! nginx -t; then")
    script.log("nginx configuration test failed; restoring previous site configuration")
    script.raw('if [ "$HAD_PREVIOUS" = 1 ]; then')
    script.raw(f"mv -f {q_backup} {q_available}")
    script.raw("else")
    script.raw(f"rm -f {q_enabled} {q_available}")
    script.raw("fi")
    script.raw("exit 1")
    script.raw("fi")
    script.raw(f"rm -f {q_backup}")
    script.log("nginx configuration test passed")
    return script


def build_reload_script(*, settings: DeploySettings) -> RemoteScript:
    script = RemoteScript(remote_log_path=settings.remote_log_path, name="nginx-reload")
    script.run("systemctl", "reload", "nginx")
    script.log("Nginx configured and reloaded")
    return script


def configure_proxy(session: RemoteSession, *, config: DeploymentConfig) -> StepResult:
    site_config = render_site_config(server_name=config.host_address, app_port=config.app_port)
    layout = config.layout

    apply_batch = session.run_batch(build_apply_script(layout=layout, site_config=site_config, settings=session.settings))
    if not apply_batch.ok:
        return failure_from_batch(
            step=STEP,
            kind=FailureKind.PROXY,
            message="Failed to apply nginx configuration; reload skipped, previous configuration still active",
            batch=apply_batch,
        )

    reload_batch = session.run_batch(build_reload_script(settings=session.settings))
    if not reload_batch.ok:
        return failure_from_batch(step=STEP, kind=FailureKind.PROXY, message="Failed to reload nginx", batch=reload_batch)

    # TLS certificate issuance is not automated; the site is served over plain HTTP on port 80.
    logger.info("TLS certificate setup skipped for %s", config.host_address)
    return StepResult.success(STEP, f"Proxy routes port 80 to localhost:{config.app_port}")
