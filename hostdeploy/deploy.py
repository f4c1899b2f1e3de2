#!/usr/bin/env python3
"""Deploy a Dockerized app from a Git repository to a single host over SSH.

Pipeline (each step must succeed before the next one starts):
1. collect + validate input          (local only)
2. clone or pull the repository      (local git, bearer-token header)
3. check SSH connectivity
4. provision host packages           (apt, docker, compose plugin, nginx)
5. transfer files                    (rsync over ssh)
6. replace and start containers
7. configure and reload nginx
8. validate the deployment           (4 probes)

`--cleanup` runs the symmetric teardown instead.

Known hazard: two concurrent runs for the same repository name on one host race
on the same directory, container and nginx site. There is no locking.
"""

from __future__ import annotations

import argparse
import os
from datetime import datetime
from pathlib import Path
from typing import Callable

from hostdeploy.cleanup import cleanup_deployment
from hostdeploy.config import (
    CleanupConfig,
    DeploymentConfig,
    DeploySettings,
    collect_cleanup_config,
    collect_deploy_config,
    collect_settings,
)
from hostdeploy.containers import deploy_containers
from hostdeploy.deploy_log import StepReporter, close_file_logging, setup_file_logging
from hostdeploy.env_schema import ConfigValidationError, VarsEnum
from hostdeploy.nginx_proxy import configure_proxy
from hostdeploy.provision import provision_host
from hostdeploy.remote_script import UnsafeValueError
from hostdeploy.repo_sync import sync_repository
from hostdeploy.results import FailureKind, StepResult
from hostdeploy.ssh_session import RemoteSession, failure_from_batch
from hostdeploy.transfer import transfer_repository
from hostdeploy.validate_deploy import validate_deployment

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INPUT = 2
EXIT_INTERRUPTED = 130

SessionFactory = Callable[..., RemoteSession]


def _record(reporter: StepReporter, result: StepResult) -> None:
    if result.ok:
        reporter.info(result.format(), icon="✅")
        return
    reporter.error(result.format())
    if result.detail:
        reporter.detail(result.detail)


def _connect(
    reporter: StepReporter,
    *,
    target_config: DeploymentConfig | CleanupConfig,
    settings: DeploySettings,
    session_factory: SessionFactory | None,
) -> tuple[RemoteSession, StepResult]:
    session = (session_factory or RemoteSession)(target_config.target, settings, echo=reporter.remote_output)
    reporter.step(f"Checking SSH connectivity to {target_config.target.destination}", icon="🔑")
    batch = session.check_connectivity()
    if not batch.ok:
        return session, failure_from_batch(
            step="connect",
            kind=FailureKind.CONNECTION,
            message=f"Cannot connect to {target_config.target.destination}",
            batch=batch,
        )
    return session, StepResult.success("connect", "SSH connection established")


def run_deploy(
    config: DeploymentConfig,
    settings: DeploySettings,
    *,
    workdir: Path,
    reporter: StepReporter,
    session_factory: SessionFactory | None = None,
) -> StepResult:
    """Run the full pipeline and return the first failure, or the overall success."""
    reporter.step("Cloning or updating repository...", icon="📥")
    result, checkout = sync_repository(config, workdir=workdir)
    _record(reporter, result)
    if not result.ok or checkout is None:
        return result

    session, result = _connect(reporter, target_config=config, settings=settings, session_factory=session_factory)
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step(f"Installing prerequisites on {config.host_address}...", icon="🛠️")
    result = provision_host(session)
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step(f"Transferring files to {config.host_address}...", icon="📦")
    result = transfer_repository(
        source_dir=checkout.path,
        target=config.target,
        settings=settings,
        layout=config.layout,
    )
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step("Deploying application containers...", icon="🐳")
    result = deploy_containers(session, config=config, descriptor=checkout.descriptor)
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step(f"Configuring Nginx on {config.host_address}...", icon="🌐")
    result = configure_proxy(session, config=config)
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step("Validating deployment...", icon="🩺")
    for result in validate_deployment(session, config=config, descriptor=checkout.descriptor):
        _record(reporter, result)
        if not result.ok:
            return result

    return StepResult.success("deploy", f"Deployment of {config.repo_name} completed successfully")


def run_cleanup(
    config: CleanupConfig,
    settings: DeploySettings,
    *,
    reporter: StepReporter,
    session_factory: SessionFactory | None = None,
) -> StepResult:
    session, result = _connect(reporter, target_config=config, settings=settings, session_factory=session_factory)
    _record(reporter, result)
    if not result.ok:
        return result

    reporter.step(f"Cleaning up resources on {config.host_address}...", icon="🧹")
    result = cleanup_deployment(session, config=config)
    _record(reporter, result)
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deploy a Dockerized app from Git to a remote host over SSH",
        epilog="The remote log goes to deploy.log in the SSH user's home unless DEPLOY_REMOTE_LOG is set.",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the deployed containers, files and nginx site instead of deploying",
    )
    parser.add_argument(
        "--repo-url",
        default=None,
        help="Git repository URL. Resolution: CLI -> DEPLOY_REPO_URL env var -> .env.deploy -> prompt",
    )
    parser.add_argument(
        "--branch",
        default=None,
        help="Branch to deploy. Resolution: CLI -> DEPLOY_BRANCH env var -> .env.deploy -> prompt -> main",
    )
    parser.add_argument(
        "--ssh-user",
        default=None,
        help="SSH username. Resolution: CLI -> DEPLOY_SSH_USER env var -> .env.deploy -> prompt",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Target host address. Resolution: CLI -> DEPLOY_HOST env var -> .env.deploy -> prompt",
    )
    parser.add_argument(
        "--ssh-key",
        default=None,
        help="Private key path. Resolution: CLI -> DEPLOY_SSH_KEY env var -> .env.deploy -> prompt",
    )
    parser.add_argument(
        "--app-port",
        default=None,
        help="Application port. Resolution: CLI -> DEPLOY_APP_PORT env var -> .env.deploy -> prompt",
    )
    parser.add_argument(
        "--workdir",
        default=None,
        help="Directory that holds the local repository checkout (default: current directory)",
    )
    parser.add_argument(
        "--config-dir",
        default=None,
        help="Directory containing .env.deploy / .env.deploy.secrets (default: current directory)",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for the per-run deploy_YYYYMMDD_HHMMSS.log file (default: current directory)",
    )
    return parser


def main(argv: list[str] | None = None, *, prompt: Callable[[str], str] | None = input) -> int:
    args = build_parser().parse_args(argv)

    cwd = Path.cwd()
    workdir = Path(args.workdir).expanduser().resolve() if args.workdir else cwd
    config_dir = Path(args.config_dir).expanduser().resolve() if args.config_dir else cwd
    log_dir = Path(args.log_dir).expanduser().resolve() if args.log_dir else cwd

    log_path = setup_file_logging(log_dir=log_dir, started_at=datetime.now())
    reporter = StepReporter()
    reporter.info(f"Logging to {log_path}")

    cli_values = {
        VarsEnum.DEPLOY_REPO_URL.value: args.repo_url,
        VarsEnum.DEPLOY_BRANCH.value: args.branch,
        VarsEnum.DEPLOY_SSH_USER.value: args.ssh_user,
        VarsEnum.DEPLOY_HOST.value: args.host,
        VarsEnum.DEPLOY_SSH_KEY.value: args.ssh_key,
        VarsEnum.DEPLOY_APP_PORT.value: args.app_port,
    }

    try:
        if args.cleanup:
            cleanup_config = collect_cleanup_config(
                cli_values=cli_values,
                env=os.environ,
                config_dir=config_dir,
                prompt=prompt,
            )
            settings = collect_settings(env=os.environ, config_dir=config_dir, ssh_user=cleanup_config.ssh_user)
            result = run_cleanup(cleanup_config, settings, reporter=reporter)
        else:
            reporter.step("Collecting user input...", icon="📝")
            config = collect_deploy_config(
                cli_values=cli_values,
                env=os.environ,
                config_dir=config_dir,
                prompt=prompt,
            )
            settings = collect_settings(env=os.environ, config_dir=config_dir, ssh_user=config.ssh_user)
            result = run_deploy(config, settings, workdir=workdir, reporter=reporter)

        if not result.ok:
            return EXIT_FAILURE
        reporter.info(result.format(), icon="🎉")
        return EXIT_OK
    except ConfigValidationError as e:
        reporter.error(e.format())
        return EXIT_INPUT
    except UnsafeValueError as e:
        reporter.error(f"[config] {e}")
        return EXIT_INPUT
    except EOFError:
        reporter.error("[config] input ended before all values were provided")
        return EXIT_INPUT
    except KeyboardInterrupt:
        reporter.error("Interrupted; remote host may be partially updated. Re-run to converge.")
        return EXIT_INTERRUPTED
    finally:
        close_file_logging()


if __name__ == "__main__":
    raise SystemExit(main())
