"""Input collection and validation.

Everything here is local: no network or remote calls happen while the
configuration is collected. The result is an immutable config object that is
passed explicitly to every pipeline component.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from hostdeploy.env_schema import (
    CLEANUP_SCHEMA,
    DEPLOY_SCHEMA,
    SETTINGS_SCHEMA,
    ConfigValidationError,
    EnvKeySpec,
    SecretsEnum,
    VarsEnum,
    resolve_schema,
)
from hostdeploy.remote_script import UnsafeValueError, require_safe

logger = logging.getLogger("hostdeploy")

APP_PORT_PATTERN = re.compile(r"^[0-9]+$")
REPO_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SSH_USER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9._-]*$")
HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,62})(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,62}))*$")
BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/][A-Za-z0-9._/-]*$")
VCS_SUFFIX = ".git"

NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"
REMOTE_LOG_NAME = "deploy.log"


def _invalid(problem: str) -> ConfigValidationError:
    logger.error("ERROR: %s", problem)
    return ConfigValidationError(context="input", problems=[problem])


def repository_name(repo_url: str) -> str:
    """Basename of the repository URL minus a trailing `.git`.

    >>> repository_name("https://example.com/sample/app.git")
    'app'
    """
    trimmed = str(repo_url or "").strip().rstrip("/")
    base = re.split(r"[/:]", trimmed)[-1]
    if base.endswith(VCS_SUFFIX):
        base = base[: -len(VCS_SUFFIX)]
    if not REPO_NAME_PATTERN.match(base):
        raise _invalid(f"Cannot derive a safe repository name from URL: {repo_url!r}")
    return base


def validate_repo_url(value: str) -> str:
    if not value:
        raise _invalid("Git Repository URL is required")
    if any(ch.isspace() for ch in value) or value.startswith("-"):
        raise _invalid(f"Git Repository URL is malformed: {value!r}")
    repository_name(value)
    return value


def validate_branch(value: str) -> str:
    if not BRANCH_PATTERN.match(value) or ".." in value:
        raise _invalid(f"Branch name is malformed: {value!r}")
    return value


def validate_ssh_user(value: str) -> str:
    if not SSH_USER_PATTERN.match(value):
        raise _invalid(f"SSH username is malformed: {value!r}")
    return value


def validate_host_address(value: str) -> str:
    """Accept an IPv4 address or a DNS name; IPv6 literals are rejected."""
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        address = None
    if address is not None:
        if address.version != 4:
            raise _invalid(f"IPv6 host addresses are not supported: {value!r}")
        return value
    if not HOSTNAME_PATTERN.match(value):
        raise _invalid(f"Host address is malformed: {value!r}")
    return value


def validate_app_port(value: str) -> str:
    if not value:
        raise _invalid("Application port is required")
    if not APP_PORT_PATTERN.match(value):
        raise _invalid("Application port must be a number")
    port = int(value)
    if port < 1 or port > 65535:
        raise _invalid("Application port must be in range 1-65535")
    return str(port)


def validate_ssh_key_path(value: str) -> Path:
    if not value:
        raise _invalid("SSH key path is required")
    path = Path(value).expanduser()
    if not path.is_file():
        raise _invalid("SSH key file does not exist")
    if not os.access(path, os.R_OK):
        raise _invalid("SSH key file is not readable")
    return path.resolve()


def remote_home(ssh_user: str) -> str:
    return "/root" if ssh_user == "root" else f"/home/{ssh_user}"


@dataclass(frozen=True)
class HostTarget:
    ssh_user: str
    host_address: str
    ssh_key_path: Path

    @property
    def destination(self) -> str:
        return f"{self.ssh_user}@{self.host_address}"


@dataclass(frozen=True)
class RemoteLayout:
    deploy_dir: str
    nginx_available: str
    nginx_enabled: str

    @classmethod
    def for_app(cls, *, ssh_user: str, repo_name: str) -> RemoteLayout:
        return cls(
            deploy_dir=f"{remote_home(ssh_user)}/{repo_name}",
            nginx_available=f"{NGINX_SITES_AVAILABLE}/{repo_name}",
            nginx_enabled=f"{NGINX_SITES_ENABLED}/{repo_name}",
        )


@dataclass(frozen=True)
class DeploySettings:
    remote_log_path: str = "/root/deploy.log"
    ssh_connect_timeout: int = 30


@dataclass(frozen=True)
class DeploymentConfig:
    repo_url: str
    auth_token: str
    branch: str
    ssh_user: str
    host_address: str
    ssh_key_path: Path
    app_port: str

    @property
    def repo_name(self) -> str:
        return repository_name(self.repo_url)

    @property
    def target(self) -> HostTarget:
        return HostTarget(ssh_user=self.ssh_user, host_address=self.host_address, ssh_key_path=self.ssh_key_path)

    @property
    def layout(self) -> RemoteLayout:
        return RemoteLayout.for_app(ssh_user=self.ssh_user, repo_name=self.repo_name)

    def __repr__(self) -> str:
        return (
            f"DeploymentConfig(repo_url={self.repo_url!r}, auth_token='***', branch={self.branch!r}, "
            f"ssh_user={self.ssh_user!r}, host_address={self.host_address!r}, "
            f"ssh_key_path={str(self.ssh_key_path)!r}, app_port={self.app_port!r})"
        )


@dataclass(frozen=True)
class CleanupConfig:
    repo_url: str
    ssh_user: str
    host_address: str
    ssh_key_path: Path

    @property
    def repo_name(self) -> str:
        return repository_name(self.repo_url)

    @property
    def target(self) -> HostTarget:
        return HostTarget(ssh_user=self.ssh_user, host_address=self.host_address, ssh_key_path=self.ssh_key_path)

    @property
    def layout(self) -> RemoteLayout:
        return RemoteLayout.for_app(ssh_user=self.ssh_user, repo_name=self.repo_name)


FIELD_VALIDATORS: dict[str, Callable[[str], object]] = {
    VarsEnum.DEPLOY_REPO_URL.value: validate_repo_url,
    VarsEnum.DEPLOY_BRANCH.value: validate_branch,
    VarsEnum.DEPLOY_SSH_USER.value: validate_ssh_user,
    VarsEnum.DEPLOY_HOST.value: validate_host_address,
    VarsEnum.DEPLOY_SSH_KEY.value: validate_ssh_key_path,
    VarsEnum.DEPLOY_APP_PORT.value: validate_app_port,
}


def _check_resolved(spec: EnvKeySpec, value: str) -> None:
    # Validate right after each answer so a bad field stops the prompts.
    shown = "***" if spec.secret else value
    logger.info("Input %s received: %s", spec.key.value, shown)
    validator = FIELD_VALIDATORS.get(spec.key.value)
    if validator is not None:
        validator(value)
    logger.info("Input %s validated", spec.key.value)


def collect_deploy_config(
    *,
    cli_values: Mapping[str, str | None],
    env: Mapping[str, str],
    config_dir: Path,
    prompt: Callable[[str], str] | None = input,
) -> DeploymentConfig:
    """Collect the seven deployment inputs in order and validate each one."""
    logger.info("Collecting user input...")
    kv = resolve_schema(
        DEPLOY_SCHEMA,
        cli_values=cli_values,
        env=env,
        config_dir=config_dir,
        prompt=prompt,
        on_resolved=_check_resolved,
    )
    config = DeploymentConfig(
        repo_url=validate_repo_url(kv[VarsEnum.DEPLOY_REPO_URL.value]),
        auth_token=kv[SecretsEnum.DEPLOY_GIT_TOKEN.value],
        branch=validate_branch(kv[VarsEnum.DEPLOY_BRANCH.value]),
        ssh_user=validate_ssh_user(kv[VarsEnum.DEPLOY_SSH_USER.value]),
        host_address=validate_host_address(kv[VarsEnum.DEPLOY_HOST.value]),
        ssh_key_path=validate_ssh_key_path(kv[VarsEnum.DEPLOY_SSH_KEY.value]),
        app_port=validate_app_port(kv[VarsEnum.DEPLOY_APP_PORT.value]),
    )
    logger.info("Input validated for repository %s", config.repo_name)
    return config


def collect_cleanup_config(
    *,
    cli_values: Mapping[str, str | None],
    env: Mapping[str, str],
    config_dir: Path,
    prompt: Callable[[str], str] | None = input,
) -> CleanupConfig:
    kv = resolve_schema(
        CLEANUP_SCHEMA,
        cli_values=cli_values,
        env=env,
        config_dir=config_dir,
        prompt=prompt,
        on_resolved=_check_resolved,
    )
    return CleanupConfig(
        repo_url=validate_repo_url(kv[VarsEnum.DEPLOY_REPO_URL.value]),
        ssh_user=validate_ssh_user(kv[VarsEnum.DEPLOY_SSH_USER.value]),
        host_address=validate_host_address(kv[VarsEnum.DEPLOY_HOST.value]),
        ssh_key_path=validate_ssh_key_path(kv[VarsEnum.DEPLOY_SSH_KEY.value]),
    )


def collect_settings(*, env: Mapping[str, str], config_dir: Path, ssh_user: str = "root") -> DeploySettings:
    """Resolve ambient settings; the remote log defaults to `deploy.log` in the SSH user's home."""
    kv = resolve_schema(SETTINGS_SCHEMA, cli_values={}, env=env, config_dir=config_dir, prompt=None)
    timeout_raw = kv[VarsEnum.DEPLOY_SSH_CONNECT_TIMEOUT.value]
    if not APP_PORT_PATTERN.match(timeout_raw) or int(timeout_raw) < 1:
        raise _invalid(f"{VarsEnum.DEPLOY_SSH_CONNECT_TIMEOUT.value} must be a positive integer")
    remote_log_path = kv[VarsEnum.DEPLOY_REMOTE_LOG.value] or f"{remote_home(ssh_user)}/{REMOTE_LOG_NAME}"
    if not remote_log_path.startswith("/"):
        raise _invalid(f"{VarsEnum.DEPLOY_REMOTE_LOG.value} must be an absolute path")
    try:
        require_safe(remote_log_path, what=VarsEnum.DEPLOY_REMOTE_LOG.value)
    except UnsafeValueError as e:
        raise _invalid(str(e)) from e
    return DeploySettings(
        remote_log_path=remote_log_path,
        ssh_connect_timeout=int(timeout_raw),
    )
