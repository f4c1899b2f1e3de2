"""Deterministic schema for deployment inputs.

This module is the single source of truth for:
- which keys exist (vars vs secrets)
- where a value may come from (CLI flag, process env, `.env.deploy`, `.env.deploy.secrets`, prompt)
- whether a key is mandatory and/or has a default

Resolution order for every key: CLI -> env var -> dotenv file -> interactive prompt -> default.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Mapping

from dotenv import dotenv_values

DEPLOY_DOTENV = ".env.deploy"
DEPLOY_SECRETS_DOTENV = ".env.deploy.secrets"


class VarsEnum(str, Enum):
    DEPLOY_REPO_URL = "DEPLOY_REPO_URL"
    DEPLOY_BRANCH = "DEPLOY_BRANCH"
    DEPLOY_SSH_USER = "DEPLOY_SSH_USER"
    DEPLOY_HOST = "DEPLOY_HOST"
    DEPLOY_SSH_KEY = "DEPLOY_SSH_KEY"
    DEPLOY_APP_PORT = "DEPLOY_APP_PORT"

    # Ambient settings
    DEPLOY_REMOTE_LOG = "DEPLOY_REMOTE_LOG"
    DEPLOY_SSH_CONNECT_TIMEOUT = "DEPLOY_SSH_CONNECT_TIMEOUT"


class SecretsEnum(str, Enum):
    DEPLOY_GIT_TOKEN = "DEPLOY_GIT_TOKEN"


@dataclass(frozen=True)
class EnvKeySpec:
    key: VarsEnum | SecretsEnum
    mandatory: bool
    default: str | None = None
    prompt: str | None = None
    label: str = ""
    secret: bool = False


class ConfigValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[config] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


# Order matters: prompts are asked in schema order.
DEPLOY_SCHEMA: tuple[EnvKeySpec, ...] = (
    EnvKeySpec(
        key=VarsEnum.DEPLOY_REPO_URL,
        mandatory=True,
        label="Git Repository URL",
        prompt="Enter Git Repository URL (e.g., https://github.com/mendhak/docker-http-server): ",
    ),
    EnvKeySpec(
        key=SecretsEnum.DEPLOY_GIT_TOKEN,
        mandatory=True,
        label="Personal Access Token",
        prompt="Enter Personal Access Token: ",
        secret=True,
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_BRANCH,
        mandatory=False,
        default="main",
        prompt="Enter branch name (default: main): ",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_SSH_USER,
        mandatory=True,
        label="SSH username",
        prompt="Enter SSH username (e.g., root): ",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_HOST,
        mandatory=True,
        label="Host IP address",
        prompt="Enter host IP address (e.g., 203.0.113.10): ",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_SSH_KEY,
        mandatory=True,
        label="SSH key path",
        prompt="Enter SSH key path (e.g., ~/.ssh/id_ed25519): ",
    ),
    EnvKeySpec(
        key=VarsEnum.DEPLOY_APP_PORT,
        mandatory=True,
        label="Application port",
        prompt="Enter application port (e.g., 8000): ",
    ),
)

# Cleanup only needs enough to locate the remote artifacts.
CLEANUP_SCHEMA: tuple[EnvKeySpec, ...] = tuple(
    spec
    for spec in DEPLOY_SCHEMA
    if spec.key
    in {
        VarsEnum.DEPLOY_REPO_URL,
        VarsEnum.DEPLOY_SSH_USER,
        VarsEnum.DEPLOY_HOST,
        VarsEnum.DEPLOY_SSH_KEY,
    }
)

SETTINGS_SCHEMA: tuple[EnvKeySpec, ...] = (
    # Empty remote log falls back to deploy.log in the SSH user's home.
    EnvKeySpec(key=VarsEnum.DEPLOY_REMOTE_LOG, mandatory=False),
    EnvKeySpec(key=VarsEnum.DEPLOY_SSH_CONNECT_TIMEOUT, mandatory=False, default="30"),
)


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse a dotenv file, keeping keys with empty values."""
    kv: dict[str, str] = {}
    if not path.exists():
        return kv
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        kv[key] = "" if v is None else str(v).strip()
    return kv


def read_dotenv_key(*, dotenv_path: Path, key: str) -> str:
    return parse_dotenv_file(dotenv_path).get(key, "")


def read_file_value(*, config_dir: Path, spec: EnvKeySpec) -> str:
    name = DEPLOY_SECRETS_DOTENV if spec.secret else DEPLOY_DOTENV
    return read_dotenv_key(dotenv_path=config_dir / name, key=spec.key.value)


def resolve_value(
    spec: EnvKeySpec,
    *,
    cli_value: str | None,
    env: Mapping[str, str],
    config_dir: Path,
    prompt: Callable[[str], str] | None,
) -> str:
    value = str(cli_value or "").strip()
    if not value:
        value = str(env.get(spec.key.value) or "").strip()
    if not value:
        value = read_file_value(config_dir=config_dir, spec=spec)
    if not value and prompt is not None and spec.prompt:
        value = str(prompt(spec.prompt) or "").strip()
    if not value and spec.default is not None:
        value = spec.default
    return value


def resolve_schema(
    schema: Iterable[EnvKeySpec],
    *,
    cli_values: Mapping[str, str | None],
    env: Mapping[str, str],
    config_dir: Path,
    prompt: Callable[[str], str] | None,
    on_resolved: Callable[[EnvKeySpec, str], None] | None = None,
) -> dict[str, str]:
    """Resolve every key in order, failing on the first missing mandatory one."""
    out: dict[str, str] = {}
    for spec in schema:
        value = resolve_value(
            spec,
            cli_value=cli_values.get(spec.key.value),
            env=env,
            config_dir=config_dir,
            prompt=prompt,
        )
        if spec.mandatory and not value:
            raise ConfigValidationError(
                context="input",
                problems=[f"{spec.label or spec.key.value} is required"],
            )
        out[spec.key.value] = value
        if on_resolved is not None:
            on_resolved(spec, value)
    return out
