from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("hostdeploy")

DOCKERFILE_NAME = "Dockerfile"
# First match wins; `docker-compose.yml` is the conventional name.
COMPOSE_FILENAMES = ("docker-compose.yml", "docker-compose.yaml", "compose.yaml", "compose.yml")

KIND_COMPOSE = "compose"
KIND_DOCKERFILE = "dockerfile"


@dataclass(frozen=True)
class BuildDescriptor:
    kind: str
    filename: str

    @property
    def is_compose(self) -> bool:
        return self.kind == KIND_COMPOSE


def load_docker_compose_config(compose_path: Path) -> Dict[str, Any]:
    """
    Parses a compose file using PyYAML.
    Returns the parsed configuration dictionary.
    """
    if not compose_path.exists():
        raise FileNotFoundError(f"{compose_path.name} not found in {compose_path.parent}")

    try:
        with open(compose_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except UnicodeDecodeError as e:
        raise RuntimeError(f"{compose_path.name} is not valid UTF-8: {e}") from e
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse {compose_path.name}: {e}") from e

    if not isinstance(raw_config, dict):
        raise RuntimeError(f"{compose_path.name} is not a valid mapping")
    return raw_config


def get_services(compose_config: Dict[str, Any]) -> Dict[str, Any]:
    services = compose_config.get("services")
    if not isinstance(services, dict):
        return {}
    return services


def get_ports(service_config: Dict[str, Any]) -> list:
    """Get the exposed ports for a service."""
    # PyYAML parses "80:80" as string usually, but "80" might be int.
    ports = service_config.get("ports", [])
    if not isinstance(ports, list):
        return []
    return ports


def count_published_ports(compose_config: Dict[str, Any]) -> int:
    """Count the `ports` entries published across all services."""
    total = 0
    for service_config in get_services(compose_config).values():
        if isinstance(service_config, dict):
            total += len(get_ports(service_config))
    return total


def find_compose_file(cwd: Path) -> Optional[Path]:
    """Return the first compose file present in `cwd`, in `COMPOSE_FILENAMES` order."""
    for name in COMPOSE_FILENAMES:
        candidate = cwd / name
        if candidate.is_file():
            return candidate
    return None


def detect_build_descriptor(cwd: Path) -> Optional[BuildDescriptor]:
    """Return the compose descriptor (preferred) or Dockerfile found in `cwd`.

    A compose file only counts when it parses to a mapping with at least one service.
    """
    compose_path = find_compose_file(cwd)
    if compose_path is not None:
        try:
            config = load_docker_compose_config(compose_path)
        except RuntimeError as e:
            logger.warning("Ignoring unusable compose descriptor: %s", e)
            config = {}
        if get_services(config):
            return BuildDescriptor(kind=KIND_COMPOSE, filename=compose_path.name)

    if (cwd / DOCKERFILE_NAME).is_file():
        return BuildDescriptor(kind=KIND_DOCKERFILE, filename=DOCKERFILE_NAME)
    return None
