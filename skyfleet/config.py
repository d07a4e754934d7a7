"""TOML-based provider configuration.

Loads ~/.skyfleet/defaults.toml (global) and skyfleet.toml (project),
merges them, and resolves the result into typed settings.

Example skyfleet.toml:

    [aws]
    region = "eu-west-1"
    tag_ebs_volumes = true

    [timeouts]
    spot_request_duration = 900
    spot_poll_interval = 10

    [tags]
    "skyfleet:virtual-instance-id" = "owner-id"

    [logging]
    level = "DEBUG"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skyfleet.constants import GLOBAL_CONFIG_DIR, PROJECT_CONFIG_NAME
from skyfleet.logging import LogConfig
from skyfleet.providers.aws.config import AWS, AllocationTimeouts, TagMappings

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / GLOBAL_CONFIG_DIR / "defaults.toml"

_SECTIONS = ("aws", "timeouts", "tags", "logging")


@dataclass(frozen=True, slots=True)
class Settings:
    aws: AWS = field(default_factory=AWS)
    timeouts: AllocationTimeouts = field(default_factory=AllocationTimeouts)
    tags: TagMappings = field(default_factory=TagMappings)
    logging: LogConfig | None = None


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    for section in _SECTIONS:
        merged.setdefault(section, {})
    return merged


def _build(cls: type, section: str, raw: RawConfig) -> Any:
    try:
        return cls(**raw)
    except TypeError as e:
        raise ValueError(f"Invalid [{section}] configuration: {e}") from e


def resolve_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    config = load_config(project_dir=project_dir, global_path=global_path)

    unknown = set(config) - set(_SECTIONS)
    if unknown:
        raise KeyError(
            f"Unknown configuration sections: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(_SECTIONS)}"
        )

    raw_logging = config["logging"]
    return Settings(
        aws=_build(AWS, "aws", config["aws"]),
        timeouts=_build(AllocationTimeouts, "timeouts", config["timeouts"]),
        tags=TagMappings(custom=config["tags"]),
        logging=_build(LogConfig, "logging", raw_logging) if raw_logging else None,
    )
