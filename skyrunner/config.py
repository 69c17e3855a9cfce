"""TOML-based builder, provider and stack configuration.

Loads ~/.skyrunner/defaults.toml (global) and skyrunner.toml (project),
merges them, and resolves named stacks into StackDefinition instances.

Example skyrunner.toml:

    [builders.windows]
    os = "windows"
    subnet_ids = ["subnet-1"]
    instance_profile_name = "image-builder"
    rebuild_interval_days = 7
    components = [{ name = "git", commands = ["choco install -y git"] }]

    [providers.windows]
    builder = "windows"
    subnet_ids = ["subnet-1", "subnet-2"]
    instance_profile_arn = "arn:aws:iam::123456789012:instance-profile/runner"

    [stacks.prod]
    region = "eu-central-1"
    account = "123456789012"
    builders = ["windows"]
    providers = ["windows"]
"""

from __future__ import annotations

import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any

from skyrunner.exceptions import ConfigurationError
from skyrunner.images.config import ImageBuilderConfig
from skyrunner.images.recipe import ImageComponent
from skyrunner.runner.config import RunnerProviderConfig
from skyrunner.stack import StackDefinition
from skyrunner.types import Architecture, Os, StackContext

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".skyrunner" / "defaults.toml"
PROJECT_CONFIG_NAME = "skyrunner.toml"

_TUPLE_FIELDS = ("subnet_ids", "security_group_ids", "labels")


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
    merged.setdefault("builders", {})
    merged.setdefault("providers", {})
    merged.setdefault("stacks", {})
    return merged


def _tuples(raw: RawConfig) -> RawConfig:
    return {k: tuple(v) if k in _TUPLE_FIELDS and isinstance(v, list) else v for k, v in raw.items()}


def _build_builder(name: str, raw: RawConfig) -> ImageBuilderConfig:
    raw = _tuples(raw)
    os = Os(raw.pop("os", Os.WINDOWS.value))
    architecture = Architecture(raw.pop("architecture", Architecture.X86_64.value))

    components = tuple(
        ImageComponent(**{"platform": os.value, **component}) for component in raw.pop("components", [])
    )
    if "rebuild_interval_days" in raw:
        raw["rebuild_interval"] = timedelta(days=raw.pop("rebuild_interval_days"))

    try:
        return ImageBuilderConfig(name=name, os=os, architecture=architecture, components=components, **raw)
    except TypeError as e:
        raise ConfigurationError(f"Builder '{name}': {e}") from e


def _build_provider(name: str, raw: RawConfig) -> RunnerProviderConfig:
    raw = _tuples(raw)
    if "builder" not in raw:
        raise ConfigurationError(f"Provider '{name}' missing 'builder' field")
    if "heartbeat_timeout_seconds" in raw:
        raw["heartbeat_timeout"] = timedelta(seconds=raw.pop("heartbeat_timeout_seconds"))

    try:
        return RunnerProviderConfig(name=name, **raw)
    except TypeError as e:
        raise ConfigurationError(f"Provider '{name}': {e}") from e


def _pick(kind: str, names: list[str], available: RawConfig) -> list[tuple[str, RawConfig]]:
    missing = [n for n in names if n not in available]
    if missing:
        raise KeyError(
            f"{kind.capitalize()} {', '.join(repr(m) for m in missing)} not found. "
            f"Available: {', '.join(available) or 'none'}"
        )
    return [(n, available[n]) for n in names]


def resolve_stack(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> StackDefinition:
    config = load_config(project_dir=project_dir, global_path=global_path)

    stacks = config["stacks"]
    if name not in stacks:
        raise KeyError(f"Stack '{name}' not found. Available: {', '.join(stacks) or 'none'}")

    raw_stack = dict(stacks[name])
    for required in ("region", "account"):
        if required not in raw_stack:
            raise ValueError(f"Stack '{name}' missing '{required}' field")

    context = StackContext(
        stack_name=raw_stack.get("stack_name", name),
        region=raw_stack["region"],
        account=str(raw_stack["account"]),
    )
    builder_names = raw_stack.get("builders", list(config["builders"]))
    provider_names = raw_stack.get("providers", list(config["providers"]))

    return StackDefinition(
        context=context,
        builders=tuple(_build_builder(n, r) for n, r in _pick("builder", builder_names, config["builders"])),
        providers=tuple(_build_provider(n, r) for n, r in _pick("provider", provider_names, config["providers"])),
    )
