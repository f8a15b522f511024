"""YAML configuration loader.

Layers a YAML file over the DOCPILOT_* environment settings. When no
YAML file is given, env vars work exactly as before.

Example YAML:
    runner:
      executable_path: ~/.local/bin/claude
      model_alias: sonnet
      timeout_seconds: 600
      allow_workspace_access: true
      permissionless_mode: false
      custom_system_prompt: |
        Keep edits small and preserve front matter.
      session_namespace: .docpilot/sessions

String values may reference environment variables as ``${NAME}``.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import RunnerSettings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    Path(".docpilot.yaml"),
    Path.home() / ".docpilot" / "config.yaml",
)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    return value


def load_yaml_settings(
    path: str | Path,
    base: RunnerSettings | None = None,
) -> RunnerSettings:
    """Load *path* and apply its ``runner:`` section over *base*.

    *base* defaults to ``RunnerSettings.from_env()``. Unknown keys are
    logged and skipped.
    """
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_settings: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}") from None
    except yaml.YAMLError as exc:
        logger.error("load_yaml_settings: YAML parse error in %s: %s", path, exc)
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    section = raw.get("runner", {}) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'runner' in {path} must be a mapping")

    settings = base if base is not None else RunnerSettings.from_env()
    known = RunnerSettings.field_names()
    applied: list[str] = []
    for key, value in section.items():
        if key not in known:
            logger.warning(
                "load_yaml_settings: ignoring unknown runner key %r in %s",
                key, path,
            )
            continue
        setattr(settings, key, _expand(value))
        applied.append(key)

    settings.validate()
    logger.info(
        "Parsed YAML config %s: %s",
        path.name, ", ".join(sorted(applied)) if applied else "(no overrides)",
    )
    return settings


def find_default_config() -> Path | None:
    """Return the first existing default config path, if any."""
    for candidate in DEFAULT_CONFIG_PATHS:
        if candidate.is_file():
            return candidate
    return None
