"""YAML configuration loader.

Loads a single YAML file whose values override the built-in defaults.
ENVISION_* env vars are applied on top by ``resolve_config``.

Example YAML:
    session:
      data_dir: ~/.local/share/envision
      max_auto_snapshots: 10

    profiles:
      extensions: [.profile.sh, .envision]
      reconfirm_unchanged: false
      shell: bash
      script_timeout: 30

    variables:
      readonly: [BASHOPTS, EUID, PPID, SHELLOPTS, UID]
      critical: [PATH, HOME, LD_LIBRARY_PATH]
      ignored: [_, OLDPWD]

    logging:
      level: INFO

    display:
      color: true
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .config import EnvisionConfig, parse_bool

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


class ConfigError(ValueError):
    """Config file exists but its content has the wrong shape."""


def default_config_path(environ: Mapping[str, str] | None = None) -> Path:
    """``$XDG_CONFIG_HOME/envision/config.yaml`` or ``~/.config/...``."""
    env = os.environ if environ is None else environ
    xdg = env.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "envision" / CONFIG_FILENAME
    home = env.get("HOME")
    root = Path(home) if home else Path.home()
    return root / ".config" / "envision" / CONFIG_FILENAME


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"section '{name}' must be a mapping")
    return value


def _str_list(section: dict, key: str, section_name: str) -> list[str] | None:
    if key not in section:
        return None
    value = section[key]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{section_name}.{key} must be a list of strings")
    return list(value)


def _as_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return parse_bool(value)
        except ValueError:
            pass
    raise ConfigError(f"{where} must be a boolean")


def load_yaml_config(
    path: str | Path,
    base: EnvisionConfig | None = None,
) -> EnvisionConfig:
    """Load and parse a YAML config file into an EnvisionConfig.

    Keys missing from the file keep the value from ``base`` (or the
    defaults). Raises FileNotFoundError, yaml.YAMLError or ConfigError.
    """
    path = Path(path)
    logger.debug("load_yaml_config: loading %s", path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    config = EnvisionConfig() if base is None else base
    session = _section(raw, "session")
    profiles = _section(raw, "profiles")
    variables = _section(raw, "variables")
    log_section = _section(raw, "logging")
    display = _section(raw, "display")

    try:
        if "data_dir" in session:
            data_dir = session["data_dir"]
            config.data_dir = (
                str(Path(str(data_dir)).expanduser()) if data_dir else None
            )
        if "max_auto_snapshots" in session:
            config.max_auto_snapshots = int(session["max_auto_snapshots"])
        if "reconfirm_unchanged" in profiles:
            config.reconfirm_unchanged_profiles = _as_bool(
                profiles["reconfirm_unchanged"], "profiles.reconfirm_unchanged",
            )
        if "shell" in profiles:
            config.shell = str(profiles["shell"])
        if "script_timeout" in profiles:
            config.script_timeout_seconds = float(profiles["script_timeout"])
        if "level" in log_section:
            config.log_level = str(log_section["level"]).upper()
        if "color" in display:
            config.color = _as_bool(display["color"], "display.color")
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path}: {exc}") from exc

    extensions = _str_list(profiles, "extensions", "profiles")
    if extensions is not None:
        config.profile_extensions = extensions
    readonly = _str_list(variables, "readonly", "variables")
    if readonly is not None:
        config.readonly_variables = readonly
    critical = _str_list(variables, "critical", "variables")
    if critical is not None:
        config.critical_variables = critical
    ignored = _str_list(variables, "ignored", "variables")
    if ignored is not None:
        config.ignored_variables = ignored

    logger.info(
        "Loaded config %s (sections: %s)",
        path, ", ".join(sorted(raw)) if raw else "(empty)",
    )
    return config


def resolve_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EnvisionConfig:
    """Defaults, then the YAML file, then ENVISION_* env vars.

    An explicit ``config_path`` must exist; the default location is
    optional.
    """
    env = os.environ if environ is None else environ
    if config_path is not None:
        config = load_yaml_config(config_path)
    else:
        candidate = default_config_path(env)
        if candidate.is_file():
            config = load_yaml_config(candidate)
        else:
            logger.debug("No config file at %s; using defaults", candidate)
            config = EnvisionConfig()
    return EnvisionConfig.from_env(env, base=config)
