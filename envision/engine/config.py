"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via a YAML file (see
``yaml_config``) and then via ENVISION_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from .models import CRITICAL_VARIABLES, SHELL_READONLY_VARIABLES

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_EXTENSIONS: tuple[str, ...] = (".profile.sh", ".envision")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: str) -> bool:
    """Parse a yes/no string; raises ValueError for anything else."""
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


@dataclass
class EnvisionConfig:
    """envision runtime configuration."""

    # Root for session records and logs. None resolves to the XDG data dir.
    data_dir: str | None = None

    # Auto-snapshots kept per session. Set to 0 to disable them.
    max_auto_snapshots: int = 10

    # Ask again before applying a profile whose path and checksum match the
    # last applied load.
    reconfirm_unchanged_profiles: bool = False

    profile_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROFILE_EXTENSIONS),
    )

    # Shell used to evaluate profile scripts, and its time limit.
    # Set the timeout to 0 (or a negative value) to disable it.
    shell: str = "bash"
    script_timeout_seconds: float = 30.0

    # Names the parent shell refuses to modify.
    readonly_variables: list[str] = field(
        default_factory=lambda: list(SHELL_READONLY_VARIABLES),
    )
    # Names that warrant a warning before modification.
    critical_variables: list[str] = field(
        default_factory=lambda: list(CRITICAL_VARIABLES),
    )
    # Names excluded from the baseline and from every diff.
    ignored_variables: list[str] = field(default_factory=lambda: ["_"])

    log_level: str = "INFO"
    color: bool = True

    @property
    def script_timeout(self) -> float | None:
        return self.script_timeout_seconds if self.script_timeout_seconds > 0 else None

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: EnvisionConfig | None = None,
    ) -> EnvisionConfig:
        """Apply ENVISION_* environment overrides on top of ``base``.

        Values that do not parse are logged and ignored.
        """
        env = os.environ if environ is None else environ
        config = replace(base) if base is not None else cls()

        overrides = {
            k: v for k, v in env.items()
            if k in _ENV_PARSERS or k == "NO_COLOR"
        }
        if overrides:
            logger.debug(
                "EnvisionConfig.from_env: env overrides: %s",
                ", ".join(sorted(overrides)),
            )

        for var, (attr, parse) in _ENV_PARSERS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                setattr(config, attr, parse(raw))
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", var, raw)

        # https://no-color.org: any non-empty value disables color.
        if env.get("NO_COLOR"):
            config.color = False

        if config.max_auto_snapshots < 0:
            logger.warning(
                "max_auto_snapshots=%d is negative; disabling auto-snapshots",
                config.max_auto_snapshots,
            )
            config.max_auto_snapshots = 0
        return config


def _parse_level(value: str) -> str:
    level = value.strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"unknown log level: {value!r}")
    return level


_ENV_PARSERS = {
    "ENVISION_DATA_DIR": ("data_dir", str),
    "ENVISION_MAX_SNAPSHOTS": ("max_auto_snapshots", int),
    "ENVISION_RECONFIRM_PROFILES": ("reconfirm_unchanged_profiles", parse_bool),
    "ENVISION_SCRIPT_TIMEOUT": ("script_timeout_seconds", float),
    "ENVISION_SHELL": ("shell", str),
    "ENVISION_LOG_LEVEL": ("log_level", _parse_level),
}
