"""Configuration loader for deploy-flake.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/deploy-flake/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEPLOY_FLAKE_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEPLOY_FLAKE_COPY__TIMEOUT=2m
    export DEPLOY_FLAKE_STAGES__TEST=skip

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load deploy-flake configuration. Install with "
        "`pip install deploy-flake` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DEPLOY_FLAKE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


class StageBehavior(str, Enum):
    """Whether an optional pipeline stage runs or is skipped."""

    RUN = "run"
    SKIP = "skip"

    @property
    def enabled(self) -> bool:
        """Return ``True`` when the stage should run."""
        return self is StageBehavior.RUN


@dataclass(frozen=True)
class SshConfig:
    """OpenSSH client settings used for every remote session."""

    ssh_bin: str = "ssh"
    connect_timeout: int = 10
    options: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh_bin": self.ssh_bin,
            "connect_timeout": self.connect_timeout,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class CopyConfig:
    """Timeout and exponential backoff settings for copying the flake source."""

    timeout: float = 30.0
    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 60.0
    max_elapsed: float = 900.0
    jitter: float = 0.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "initial_interval": self.initial_interval,
            "multiplier": self.multiplier,
            "max_interval": self.max_interval,
            "max_elapsed": self.max_elapsed,
            "jitter": self.jitter,
        }


@dataclass(frozen=True)
class StagesConfig:
    """Run/skip selection for the optional pipeline stages."""

    preflight: StageBehavior = StageBehavior.RUN
    test: StageBehavior = StageBehavior.RUN

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"preflight": self.preflight.value, "test": self.test.value}


@dataclass(frozen=True)
class LoggingConfig:
    """Levels for the narration and subprocess output log channels."""

    level: str = "info"
    subprocess_level: str = "info"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"level": self.level, "subprocess_level": self.subprocess_level}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for deploy-flake."""

    config_file: Path
    logs_dir: Path
    nix_bin: str
    max_concurrency: int
    build_args: tuple[str, ...]
    preflight_script: str | None
    stages: StagesConfig
    ssh: SshConfig
    copy: CopyConfig
    logging: LoggingConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "nix_bin": self.nix_bin,
            "max_concurrency": self.max_concurrency,
            "build_args": list(self.build_args),
            "preflight_script": self.preflight_script,
            "stages": self.stages.to_dict(),
            "ssh": self.ssh.to_dict(),
            "copy": self.copy.to_dict(),
            "logging": self.logging.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/deploy-flake/config.yml",
    "logs_dir": "~/.local/state/deploy-flake",
    "nix_bin": "nix",
    "max_concurrency": 0,
    "build_args": [],
    "preflight_script": None,
    "stages": {
        "preflight": "run",
        "test": "run",
    },
    "ssh": {
        "ssh_bin": "ssh",
        "connect_timeout": 10,
        "options": [],
    },
    "copy": {
        "timeout": "30s",
        "initial_interval": 0.5,
        "multiplier": 1.5,
        "max_interval": 60.0,
        "max_elapsed": "15m",
        "jitter": 0.5,
    },
    "logging": {
        "level": "info",
        "subprocess_level": "info",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "stages": {"preflight", "test"},
    "ssh": {"ssh_bin", "connect_timeout", "options"},
    "copy": {"timeout", "initial_interval", "multiplier", "max_interval", "max_elapsed", "jitter"},
    "logging": {"level", "subprocess_level"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def parse_duration(value: object, label: str = "duration") -> float:
    """Parse ``30s``, ``2m``, ``1h30m``, ``250ms`` or a bare number into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a duration. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower().replace(" ", "")
        if not text:
            raise ConfigError(f"{label} must not be empty.")
        try:
            seconds = float(text)
        except ValueError:
            position = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ConfigError(
                    f"Invalid duration for {label}: {value!r}. Use e.g. 30s, 2m or 1h30m."
                ) from None
    else:
        raise ConfigError(f"Expected {label} to be a duration. Got {type(value).__name__}.")
    if seconds <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {seconds}.")
    return seconds


def parse_stage_behavior(value: object, label: str) -> StageBehavior:
    """Coerce ``run``/``skip`` (or a boolean) into a :class:`StageBehavior`."""
    if isinstance(value, StageBehavior):
        return value
    if isinstance(value, bool):
        return StageBehavior.RUN if value else StageBehavior.SKIP
    if isinstance(value, str):
        try:
            return StageBehavior(value.strip().lower())
        except ValueError:
            pass
    raise ConfigError(f"{label} must be 'run' or 'skip'. Got {value!r}.")


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    logging_map = _as_dict(raw.get("logging"), "logging")
    for key in ("level", "subprocess_level"):
        level = logging_map.get(key)
        if level is not None and str(level).lower() not in _LOG_LEVELS:
            allowed_levels = ", ".join(sorted(_LOG_LEVELS))
            raise ConfigError(
                f"Unsupported log level '{level}' for logging.{key}. Allowed: {allowed_levels}."
            )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    max_concurrency = _expect_int(raw.get("max_concurrency"), "max_concurrency", default=0)
    if max_concurrency < 0:
        raise ConfigError("max_concurrency must be non-negative (0 means unbounded).")

    preflight_value = raw.get("preflight_script")
    preflight_script: str | None = None
    if isinstance(preflight_value, str):
        if preflight_value.strip():
            preflight_script = preflight_value.strip()
    elif preflight_value is not None:
        raise ConfigError("preflight_script must be a string or null.")
    if preflight_script is not None and not _is_contained_relative(preflight_script):
        raise ConfigError(
            "preflight_script must be relative to the built system path and must not "
            "contain '..' segments."
        )

    stages_mapping = _as_dict(raw.get("stages"), "stages")
    stages = StagesConfig(
        preflight=parse_stage_behavior(stages_mapping.get("preflight", "run"), "stages.preflight"),
        test=parse_stage_behavior(stages_mapping.get("test", "run"), "stages.test"),
    )

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    connect_timeout = _expect_int(
        ssh_mapping.get("connect_timeout"),
        "ssh.connect_timeout",
        default=10,
    )
    if connect_timeout <= 0:
        raise ConfigError("ssh.connect_timeout must be greater than zero.")
    ssh = SshConfig(
        ssh_bin=str(ssh_mapping.get("ssh_bin", "ssh")),
        connect_timeout=connect_timeout,
        options=_string_tuple(ssh_mapping.get("options"), "ssh.options"),
    )

    copy_mapping = _as_dict(raw.get("copy"), "copy")
    defaults = CopyConfig()
    multiplier = _expect_positive_float(
        copy_mapping.get("multiplier"),
        "copy.multiplier",
        default=defaults.multiplier,
    )
    if multiplier < 1.0:
        raise ConfigError("copy.multiplier must be at least 1.0.")
    jitter = _expect_float(copy_mapping.get("jitter"), "copy.jitter", default=defaults.jitter)
    if not 0.0 <= jitter < 1.0:
        raise ConfigError("copy.jitter must be within [0, 1).")
    copy = CopyConfig(
        timeout=parse_duration(copy_mapping.get("timeout", defaults.timeout), "copy.timeout"),
        initial_interval=parse_duration(
            copy_mapping.get("initial_interval", defaults.initial_interval),
            "copy.initial_interval",
        ),
        multiplier=multiplier,
        max_interval=parse_duration(
            copy_mapping.get("max_interval", defaults.max_interval),
            "copy.max_interval",
        ),
        max_elapsed=parse_duration(
            copy_mapping.get("max_elapsed", defaults.max_elapsed),
            "copy.max_elapsed",
        ),
        jitter=jitter,
    )

    logging_mapping = _as_dict(raw.get("logging"), "logging")
    logging_config = LoggingConfig(
        level=str(logging_mapping.get("level", "info")).lower(),
        subprocess_level=str(logging_mapping.get("subprocess_level", "info")).lower(),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        nix_bin=str(raw.get("nix_bin", "nix")),
        max_concurrency=max_concurrency,
        build_args=_string_tuple(raw.get("build_args"), "build_args"),
        preflight_script=preflight_script,
        stages=stages,
        ssh=ssh,
        copy=copy,
        logging=logging_config,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _string_tuple(value: object | None, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    items = _as_sequence(value, label)
    result: list[str] = []
    for index, item in enumerate(items):
        if isinstance(item, (dict, list)) or item is None:
            raise ConfigError(f"{label}[{index}] must be a scalar value.")
        result.append(str(item))
    return tuple(result)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _is_contained_relative(path: str) -> bool:
    candidate = PurePosixPath(path)
    return not candidate.is_absolute() and ".." not in candidate.parts


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    numeric = _expect_float(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CopyConfig",
    "LoggingConfig",
    "SshConfig",
    "StageBehavior",
    "StagesConfig",
    "load_config",
    "parse_duration",
    "parse_stage_behavior",
]
