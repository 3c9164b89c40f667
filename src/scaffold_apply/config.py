"""Configuration loading for the scaffold apply engine.

Precedence: environment (including .env) > YAML config file > defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml
from dotenv import load_dotenv

from scaffold_apply.constants import (
    CHECKPOINT_SUBDIR,
    CONFIG_FILENAME,
    DEFAULT_STATE_DIRNAME,
    EVIDENCE_SUBDIR,
    HARMLESS_ENTRIES,
    LOCK_SUBDIR,
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_DISABLED = {"none", "off", "disabled", ""}


@dataclass
class Config:
    """Resolved engine configuration for one workspace."""

    workspace_root: Path
    state_dir: Path
    evidence_dir: Path
    checkpoint_dir: Optional[Path]  # None -> temp_staging strategy
    lock_dir: Path
    lock_enabled: bool
    harmless: FrozenSet[str]
    log_level: str = "WARNING"


class ConfigError(Exception):
    """Raised when configuration values are invalid."""
    pass


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r} (use 1/0, true/false)")


def _load_yaml_config(config_path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse config file {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping, got {type(data).__name__}")
    return data


def _resolve(base: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def load_config(workspace_root: Path, config_path: Optional[Path] = None) -> Config:
    """
    Load configuration for a workspace.

    Args:
        workspace_root: Workspace the engine operates in
        config_path: Explicit YAML config; defaults to <workspace>/scaffold.yaml if present

    Returns:
        Config with all directories resolved to absolute paths

    Raises:
        ConfigError: If the config file is unreadable or a value is invalid
    """
    load_dotenv()

    workspace = Path(workspace_root).expanduser().resolve()

    if config_path is None:
        default_path = workspace / CONFIG_FILENAME
        file_values = _load_yaml_config(default_path) if default_path.exists() else {}
    else:
        file_values = _load_yaml_config(Path(config_path))

    def setting(env_name: str, key: str) -> Optional[Any]:
        env_value = os.environ.get(env_name)
        if env_value is not None:
            return env_value
        return file_values.get(key)

    state_raw = setting("SCAFFOLD_APPLY_STATE_DIR", "state_dir")
    state_dir = _resolve(workspace, state_raw) if state_raw else workspace / DEFAULT_STATE_DIRNAME

    evidence_raw = setting("SCAFFOLD_APPLY_EVIDENCE_DIR", "evidence_dir")
    evidence_dir = _resolve(workspace, evidence_raw) if evidence_raw else state_dir / EVIDENCE_SUBDIR

    checkpoint_raw = setting("SCAFFOLD_APPLY_CHECKPOINT_DIR", "checkpoint_dir")
    if checkpoint_raw is None:
        checkpoint_dir: Optional[Path] = state_dir / CHECKPOINT_SUBDIR
    elif str(checkpoint_raw).strip().lower() in _DISABLED:
        checkpoint_dir = None
    else:
        checkpoint_dir = _resolve(workspace, str(checkpoint_raw))

    lock_raw = setting("SCAFFOLD_APPLY_LOCK", "lock")
    lock_enabled = True if lock_raw is None else _parse_bool("SCAFFOLD_APPLY_LOCK", lock_raw)

    harmless_raw = setting("SCAFFOLD_APPLY_HARMLESS", "harmless")
    extra: FrozenSet[str] = frozenset()
    if isinstance(harmless_raw, str):
        extra = frozenset(h.strip() for h in harmless_raw.split(",") if h.strip())
    elif isinstance(harmless_raw, list):
        extra = frozenset(str(h) for h in harmless_raw)
    elif harmless_raw is not None:
        raise ConfigError(f"Invalid harmless entries: {harmless_raw!r} (use a list or comma-separated string)")

    log_level = str(setting("SCAFFOLD_APPLY_LOG_LEVEL", "log_level") or "WARNING").upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"Invalid log level: {log_level}")

    return Config(
        workspace_root=workspace,
        state_dir=state_dir,
        evidence_dir=evidence_dir,
        checkpoint_dir=checkpoint_dir,
        lock_dir=state_dir / LOCK_SUBDIR,
        lock_enabled=lock_enabled,
        harmless=HARMLESS_ENTRIES | extra,
        log_level=log_level,
    )
