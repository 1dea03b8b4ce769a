"""Engine config loading: built-in defaults, a YAML overlay and ``${VAR}`` expansion."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from walstream.config.defaults import build_engine_config
from walstream.config.models import EngineConfig

# ${VAR} or ${VAR:-default}; defaults cannot contain "}"
_ENV_REF = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?}")


def _env_value(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    value = os.environ.get(name, default)
    if value is None:
        msg = f"environment variable {name} is not set and has no default"
        raise ValueError(msg)
    return value


def expand_env(data: Any) -> Any:
    """Expand env references in string values of a (nested) config mapping.

    Config sections are mappings of scalars, so lists are left as they are.
    """
    if isinstance(data, str):
        return _ENV_REF.sub(_env_value, data)
    if isinstance(data, dict):
        return {key: expand_env(value) for key, value in data.items()}
    return data


def read_overrides(path: str | Path) -> dict[str, Any]:
    """Read a YAML config overlay; an empty file means no overrides."""
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text())
    except FileNotFoundError:
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg) from None
    except yaml.YAMLError as exc:
        msg = f"{p} is not valid YAML: {exc}"
        raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"{p} must hold a mapping of config sections, not {type(data).__name__}"
        raise ValueError(msg)
    return expand_env(data)


def load_engine_config(path: str | Path | None = None) -> EngineConfig:
    """Load engine config from built-in defaults, optionally merged with a YAML file."""
    overrides = read_overrides(path) if path is not None else {}
    try:
        return build_engine_config(overrides)
    except ValidationError as exc:
        source = path or "built-in defaults"
        msg = f"Invalid engine config ({source}):\n{exc}"
        raise ValueError(msg) from exc
