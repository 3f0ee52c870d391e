"""
Calculator settings loaded from an optional YAML or JSON file.

Lookup order: an explicit path, else `expcalc.yaml`, `expcalc.yml` or
`expcalc.json` in the working directory. `EXPCALC_MAX_DEPTH`,
`EXPCALC_CONTEXT` and `EXPCALC_FORMAT` override whatever the file says.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

import yaml

from expcalc.expcalc_datatypes import ExpressionError, ValidationError
from expcalc.expcalc_environment import DEFAULT_MAX_DEPTH, Environment, context_for

CONFIG_FILES = ("expcalc.yaml", "expcalc.yml", "expcalc.json")
FORMATS = ("plain", "scientific", "separated")


class ConfigError(ExpressionError):
    kind_name = "ConfigError"


@dataclass
class CalcConfig:
    context: Optional[str] = None
    precision: Optional[int] = None
    bracket_multiply: bool = False
    variable_multiply: bool = False
    max_depth: int = DEFAULT_MAX_DEPTH
    format: str = "plain"
    state_file: str = "default.ecj"

    def validate(self) -> 'CalcConfig':
        if self.context is not None:
            try:
                context_for(self.context)
            except ValidationError as e:
                raise ConfigError(f"config: {e.message}") from e
        if self.precision is not None and (not _is_int(self.precision) or self.precision < 1):
            raise ConfigError("config: precision must be a positive integer.")
        for flag in ("bracket_multiply", "variable_multiply"):
            if not isinstance(getattr(self, flag), bool):
                raise ConfigError(f"config: {flag} must be true or false.")
        if not _is_int(self.max_depth) or self.max_depth < 1:
            raise ConfigError("config: max_depth must be a positive integer.")
        if self.format not in FORMATS:
            raise ConfigError(f"config: unknown format \"{self.format}\".")
        if not isinstance(self.state_file, str) or not self.state_file.strip():
            raise ConfigError("config: state_file must be a file name.")
        return self


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _read_file(path: str) -> Dict[str, Any]:
    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"config: unable to read \"{path}\".") from e
    try:
        data = json.loads(text) if ext == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"config: unable to parse \"{os.path.basename(path)}\".") from e
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("config: the top level must be a mapping.")
    return dict(data)


def find_config_file(base_dir: Optional[str] = None) -> Optional[str]:
    base = base_dir or os.getcwd()
    for name in CONFIG_FILES:
        path = os.path.join(base, name)
        if os.path.isfile(path):
            return path
    return None


def load_config(path: Optional[str] = None, *, base_dir: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> CalcConfig:
    """Builds a CalcConfig from a file (if any) and environment overrides."""
    environ = os.environ if environ is None else environ
    if path is None:
        path = find_config_file(base_dir)
    data = _read_file(path) if path else {}

    known = {f.name for f in fields(CalcConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"config: unknown setting \"{unknown[0]}\".")

    if environ.get("EXPCALC_MAX_DEPTH"):
        try:
            data["max_depth"] = int(environ["EXPCALC_MAX_DEPTH"])
        except ValueError as e:
            raise ConfigError("config: EXPCALC_MAX_DEPTH must be an integer.") from e
    if environ.get("EXPCALC_CONTEXT"):
        data["context"] = environ["EXPCALC_CONTEXT"]
        data.pop("precision", None)
    if environ.get("EXPCALC_FORMAT"):
        data["format"] = environ["EXPCALC_FORMAT"].strip().lower()

    if data.get("context") is not None:
        data["context"] = str(data["context"])
    return CalcConfig(**data).validate()


def apply_config(config: CalcConfig, env: Environment) -> Environment:
    """Copies the settings that live on the environment."""
    if config.precision is not None:
        env.context = context_for(config.precision)
    elif config.context is not None:
        env.context = context_for(config.context)
    env.bracket_multiply = config.bracket_multiply
    env.variable_multiply = config.variable_multiply
    env.max_depth = config.max_depth
    return env
