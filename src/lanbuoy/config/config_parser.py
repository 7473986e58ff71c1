"""Configuration file loading for lanbuoy.

Brief:
  Reads a YAML configuration file, applies `section.key=value` overrides
  (values parsed as YAML, as given on the command line) and validates the
  result into a `Settings` model.

Inputs:
  - YAML config paths and override strings

Outputs:
  - Validated Settings instances
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import InvalidArgumentError
from .settings import Settings


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse an override value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to the original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def apply_overrides(cfg: Dict[str, Any], overrides: Optional[List[str]]) -> Dict[str, Any]:
    """Brief: Apply dotted `KEY=VALUE` overrides to a raw config mapping.

    Inputs:
      - cfg: Raw configuration mapping (mutated in place).
      - overrides: e.g. ``["resolver.max_entries=10", "logging.level=debug"]``.

    Outputs:
      - dict: The same mapping, for chaining.

    Raises:
      - InvalidArgumentError: an override is missing `=` or a key.
    """

    for item in overrides or []:
        if "=" not in item:
            raise InvalidArgumentError(f"override {item!r} must look like KEY=VALUE")
        key, raw = item.split("=", 1)
        parts = [p for p in key.strip().split(".") if p]
        if not parts:
            raise InvalidArgumentError(f"override {item!r} has an empty key")
        node = cfg
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = _parse_yaml_value(raw)
    return cfg


def read_config_file(path: str) -> Dict[str, Any]:
    """Brief: Read a YAML configuration file into a mapping.

    Inputs:
      - path: File path (``~`` expanded).

    Outputs:
      - dict: Parsed mapping (empty for an empty file).

    Raises:
      - InvalidArgumentError: unreadable file, invalid YAML or a non-mapping
        document.
    """

    full = os.path.abspath(os.path.expanduser(path))
    try:
        with open(full, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise InvalidArgumentError(f"cannot read config {full}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise InvalidArgumentError(f"invalid YAML in {full}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidArgumentError(f"config {full} must be a mapping at top level")
    return data


def load_config(
    path: Optional[str] = None, *, overrides: Optional[List[str]] = None
) -> Settings:
    """Brief: Load, override and validate configuration.

    Inputs:
      - path: Optional YAML file; None starts from defaults.
      - overrides: Optional dotted `KEY=VALUE` strings.

    Outputs:
      - Settings: Validated configuration.

    Raises:
      - InvalidArgumentError: file or validation errors (the pydantic error
        is chained).
    """

    raw: Dict[str, Any] = read_config_file(path) if path else {}
    apply_overrides(raw, overrides)
    try:
        return Settings(**raw)
    except ValidationError as exc:
        raise InvalidArgumentError(f"invalid configuration: {exc}") from exc
