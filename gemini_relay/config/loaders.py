"""
Configuration file loaders and path resolution.

Relay settings may come from an optional YAML file; ``${VAR}`` and ``$VAR``
references in it are expanded from the environment before parsing.
"""

import os
from pathlib import Path

import yaml

# Project root directory (parent of gemini_relay/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()


def resolve_config_path(path: str) -> str:
    """Return ``path`` as absolute, resolving relative paths against the project root."""
    if not os.path.isabs(path):
        return os.path.join(_PROJ_DIR, path)
    return path


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Load a YAML mapping after expanding environment variable references.

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If parsing fails
        ValueError: If the document is not a mapping
    """
    try:
        with open(path, "r") as f:
            config_str = f.read()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        config_data = yaml.safe_load(os.path.expandvars(config_str))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return config_data
