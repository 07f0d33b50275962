"""
Credential injection and environment overrides.

SECURITY POLICY: the Gemini API key comes from the environment only. A key
found in a YAML file is dropped so it can never be picked up from version
control.
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    return isinstance(val, str) and val.strip() != ""


def inject_api_key(config_data: Dict[str, Any]) -> None:
    """Replace any ``api_key`` in ``config_data`` with ``GEMINI_API_KEY``."""
    config_data.pop("api_key", None)
    api_key = os.getenv("GEMINI_API_KEY")
    if _is_nonempty_string(api_key):
        config_data["api_key"] = api_key.strip()


def apply_env_overrides(config_data: Dict[str, Any]) -> None:
    """
    Apply process environment on top of file values.

    Environment variables:
    - WS_HOST, WS_PORT: listening address
    - GEMINI_MODEL: preferred model, tried before the fallback list
    - METRICS_PORT: prometheus exporter port
    """
    host = os.getenv("WS_HOST")
    if _is_nonempty_string(host):
        config_data["host"] = host.strip()

    port = os.getenv("WS_PORT")
    if _is_nonempty_string(port):
        config_data["port"] = int(port)

    model = os.getenv("GEMINI_MODEL")
    if _is_nonempty_string(model):
        config_data["model_override"] = model.strip()

    metrics_port = os.getenv("METRICS_PORT")
    if _is_nonempty_string(metrics_port):
        config_data["metrics_port"] = int(metrics_port)
