"""
Relay configuration.

Process-level settings (listening address, API key, model preferences) are
loaded once at startup by :func:`load_settings`; per-connection options live in
:class:`ClientConfiguration`.
"""

import os
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from gemini_relay.config.client import ClientConfiguration
from gemini_relay.config.loaders import load_yaml_with_env_expansion, resolve_config_path
from gemini_relay.config.security import apply_env_overrides, inject_api_key
from gemini_relay.logging_config import get_logger

logger = get_logger(__name__)

GEMINI_LIVE_ENDPOINT = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

DEFAULT_FALLBACK_MODELS = [
    "gemini-2.5-flash-native-audio-preview-09-2025",
    "gemini-live-2.5-flash-preview",
    "gemini-2.5-flash-preview-native-audio-dialog",
]

DEFAULT_GREETING = "Hello! I'm your online shop assistant. How can I help you today?"
DEFAULT_SILENCE_PROMPT = "Please respond to what I just said."


class RelaySettings(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8888)
    api_key: Optional[str] = None
    endpoint: str = Field(default=GEMINI_LIVE_ENDPOINT)
    model_override: Optional[str] = None
    fallback_models: List[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_MODELS))
    # None waits for setupComplete (or a remote close) indefinitely
    setup_timeout_sec: Optional[float] = None
    default_greeting: str = Field(default=DEFAULT_GREETING)
    silence_prompt: str = Field(default=DEFAULT_SILENCE_PROMPT)
    ping_interval_sec: Optional[float] = Field(default=20.0)
    ping_timeout_sec: Optional[float] = Field(default=20.0)
    max_message_bytes: Optional[int] = Field(default=10 * 1024 * 1024)
    metrics_port: Optional[int] = None

    def candidate_models(self) -> List[str]:
        """Models to try in order: the override first, then the fallbacks, without duplicates."""
        ordered = []
        for model in [self.model_override, *self.fallback_models]:
            if model and model not in ordered:
                ordered.append(model)
        return ordered


def load_settings(path: Optional[str] = None) -> RelaySettings:
    """
    Load relay settings.

    ``path`` (or ``RELAY_CONFIG_PATH``) names an optional YAML file; without
    one, settings come from the environment and defaults only. The API key is
    always taken from ``GEMINI_API_KEY``.

    Raises:
        FileNotFoundError: If an explicitly named file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If a value has the wrong type
    """
    path = path or os.getenv("RELAY_CONFIG_PATH")
    config_data = {}
    if path:
        path = resolve_config_path(path)
        config_data = load_yaml_with_env_expansion(path)
        logger.info("Loaded relay configuration file", path=path)

    inject_api_key(config_data)
    apply_env_overrides(config_data)
    return RelaySettings(**config_data)


def validate_settings(settings: RelaySettings) -> Tuple[List[str], List[str]]:
    """Return ``(errors, warnings)`` for operator review at startup."""
    errors = []
    warnings = []

    if not settings.api_key:
        errors.append("GEMINI_API_KEY is not set; remote sessions will fail to open")
    if not settings.candidate_models():
        errors.append("No candidate models configured")
    if not 0 < settings.port < 65536:
        errors.append(f"Listening port {settings.port} out of range")
    if settings.metrics_port is not None and settings.metrics_port == settings.port:
        errors.append("METRICS_PORT must differ from WS_PORT")
    if settings.host == "0.0.0.0":
        warnings.append("Relay bound to 0.0.0.0 without authentication; restrict access at the network level")
    if os.getenv("LOG_LEVEL", "info").lower() == "debug":
        warnings.append("Debug logging enabled (logs client configuration previews)")

    return errors, warnings


__all__ = [
    "ClientConfiguration",
    "RelaySettings",
    "load_settings",
    "validate_settings",
    "DEFAULT_FALLBACK_MODELS",
    "DEFAULT_GREETING",
    "DEFAULT_SILENCE_PROMPT",
    "GEMINI_LIVE_ENDPOINT",
]
