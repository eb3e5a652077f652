"""
Configuration Manager for the caption relay.

Settings come from three layers, later ones winning:
built-in defaults, an optional JSON config file, then environment variables
(``.env`` is loaded first with python-dotenv).
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TTS_SERVICES = ("deepgram", "openai", "elevenlabs")
QUEUE_MODES = ("listener", "global")


class ConfigError(Exception):
    """Raised at startup when the configuration cannot run the relay."""


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """Resolves relay configuration and validates provider credentials."""

    # Default configuration structure
    DEFAULT_CONFIG = {
        "api_keys": {
            "deepgram": "",
            "openai": "",
            "elevenlabs": "",
        },
        "server": {
            "host": "0.0.0.0",
            "port": 5000,
            "log_level": "INFO",
        },
        "recognition": {
            "model": "",  # empty = nova-3 for English, nova-2 otherwise
            "interim_results": False,
        },
        "translation": {
            "model": "gpt-4o-mini",
            "context_size": 3,
            "ordered_delivery": True,
        },
        "synthesis": {
            "tts_service": "deepgram",
            "queue_mode": "listener",
            "default_voice_model": "aura-2-thalia-en",
        },
        "preferences": {
            "default_listener_language": "en-US",
            "languages_file": "languages.json",
            "admin_languages_file": "admin_languages.json",
        },
    }

    # Environment variable -> (section, key, parser)
    ENV_OVERRIDES = {
        "DEEPGRAM_API_KEY": ("api_keys", "deepgram", str),
        "OPENAI_API_KEY": ("api_keys", "openai", str),
        "ELEVENLABS_API_KEY": ("api_keys", "elevenlabs", str),
        "HOST": ("server", "host", str),
        "PORT": ("server", "port", int),
        "LOG_LEVEL": ("server", "log_level", str),
        "DEEPGRAM_MODEL": ("recognition", "model", str),
        "INTERIM_RESULTS": ("recognition", "interim_results", _parse_bool),
        "TRANSLATION_MODEL": ("translation", "model", str),
        "TRANSLATION_CONTEXT_SIZE": ("translation", "context_size", int),
        "ORDERED_DELIVERY": ("translation", "ordered_delivery", _parse_bool),
        "TTS_SERVICE": ("synthesis", "tts_service", str),
        "SYNTHESIS_QUEUE_MODE": ("synthesis", "queue_mode", str),
        "DEFAULT_VOICE_MODEL": ("synthesis", "default_voice_model", str),
        "DEFAULT_LISTENER_LANGUAGE": ("preferences", "default_listener_language", str),
        "LANGUAGES_FILE": ("preferences", "languages_file", str),
        "ADMIN_LANGUAGES_FILE": ("preferences", "admin_languages_file", str),
    }

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Build the merged configuration.

        Args:
            config_file: Optional JSON file layered over the defaults.
            environ: Environment mapping (defaults to ``os.environ``).
        """
        self.config_file = Path(config_file) if config_file else None
        self.config = self._merge_with_defaults(self._load_config_file())
        self._apply_env(os.environ if environ is None else environ)

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration from file, or return nothing if it doesn't exist."""
        if not self.config_file or not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Could not load config file {self.config_file}: {e}") from e

    def _merge_with_defaults(self, saved_config: Dict) -> Dict:
        """Merge saved config with defaults to ensure all keys exist."""
        result = copy.deepcopy(self.DEFAULT_CONFIG)

        for key, value in saved_config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = {**result[key], **value}
            else:
                result[key] = value

        return result

    def _apply_env(self, environ) -> None:
        for name, (section, key, parse) in self.ENV_OVERRIDES.items():
            raw = environ.get(name)
            if raw is None or raw == "":
                continue
            try:
                self.config.setdefault(section, {})[key] = parse(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {name}: {raw!r}") from e

    # ==================== Accessors ====================

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self.config.get(section, {}).get(key, default)

    def get_api_key(self, service: str) -> str:
        """Get API key for a specific service."""
        return self.config.get("api_keys", {}).get(service, "") or ""

    def has_api_key(self, service: str) -> bool:
        """Check if an API key is set for a service."""
        key = self.get_api_key(service)
        return bool(key and key.strip())

    @property
    def tts_service(self) -> str:
        return str(self.get("synthesis", "tts_service", "deepgram")).lower()

    @property
    def queue_mode(self) -> str:
        return str(self.get("synthesis", "queue_mode", "listener")).lower()

    def required_services(self) -> List[str]:
        """Provider keys needed for the configured services."""
        required = ["deepgram", "openai"]
        if self.tts_service not in required:
            required.append(self.tts_service)
        return required

    # ==================== Validation ====================

    def validate(self) -> None:
        """Raise ConfigError when the relay cannot start with this configuration."""
        if self.tts_service not in TTS_SERVICES:
            raise ConfigError(
                f"Unknown TTS service {self.tts_service!r} (expected one of {', '.join(TTS_SERVICES)})"
            )
        if self.queue_mode not in QUEUE_MODES:
            raise ConfigError(
                f"Unknown synthesis queue mode {self.queue_mode!r} (expected one of {', '.join(QUEUE_MODES)})"
            )

        missing = [
            f"{service.upper()}_API_KEY"
            for service in self.required_services()
            if not self.has_api_key(service)
        ]
        if missing:
            raise ConfigError(f"Missing API keys: {', '.join(missing)}")


# Singleton instance for easy access
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the singleton ConfigManager instance (loads .env on first use)."""
    global _config_manager
    if _config_manager is None:
        load_dotenv(override=True)
        _config_manager = ConfigManager(config_file=os.getenv("RELAY_CONFIG_FILE"))
    return _config_manager
