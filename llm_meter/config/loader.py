"""
Configuration management and loading.

Handles the YAML config file, application directories and provider name
normalization.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from llm_meter.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SERVICE_NAME = "llm-meter"
HOME_ENV_VAR = "LLM_METER_HOME"
DEFAULT_REFRESH_SECONDS = 60


def normalize_provider_name(provider: str) -> str:
    """Trim and lowercase a provider name."""
    return provider.strip().lower()


@dataclass(frozen=True)
class ProviderSettings:
    """Per-provider endpoint overrides."""
    base_url: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class PricingOverride:
    """User-supplied pricing that wins over the built-in table."""
    provider: str
    model_pattern: str
    input_per_1m: float
    output_per_1m: float


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration.

    Treated as a value snapshot: the core never mutates it, the CLI builds a
    new one with ``dataclasses.replace`` when saving changes.
    """
    refresh_seconds: int = DEFAULT_REFRESH_SECONDS
    enabled_providers: List[str] = field(default_factory=list)
    provider_settings: Dict[str, ProviderSettings] = field(default_factory=dict)
    pricing_overrides: List[PricingOverride] = field(default_factory=list)

    def is_enabled(self, provider: str) -> bool:
        """Check whether a provider is enabled (case-insensitive)."""
        wanted = provider.lower()
        return any(p.lower() == wanted for p in self.enabled_providers)

    def settings_for(self, provider: str) -> ProviderSettings:
        """Get settings for a provider, using defaults if not configured."""
        return self.provider_settings.get(normalize_provider_name(provider), ProviderSettings())


def app_home_dir() -> Path:
    """Return the application home, honouring ``$LLM_METER_HOME``."""
    custom = os.environ.get(HOME_ENV_VAR)
    if custom:
        return Path(custom)
    return Path.home() / ".llm-meter"


def config_path() -> Path:
    return app_home_dir() / "config" / "config.yaml"


def db_path() -> Path:
    return app_home_dir() / "data" / "snapshots.sqlite"


def ensure_initialized() -> Path:
    """Create config and data directories and a default config if absent.

    Idempotent: an existing config file is left untouched.

    Returns:
        Path to the config file
    """
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    db_path().parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        save_config(AppConfig(), path)
    return path


def load_config(
    path: Optional[Union[str, Path]] = None,
    credentials: Optional[Any] = None,
) -> AppConfig:
    """Load and validate the YAML configuration file.

    A missing file yields the default configuration. Legacy
    ``provider_settings.<name>.api_key`` entries are moved into the
    credential store and removed from the file. Without a credential store
    they are ignored for this load and the file is left untouched.
    Provider names are trimmed, lowercased and deduplicated; the file is
    rewritten when either step changed anything.

    Args:
        path: Config file path (defaults to the application config)
        credentials: Credential store receiving migrated legacy keys; optional

    Returns:
        Validated AppConfig object

    Raises:
        ConfigurationError: If YAML is invalid or configuration is invalid
    """
    config_file = Path(path) if path is not None else config_path()
    if not config_file.exists():
        return AppConfig()

    with open(config_file, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    legacy_keys = _pop_legacy_api_keys(raw_config)
    config, normalized = parse_config(raw_config)

    if legacy_keys and credentials is None:
        logger.warning(
            "Config %s still holds plaintext API keys; load it with a credential store to migrate them",
            config_file,
        )
        return config

    for provider, key in legacy_keys.items():
        if key:
            credentials.set(provider, key)
            logger.info("Migrated legacy API key for '%s' into the credential store", provider)

    if legacy_keys or normalized:
        logger.info("Rewriting normalized config at %s", config_file)
        save_config(config, config_file)

    return config


def parse_config(raw_config: Dict[str, Any]) -> Tuple[AppConfig, bool]:
    """Validate a raw config mapping and normalize provider names.

    Returns:
        The config and whether normalization changed anything

    Raises:
        ConfigurationError: If configuration is invalid
    """
    allowed_top_keys = {'refresh_seconds', 'enabled_providers', 'provider_settings', 'pricing_overrides'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    changed = False

    refresh_seconds = raw_config.get('refresh_seconds', DEFAULT_REFRESH_SECONDS)
    if isinstance(refresh_seconds, bool) or not isinstance(refresh_seconds, int) or refresh_seconds <= 0:
        raise ConfigurationError("'refresh_seconds' must be a positive integer")

    enabled_data = raw_config.get('enabled_providers') or []
    if not isinstance(enabled_data, list):
        raise ConfigurationError("'enabled_providers' must be a list")
    enabled: List[str] = []
    for provider in enabled_data:
        if not isinstance(provider, str):
            raise ConfigurationError("'enabled_providers' entries must be strings")
        normalized = normalize_provider_name(provider)
        if normalized != provider or normalized in enabled:
            changed = True
        if normalized and normalized not in enabled:
            enabled.append(normalized)

    settings_data = raw_config.get('provider_settings') or {}
    if not isinstance(settings_data, dict):
        raise ConfigurationError("'provider_settings' must be a dictionary")
    settings: Dict[str, ProviderSettings] = {}
    for provider, data in settings_data.items():
        normalized = normalize_provider_name(str(provider))
        if normalized != provider:
            changed = True
        settings[normalized] = _parse_provider_settings(data or {}, f"provider_settings.{provider}")

    overrides_data = raw_config.get('pricing_overrides') or []
    if not isinstance(overrides_data, list):
        raise ConfigurationError("'pricing_overrides' must be a list")
    overrides = []
    for index, data in enumerate(overrides_data):
        override = _parse_pricing_override(data, f"pricing_overrides[{index}]")
        if override.provider != data.get('provider'):
            changed = True
        overrides.append(override)

    return AppConfig(
        refresh_seconds=refresh_seconds,
        enabled_providers=enabled,
        provider_settings=settings,
        pricing_overrides=overrides,
    ), changed


def _parse_provider_settings(data: Any, path: str) -> ProviderSettings:
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{path}' must be a dictionary")

    allowed_keys = {'base_url', 'organization_id'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key in allowed_keys:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigurationError(f"'{key}' in {path} must be a string")
        values[key] = value.strip() if value and value.strip() else None
    return ProviderSettings(**values)


def _parse_pricing_override(data: Any, path: str) -> PricingOverride:
    """Parse a pricing override entry.

    Prices are trusted as configured; only their types are checked.
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{path}' must be a dictionary")

    required = ('provider', 'model_pattern', 'input_per_1m', 'output_per_1m')
    unknown_keys = set(data.keys()) - set(required)
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown_keys}")
    for key in required:
        if key not in data:
            raise ConfigurationError(f"Missing required '{key}' in {path}")

    if not isinstance(data['provider'], str) or not isinstance(data['model_pattern'], str):
        raise ConfigurationError(f"'provider' and 'model_pattern' in {path} must be strings")
    for key in ('input_per_1m', 'output_per_1m'):
        if isinstance(data[key], bool) or not isinstance(data[key], (int, float)):
            raise ConfigurationError(f"'{key}' in {path} must be a number")

    return PricingOverride(
        provider=normalize_provider_name(data['provider']),
        model_pattern=data['model_pattern'],
        input_per_1m=float(data['input_per_1m']),
        output_per_1m=float(data['output_per_1m']),
    )


def _pop_legacy_api_keys(raw_config: Dict[str, Any]) -> Dict[str, str]:
    """Remove plaintext ``api_key`` entries from the raw config.

    Returns:
        Provider name to key for every entry removed; blank keys map to ""
    """
    settings_data = raw_config.get('provider_settings')
    if not isinstance(settings_data, dict):
        return {}

    keys: Dict[str, str] = {}
    for provider, data in settings_data.items():
        if not isinstance(data, dict) or 'api_key' not in data:
            continue
        value = data.pop('api_key')
        keys[normalize_provider_name(str(provider))] = str(value).strip() if value else ""
    return keys


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Convert a config to the plain mapping written to YAML."""
    return {
        'refresh_seconds': config.refresh_seconds,
        'enabled_providers': list(config.enabled_providers),
        'provider_settings': {
            name: {
                key: value
                for key, value in (('base_url', s.base_url), ('organization_id', s.organization_id))
                if value is not None
            }
            for name, s in sorted(config.provider_settings.items())
        },
        'pricing_overrides': [
            {
                'provider': o.provider,
                'model_pattern': o.model_pattern,
                'input_per_1m': o.input_per_1m,
                'output_per_1m': o.output_per_1m,
            }
            for o in config.pricing_overrides
        ],
    }


def save_config(config: AppConfig, path: Optional[Union[str, Path]] = None) -> None:
    """Write a config to YAML, creating parent directories as needed."""
    config_file = Path(path) if path is not None else config_path()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.safe_dump(config_to_dict(config), f, sort_keys=False)
