"""
Sync Configuration for the MLS Reconciliation Pipeline

This module loads configuration from sync_config.yaml and provides
typed access to provider and pipeline settings.

Provider families:
- rets: form login, session cookie valid ~30 minutes
- reso: OAuth client-credentials, bearer token with expires_in
- custom: JSON login returning {token, expiresIn}

Credentials are never stored in the YAML file directly; use ${ENV_VAR}
references or the MLS_<PROVIDER>_* environment overrides.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r'\$\{([^}]+)\}')


class ProviderFamily(str, Enum):
    """Authentication/wire protocol family of an MLS provider"""
    RETS = "rets"
    RESO = "reso"
    CUSTOM = "custom"


@dataclass
class ProviderCredentials:
    """Login material for a provider"""
    username: str = ""
    password: str = ""
    client_id: str = ""
    client_secret: str = ""


@dataclass
class ProviderConfig:
    """Configuration for a single MLS provider"""
    provider_id: str
    family: ProviderFamily
    endpoint: str
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)
    name: str = ""

    # Rate limiting
    rate_limit: int = 100  # requests per minute
    request_delay: float = 0.0  # seconds between page requests

    # Scheduling
    sync_interval_minutes: float = 60.0
    enabled: bool = False

    # Paging / HTTP
    page_size: int = 100
    request_timeout: int = 30  # seconds
    user_agent: str = "MLSSync/1.0"

    def __post_init__(self):
        """Validate settings after initialization"""
        if not isinstance(self.family, ProviderFamily):
            self.family = ProviderFamily(str(self.family).lower())
        assert self.provider_id, "Provider id is required"
        assert self.endpoint, f"Endpoint is required for provider {self.provider_id}"
        assert self.rate_limit > 0, f"Rate limit must be positive: {self.rate_limit}"
        assert self.sync_interval_minutes > 0, f"Sync interval must be positive: {self.sync_interval_minutes}"
        assert self.page_size > 0, f"Page size must be positive: {self.page_size}"
        self.endpoint = self.endpoint.rstrip('/')
        if not self.name:
            self.name = self.provider_id

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval_minutes * 60


@dataclass
class SyncSettings:
    """Pipeline-wide sync behaviour"""

    # Error handling
    max_retries: int = 3  # attempts per page before the run fails
    retry_base_delay: float = 2.0  # seconds, doubled per attempt
    retry_max_delay: float = 60.0
    rate_limit_max_wait: float = 300.0  # longest wait for a rate-limit reset

    # Data quality policy
    min_quality_score: int = 60
    exclude_below_quality: bool = False

    # Duplicate detection
    recent_window_size: int = 500  # stored records compared against each page
    duplicate_batch_size: int = 500  # comparisons between cancellation checks
    auto_merge_duplicates: bool = False

    # Authentication
    token_refresh_margin: float = 60.0  # refresh tokens this many seconds early

    # Registry housekeeping
    run_history_limit: int = 50

    def __post_init__(self):
        assert self.max_retries >= 1, f"max_retries must be at least 1: {self.max_retries}"
        assert 0 <= self.min_quality_score <= 100, f"Invalid quality threshold: {self.min_quality_score}"
        assert self.duplicate_batch_size > 0, f"Batch size must be positive: {self.duplicate_batch_size}"


@dataclass
class SyncConfig:
    """Main configuration class for the MLS sync pipeline"""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    sync: SyncSettings = field(default_factory=SyncSettings)

    # Logging
    log_file: str = "mls_sync.log"
    log_level: str = "INFO"

    def get_provider(self, provider_id: str) -> ProviderConfig:
        """Get settings for a specific provider"""
        if provider_id not in self.providers:
            raise ValueError(f"Unknown provider: {provider_id}. "
                             f"Configured: {', '.join(sorted(self.providers)) or 'none'}")
        return self.providers[provider_id]

    @property
    def enabled_providers(self) -> List[ProviderConfig]:
        return [p for p in self.providers.values() if p.enabled]

    @property
    def provider_ids(self) -> List[str]:
        return list(self.providers.keys())


def _expand_env(text: str) -> str:
    """Substitute ${VAR} references; unset variables become empty strings"""
    def replace(match):
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            logger.warning(f"Environment variable {name} referenced in config is not set")
            return ''
        return value

    return _ENV_REFERENCE.sub(replace, text)


def _load_yaml_config() -> Dict:
    """Load configuration from YAML file"""
    config_path = Path(os.getenv("MLS_SYNC_CONFIG", Path(__file__).parent / "sync_config.yaml"))

    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(_expand_env(f.read()))
            logger.info(f"Loaded configuration from {config_path}")
            return config or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config from {config_path}: {e}")
        return {}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _create_provider_config(provider_id: str, provider_yaml: Dict) -> ProviderConfig:
    """Create ProviderConfig from YAML config with environment variable overrides"""
    env_prefix = f"MLS_{provider_id.upper().replace('-', '_')}_"
    creds_yaml = provider_yaml.get('credentials', {}) or {}

    credentials = ProviderCredentials(
        username=os.getenv(env_prefix + "USERNAME", creds_yaml.get('username') or ''),
        password=os.getenv(env_prefix + "PASSWORD", creds_yaml.get('password') or ''),
        client_id=os.getenv(env_prefix + "CLIENT_ID", creds_yaml.get('client_id') or ''),
        client_secret=os.getenv(env_prefix + "CLIENT_SECRET", creds_yaml.get('client_secret') or ''),
    )

    enabled = provider_yaml.get('enabled', False)
    env_enabled = os.getenv(env_prefix + "ENABLED")
    if env_enabled is not None:
        enabled = _env_bool(env_enabled)

    return ProviderConfig(
        provider_id=provider_id,
        family=ProviderFamily(str(provider_yaml.get('family', 'custom')).lower()),
        endpoint=os.getenv(env_prefix + "ENDPOINT", provider_yaml.get('endpoint') or ''),
        credentials=credentials,
        name=provider_yaml.get('name', provider_id),
        rate_limit=int(provider_yaml.get('rate_limit', 100)),
        request_delay=float(provider_yaml.get('request_delay', 0.0)),
        sync_interval_minutes=float(provider_yaml.get('sync_interval_minutes', 60)),
        enabled=bool(enabled),
        page_size=int(provider_yaml.get('page_size', 100)),
        request_timeout=int(provider_yaml.get('request_timeout', 30)),
        user_agent=provider_yaml.get('user_agent', "MLSSync/1.0"),
    )


def _build_config_from_yaml(yaml_config: Dict) -> SyncConfig:
    """Build SyncConfig from YAML configuration"""
    providers = {}
    for provider_id, provider_yaml in (yaml_config.get('providers', {}) or {}).items():
        try:
            providers[provider_id] = _create_provider_config(provider_id, provider_yaml or {})
        except (AssertionError, ValueError) as e:
            logger.error(f"Skipping invalid provider config '{provider_id}': {e}")

    sync_yaml = yaml_config.get('sync', {}) or {}
    retry = sync_yaml.get('retry', {}) or {}
    quality = sync_yaml.get('quality', {}) or {}
    duplicates = sync_yaml.get('duplicates', {}) or {}
    logging_config = yaml_config.get('logging', {}) or {}

    sync_settings = SyncSettings(
        max_retries=retry.get('max_retries', 3),
        retry_base_delay=retry.get('base_delay', 2.0),
        retry_max_delay=retry.get('max_delay', 60.0),
        rate_limit_max_wait=retry.get('rate_limit_max_wait', 300.0),
        min_quality_score=quality.get('min_score', 60),
        exclude_below_quality=quality.get('exclude_below_threshold', False),
        recent_window_size=duplicates.get('recent_window_size', 500),
        duplicate_batch_size=duplicates.get('batch_size', 500),
        auto_merge_duplicates=duplicates.get('auto_merge', False),
        token_refresh_margin=sync_yaml.get('token_refresh_margin', 60.0),
        run_history_limit=sync_yaml.get('run_history_limit', 50),
    )

    return SyncConfig(
        providers=providers,
        sync=sync_settings,
        log_file=logging_config.get('log_file', "mls_sync.log"),
        log_level=os.getenv("MLS_SYNC_LOG_LEVEL", logging_config.get('log_level', "INFO")),
    )


# Global configuration instance
_config: Optional[SyncConfig] = None


def get_config(reload: bool = False) -> SyncConfig:
    """
    Get the global configuration instance.

    Args:
        reload: If True, reload configuration from YAML file

    Returns:
        SyncConfig instance
    """
    global _config
    if _config is None or reload:
        yaml_config = _load_yaml_config()
        _config = _build_config_from_yaml(yaml_config)
    return _config


def reload_config() -> SyncConfig:
    """Force reload configuration from YAML file"""
    return get_config(reload=True)


def set_config(config: SyncConfig) -> None:
    """Set the global configuration instance (useful for testing)"""
    global _config
    _config = config


def get_provider_config(provider_id: str) -> ProviderConfig:
    """Get settings for a specific provider"""
    return get_config().get_provider(provider_id)
