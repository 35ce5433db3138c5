"""
Configuration module for the MLS sync pipeline.
"""

from .sync_config import (
    SyncConfig,
    SyncSettings,
    ProviderConfig,
    ProviderCredentials,
    ProviderFamily,
    get_config,
    reload_config,
    set_config,
    get_provider_config,
)
from .record_id import (
    normalize_mls_id,
    generate_record_id,
    generate_candidate_id,
    generate_run_id,
    generate_error_id,
)

__all__ = [
    'SyncConfig',
    'SyncSettings',
    'ProviderConfig',
    'ProviderCredentials',
    'ProviderFamily',
    'get_config',
    'reload_config',
    'set_config',
    'get_provider_config',
    'normalize_mls_id',
    'generate_record_id',
    'generate_candidate_id',
    'generate_run_id',
    'generate_error_id',
]
