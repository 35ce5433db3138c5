"""
MLS Sync Services

This package pulls listings from MLS providers (RETS, RESO Web API and
custom REST feeds), scores their quality, reconciles duplicates across
providers and persists a canonical property record per listing.

Includes the per-provider sync orchestrator, scheduler and admin surface.
"""

# Canonical types and errors
from .models import (
    CanonicalPropertyRecord,
    Address,
    PropertyDetails,
    Media,
    ListingAgent,
    ListingOffice,
    ListingDates,
    DateRange,
    SyncOptions,
    SyncStatus,
    SyncErrorType,
    SyncError,
    SyncRun,
    SyncRunSnapshot,
    SuggestedAction,
    DuplicateCandidate,
    DuplicateResolution,
    QualityScore,
    QualityReport,
    RateLimitStatus,
    PropertyPage,
    StartSyncResult,
)
from .errors import (
    MLSSyncException,
    ProviderError,
    AuthenticationError,
    NetworkError,
    ApiError,
    RateLimitExceeded,
    DataError,
    InvalidTransitionError,
    RunNotFoundError,
)

# Core services
from .mls_provider_service import BaseMLSProvider, RetsProvider, ResoProvider, CustomProvider, create_provider
from .data_quality_service import DataQualityValidator, CompletenessRule
from .duplicate_detection_service import DuplicateDetector
from .property_store import PropertyStore, InMemoryPropertyStore, SupabasePropertyStore

# Sync control
from .mls_sync_orchestrator import MLSSyncOrchestrator, SyncRunRegistry
from .scheduler_service import SyncScheduler, SchedulerStatus
from .mls_admin_service import MLSAdminService

__all__ = [
    # Canonical types
    'CanonicalPropertyRecord',
    'Address',
    'PropertyDetails',
    'Media',
    'ListingAgent',
    'ListingOffice',
    'ListingDates',
    'DateRange',
    'SyncOptions',
    'SyncStatus',
    'SyncErrorType',
    'SyncError',
    'SyncRun',
    'SyncRunSnapshot',
    'SuggestedAction',
    'DuplicateCandidate',
    'DuplicateResolution',
    'QualityScore',
    'QualityReport',
    'RateLimitStatus',
    'PropertyPage',
    'StartSyncResult',

    # Errors
    'MLSSyncException',
    'ProviderError',
    'AuthenticationError',
    'NetworkError',
    'ApiError',
    'RateLimitExceeded',
    'DataError',
    'InvalidTransitionError',
    'RunNotFoundError',

    # Core services
    'BaseMLSProvider',
    'RetsProvider',
    'ResoProvider',
    'CustomProvider',
    'create_provider',
    'DataQualityValidator',
    'CompletenessRule',
    'DuplicateDetector',
    'PropertyStore',
    'InMemoryPropertyStore',
    'SupabasePropertyStore',

    # Sync control
    'MLSSyncOrchestrator',
    'SyncRunRegistry',
    'SyncScheduler',
    'SchedulerStatus',
    'MLSAdminService',
]

__version__ = '1.0.0'
