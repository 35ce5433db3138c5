"""
Data model for the MLS reconciliation pipeline

Canonical (provider-agnostic) listing records plus the bookkeeping types
shared by the adapter, validator, duplicate detector and orchestrator.
"""

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from config.record_id import generate_record_id, generate_error_id, normalize_mls_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """Parse ISO-8601 strings / epoch numbers into aware UTC datetimes"""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        return default
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Address:
    street_number: str = ""
    street_name: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "US"
    unit_number: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def street(self) -> str:
        return f"{self.street_number} {self.street_name}".strip()


@dataclass
class PropertyDetails:
    bedrooms: int = 0
    bathrooms: float = 0.0
    square_feet: float = 0.0
    year_built: int = 0
    lot_size: float = 0.0
    stories: int = 0
    description: str = ""


@dataclass
class Media:
    url: str
    media_type: str = "photo"
    is_primary: bool = False
    sort_order: int = 0
    caption: str = ""


@dataclass
class ListingAgent:
    id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""


@dataclass
class ListingOffice:
    id: str = ""
    name: str = ""


@dataclass
class ListingDates:
    listed: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)
    off_market: Optional[datetime] = None
    closed: Optional[datetime] = None


@dataclass
class CanonicalPropertyRecord:
    """Internal, provider-agnostic listing representation"""
    mls_id: str
    provider_id: str
    listing_id: str = ""
    property_type: str = ""
    status: str = "active"
    price: float = 0.0
    address: Address = field(default_factory=Address)
    details: PropertyDetails = field(default_factory=PropertyDetails)
    media: List[Media] = field(default_factory=list)
    agent: ListingAgent = field(default_factory=ListingAgent)
    office: ListingOffice = field(default_factory=ListingOffice)
    dates: ListingDates = field(default_factory=ListingDates)
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def record_id(self) -> str:
        return generate_record_id(self.provider_id, self.mls_id)

    @property
    def normalized_mls_id(self) -> str:
        return normalize_mls_id(self.mls_id)

    def to_dict(self, include_raw: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        data['record_id'] = self.record_id
        data['dates'] = {key: _iso(value) for key, value in data['dates'].items()}
        if not include_raw:
            data.pop('raw_data', None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanonicalPropertyRecord':
        dates = data.get('dates') or {}
        return cls(
            mls_id=data['mls_id'],
            provider_id=data['provider_id'],
            listing_id=data.get('listing_id', ''),
            property_type=data.get('property_type', ''),
            status=data.get('status', 'active'),
            price=float(data.get('price') or 0),
            address=Address(**(data.get('address') or {})),
            details=PropertyDetails(**(data.get('details') or {})),
            media=[Media(**m) for m in (data.get('media') or [])],
            agent=ListingAgent(**(data.get('agent') or {})),
            office=ListingOffice(**(data.get('office') or {})),
            dates=ListingDates(
                listed=parse_datetime(dates.get('listed'), utcnow()),
                updated=parse_datetime(dates.get('updated'), utcnow()),
                off_market=parse_datetime(dates.get('off_market')),
                closed=parse_datetime(dates.get('closed')),
            ),
            raw_data=data.get('raw_data') or {},
        )


@dataclass
class DateRange:
    start: datetime
    end: datetime


@dataclass
class SyncOptions:
    """Options accepted by start-sync"""
    full_sync: bool = False
    date_range: Optional[DateRange] = None
    property_types: List[str] = field(default_factory=list)
    status_filter: List[str] = field(default_factory=list)
    max_records: Optional[int] = None
    skip_duplicates: bool = False
    validate_data: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SyncOptions':
        """Build options from a request payload (snake_case or camelCase keys)"""
        data = data or {}

        def pick(snake: str, camel: str, default=None):
            if snake in data:
                return data[snake]
            return data.get(camel, default)

        date_range = None
        raw_range = pick('date_range', 'dateRange')
        if raw_range:
            date_range = DateRange(
                start=parse_datetime(raw_range.get('start')),
                end=parse_datetime(raw_range.get('end'), utcnow()),
            )

        max_records = pick('max_records', 'maxRecords')
        return cls(
            full_sync=bool(pick('full_sync', 'fullSync', False)),
            date_range=date_range,
            property_types=list(pick('property_types', 'propertyTypes', []) or []),
            status_filter=list(pick('status_filter', 'statusFilter', []) or []),
            max_records=int(max_records) if max_records else None,
            skip_duplicates=bool(pick('skip_duplicates', 'skipDuplicates', False)),
            validate_data=bool(pick('validate_data', 'validateData', True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'full_sync': self.full_sync,
            'date_range': {
                'start': _iso(self.date_range.start),
                'end': _iso(self.date_range.end),
            } if self.date_range else None,
            'property_types': list(self.property_types),
            'status_filter': list(self.status_filter),
            'max_records': self.max_records,
            'skip_duplicates': self.skip_duplicates,
            'validate_data': self.validate_data,
        }


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


class SyncErrorType(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    API = "api"
    DATA = "data"
    VALIDATION = "validation"


@dataclass
class SyncError:
    """A single error recorded against a sync run"""
    error_type: SyncErrorType
    message: str
    retryable: bool
    id: str = field(default_factory=generate_error_id)
    timestamp: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    mls_record_id: Optional[str] = None
    run_id: Optional[str] = None
    provider_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'run_id': self.run_id,
            'provider_id': self.provider_id,
            'error_type': self.error_type.value,
            'message': self.message,
            'retryable': self.retryable,
            'resolved': self.resolved,
            'resolved_at': _iso(self.resolved_at),
            'mls_record_id': self.mls_record_id,
            'details': self.details,
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncError':
        return cls(
            id=data['id'],
            error_type=SyncErrorType(data['error_type']),
            message=data.get('message', ''),
            retryable=bool(data.get('retryable', False)),
            timestamp=parse_datetime(data.get('timestamp'), utcnow()),
            resolved=bool(data.get('resolved', False)),
            resolved_at=parse_datetime(data.get('resolved_at')),
            mls_record_id=data.get('mls_record_id'),
            run_id=data.get('run_id'),
            provider_id=data.get('provider_id'),
            details=data.get('details') or {},
        )


@dataclass(frozen=True)
class SyncRunSnapshot:
    """Immutable view of a SyncRun handed to callers"""
    id: str
    provider_id: str
    status: SyncStatus
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    records_processed: int
    records_updated: int
    records_created: int
    records_failed: int
    duplicates_found: int
    pages_fetched: int
    progress: float
    estimated_total: Optional[int]
    options: Dict[str, Any]
    errors: Tuple[SyncError, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'provider_id': self.provider_id,
            'status': self.status.value,
            'started_at': _iso(self.started_at),
            'ended_at': _iso(self.ended_at),
            'records_processed': self.records_processed,
            'records_updated': self.records_updated,
            'records_created': self.records_created,
            'records_failed': self.records_failed,
            'duplicates_found': self.duplicates_found,
            'pages_fetched': self.pages_fetched,
            'progress': round(self.progress, 2),
            'estimated_total': self.estimated_total,
            'options': self.options,
            'error_count': len(self.errors),
        }


@dataclass
class SyncRun:
    """
    One execution of the fetch-validate-reconcile pipeline.

    Mutable fields are written only by the orchestrator that owns the run.
    """
    id: str
    provider_id: str
    options: SyncOptions = field(default_factory=SyncOptions)
    status: SyncStatus = SyncStatus.IDLE
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    records_processed: int = 0
    records_updated: int = 0
    records_created: int = 0
    records_failed: int = 0
    duplicates_found: int = 0
    pages_fetched: int = 0
    progress: float = 0.0
    estimated_total: Optional[int] = None
    next_page: int = 1
    errors: List[SyncError] = field(default_factory=list)
    stop_requested: bool = False

    def snapshot(self) -> SyncRunSnapshot:
        return SyncRunSnapshot(
            id=self.id,
            provider_id=self.provider_id,
            status=self.status,
            started_at=self.started_at,
            ended_at=self.ended_at,
            records_processed=self.records_processed,
            records_updated=self.records_updated,
            records_created=self.records_created,
            records_failed=self.records_failed,
            duplicates_found=self.duplicates_found,
            pages_fetched=self.pages_fetched,
            progress=self.progress,
            estimated_total=self.estimated_total,
            options=self.options.to_dict(),
            errors=tuple(copy.deepcopy(e) for e in self.errors),
        )


class SuggestedAction(str, Enum):
    MERGE = "merge"
    KEEP_BOTH = "keep_both"
    SKIP = "skip"


class ResolvedAction(str, Enum):
    MERGED = "merged"
    KEPT_BOTH = "kept_both"
    SKIPPED = "skipped"

    @classmethod
    def for_action(cls, action: SuggestedAction) -> 'ResolvedAction':
        return {
            SuggestedAction.MERGE: cls.MERGED,
            SuggestedAction.KEEP_BOTH: cls.KEPT_BOTH,
            SuggestedAction.SKIP: cls.SKIPPED,
        }[SuggestedAction(action)]


@dataclass
class DuplicateCandidate:
    """A pair of records suspected to represent the same physical listing"""
    id: str
    confidence: float
    source_record: CanonicalPropertyRecord
    target_record: CanonicalPropertyRecord
    match_reasons: List[str] = field(default_factory=list)
    suggested_action: SuggestedAction = SuggestedAction.KEEP_BOTH
    merge_data: Optional[CanonicalPropertyRecord] = None
    address_similarity: float = 0.0
    price_similarity: float = 0.0
    details_similarity: float = 0.0
    resolved: bool = False
    resolved_action: Optional[ResolvedAction] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'confidence': round(self.confidence, 4),
            'source_record_id': self.source_record.record_id,
            'target_record_id': self.target_record.record_id,
            'source_record': self.source_record.to_dict(include_raw=False),
            'target_record': self.target_record.to_dict(include_raw=False),
            'match_reasons': list(self.match_reasons),
            'suggested_action': self.suggested_action.value,
            'merge_data': self.merge_data.to_dict(include_raw=False) if self.merge_data else None,
            'address_similarity': round(self.address_similarity, 4),
            'price_similarity': round(self.price_similarity, 4),
            'details_similarity': round(self.details_similarity, 4),
            'resolved': self.resolved,
            'resolved_action': self.resolved_action.value if self.resolved_action else None,
            'resolved_at': _iso(self.resolved_at),
            'created_at': _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DuplicateCandidate':
        merge_data = data.get('merge_data')
        resolved_action = data.get('resolved_action')
        return cls(
            id=data['id'],
            confidence=float(data['confidence']),
            source_record=CanonicalPropertyRecord.from_dict(data['source_record']),
            target_record=CanonicalPropertyRecord.from_dict(data['target_record']),
            match_reasons=list(data.get('match_reasons') or []),
            suggested_action=SuggestedAction(data.get('suggested_action', 'keep_both')),
            merge_data=CanonicalPropertyRecord.from_dict(merge_data) if merge_data else None,
            address_similarity=float(data.get('address_similarity') or 0),
            price_similarity=float(data.get('price_similarity') or 0),
            details_similarity=float(data.get('details_similarity') or 0),
            resolved=bool(data.get('resolved', False)),
            resolved_action=ResolvedAction(resolved_action) if resolved_action else None,
            resolved_at=parse_datetime(data.get('resolved_at')),
            created_at=parse_datetime(data.get('created_at'), utcnow()),
        )


@dataclass
class DuplicateResolution:
    """Outcome of applying an action to a duplicate candidate"""
    candidate_id: str
    success: bool
    action: Optional[ResolvedAction] = None
    already_resolved: bool = False
    error_message: Optional[str] = None


@dataclass
class QualityScore:
    overall: int
    completeness: int
    accuracy: int
    consistency: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def passes(self, threshold: int) -> bool:
        return self.overall >= threshold


@dataclass
class QualityReport:
    """Batch summary of quality scores"""
    total_records: int = 0
    average_overall: float = 0.0
    average_completeness: float = 0.0
    average_accuracy: float = 0.0
    average_consistency: float = 0.0
    below_threshold: int = 0
    common_issues: List[Tuple[str, int]] = field(default_factory=list)


@dataclass
class RateLimitStatus:
    remaining: int
    reset_time: datetime


@dataclass
class PropertyPage:
    """One page of provider results after transformation"""
    page_number: int
    records: List[CanonicalPropertyRecord] = field(default_factory=list)
    errors: List[Any] = field(default_factory=list)  # per-record DataError instances
    total_records: Optional[int] = None
    has_more: bool = False


@dataclass
class StartSyncResult:
    """Result of a start-sync request"""
    success: bool
    provider_id: str
    status: str  # started | conflict | disabled | not_found
    run_id: Optional[str] = None
    message: str = ""
    run: Optional[SyncRunSnapshot] = None
