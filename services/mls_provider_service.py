"""
MLS Provider Service

Adapters that authenticate against an upstream MLS provider, fetch listings
page by page, track the provider's rate-limit budget and transform each raw
payload into a CanonicalPropertyRecord.

One capability set (authenticate / fetch_page / transform) with a concrete
class per provider family:
- RetsProvider: form login -> session cookie (~30 min)
- ResoProvider: OAuth client-credentials -> bearer token with expires_in
- CustomProvider: JSON login -> {token, expiresIn}
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import requests

from config.sync_config import ProviderConfig, ProviderFamily
from .errors import (
    ApiError,
    AuthenticationError,
    DataError,
    NetworkError,
    ProviderError,
    RateLimitExceeded,
)
from .models import (
    Address,
    CanonicalPropertyRecord,
    ListingAgent,
    ListingDates,
    ListingOffice,
    Media,
    PropertyDetails,
    PropertyPage,
    RateLimitStatus,
    SyncOptions,
    parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

RETS_SESSION_LIFETIME = 30 * 60  # seconds
DEFAULT_TOKEN_LIFETIME = 3600  # seconds, when the provider omits expires_in
RETS_VERSION = "RETS/1.8"


def _to_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, dict):
        value = value.get('Price', value.get('value'))
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if result == result else default  # NaN


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def normalize_property_type(value: Any) -> str:
    """'Single Family' / 'single-family' -> 'single_family'"""
    return _text(value).lower().replace('-', ' ').replace(' ', '_')


def normalize_status(value: Any, default: str = "active") -> str:
    status = _text(value).lower().replace(' ', '_')
    return status or default


class BaseMLSProvider(ABC):
    """
    Shared behaviour for all provider families.

    Subclasses implement the wire-level pieces: _login, _auth_headers,
    _build_query, _parse_page and transform.
    """

    family: ProviderFamily
    properties_path = "/properties"

    def __init__(
        self,
        config: ProviderConfig,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        token_refresh_margin: float = 60.0,
        rate_limit_max_wait: float = 300.0,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': config.user_agent,
            'Accept': 'application/json',
        })
        self._clock = clock
        self._sleep = sleep
        self.token_refresh_margin = token_refresh_margin
        self.rate_limit_max_wait = rate_limit_max_wait

        # Token state
        self._auth_token: Optional[str] = None
        self._token_expiry: Optional[float] = None
        self._token_refresh_at: Optional[float] = None
        self._auth_lock = asyncio.Lock()
        self.login_count = 0

        # Throttle state
        self._rate_limit_remaining: int = config.rate_limit
        self._rate_limit_reset: Optional[float] = None
        self._last_request_at: Optional[float] = None

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def has_valid_token(self) -> bool:
        """True while the cached token is inside its refresh window"""
        if not self._auth_token or self._token_refresh_at is None:
            return False
        return self._clock() < self._token_refresh_at

    async def authenticate(self, force: bool = False) -> bool:
        """
        Obtain or refresh the provider token.

        A cached token still inside its lifetime is reused unless force is set.

        Returns:
            True if a usable token is available, False otherwise
        """
        async with self._auth_lock:
            if not force and self.has_valid_token():
                return True

            try:
                token, lifetime = await self._login()
            except ProviderError as e:
                logger.error(f"[{self.provider_id}] {self.family.value} authentication failed: {e}")
                self._clear_token()
                return False
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"[{self.provider_id}] Unexpected authentication response: {e}")
                self._clear_token()
                return False

            if not token:
                logger.error(f"[{self.provider_id}] Authentication returned an empty token")
                self._clear_token()
                return False

            lifetime = float(lifetime) if lifetime and float(lifetime) > 0 else DEFAULT_TOKEN_LIFETIME
            now = self._clock()
            self._auth_token = token
            self._token_expiry = now + lifetime
            self._token_refresh_at = now + max(lifetime - self.token_refresh_margin, lifetime / 2)
            self.login_count += 1

            logger.info(f"[{self.provider_id}] Authenticated ({self.family.value}), "
                        f"token valid for {lifetime:.0f}s")
            return True

    def _require_credentials(self, *names: str):
        """Fail the login before any request when a required credential is empty"""
        missing = [name for name in names if not getattr(self.config.credentials, name)]
        if missing:
            raise AuthenticationError(
                f"{self.family.value.upper()} credentials missing for {self.provider_id}: {', '.join(missing)}")

    async def ensure_authenticated(self):
        """Re-authenticate if the token is missing or about to expire"""
        if self.has_valid_token():
            return
        if not await self.authenticate():
            raise AuthenticationError(f"Failed to authenticate with MLS provider {self.provider_id}")

    async def validate_connection(self) -> bool:
        """Force a fresh login to check credentials and reachability"""
        return await self.authenticate(force=True)

    def _clear_token(self):
        self._auth_token = None
        self._token_expiry = None
        self._token_refresh_at = None

    @abstractmethod
    async def _login(self) -> Tuple[Optional[str], Optional[float]]:
        """Perform the family-specific login; returns (token, lifetime_seconds)"""

    @abstractmethod
    def _auth_headers(self) -> Dict[str, str]:
        """Headers attaching the current token to a data request"""

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[Tuple[str, str]] = None,
        paced: bool = False,
    ) -> requests.Response:
        """
        Issue one HTTP request and map transport/status failures to ProviderErrors.

        Data requests (paced=True) are spaced by the provider's per-minute
        rate limit; logins only wait for an exhausted budget to reset.
        """
        url = path if path.startswith('http') else f"{self.config.endpoint}{path}"

        await self._respect_rate_limit(paced)

        try:
            response = await asyncio.to_thread(
                self.session.request,
                method,
                url,
                params=params,
                data=data,
                json=json_body,
                headers=headers,
                auth=auth,
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout calling {method} {url}") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Connection error calling {method} {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
        finally:
            if paced:
                self._last_request_at = self._clock()

        self._update_rate_limit(response.headers)

        status = response.status_code
        if status == 429:
            raise RateLimitExceeded(
                f"{self.family.value.upper()} rate limit exceeded for {self.provider_id}",
                reset_at=self._retry_at(response.headers),
            )
        if status in (401, 403):
            raise AuthenticationError(
                f"{self.family.value.upper()} request rejected: {status}", status_code=status)
        if not 200 <= status < 300:
            raise ApiError(
                f"{self.family.value.upper()} API error: {status} {getattr(response, 'reason', '') or ''}".strip(),
                status_code=status,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        """Authenticated data request; a rejected token is refreshed once and replayed"""
        await self.ensure_authenticated()
        try:
            return await self._send(method, path, params=params, json_body=json_body,
                                    headers=self._auth_headers(), paced=True)
        except AuthenticationError:
            logger.warning(f"[{self.provider_id}] Token rejected mid-run, re-authenticating")
            self._clear_token()
            if not await self.authenticate(force=True):
                raise AuthenticationError(
                    f"Re-authentication with MLS provider {self.provider_id} failed")
            return await self._send(method, path, params=params, json_body=json_body,
                                    headers=self._auth_headers(), paced=True)

    @property
    def min_request_interval(self) -> float:
        """Seconds between data requests: request_delay or the per-minute rate limit, whichever is slower"""
        return max(self.config.request_delay, 60.0 / self.config.rate_limit)

    async def _respect_rate_limit(self, paced: bool = True):
        """Wait for the reset time when the budget is spent, then space out data requests"""
        now = self._clock()

        if self._rate_limit_remaining <= 0 and self._rate_limit_reset and self._rate_limit_reset > now:
            wait = min(self._rate_limit_reset - now, self.rate_limit_max_wait)
            logger.warning(f"[{self.provider_id}] Rate limit exhausted, waiting {wait:.1f}s for reset")
            await self._sleep(wait)
            self._rate_limit_remaining = self.config.rate_limit
            now = self._clock()

        if paced and self._last_request_at is not None:
            elapsed = now - self._last_request_at
            if elapsed < self.min_request_interval:
                await self._sleep(self.min_request_interval - elapsed)

    def _update_rate_limit(self, headers):
        """Refresh throttle state from X-RateLimit-* response headers"""
        if not headers:
            return
        remaining = headers.get('X-RateLimit-Remaining')
        reset = headers.get('X-RateLimit-Reset')

        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring malformed X-RateLimit-Remaining: {remaining}")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring malformed X-RateLimit-Reset: {reset}")

    def _retry_at(self, headers) -> Optional[datetime]:
        retry_after = headers.get('Retry-After') if headers else None
        if retry_after is not None:
            try:
                return datetime.fromtimestamp(self._clock() + float(retry_after), tz=timezone.utc)
            except (TypeError, ValueError):
                pass
        if self._rate_limit_reset:
            return datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc)
        return None

    async def get_rate_limit_status(self) -> RateLimitStatus:
        """Current {remaining, reset_time} as last reported by the provider"""
        reset = self._rate_limit_reset or (self._clock() + 60)
        return RateLimitStatus(
            remaining=self._rate_limit_remaining,
            reset_time=datetime.fromtimestamp(reset, tz=timezone.utc),
        )

    def _decode(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DataError(f"Malformed {self.family.value.upper()} payload from {self.provider_id}: {e}") from e

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _page_window(self, options: SyncOptions, page_number: int) -> Tuple[int, int]:
        """(offset, limit) for a page, trimmed to max_records"""
        offset = (page_number - 1) * self.config.page_size
        limit = self.config.page_size
        if options.max_records:
            limit = max(0, min(limit, options.max_records - offset))
        return offset, limit

    async def fetch_page(self, options: Optional[SyncOptions], page_number: int) -> PropertyPage:
        """
        Fetch and transform one page of listings.

        Records that cannot be mapped are returned as DataErrors in page.errors
        rather than failing the page.

        Raises:
            AuthenticationError, NetworkError, ApiError, DataError (malformed page)
        """
        options = options or SyncOptions()
        offset, limit = self._page_window(options, page_number)
        if limit <= 0:
            return PropertyPage(page_number=page_number, has_more=False)

        params = self._build_query(options, page_number, offset, limit)
        response = await self._request('GET', self.properties_path, params=params)
        payload = self._decode(response)
        items, total = self._parse_page(payload)

        page = PropertyPage(page_number=page_number, total_records=total)
        for item in items:
            try:
                record = self.transform(item)
            except DataError as e:
                page.errors.append(e)
                continue
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                page.errors.append(DataError(
                    f"Unmappable {self.family.value.upper()} record: {e}",
                    mls_record_id=self._raw_id(item),
                ))
                continue

            if self._matches_filters(record, options):
                page.records.append(record)

        fetched = offset + len(items)
        page.has_more = self._has_more(payload, page_number, len(items), limit, total)
        if options.max_records and fetched >= options.max_records:
            page.has_more = False

        logger.debug(f"[{self.provider_id}] Page {page_number}: {len(page.records)} records, "
                     f"{len(page.errors)} unmappable, total={total}")
        return page

    async def get_properties(self, options: Optional[SyncOptions] = None) -> List[CanonicalPropertyRecord]:
        """
        Fetch all listings matching options, page by page, until exhausted or
        max_records is reached.
        """
        options = options or SyncOptions()
        records: List[CanonicalPropertyRecord] = []
        page_number = 1

        while True:
            page = await self.fetch_page(options, page_number)
            records.extend(page.records)
            for error in page.errors:
                logger.warning(f"[{self.provider_id}] Skipping record {error.mls_record_id}: {error}")

            if not page.has_more:
                break
            if options.max_records and len(records) >= options.max_records:
                break
            page_number += 1

        if options.max_records:
            records = records[:options.max_records]

        logger.info(f"[{self.provider_id}] Fetched {len(records)} properties over {page_number} page(s)")
        return records

    async def get_property_by_id(self, mls_id: str) -> Optional[CanonicalPropertyRecord]:
        """Fetch a single listing; None when the provider does not know it"""
        try:
            response = await self._request('GET', self._property_path(mls_id))
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise

        try:
            item = self._unwrap_single(self._decode(response))
            if item is None:
                return None
            return self.transform(item)
        except DataError as e:
            logger.warning(f"[{self.provider_id}] Property {mls_id} could not be transformed: {e}")
            return None

    def _property_path(self, mls_id: str) -> str:
        return f"{self.properties_path}/{mls_id}"

    def _unwrap_single(self, payload: Any) -> Optional[Dict[str, Any]]:
        if isinstance(payload, list):
            return payload[0] if payload else None
        if isinstance(payload, dict):
            for key in ('data', 'value', 'listings'):
                inner = payload.get(key)
                if isinstance(inner, list):
                    return inner[0] if inner else None
                if isinstance(inner, dict):
                    return inner
            return payload
        raise DataError(f"Unexpected single-record payload from {self.provider_id}")

    def _has_more(self, payload: Any, page_number: int, item_count: int,
                  limit: int, total: Optional[int]) -> bool:
        if total is not None:
            return (page_number - 1) * self.config.page_size + item_count < total
        return item_count >= limit > 0

    def _matches_filters(self, record: CanonicalPropertyRecord, options: SyncOptions) -> bool:
        """Client-side re-application of the request filters"""
        if options.property_types:
            wanted = {normalize_property_type(t) for t in options.property_types}
            if normalize_property_type(record.property_type) not in wanted:
                return False
        if options.status_filter:
            wanted = {normalize_status(s) for s in options.status_filter}
            if normalize_status(record.status) not in wanted:
                return False
        if options.date_range:
            updated = record.dates.updated
            if options.date_range.start and updated < options.date_range.start:
                return False
            if options.date_range.end and updated > options.date_range.end:
                return False
        return True

    @staticmethod
    def _raw_id(item: Any) -> Optional[str]:
        if not isinstance(item, dict):
            return None
        for key in ('ListingID', 'ListingId', 'ListingKey', 'id', 'mls_id'):
            if item.get(key):
                return str(item[key])
        return None

    @abstractmethod
    def _build_query(self, options: SyncOptions, page_number: int, offset: int, limit: int) -> Dict[str, Any]:
        """Provider query parameters for one page"""

    @abstractmethod
    def _parse_page(self, payload: Any) -> Tuple[List[Any], Optional[int]]:
        """Split a page payload into (raw items, total record count or None)"""

    @abstractmethod
    def transform(self, item: Dict[str, Any]) -> CanonicalPropertyRecord:
        """Map one raw provider record onto the canonical schema"""

    def close(self):
        self.session.close()


class RetsProvider(BaseMLSProvider):
    """RETS feed: form login, session cookie, PascalCase flat records"""

    family = ProviderFamily.RETS

    async def _login(self) -> Tuple[Optional[str], Optional[float]]:
        self._require_credentials('username', 'password')
        creds = self.config.credentials
        response = await self._send(
            'POST', '/login',
            data={'username': creds.username, 'password': creds.password},
            headers={
                'Content-Type': 'application/x-www-form-urlencoded',
                'RETS-Version': RETS_VERSION,
            },
        )
        token = self._session_token(response)
        if not token:
            raise AuthenticationError("RETS login returned no session cookie")
        return token, RETS_SESSION_LIFETIME

    @staticmethod
    def _session_token(response: requests.Response) -> Optional[str]:
        set_cookie = response.headers.get('Set-Cookie') if response.headers else None
        if set_cookie:
            first = set_cookie.split(';')[0]
            if '=' in first:
                return first.split('=', 1)[1].strip() or None
        cookies = getattr(response, 'cookies', None)
        if cookies:
            for name in ('RETS-Session-ID', 'RETS-Session'):
                value = cookies.get(name)
                if value:
                    return value
        return None

    def _auth_headers(self) -> Dict[str, str]:
        return {
            'Cookie': f"RETS-Session-ID={self._auth_token}",
            'RETS-Version': RETS_VERSION,
        }

    def _build_query(self, options: SyncOptions, page_number: int, offset: int, limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {'limit': limit, 'offset': offset}
        if options.date_range:
            if options.date_range.start:
                params['modifiedAfter'] = options.date_range.start.isoformat()
            if options.date_range.end:
                params['modifiedBefore'] = options.date_range.end.isoformat()
        if options.property_types:
            params['propertyType'] = ','.join(options.property_types)
        if options.status_filter:
            params['status'] = ','.join(options.status_filter)
        return params

    def _parse_page(self, payload: Any) -> Tuple[List[Any], Optional[int]]:
        if isinstance(payload, list):
            return payload, None
        if isinstance(payload, dict):
            items = payload.get('listings', payload.get('data'))
            if isinstance(items, list):
                total = payload.get('totalRecords', payload.get('count'))
                return items, _to_int(total, None) if total is not None else None
        raise DataError(f"Malformed RETS page payload from {self.provider_id}")

    def transform(self, item: Dict[str, Any]) -> CanonicalPropertyRecord:
        if not isinstance(item, dict):
            raise DataError(f"RETS record is not an object: {type(item).__name__}")
        mls_id = _text(item.get('ListingID'))
        if not mls_id:
            raise DataError("RETS record missing ListingID")

        media = []
        for index, photo in enumerate(item.get('Photos') or []):
            if isinstance(photo, str):
                media.append(Media(url=photo, is_primary=index == 0, sort_order=index))
            elif isinstance(photo, dict) and photo.get('URL'):
                media.append(Media(
                    url=photo['URL'],
                    is_primary=bool(photo.get('Preferred', index == 0)),
                    sort_order=_to_int(photo.get('Order'), index),
                    caption=_text(photo.get('Caption')),
                ))

        return CanonicalPropertyRecord(
            mls_id=mls_id,
            provider_id=self.provider_id,
            listing_id=mls_id,
            property_type=normalize_property_type(item.get('PropertyType')),
            status=normalize_status(item.get('StandardStatus')),
            price=_to_float(item.get('ListPrice')),
            address=Address(
                street_number=_text(item.get('StreetNumber')),
                street_name=_text(item.get('StreetName')),
                unit_number=_text(item.get('UnitNumber')),
                city=_text(item.get('City')),
                state=_text(item.get('StateOrProvince')).upper(),
                zip_code=_text(item.get('PostalCode')),
                country=_text(item.get('Country')) or 'US',
                latitude=_optional_float(item.get('Latitude')),
                longitude=_optional_float(item.get('Longitude')),
            ),
            details=PropertyDetails(
                bedrooms=_to_int(item.get('BedroomsTotal')),
                bathrooms=_to_float(item.get('BathroomsTotal')),
                square_feet=_to_float(item.get('LivingArea')),
                year_built=_to_int(item.get('YearBuilt')),
                lot_size=_to_float(item.get('LotSizeArea')),
                stories=_to_int(item.get('Stories')),
                description=_text(item.get('PublicRemarks')),
            ),
            media=media,
            agent=ListingAgent(
                id=_text(item.get('ListAgentKey')),
                name=_text(item.get('ListAgentFullName')),
                email=_text(item.get('ListAgentEmail')),
                phone=_text(item.get('ListAgentPreferredPhone')),
            ),
            office=ListingOffice(
                id=_text(item.get('ListOfficeKey')),
                name=_text(item.get('ListOfficeName')),
            ),
            dates=ListingDates(
                listed=parse_datetime(item.get('ListingContractDate'), utcnow()),
                updated=parse_datetime(item.get('ModificationTimestamp'), utcnow()),
                off_market=parse_datetime(item.get('OffMarketDate')),
                closed=parse_datetime(item.get('CloseDate')),
            ),
            raw_data=item,
        )


class ResoProvider(BaseMLSProvider):
    """RESO Web API: OAuth client-credentials, OData paging"""

    family = ProviderFamily.RESO

    async def _login(self) -> Tuple[Optional[str], Optional[float]]:
        self._require_credentials('client_id', 'client_secret')
        creds = self.config.credentials
        response = await self._send(
            'POST', '/oauth/token',
            data={'grant_type': 'client_credentials', 'scope': 'read'},
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            auth=(creds.client_id, creds.client_secret),
        )
        payload = self._decode(response)
        return payload.get('access_token'), payload.get('expires_in')

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self._auth_token}"}

    def _build_query(self, options: SyncOptions, page_number: int, offset: int, limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {'$top': limit, '$skip': offset, '$count': 'true'}
        clauses = []
        if options.date_range:
            if options.date_range.start:
                clauses.append(f"ModificationTimestamp gt {options.date_range.start.isoformat()}")
            if options.date_range.end:
                clauses.append(f"ModificationTimestamp lt {options.date_range.end.isoformat()}")
        if options.property_types:
            clauses.append('(' + ' or '.join(f"PropertyType eq '{t}'" for t in options.property_types) + ')')
        if options.status_filter:
            clauses.append('(' + ' or '.join(f"StandardStatus eq '{s}'" for s in options.status_filter) + ')')
        if clauses:
            params['$filter'] = ' and '.join(clauses)
        return params

    def _parse_page(self, payload: Any) -> Tuple[List[Any], Optional[int]]:
        if isinstance(payload, dict) and isinstance(payload.get('value'), list):
            total = payload.get('@odata.count')
            return payload['value'], _to_int(total, None) if total is not None else None
        raise DataError(f"Malformed RESO page payload from {self.provider_id}")

    def _has_more(self, payload: Any, page_number: int, item_count: int,
                  limit: int, total: Optional[int]) -> bool:
        if isinstance(payload, dict) and '@odata.nextLink' in payload:
            return bool(payload['@odata.nextLink']) and item_count > 0
        return super()._has_more(payload, page_number, item_count, limit, total)

    def transform(self, item: Dict[str, Any]) -> CanonicalPropertyRecord:
        if not isinstance(item, dict):
            raise DataError(f"RESO record is not an object: {type(item).__name__}")
        mls_id = _text(item.get('ListingId') or item.get('ListingKey'))
        if not mls_id:
            raise DataError("RESO record missing ListingId")

        # Some feeds nest address/rooms/building/agent groups, others are flat
        address = item.get('PropertyAddress') or item
        rooms = item.get('Rooms') or item
        building = item.get('Building') or item
        agent = item.get('ListAgent') or item
        office = item.get('ListOffice') or item

        media = []
        for index, entry in enumerate(item.get('Media') or []):
            if isinstance(entry, dict) and entry.get('MediaURL'):
                media.append(Media(
                    url=entry['MediaURL'],
                    media_type=_text(entry.get('MediaCategory')).lower() or 'photo',
                    is_primary=bool(entry.get('PreferredPhotoYN', False)),
                    sort_order=_to_int(entry.get('Order'), index),
                    caption=_text(entry.get('ShortDescription')),
                ))

        bathrooms = rooms.get('BathroomsTotal', rooms.get('BathroomsTotalInteger'))

        return CanonicalPropertyRecord(
            mls_id=mls_id,
            provider_id=self.provider_id,
            listing_id=_text(item.get('ListingKey')) or mls_id,
            property_type=normalize_property_type(item.get('PropertyType')),
            status=normalize_status(item.get('StandardStatus')),
            price=_to_float(item.get('ListPrice')),
            address=Address(
                street_number=_text(address.get('StreetNumber')),
                street_name=_text(address.get('StreetName')),
                unit_number=_text(address.get('UnitNumber')),
                city=_text(address.get('City')),
                state=_text(address.get('StateOrProvince')).upper(),
                zip_code=_text(address.get('PostalCode')),
                country=_text(address.get('Country')) or 'US',
                latitude=_optional_float(address.get('Latitude')),
                longitude=_optional_float(address.get('Longitude')),
            ),
            details=PropertyDetails(
                bedrooms=_to_int(rooms.get('BedroomsTotal')),
                bathrooms=_to_float(bathrooms),
                square_feet=_to_float(building.get('BuildingAreaTotal', building.get('LivingArea'))),
                year_built=_to_int(building.get('YearBuilt')),
                lot_size=_to_float(item.get('LotSizeArea')),
                stories=_to_int(building.get('Stories')),
                description=_text(item.get('PublicRemarks')),
            ),
            media=media,
            agent=ListingAgent(
                id=_text(agent.get('ListAgentKey')),
                name=_text(agent.get('ListAgentFullName')),
                email=_text(agent.get('ListAgentEmail')),
                phone=_text(agent.get('ListAgentPreferredPhone')),
            ),
            office=ListingOffice(
                id=_text(office.get('ListOfficeKey')),
                name=_text(office.get('ListOfficeName')),
            ),
            dates=ListingDates(
                listed=parse_datetime(item.get('ListingContractDate'), utcnow()),
                updated=parse_datetime(item.get('ModificationTimestamp'), utcnow()),
                off_market=parse_datetime(item.get('OffMarketDate')),
                closed=parse_datetime(item.get('CloseDate')),
            ),
            raw_data=item,
        )


class CustomProvider(BaseMLSProvider):
    """Custom JSON feed: JSON login, page/page_size paging, snake_case records"""

    family = ProviderFamily.CUSTOM

    async def _login(self) -> Tuple[Optional[str], Optional[float]]:
        self._require_credentials('username', 'password')
        creds = self.config.credentials
        response = await self._send(
            'POST', '/auth/login',
            json_body={
                'username': creds.username,
                'password': creds.password,
                'clientId': creds.client_id,
            },
            headers={'Content-Type': 'application/json'},
        )
        payload = self._decode(response)
        return payload.get('token'), payload.get('expiresIn') or DEFAULT_TOKEN_LIFETIME

    def _auth_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bearer {self._auth_token}"}

    def _build_query(self, options: SyncOptions, page_number: int, offset: int, limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {'page': page_number, 'page_size': self.config.page_size}
        if limit < self.config.page_size:
            params['limit'] = limit
        if options.date_range:
            if options.date_range.start:
                params['updated_after'] = options.date_range.start.isoformat()
            if options.date_range.end:
                params['updated_before'] = options.date_range.end.isoformat()
        if options.property_types:
            params['property_types'] = ','.join(options.property_types)
        if options.status_filter:
            params['statuses'] = ','.join(options.status_filter)
        return params

    def _parse_page(self, payload: Any) -> Tuple[List[Any], Optional[int]]:
        if isinstance(payload, list):
            return payload, None
        if isinstance(payload, dict) and isinstance(payload.get('data'), list):
            pagination = payload.get('pagination') or {}
            total = pagination.get('totalRecords')
            return payload['data'], _to_int(total, None) if total is not None else None
        raise DataError(f"Malformed custom page payload from {self.provider_id}")

    def _has_more(self, payload: Any, page_number: int, item_count: int,
                  limit: int, total: Optional[int]) -> bool:
        pagination = payload.get('pagination') if isinstance(payload, dict) else None
        if pagination and pagination.get('totalPages') is not None:
            return page_number < _to_int(pagination['totalPages'])
        return super()._has_more(payload, page_number, item_count, limit, total)

    def transform(self, item: Dict[str, Any]) -> CanonicalPropertyRecord:
        if not isinstance(item, dict):
            raise DataError(f"Custom record is not an object: {type(item).__name__}")
        mls_id = _text(item.get('id'))
        if not mls_id:
            raise DataError("Custom record missing id")

        address = item.get('address') or {}
        agent = item.get('agent') or {}
        office = item.get('office') or {}

        media = []
        for index, photo in enumerate(item.get('photos') or item.get('media') or []):
            if isinstance(photo, str):
                media.append(Media(url=photo, is_primary=index == 0, sort_order=index))
            elif isinstance(photo, dict) and photo.get('url'):
                media.append(Media(
                    url=photo['url'],
                    media_type=_text(photo.get('type')) or 'photo',
                    is_primary=bool(photo.get('is_primary', False)),
                    sort_order=_to_int(photo.get('sort_order'), index),
                    caption=_text(photo.get('caption')),
                ))

        return CanonicalPropertyRecord(
            mls_id=mls_id,
            provider_id=self.provider_id,
            listing_id=_text(item.get('listing_id')) or mls_id,
            property_type=normalize_property_type(item.get('property_type')),
            status=normalize_status(item.get('status')),
            price=_to_float(item.get('price')),
            address=Address(
                street_number=_text(address.get('street_number')),
                street_name=_text(address.get('street_name')),
                unit_number=_text(address.get('unit_number')),
                city=_text(address.get('city')),
                state=_text(address.get('state')).upper(),
                zip_code=_text(address.get('zip_code')),
                country=_text(address.get('country')) or 'US',
                latitude=_optional_float(address.get('latitude')),
                longitude=_optional_float(address.get('longitude')),
            ),
            details=PropertyDetails(
                bedrooms=_to_int(item.get('bedrooms')),
                bathrooms=_to_float(item.get('bathrooms')),
                square_feet=_to_float(item.get('square_feet')),
                year_built=_to_int(item.get('year_built')),
                lot_size=_to_float(item.get('lot_size')),
                stories=_to_int(item.get('stories')),
                description=_text(item.get('description')),
            ),
            media=media,
            agent=ListingAgent(
                id=_text(agent.get('id')),
                name=_text(agent.get('name')),
                email=_text(agent.get('email')),
                phone=_text(agent.get('phone')),
            ),
            office=ListingOffice(
                id=_text(office.get('id')),
                name=_text(office.get('name')),
            ),
            dates=ListingDates(
                listed=parse_datetime(item.get('listed_date'), utcnow()),
                updated=parse_datetime(item.get('updated_date'), utcnow()),
                off_market=parse_datetime(item.get('off_market_date')),
                closed=parse_datetime(item.get('closed_date')),
            ),
            raw_data=item,
        )


PROVIDER_CLASSES: Dict[ProviderFamily, Type[BaseMLSProvider]] = {
    ProviderFamily.RETS: RetsProvider,
    ProviderFamily.RESO: ResoProvider,
    ProviderFamily.CUSTOM: CustomProvider,
}


def create_provider(config: ProviderConfig, **kwargs) -> BaseMLSProvider:
    """
    Create the adapter for a provider's family.

    Args:
        config: Provider configuration
        **kwargs: Passed to the adapter (session, clock, sleep, ...)

    Returns:
        A BaseMLSProvider implementation
    """
    try:
        provider_cls = PROVIDER_CLASSES[ProviderFamily(config.family)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported MLS provider family: {config.family}")
    return provider_cls(config, **kwargs)
