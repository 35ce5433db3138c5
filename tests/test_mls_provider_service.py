"""Tests for the MLS provider adapters."""

from datetime import datetime, timezone

import pytest
import requests

from config.sync_config import ProviderFamily
from services.errors import (
    ApiError,
    AuthenticationError,
    DataError,
    NetworkError,
    RateLimitExceeded,
)
from services.mls_provider_service import (
    CustomProvider,
    ResoProvider,
    RetsProvider,
    create_provider,
    normalize_property_type,
    normalize_status,
)
from services.models import DateRange, SyncErrorType, SyncOptions
from tests.factories import FakeResponse, make_provider_config


def custom_item(mls_id: str = "C-1", **overrides) -> dict:
    item = {
        'id': mls_id,
        'price': 250000,
        'property_type': 'Single Family',
        'status': 'Active',
        'address': {
            'street_number': '123',
            'street_name': 'Main St',
            'city': 'Springfield',
            'state': 'il',
            'zip_code': '62704',
        },
        'bedrooms': 3,
        'bathrooms': 2,
        'square_feet': 1500,
        'year_built': 1995,
        'photos': ['https://photos.example.com/1.jpg', 'https://photos.example.com/2.jpg'],
        'agent': {'name': 'Jane Agent', 'email': 'jane@example.com'},
        'listed_date': '2024-01-10T00:00:00Z',
        'updated_date': '2024-03-01T00:00:00Z',
    }
    item.update(overrides)
    return item


def custom_page(items, total_records=None, total_pages=None, headers=None) -> FakeResponse:
    pagination = {}
    if total_records is not None:
        pagination['totalRecords'] = total_records
    if total_pages is not None:
        pagination['totalPages'] = total_pages
    return FakeResponse(200, {'data': items, 'pagination': pagination}, headers=headers)


def custom_login(token: str = "tok-1", expires_in: int = 3600) -> FakeResponse:
    return FakeResponse(200, {'token': token, 'expiresIn': expires_in})


@pytest.fixture
def custom_provider(session, clock) -> CustomProvider:
    return CustomProvider(make_provider_config(), session=session, clock=clock, sleep=clock.sleep)


class TestAuthentication:
    """Token lifecycle for the three provider families."""

    @pytest.mark.asyncio
    async def test_cached_token_is_reused(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())

        assert await custom_provider.authenticate() is True
        assert await custom_provider.authenticate() is True

        assert custom_provider.login_count == 1
        assert len(session.calls_to('POST', '/auth/login')) == 1

    @pytest.mark.asyncio
    async def test_token_refreshed_before_expiry(self, custom_provider, session, clock) -> None:
        session.add('POST', '/auth/login', custom_login("tok-1"), custom_login("tok-2"))
        session.add('GET', '/properties', custom_page([custom_item()], total_records=1))

        await custom_provider.fetch_page(SyncOptions(), 1)
        clock.advance(3600 - 61)
        assert custom_provider.has_valid_token() is True
        clock.advance(31)  # inside the 60s refresh margin
        assert custom_provider.has_valid_token() is False
        await custom_provider.fetch_page(SyncOptions(), 1)

        assert custom_provider.login_count == 2
        last_headers = session.calls_to('GET', '/properties')[-1]['headers']
        assert last_headers['Authorization'] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_login_payload_for_custom_family(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())

        await custom_provider.authenticate()

        body = session.calls_to('POST', '/auth/login')[0]['json']
        assert body == {'username': 'agent', 'password': 'secret', 'clientId': 'client-1'}

    @pytest.mark.asyncio
    async def test_rejected_login_returns_false(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', FakeResponse(401))

        assert await custom_provider.authenticate() is False
        assert custom_provider.has_valid_token() is False

        with pytest.raises(AuthenticationError) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)
        assert exc_info.value.retryable is False
        assert session.calls_to('GET', '/properties') == []

    @pytest.mark.asyncio
    async def test_empty_token_is_a_failure(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', FakeResponse(200, {'expiresIn': 3600}))

        assert await custom_provider.authenticate() is False

    @pytest.mark.asyncio
    async def test_token_rejected_mid_run_reauthenticates_once(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login("tok-1"), custom_login("tok-2"))
        session.add('GET', '/properties', FakeResponse(401), custom_page([custom_item()], total_records=1))

        result = await custom_provider.fetch_page(SyncOptions(), 1)

        assert len(result.records) == 1
        assert custom_provider.login_count == 2
        assert session.calls_to('GET', '/properties')[-1]['headers']['Authorization'] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_validate_connection_forces_login(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())

        await custom_provider.authenticate()
        assert await custom_provider.validate_connection() is True
        assert custom_provider.login_count == 2

    @pytest.mark.asyncio
    async def test_rets_session_cookie(self, session, clock) -> None:
        provider = RetsProvider(
            make_provider_config(family=ProviderFamily.RETS), session=session, clock=clock, sleep=clock.sleep)
        session.add('POST', '/login', FakeResponse(
            200, {}, headers={'Set-Cookie': 'RETS-Session-ID=abc123; Path=/; HttpOnly'}))
        session.add('GET', '/properties', FakeResponse(200, [
            {'ListingID': 'R-1', 'ListPrice': '310000', 'StreetNumber': '9', 'StreetName': 'Oak Ave',
             'City': 'Austin', 'StateOrProvince': 'tx', 'PostalCode': '78701', 'BedroomsTotal': '4',
             'BathroomsTotal': '2.5', 'LivingArea': '2100', 'PropertyType': 'Single Family',
             'Photos': ['https://photos.example.com/r1.jpg']},
        ]))

        result = await provider.fetch_page(SyncOptions(), 1)

        login = session.calls_to('POST', '/login')[0]
        assert login['data'] == {'username': 'agent', 'password': 'secret'}
        assert login['headers']['Content-Type'] == 'application/x-www-form-urlencoded'
        data_call = session.calls_to('GET', '/properties')[0]
        assert data_call['headers']['Cookie'] == "RETS-Session-ID=abc123"
        assert data_call['params'] == {'limit': 2, 'offset': 0}

        record = result.records[0]
        assert record.mls_id == "R-1"
        assert record.price == 310000.0
        assert record.address.state == "TX"
        assert record.details.bathrooms == 2.5
        assert record.media[0].is_primary is True
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_rets_login_without_cookie_fails(self, session, clock) -> None:
        provider = RetsProvider(
            make_provider_config(family=ProviderFamily.RETS), session=session, clock=clock, sleep=clock.sleep)
        session.add('POST', '/login', FakeResponse(200, {}))

        assert await provider.authenticate() is False

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_any_request(self, session, clock) -> None:
        config = make_provider_config(family=ProviderFamily.RESO)
        config.credentials.client_secret = ""
        provider = ResoProvider(config, session=session, clock=clock, sleep=clock.sleep)

        assert await provider.authenticate() is False
        assert session.calls == []
        with pytest.raises(AuthenticationError):
            await provider.fetch_page(SyncOptions(), 1)

    @pytest.mark.asyncio
    async def test_reso_client_credentials(self, session, clock) -> None:
        provider = ResoProvider(
            make_provider_config(family=ProviderFamily.RESO), session=session, clock=clock, sleep=clock.sleep)
        session.add('POST', '/oauth/token', FakeResponse(200, {'access_token': 'bearer-1', 'expires_in': 7200}))
        session.add('GET', '/properties', FakeResponse(200, {
            '@odata.count': 1,
            'value': [{
                'ListingId': 'RESO-7',
                'ListPrice': 499000,
                'PropertyType': 'Condo',
                'StandardStatus': 'Active',
                'PropertyAddress': {
                    'StreetNumber': '500', 'StreetName': 'Bay Shore Dr', 'City': 'Tampa',
                    'StateOrProvince': 'FL', 'PostalCode': '33602',
                },
                'Rooms': {'BedroomsTotal': 2, 'BathroomsTotalInteger': 2},
                'Building': {'BuildingAreaTotal': 1200, 'YearBuilt': 2010},
                'ListAgent': {'ListAgentFullName': 'Sam Broker'},
                'Media': [
                    {'MediaURL': 'https://photos.example.com/a.jpg', 'PreferredPhotoYN': True},
                    {'MediaURL': 'https://photos.example.com/b.jpg'},
                ],
                'ModificationTimestamp': '2024-03-01T12:00:00Z',
            }],
        }))

        result = await provider.fetch_page(SyncOptions(property_types=['Condo']), 1)

        token_call = session.calls_to('POST', '/oauth/token')[0]
        assert token_call['auth'] == ('client-1', 'shh')
        assert token_call['data']['grant_type'] == 'client_credentials'
        data_call = session.calls_to('GET', '/properties')[0]
        assert data_call['headers']['Authorization'] == "Bearer bearer-1"
        assert data_call['params']['$top'] == 2
        assert data_call['params']['$skip'] == 0
        assert "PropertyType eq 'Condo'" in data_call['params']['$filter']

        record = result.records[0]
        assert record.mls_id == "RESO-7"
        assert record.property_type == "condo"
        assert record.address.city == "Tampa"
        assert record.details.bedrooms == 2
        assert record.details.square_feet == 1200.0
        assert record.agent.name == "Sam Broker"
        assert [m.is_primary for m in record.media] == [True, False]
        assert result.total_records == 1
        assert result.has_more is False


class TestFailures:
    """HTTP and payload failures map onto the error taxonomy."""

    @pytest.mark.asyncio
    async def test_rate_limited_response(self, custom_provider, session, clock) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', FakeResponse(429, headers={'Retry-After': '30'}))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)

        error = exc_info.value
        assert error.retryable is True
        assert error.status_code == 429
        assert error.reset_at == datetime.fromtimestamp(clock.now + 30, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', FakeResponse(503))

        with pytest.raises(ApiError) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', FakeResponse(400))

        with pytest.raises(ApiError) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exception", [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("connection refused"),
    ])
    async def test_transport_failures_are_network_errors(self, custom_provider, session, exception) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', exception)

        with pytest.raises(NetworkError) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)
        assert exc_info.value.retryable is True
        assert exc_info.value.error_type == SyncErrorType.NETWORK

    @pytest.mark.asyncio
    async def test_non_json_payload_is_data_error(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', FakeResponse(200, None, text="<html>maintenance</html>"))

        with pytest.raises(DataError) as exc_info:
            await custom_provider.fetch_page(SyncOptions(), 1)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_wrong_page_shape_is_data_error(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', FakeResponse(200, {'results': []}))

        with pytest.raises(DataError):
            await custom_provider.fetch_page(SyncOptions(), 1)

    @pytest.mark.asyncio
    async def test_unmappable_record_is_reported_not_raised(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page(
            [{'id': '', 'price': 1}, custom_item("C-2")], total_records=2))

        result = await custom_provider.fetch_page(SyncOptions(), 1)

        assert [r.mls_id for r in result.records] == ["C-2"]
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], DataError)


class TestRetrieval:
    """Paging, filtering and rate-limit tracking."""

    @pytest.mark.asyncio
    async def test_transform_maps_custom_fields(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page([custom_item()], total_records=1))

        record = (await custom_provider.fetch_page(SyncOptions(), 1)).records[0]

        assert record.provider_id == "test_mls"
        assert record.property_type == "single_family"
        assert record.status == "active"
        assert record.address.street == "123 Main St"
        assert record.address.state == "IL"
        assert record.details.year_built == 1995
        assert record.agent.email == "jane@example.com"
        assert record.dates.updated == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert [m.is_primary for m in record.media] == [True, False]

    @pytest.mark.asyncio
    async def test_missing_optional_fields_default_to_empty(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page([{'id': 'BARE-1'}], total_records=1))

        record = (await custom_provider.fetch_page(SyncOptions(), 1)).records[0]

        assert record.price == 0.0
        assert record.details.bedrooms == 0
        assert record.address.city == ""
        assert record.media == []
        assert record.agent.name == ""

    @pytest.mark.asyncio
    async def test_get_properties_pages_until_exhausted(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties',
                    custom_page([custom_item("C-1"), custom_item("C-2")], total_records=3, total_pages=2),
                    custom_page([custom_item("C-3")], total_records=3, total_pages=2))

        records = await custom_provider.get_properties(SyncOptions())

        assert [r.mls_id for r in records] == ["C-1", "C-2", "C-3"]
        pages = [call['params']['page'] for call in session.calls_to('GET', '/properties')]
        assert pages == [1, 2]

    @pytest.mark.asyncio
    async def test_max_records_caps_the_last_page(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties',
                    custom_page([custom_item("C-1"), custom_item("C-2")], total_records=5, total_pages=3),
                    custom_page([custom_item("C-3")], total_records=5, total_pages=3))

        records = await custom_provider.get_properties(SyncOptions(max_records=3))

        assert len(records) == 3
        second_call = session.calls_to('GET', '/properties')[1]
        assert second_call['params']['limit'] == 1

    @pytest.mark.asyncio
    async def test_filters_reapplied_client_side(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page([
            custom_item("C-1"),
            custom_item("C-2", status='Sold'),
            custom_item("C-3", updated_date='2023-01-01T00:00:00Z'),
        ], total_records=3))

        options = SyncOptions(
            status_filter=['active'],
            date_range=DateRange(
                start=datetime(2024, 1, 1, tzinfo=timezone.utc),
                end=datetime(2024, 12, 31, tzinfo=timezone.utc),
            ),
        )
        result = await custom_provider.fetch_page(options, 1)

        assert [r.mls_id for r in result.records] == ["C-1"]
        params = session.calls_to('GET', '/properties')[0]['params']
        assert params['statuses'] == 'active'
        assert params['updated_after'].startswith('2024-01-01')

    @pytest.mark.asyncio
    async def test_rate_limit_headers_update_status_and_throttle(self, custom_provider, session, clock) -> None:
        reset_at = clock.now + 20
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page(
            [custom_item()], total_records=1,
            headers={'X-RateLimit-Remaining': '0', 'X-RateLimit-Reset': str(reset_at)}))

        await custom_provider.fetch_page(SyncOptions(), 1)
        status = await custom_provider.get_rate_limit_status()
        assert status.remaining == 0
        assert status.reset_time == datetime.fromtimestamp(reset_at, tz=timezone.utc)

        await custom_provider.fetch_page(SyncOptions(), 1)
        assert clock.sleeps == [pytest.approx(20.0)]

    @pytest.mark.asyncio
    async def test_requests_are_spaced_by_rate_limit(self, session, clock) -> None:
        provider = CustomProvider(make_provider_config(rate_limit=6), session=session, clock=clock, sleep=clock.sleep)
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page([custom_item()], total_records=1))

        for _ in range(5):
            await provider.fetch_page(SyncOptions(), 1)

        assert provider.min_request_interval == 10.0
        assert clock.sleeps == [pytest.approx(10.0)] * 4

    @pytest.mark.asyncio
    async def test_request_delay_wins_when_slower(self, session, clock) -> None:
        provider = CustomProvider(make_provider_config(rate_limit=600, request_delay=2.0),
                                  session=session, clock=clock, sleep=clock.sleep)
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties', custom_page([custom_item()], total_records=1))

        await provider.fetch_page(SyncOptions(), 1)
        clock.advance(0.5)
        await provider.fetch_page(SyncOptions(), 1)

        assert clock.sleeps == [pytest.approx(1.5)]

    @pytest.mark.asyncio
    async def test_get_property_by_id(self, custom_provider, session) -> None:
        session.add('POST', '/auth/login', custom_login())
        session.add('GET', '/properties/C-9', FakeResponse(200, {'data': custom_item("C-9")}))
        session.add('GET', '/properties/C-404', FakeResponse(404))

        record = await custom_provider.get_property_by_id("C-9")
        assert record is not None and record.mls_id == "C-9"
        assert await custom_provider.get_property_by_id("C-404") is None

    def test_close_closes_session(self, custom_provider, session) -> None:
        custom_provider.close()
        assert session.closed is True


class TestFactory:
    """Provider selection by family."""

    @pytest.mark.parametrize("family,expected", [
        (ProviderFamily.RETS, RetsProvider),
        (ProviderFamily.RESO, ResoProvider),
        (ProviderFamily.CUSTOM, CustomProvider),
    ])
    def test_create_provider_selects_family(self, session, family, expected) -> None:
        provider = create_provider(make_provider_config(family=family), session=session)
        assert isinstance(provider, expected)
        assert provider.provider_id == "test_mls"

    def test_normalizers(self) -> None:
        assert normalize_property_type("Single Family") == "single_family"
        assert normalize_property_type("multi-family") == "multi_family"
        assert normalize_status(" Active Under Contract ") == "active_under_contract"
        assert normalize_status(None) == "active"
