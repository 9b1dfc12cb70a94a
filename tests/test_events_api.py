"""Unit tests for EventsApiClient."""
import json
from decimal import Decimal
from xml.sax.saxutils import escape

import pytest
import responses
from requests.exceptions import Timeout

from remote.events_api import EventsApiClient

from conftest import make_detail, make_listing

API_URL = 'http://eventapi.example.com/ClientService.asmx'


def soap_response(operation, payload):
    """Wrap a JSON payload the way the service returns it."""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        f'<soap:Body><{operation}Response xmlns="http://tempuri.org/">'
        f'<{operation}Result>{escape(json.dumps(payload))}</{operation}Result>'
        f'</{operation}Response></soap:Body></soap:Envelope>'
    )


SOAP_FAULT = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
    '<soap:Body><soap:Fault><faultcode>soap:Server</faultcode>'
    '<faultstring>Invalid security token</faultstring></soap:Fault></soap:Body>'
    '</soap:Envelope>'
)


@pytest.fixture
def client():
    return EventsApiClient(API_URL, 'secret-token', timeout=5, base_delay=0)


class TestEventsApiClient:
    """Test cases for EventsApiClient class."""

    @responses.activate
    def test_fetch_live_since_raw(self, client):
        """Test the raw listing text is extracted from the envelope."""
        listing = make_listing([101, 102])
        responses.add(
            responses.POST,
            API_URL,
            body=soap_response('SelectEventsLive', listing),
            status=200
        )

        raw = client.fetch_live_since_raw('2024-01-13')

        assert json.loads(raw) == listing

        request = responses.calls[0].request
        assert request.headers['SOAPAction'] == '"http://tempuri.org/SelectEventsLive"'
        body = request.body.decode('utf-8')
        assert '<securityToken>secret-token</securityToken>' in body
        assert '<lastUpdated>2024-01-13</lastUpdated>' in body
        assert '<numberOfReturns xsi:nil="true"' in body

    @responses.activate
    def test_fetch_by_id(self, client):
        detail = make_detail(101)
        responses.add(
            responses.POST,
            API_URL,
            body=soap_response('SelectEventsByID', detail),
            status=200
        )

        assert client.fetch_by_id('101') == detail
        body = responses.calls[0].request.body.decode('utf-8')
        assert '<eventIDs><int>101</int></eventIDs>' in body

    @responses.activate
    def test_decimal_values_decode_as_decimal(self, client):
        """Test fractional numbers come back in a form DynamoDB accepts."""
        detail = make_detail(101)
        detail['ResultDetails']['BeDynamicExport']['Venues'][0]['Address']['Latitude'] = 47.6
        responses.add(
            responses.POST,
            API_URL,
            body=soap_response('SelectEventsByID', detail),
            status=200
        )

        result = client.fetch_by_id('101')

        address = result['ResultDetails']['BeDynamicExport']['Venues'][0]['Address']
        assert address['Latitude'] == Decimal('47.6')
        assert isinstance(address['Latitude'], Decimal)
        assert result['ResultDetails']['EventCount'] == 1

    @responses.activate
    def test_fetch_dropped_since(self, client):
        listing = make_listing([7])
        responses.add(
            responses.POST,
            API_URL,
            body=soap_response('SelectEventsDropped', listing),
            status=200
        )

        assert client.fetch_dropped_since('2024-01-08') == listing

    @responses.activate
    def test_soap_fault_returns_none(self, client):
        responses.add(responses.POST, API_URL, body=SOAP_FAULT, status=200)

        assert client.fetch_live_since_raw('2024-01-13') is None

    @responses.activate
    def test_missing_result_returns_none(self, client):
        responses.add(responses.POST, API_URL, body='<html><body>Maintenance</body></html>', status=200)

        assert client.fetch_by_id('101') is None

    @responses.activate
    def test_malformed_json_returns_none(self, client):
        responses.add(
            responses.POST,
            API_URL,
            body=(
                '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
                '<SelectEventsByIDResponse><SelectEventsByIDResult>{not json'
                '</SelectEventsByIDResult></SelectEventsByIDResponse></soap:Body></soap:Envelope>'
            ),
            status=200
        )

        assert client.fetch_by_id('101') is None

    @responses.activate
    def test_retry_success(self, client):
        """Test retry logic succeeds after initial failures."""
        listing = make_listing([101])
        responses.add(responses.POST, API_URL, body='Server Error', status=500)
        responses.add(responses.POST, API_URL, body='Server Error', status=500)
        responses.add(
            responses.POST,
            API_URL,
            body=soap_response('SelectEventsLive', listing),
            status=200
        )

        assert client.fetch_live_since(start_date='2024-01-13') == listing
        assert len(responses.calls) == 3

    @responses.activate
    def test_all_retries_fail(self, client):
        """Test transport failures are reported as None after every attempt."""
        for _ in range(3):
            responses.add(responses.POST, API_URL, body=Timeout('Request timed out'))

        assert client.fetch_live_since_raw('2024-01-13') is None
        assert len(responses.calls) == 3
