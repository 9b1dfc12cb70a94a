"""Shared fixtures: mocked DynamoDB tables and remote API payloads."""
import json

import boto3
import pytest
from boto3.dynamodb.conditions import Key
from moto import mock_aws

from storage.event_repository import EventRepository
from storage.progress_store import ProgressStore
from storage.result_cache import ResultCache

STATE_TABLE = 'test-importer-state'
CACHE_TABLE = 'test-importer-cache'
EVENTS_TABLE = 'test-importer-events'


@pytest.fixture
def dynamodb():
    """Create mock DynamoDB tables for testing."""
    with mock_aws():
        # Create DynamoDB resource
        resource = boto3.resource('dynamodb', region_name='us-east-1')

        for table_name in (STATE_TABLE, CACHE_TABLE):
            resource.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': 'name', 'KeyType': 'HASH'}],
                AttributeDefinitions=[{'AttributeName': 'name', 'AttributeType': 'S'}],
                BillingMode='PAY_PER_REQUEST'
            )

        resource.create_table(
            TableName=EVENTS_TABLE,
            KeySchema=[
                {'AttributeName': 'pk', 'KeyType': 'HASH'},
                {'AttributeName': 'sk', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'pk', 'AttributeType': 'S'},
                {'AttributeName': 'sk', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield resource


@pytest.fixture
def store(dynamodb):
    progress_store = ProgressStore(STATE_TABLE, dynamodb=dynamodb)
    progress_store.initialize()
    return progress_store


@pytest.fixture
def cache(dynamodb):
    return ResultCache(CACHE_TABLE, dynamodb=dynamodb)


@pytest.fixture
def repository(dynamodb):
    return EventRepository(EVENTS_TABLE, dynamodb=dynamodb)


def read_event(repository, post_id):
    """Read a post item with its metadata folded into a `meta` dictionary."""
    response = repository.table.query(
        KeyConditionExpression=Key('pk').eq(f'{EventRepository.EVENT_PREFIX}{post_id}'),
        ConsistentRead=True
    )
    post = None
    meta = {}
    for item in response.get('Items', []):
        if item['sk'] == EventRepository.POST_SK:
            post = dict(item)
        elif item['sk'].startswith(EventRepository.META_PREFIX):
            meta[item['meta_key']] = item.get('meta_value')
    if post is not None:
        post['meta'] = meta
    return post


def read_term(repository, taxonomy, name):
    response = repository.table.get_item(
        Key={'pk': f'{EventRepository.TERM_PREFIX}{taxonomy}', 'sk': name},
        ConsistentRead=True
    )
    return response.get('Item')


def make_listing(event_ids, declared=None):
    """Build a SelectEventsLive/SelectEventsDropped payload."""
    events = [{'ID': int(event_id), 'Name': f'Event {event_id}'} for event_id in event_ids]
    return {
        'ResultDetails': {
            'EventCount': len(events) if declared is None else declared,
            'BeDynamicExport': {'Events': events}
        }
    }


def make_detail(event_id, name=None, categories=('Music',), venue_name='Town Square'):
    """Build a SelectEventsByID payload for one event."""
    return {
        'ResultDetails': {
            'EventCount': 1,
            'BeDynamicExport': {
                'Events': [{
                    'ID': int(event_id),
                    'Name': name or f'Event {event_id}',
                    'Description': f'Description of event {event_id}',
                    'StartDate': '2024-01-15T19:00:00',
                    'EndDate': '2024-01-15T21:00:00',
                    'Phone': '206-555-0100',
                    'EventURL': f'https://example.com/events/{event_id}',
                    'VenueID': 77,
                    'Static': False,
                    'Featured': True,
                    'WebCodes': [{'Name': category} for category in categories]
                }],
                'Venues': [{
                    'ID': 77,
                    'Name': venue_name,
                    'Description': 'Open air venue',
                    'Neighborhood': 'Downtown',
                    'Address': {
                        'Line1': '1 Main St',
                        'City': 'Seattle',
                        'PostalCode': '98101',
                        'Country': 'US'
                    },
                    'PrimaryClassification': 'Outdoor'
                }]
            }
        }
    }


class FakeEventsApi:
    """In-memory stand-in for EventsApiClient."""

    def __init__(self, live_ids=(), dropped_ids=(), missing_ids=()):
        self.live_ids = list(live_ids)
        self.dropped_ids = list(dropped_ids)
        self.missing_ids = {str(event_id) for event_id in missing_ids}
        self.live_calls = 0
        self.detail_calls = []
        self.on_detail = None
        self.live_payload = None
        self.details = {}

    def fetch_live_since_raw(self, start_date):
        self.live_calls += 1
        if self.live_payload is not None:
            return self.live_payload
        return json.dumps(make_listing(self.live_ids))

    def fetch_live_since(self, start_date):
        raw = self.fetch_live_since_raw(start_date)
        return json.loads(raw) if raw else None

    def fetch_by_id(self, event_id):
        self.detail_calls.append(str(event_id))
        if self.on_detail:
            self.on_detail(len(self.detail_calls))
        if str(event_id) in self.missing_ids:
            return None
        return self.details.get(str(event_id)) or make_detail(event_id)

    def fetch_dropped_since(self, start_date):
        return make_listing(self.dropped_ids)
