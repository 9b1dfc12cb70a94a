"""Unit tests for ResultCache."""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from importer.models import CacheEntry, TIMESTAMP_FORMAT
from storage.result_cache import ResultCache


def test_key_for_uses_query_day():
    """Test row names are derived from the date part of the query."""
    assert ResultCache.key_for('2024-01-15') == 'events-json_2024-01-15'
    assert ResultCache.key_for('2024-01-15 08:30:00') == 'events-json_2024-01-15'
    assert ResultCache.key_for('2024-01-15', prefix='dropped_') == 'dropped_2024-01-15'


def test_key_for_rejects_invalid_date():
    with pytest.raises(ValueError):
        ResultCache.key_for('yesterday')


def test_retrieve_missing_row(cache):
    assert cache.retrieve('events-json_2024-01-15') is None


def test_save_and_retrieve(cache):
    """Test a saved payload comes back decompressed and fresh."""
    raw = '{"ResultDetails": {"EventCount": 1, "BeDynamicExport": {"Events": [{"ID": 1}]}}}'

    assert cache.save('events-json_2024-01-15', raw) is True

    entry = cache.retrieve('events-json_2024-01-15')
    assert entry.name == 'events-json_2024-01-15'
    assert entry.row_id
    assert entry.payload != raw.encode('utf-8')
    assert entry.text() == raw
    assert entry.is_fresh(datetime.now())


def test_save_replaces_existing_row(cache):
    """Test saving under an existing name keeps one row and its identity."""
    cache.save('events-json_2024-01-15', 'first')
    row_id = cache.retrieve('events-json_2024-01-15').row_id

    cache.save('events-json_2024-01-15', 'second', row_id)

    entry = cache.retrieve('events-json_2024-01-15')
    assert entry.row_id == row_id
    assert entry.text() == 'second'
    assert cache.count() == 1


def test_count_and_clear(cache):
    for day in range(1, 6):
        cache.save(f'events-json_2024-01-0{day}', '{}')

    assert cache.count() == 5
    assert cache.clear() == 5
    assert cache.count() == 0


def test_listing_scans_read_consistently(cache):
    cache.save('events-json_2024-01-01', '{}')

    with patch.object(cache.table, 'scan', wraps=cache.table.scan) as scan:
        assert cache.count() == 1

    assert scan.call_args_list
    assert all(call.kwargs['ConsistentRead'] is True for call in scan.call_args_list)


class TestCacheEntryFreshness:
    """Test cases for the one-day freshness window."""

    def _entry(self, last_updated, payload=b'x'):
        return CacheEntry(
            name='events-json_2024-01-15',
            row_id='abc',
            payload=payload,
            last_updated=last_updated
        )

    def test_entry_within_a_day_is_fresh(self):
        now = datetime(2024, 1, 15, 12, 0, 0)
        entry = self._entry((now - timedelta(hours=23)).strftime(TIMESTAMP_FORMAT))
        assert entry.is_fresh(now)

    def test_entry_older_than_a_day_is_stale(self):
        now = datetime(2024, 1, 15, 12, 0, 0)
        entry = self._entry((now - timedelta(days=1, seconds=1)).strftime(TIMESTAMP_FORMAT))
        assert not entry.is_fresh(now)

    def test_empty_payload_is_never_fresh(self):
        now = datetime(2024, 1, 15, 12, 0, 0)
        entry = self._entry(now.strftime(TIMESTAMP_FORMAT), payload=b'')
        assert not entry.is_fresh(now)
        assert entry.text() == ''

    def test_unreadable_timestamp_is_stale(self):
        entry = self._entry('not a date')
        assert not entry.is_fresh(datetime(2024, 1, 15))
