"""DynamoDB cache of raw remote API results."""
import logging
import uuid
import zlib
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError

from importer.models import CacheEntry, DATE_FORMAT, TIMESTAMP_FORMAT

logger = logging.getLogger(__name__)


class ResultCache:
    """Cache of compressed raw fetch results, one row per query date."""

    NAME_PREFIX = 'events-json_'

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the cache table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    @classmethod
    def key_for(cls, start_date: str, prefix: Optional[str] = None) -> str:
        """
        Derive the cache row name for a query date.

        Args:
            start_date: Query date, any string starting with YYYY-MM-DD
            prefix: Row name prefix (default: NAME_PREFIX)

        Returns:
            Row name such as 'events-json_2024-01-15'
        """
        day = datetime.strptime(start_date[:10], DATE_FORMAT)
        return f"{prefix or cls.NAME_PREFIX}{day.strftime(DATE_FORMAT)}"

    def retrieve(self, name: str) -> Optional[CacheEntry]:
        """
        Fetch a cached row.

        Args:
            name: Row name

        Returns:
            CacheEntry, or None if no row exists
        """
        response = self.table.get_item(Key={'name': name}, ConsistentRead=True)
        item = response.get('Item')
        if not item:
            return None

        payload = item.get('payload') or b''
        # boto3 wraps binary attributes in Binary
        payload = getattr(payload, 'value', payload)

        return CacheEntry(
            name=item['name'],
            row_id=item.get('row_id', ''),
            payload=bytes(payload),
            last_updated=item.get('last_updated', '')
        )

    def save(self, name: str, raw: str, row_id: Optional[str] = None) -> bool:
        """
        Compress and store a raw result, replacing any existing row.

        Args:
            name: Row name
            raw: Raw response text
            row_id: Identity of the row being replaced, if any

        Returns:
            True if the save succeeded
        """
        item = {
            'name': name,
            'row_id': row_id or uuid.uuid4().hex,
            'payload': zlib.compress(raw.encode('utf-8')),
            'last_updated': datetime.now().strftime(TIMESTAMP_FORMAT)
        }
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.error(f"Error saving cache row {name}: {e}")
            return False
        logger.info(f"Cached results as {name}")
        return True

    def _names(self) -> List[str]:
        response = self.table.scan(
            ProjectionExpression='#name',
            ExpressionAttributeNames={'#name': 'name'},
            ConsistentRead=True
        )
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ProjectionExpression='#name',
                ConsistentRead=True,
                ExpressionAttributeNames={'#name': 'name'},
                ExclusiveStartKey=response['LastEvaluatedKey']
            )
            items.extend(response.get('Items', []))

        return [item['name'] for item in items]

    def count(self) -> int:
        return len(self._names())

    def clear(self) -> int:
        """
        Remove every cached row.

        Returns:
            Number of rows removed
        """
        names = self._names()
        with self.table.batch_writer() as writer:
            for name in names:
                writer.delete_item(Key={'name': name})
        logger.info(f"Cleared {len(names)} cached results")
        return len(names)
