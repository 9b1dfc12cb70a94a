"""DynamoDB storage for imported event posts, their metadata and taxonomy terms."""
import logging
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from importer.models import TIMESTAMP_FORMAT

logger = logging.getLogger(__name__)


class EventRepository:
    """
    Manager for event storage operations.

    Layout of the events table (keys `pk`/`sk`):
        EVENT#<post_id> / POST          the event post
        EVENT#<post_id> / META#<key>    one item per metadata field
        TERM#<taxonomy> / <name>        taxonomy term
    """

    POST_TYPE = 'events'
    POST_SK = 'POST'
    META_PREFIX = 'META#'
    EVENT_PREFIX = 'EVENT#'
    TERM_PREFIX = 'TERM#'

    CATEGORIES = 'events_categories'
    VENUES = 'events_venues'
    REGIONS = 'events_regions'
    TAXONOMIES = (CATEGORIES, VENUES, REGIONS)

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the events table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    def exists(self) -> bool:
        """Check that the events table exists."""
        try:
            self.table.load()
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ResourceNotFoundException':
                logger.error(f"Can't run import because table {self.table_name} does not exist")
                return False
            raise

    # ==== Reads ====

    def _scan_all(self, **kwargs) -> List[Dict[str, Any]]:
        response = self.table.scan(ConsistentRead=True, **kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ConsistentRead=True,
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **kwargs
            )
            items.extend(response.get('Items', []))

        return items

    def _posts(self) -> List[Dict[str, Any]]:
        return self._scan_all(FilterExpression=Attr('sk').eq(self.POST_SK))

    def event_id_mapping(self) -> Dict[str, str]:
        """
        Map external event IDs to local post IDs.

        Returns:
            Dictionary of event_id -> post_id for posts that still exist
        """
        post_ids = {item['post_id'] for item in self._posts()}
        metas = self._scan_all(
            FilterExpression=Attr('sk').eq(f'{self.META_PREFIX}event_id')
        )
        mapping = {}
        for meta in metas:
            if meta['post_id'] in post_ids:
                mapping[str(meta['meta_value'])] = meta['post_id']

        logger.info(f"Built event ID mapping with {len(mapping)} entries")
        return mapping

    def find_by_event_id(self, event_id: str) -> List[str]:
        """
        Find every local post carrying an external event ID.

        Args:
            event_id: External event ID

        Returns:
            List of post IDs (duplicates are possible)
        """
        metas = self._scan_all(
            FilterExpression=(
                Attr('sk').eq(f'{self.META_PREFIX}event_id') &
                Attr('meta_value').eq(str(event_id))
            )
        )
        return [meta['post_id'] for meta in metas]

    def count_events(self) -> int:
        return len(self._posts())

    def list_event_ids(self, limit: int) -> Tuple[List[str], int]:
        """
        List stored posts ordered by title.

        Args:
            limit: Maximum number of IDs to return

        Returns:
            Tuple of (first `limit` post IDs, total number of stored posts)
        """
        posts = sorted(self._posts(), key=lambda item: (item.get('title', ''), item['post_id']))
        return [item['post_id'] for item in posts[:limit]], len(posts)

    def list_terms(self) -> List[Dict[str, Any]]:
        return self._scan_all(FilterExpression=Attr('pk').begins_with(self.TERM_PREFIX))

    # ==== Writes ====

    def insert_event(self, fields: Dict[str, Any]) -> str:
        """
        Create a new post.

        Args:
            fields: title, slug, content

        Returns:
            The new post ID
        """
        post_id = uuid.uuid4().hex
        self._put_post(post_id, fields)
        return post_id

    def update_event(self, post_id: str, fields: Dict[str, Any]) -> str:
        self.table.update_item(
            Key={'pk': f'{self.EVENT_PREFIX}{post_id}', 'sk': self.POST_SK},
            UpdateExpression='SET #title = :title, #slug = :slug, #content = :content, #modified = :modified',
            ConditionExpression=Attr('pk').exists(),
            ExpressionAttributeNames={
                '#title': 'title',
                '#slug': 'slug',
                '#content': 'content',
                '#modified': 'modified'
            },
            ExpressionAttributeValues={
                ':title': fields['title'],
                ':slug': fields['slug'],
                ':content': fields['content'],
                ':modified': datetime.now().strftime(TIMESTAMP_FORMAT)
            }
        )
        return post_id

    def _put_post(self, post_id: str, fields: Dict[str, Any]) -> None:
        self.table.put_item(Item={
            'pk': f'{self.EVENT_PREFIX}{post_id}',
            'sk': self.POST_SK,
            'post_id': post_id,
            'post_type': self.POST_TYPE,
            'status': 'publish',
            'title': fields['title'],
            'slug': fields['slug'],
            'content': fields['content'],
            'modified': datetime.now().strftime(TIMESTAMP_FORMAT)
        })

    def set_meta(self, post_id: str, meta: Dict[str, Any]) -> None:
        """Write metadata fields for a post, skipping None values."""
        with self.table.batch_writer() as writer:
            for key, value in meta.items():
                if value is None:
                    continue
                writer.put_item(Item={
                    'pk': f'{self.EVENT_PREFIX}{post_id}',
                    'sk': f'{self.META_PREFIX}{key}',
                    'post_id': post_id,
                    'meta_key': key,
                    'meta_value': value
                })

    def set_terms(self, post_id: str, taxonomy: str, names: List[str]) -> List[str]:
        """
        Assign a post to terms of a taxonomy, creating missing terms.

        Args:
            post_id: Post ID
            taxonomy: One of TAXONOMIES
            names: Term names; replaces the post's previous terms

        Returns:
            Names of the assigned terms
        """
        names = [name for name in names if name]
        for name in names:
            self.table.update_item(
                Key={'pk': f'{self.TERM_PREFIX}{taxonomy}', 'sk': name},
                UpdateExpression='SET #taxonomy = :taxonomy, #name = :name',
                ExpressionAttributeNames={'#taxonomy': 'taxonomy', '#name': 'name'},
                ExpressionAttributeValues={':taxonomy': taxonomy, ':name': name}
            )

        self.table.update_item(
            Key={'pk': f'{self.EVENT_PREFIX}{post_id}', 'sk': self.POST_SK},
            UpdateExpression='SET #taxonomy = :names',
            ConditionExpression=Attr('pk').exists(),
            ExpressionAttributeNames={'#taxonomy': taxonomy},
            ExpressionAttributeValues={':names': names}
        )
        return names

    def update_term(
        self,
        taxonomy: str,
        name: str,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set the description and detail fields of a term."""
        self.table.update_item(
            Key={'pk': f'{self.TERM_PREFIX}{taxonomy}', 'sk': name},
            UpdateExpression=(
                'SET #taxonomy = :taxonomy, #name = :name, '
                '#description = :description, #details = :details'
            ),
            ExpressionAttributeNames={
                '#taxonomy': 'taxonomy',
                '#name': 'name',
                '#description': 'description',
                '#details': 'details'
            },
            ExpressionAttributeValues={
                ':taxonomy': taxonomy,
                ':name': name,
                ':description': description or '',
                ':details': {key: value for key, value in (details or {}).items() if value is not None}
            }
        )

    # ==== Deletion ====

    def delete_event(self, post_id: str) -> bool:
        """
        Delete a post and its metadata.

        Args:
            post_id: Post ID

        Returns:
            True if the post existed and was deleted
        """
        response = self.table.query(
            KeyConditionExpression=Key('pk').eq(f'{self.EVENT_PREFIX}{post_id}'),
            ConsistentRead=True
        )
        items = response.get('Items', [])
        if not any(item['sk'] == self.POST_SK for item in items):
            return False

        with self.table.batch_writer() as writer:
            for item in items:
                writer.delete_item(Key={'pk': item['pk'], 'sk': item['sk']})
        return True

    def delete_empty_terms(self) -> int:
        """
        Delete terms that no post is assigned to.

        Returns:
            Number of terms deleted
        """
        members = Counter()
        for post in self._posts():
            for taxonomy in self.TAXONOMIES:
                for name in post.get(taxonomy) or []:
                    members[(taxonomy, name)] += 1

        deleted = 0
        with self.table.batch_writer() as writer:
            for term in self.list_terms():
                if members[(term['taxonomy'], term['sk'])] == 0:
                    writer.delete_item(Key={'pk': term['pk'], 'sk': term['sk']})
                    deleted += 1

        logger.info(f"Deleted {deleted} empty terms")
        return deleted

    def delete_orphaned_meta(self) -> int:
        """
        Delete metadata items whose post no longer exists.

        Returns:
            Number of metadata items deleted
        """
        post_ids = {item['post_id'] for item in self._posts()}
        metas = self._scan_all(FilterExpression=Attr('sk').begins_with(self.META_PREFIX))

        orphans = [meta for meta in metas if meta['post_id'] not in post_ids]
        with self.table.batch_writer() as writer:
            for meta in orphans:
                writer.delete_item(Key={'pk': meta['pk'], 'sk': meta['sk']})

        logger.info(f"Deleted {len(orphans)} orphaned metadata items")
        return len(orphans)
