"""DynamoDB-backed store for importer progress state."""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from importer.models import (
    FREE,
    LastRunRecord,
    Method,
    RunState,
    RunStatus,
    Status,
    StatusReason,
)

logger = logging.getLogger(__name__)


class ProgressStore:
    """
    Durable key-value state for the importer.

    Two items live in the state table: `run_state` holds status, method,
    timestamp and counters; `last_run` holds the serialized LastRunRecord.
    All reads are strongly consistent.
    """

    RUN_STATE_KEY = 'run_state'
    LAST_RUN_KEY = 'last_run'
    INSTALL_TIMESTAMP = '2001-01-01 00:00:00'
    COUNTERS = ('processed', 'added', 'deleted', 'total', 'page')

    def __init__(self, table_name: str, dynamodb=None):
        """
        Initialize DynamoDB table reference.

        Args:
            table_name: Name of the state table
            dynamodb: Optional boto3 DynamoDB resource
        """
        self.table_name = table_name
        self.dynamodb = dynamodb or boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)

    def initialize(self) -> bool:
        """
        Create the default state items, keeping any that already exist.

        Returns:
            True if the run state was created, False if it already existed
        """
        created = self._put_if_absent({
            'name': self.RUN_STATE_KEY,
            'status': Status.FREE.value,
            'method': '',
            'timestamp': self.INSTALL_TIMESTAMP,
            'processed': 0,
            'added': 0,
            'deleted': 0,
            'total': 0,
            'page': 0
        })
        self._put_if_absent({
            'name': self.LAST_RUN_KEY,
            'record': {}
        })
        logger.info(f"Progress store initialized (created={created})")
        return created

    def _put_if_absent(self, item: Dict[str, Any]) -> bool:
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(#name)',
                ExpressionAttributeNames={'#name': 'name'}
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                return False
            raise

    # ==== Run state ====

    def get_state(self) -> RunState:
        """Read the current run state, bypassing any cached copy."""
        response = self.table.get_item(
            Key={'name': self.RUN_STATE_KEY},
            ConsistentRead=True
        )
        item = response.get('Item')
        if not item:
            return RunState()

        reason = item.get('status_reason')
        return RunState(
            status=RunStatus(
                Status(item.get('status') or Status.FREE.value),
                StatusReason(reason) if reason else None
            ),
            method=Method.parse(item.get('method')),
            timestamp=item.get('timestamp', ''),
            processed=int(item.get('processed', 0)),
            added=int(item.get('added', 0)),
            deleted=int(item.get('deleted', 0)),
            total=int(item.get('total', 0)),
            page=int(item.get('page', 0))
        )

    def get_status(self) -> RunStatus:
        return self.get_state().status

    def try_acquire(self, timestamp: str) -> bool:
        """
        Atomically move status from free to running.

        Args:
            timestamp: Time of the transition

        Returns:
            True if this caller now owns the run, False if another run is active
        """
        try:
            self.table.update_item(
                Key={'name': self.RUN_STATE_KEY},
                UpdateExpression='SET #status = :running, #ts = :ts REMOVE #reason',
                ConditionExpression='attribute_not_exists(#status) OR #status = :free',
                ExpressionAttributeNames={
                    '#status': 'status',
                    '#reason': 'status_reason',
                    '#ts': 'timestamp'
                },
                ExpressionAttributeValues={
                    ':running': Status.RUNNING.value,
                    ':free': Status.FREE.value,
                    ':ts': timestamp
                }
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.info("Run lock is held by another run")
                return False
            raise

    def set_status(self, status: RunStatus) -> None:
        """Force the status, e.g. free:canceled when a run is canceled."""
        names = {'#status': 'status', '#reason': 'status_reason'}
        values = {':status': status.state.value}
        if status.reason:
            expression = 'SET #status = :status, #reason = :reason'
            values[':reason'] = status.reason.value
        else:
            expression = 'SET #status = :status REMOVE #reason'
        self.table.update_item(
            Key={'name': self.RUN_STATE_KEY},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values
        )

    def release(self, timestamp: str) -> None:
        """Stamp the time and return status to free."""
        self.update(timestamp=timestamp)
        self.set_status(FREE)

    def set_method(self, method: Method) -> None:
        self.update(method=str(method))

    def update(self, **fields: Any) -> None:
        """
        Set one or more scalar fields of the run state.

        Args:
            **fields: method, timestamp, or any counter name
        """
        if not fields:
            return
        names = {}
        values = {}
        assignments = []
        for i, (key, value) in enumerate(fields.items()):
            if key not in self.COUNTERS and key not in ('method', 'timestamp'):
                raise ValueError(f"Unknown run state field: {key}")
            if key in self.COUNTERS:
                value = int(value)
            names[f'#f{i}'] = key
            values[f':v{i}'] = value
            assignments.append(f'#f{i} = :v{i}')

        self.table.update_item(
            Key={'name': self.RUN_STATE_KEY},
            UpdateExpression='SET ' + ', '.join(assignments),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values
        )

    def increment(self, processed: int = 0, added: int = 0, deleted: int = 0) -> None:
        """
        Atomically advance counters after a unit of work completes.

        Args:
            processed: Amount to add to the processed count
            added: Amount to add to the added count
            deleted: Amount to add to the deleted count
        """
        deltas = {'processed': processed, 'added': added, 'deleted': deleted}
        deltas = {key: value for key, value in deltas.items() if value}
        if not deltas:
            return
        self.table.update_item(
            Key={'name': self.RUN_STATE_KEY},
            UpdateExpression='ADD ' + ', '.join(f'#{key} :{key}' for key in deltas),
            ExpressionAttributeNames={f'#{key}': key for key in deltas},
            ExpressionAttributeValues={f':{key}': value for key, value in deltas.items()}
        )

    # ==== Last run record ====

    def get_last_run(self) -> Optional[LastRunRecord]:
        """
        Read the checkpoint of the most recently active run.

        Returns:
            LastRunRecord, or None if no run has been recorded
        """
        response = self.table.get_item(
            Key={'name': self.LAST_RUN_KEY},
            ConsistentRead=True
        )
        record = (response.get('Item') or {}).get('record')
        if not record:
            return None
        return LastRunRecord.from_dict(record)

    def set_last_run(self, record: LastRunRecord) -> None:
        self.table.put_item(Item={
            'name': self.LAST_RUN_KEY,
            'record': record.to_dict()
        })
