"""
Amazon DynamoDB store wrapper with retry logic and conditional-write error mapping.
"""

import itertools
import random
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import DynamoDBConfig
from .json_utils import from_dynamo, to_dynamo
from .logging_config import get_logger
from .store import (ConditionFailedError, ItemUpdate, Page, Store, StoreError, StoreUnavailableError,
                    TransactOperation, TransactPut)

logger = get_logger(__name__)

RETRYABLE_ERROR_CODES = {
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'InternalServerError',
    'ServiceUnavailable',
    'TransactionConflictException',
}


def render_put(table: str, item: Dict[str, Any], unique_on: Sequence[str] = ()) -> Dict[str, Any]:
    """Build ``PutItem`` parameters, adding ``attribute_not_exists`` for each unique attribute."""
    params = {'TableName': table, 'Item': to_dynamo(item)}
    if unique_on:
        params['ConditionExpression'] = ' AND '.join(f'attribute_not_exists(#{attr})' for attr in unique_on)
        params['ExpressionAttributeNames'] = {f'#{attr}': attr for attr in unique_on}
    return params


def render_update(table: str, key: Dict[str, Any], update: ItemUpdate) -> Dict[str, Any]:
    """Build ``UpdateItem`` parameters from an ItemUpdate.

    Attribute names are always aliased (``#name``) since several of ours, such as
    ``timestamp`` and ``status``, are DynamoDB reserved words.
    """
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    counter = itertools.count()

    def name(attr: str) -> str:
        placeholder = f'#{attr}'
        names[placeholder] = attr
        return placeholder

    def value(raw: Any) -> str:
        placeholder = f':v{next(counter)}'
        values[placeholder] = raw
        return placeholder

    set_clauses = []
    for attr, delta in update.increment.items():
        if ':zero' not in values:
            values[':zero'] = 0
        set_clauses.append(f'{name(attr)} = if_not_exists({name(attr)}, :zero) + {value(delta)}')
    for attr, raw in update.assign.items():
        set_clauses.append(f'{name(attr)} = {value(raw)}')
    for attr, raw in update.assign_if_absent.items():
        set_clauses.append(f'{name(attr)} = if_not_exists({name(attr)}, {value(raw)})')

    add_clauses = [f'{name(attr)} {value(set(members))}' for attr, members in update.add_to_set.items()]

    expression = []
    if set_clauses:
        expression.append('SET ' + ', '.join(set_clauses))
    if add_clauses:
        expression.append('ADD ' + ', '.join(add_clauses))

    conditions = []
    if update.require_exists:
        conditions.append(f'attribute_exists({name(next(iter(key)))})')
    for attr, minimum in update.require_minimum.items():
        conditions.append(f'{name(attr)} >= {value(minimum)}')

    params = {
        'TableName': table,
        'Key': to_dynamo(key),
        'UpdateExpression': ' '.join(expression),
        'ExpressionAttributeNames': names,
        'ExpressionAttributeValues': to_dynamo(values),
        'ReturnValues': 'ALL_NEW',
    }
    if conditions:
        params['ConditionExpression'] = ' AND '.join(conditions)
    return params


def render_transact_items(operations: List[TransactOperation]) -> List[Dict[str, Any]]:
    """Build ``TransactItems`` for TransactWriteItems."""
    items = []
    for operation in operations:
        if isinstance(operation, TransactPut):
            items.append({'Put': render_put(operation.table, operation.item, operation.unique_on)})
        else:
            params = render_update(operation.table, operation.key, operation.update)
            params.pop('ReturnValues')
            items.append({'Update': params})
    return items


class DynamoDBStore(Store):
    """Amazon DynamoDB store with retry logic and error handling."""

    def __init__(self, config: DynamoDBConfig):
        """
        Initialize DynamoDB resource.

        Args:
            config: DynamoDBConfig instance with connection parameters
        """
        self.config = config

        # Timeouts bound every call, retries are handled manually
        self.dynamodb = boto3.resource('dynamodb',
                                       region_name=config.region,
                                       endpoint_url=config.endpoint_url,
                                       config=BotoConfig(connect_timeout=config.connect_timeout,
                                                         read_timeout=config.read_timeout,
                                                         retries={'max_attempts': 0}))
        # The resource's client accepts and returns plain Python types
        self.client = self.dynamodb.meta.client

        logger.info(f'Initialized DynamoDB store in region: {config.region}')

    def _call_with_retry(self, operation: str, func: Callable[..., Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        """
        Make a DynamoDB API call with retry logic.

        Args:
            operation: Operation name used in log messages
            func: Bound client or table method
            **kwargs: Request parameters

        Returns:
            Response dictionary from DynamoDB

        Raises:
            ConditionFailedError: If the request's condition expression was false
            StoreUnavailableError: If all retry attempts fail
            StoreError: For non-retryable request errors
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'DynamoDB {operation} attempt {attempt + 1}/{self.config.retry_attempts}')
                return func(**kwargs)

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code == 'ConditionalCheckFailedException':
                    raise ConditionFailedError(f'{operation} condition failed')
                if code == 'TransactionCanceledException':
                    reasons = [r.get('Code') for r in e.response.get('CancellationReasons', [])]
                    if 'ConditionalCheckFailed' in reasons:
                        raise ConditionFailedError(f'{operation} condition failed: {reasons}')
                    if 'TransactionConflict' not in reasons and 'ThrottlingError' not in reasons:
                        raise StoreError(f'{operation} cancelled: {reasons}')
                elif code not in RETRYABLE_ERROR_CODES:
                    logger.error(f'DynamoDB {operation} failed with {code}: {e}')
                    raise StoreError(f'DynamoDB {operation} failed: {e}')
                last_error = e

            except BotoCoreError as e:
                last_error = e

            logger.warning(f'DynamoDB {operation} attempt {attempt + 1}/{self.config.retry_attempts} failed: '
                           f'{last_error}')
            if attempt < self.config.retry_attempts - 1:
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay)
                time.sleep(delay)

        raise StoreUnavailableError(f'DynamoDB {operation} failed after {self.config.retry_attempts} attempts: '
                                    f'{last_error}')

    def get_item(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = self._call_with_retry('GetItem', self.client.get_item, TableName=table, Key=to_dynamo(key))
        item = response.get('Item')
        return from_dynamo(item) if item else None

    def put_item(self, table: str, item: Dict[str, Any], unique_on: Sequence[str] = ()) -> None:
        self._call_with_retry('PutItem', self.client.put_item, **render_put(table, item, unique_on))

    def update_item(self, table: str, key: Dict[str, Any], update: ItemUpdate) -> Dict[str, Any]:
        response = self._call_with_retry('UpdateItem', self.client.update_item, **render_update(table, key, update))
        return from_dynamo(response.get('Attributes', {}))

    def query(self,
              table: str,
              key_name: str,
              key_value: Any,
              limit: int,
              start_key: Optional[Dict[str, Any]] = None,
              descending: bool = False,
              index_name: Optional[str] = None,
              sort_key: Optional[str] = None) -> Page:
        params = {
            'KeyConditionExpression': Key(key_name).eq(key_value),
            'Limit': limit,
            'ScanIndexForward': not descending,
        }
        if index_name:
            params['IndexName'] = index_name
        if start_key:
            params['ExclusiveStartKey'] = to_dynamo(start_key)

        response = self._call_with_retry('Query', self.dynamodb.Table(table).query, **params)
        last_key = response.get('LastEvaluatedKey')
        return Page(items=[from_dynamo(item) for item in response.get('Items', [])],
                    last_key=from_dynamo(last_key) if last_key else None)

    def transact_write(self, operations: List[TransactOperation]) -> None:
        self._call_with_retry('TransactWriteItems',
                              self.client.transact_write_items,
                              TransactItems=render_transact_items(operations))

    def ping(self) -> bool:
        """
        Perform a health check against DynamoDB.

        Returns:
            True if the tokens table is reachable, False otherwise
        """
        try:
            self._call_with_retry('DescribeTable', self.client.describe_table, TableName=self.config.tokens_table)
            return True
        except StoreError as e:
            logger.error(f'DynamoDB health check failed: {e}')
            return False
