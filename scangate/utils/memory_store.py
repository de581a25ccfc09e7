"""
In-process store with the same conditional-write contract as DynamoDB.

Used for local runs (``STORE_BACKEND=memory``) and the test suite. Every write holds one
lock for its whole check-and-apply step, which is the guarantee DynamoDB gives for a
single conditional write.
"""

import copy
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import DynamoDBConfig
from .logging_config import get_logger
from .store import (ConditionFailedError, ItemUpdate, Page, Store, StoreError, TransactOperation,
                    TransactPut)

logger = get_logger(__name__)

KeyTuple = Tuple[Tuple[str, Any], ...]


def apply_update(item: Optional[Dict[str, Any]], key: Dict[str, Any], update: ItemUpdate) -> Dict[str, Any]:
    """Evaluate an ItemUpdate against the current item and return the new item.

    Raises:
        ConditionFailedError: If a condition of the update does not hold
    """
    if update.require_exists and item is None:
        raise ConditionFailedError('item does not exist')
    for attr, minimum in update.require_minimum.items():
        current = None if item is None else item.get(attr)
        if current is None or current < minimum:
            raise ConditionFailedError(f'{attr} is below {minimum}')

    new_item = copy.deepcopy(item) if item is not None else dict(key)
    for attr, delta in update.increment.items():
        new_item[attr] = new_item.get(attr, 0) + delta
    for attr, value in update.assign.items():
        new_item[attr] = copy.deepcopy(value)
    for attr, value in update.assign_if_absent.items():
        new_item.setdefault(attr, copy.deepcopy(value))
    for attr, members in update.add_to_set.items():
        new_item[attr] = set(new_item.get(attr, set())) | set(members)
    return new_item


class MemoryStore(Store):
    """Dictionary-backed store keyed by each table's key schema."""

    def __init__(self, key_schema: Dict[str, Sequence[str]]):
        """
        Initialize an empty store.

        Args:
            key_schema: Table name mapped to its key attribute names (partition key first)
        """
        self.key_schema = {table: tuple(names) for table, names in key_schema.items()}
        self._tables: Dict[str, Dict[KeyTuple, Dict[str, Any]]] = {table: {} for table in key_schema}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: DynamoDBConfig) -> 'MemoryStore':
        return cls({
            config.tokens_table: ('userId',),
            config.purchases_table: ('purchaseId',),
            config.device_scans_table: ('deviceId',),
            config.scan_history_table: ('userId', 'scanId'),
        })

    def _table(self, table: str) -> Dict[KeyTuple, Dict[str, Any]]:
        if table not in self._tables:
            raise StoreError(f'Requested resource not found: table {table}')
        return self._tables[table]

    def _key_of(self, table: str, attributes: Dict[str, Any]) -> KeyTuple:
        try:
            return tuple((name, attributes[name]) for name in self.key_schema[table])
        except KeyError as e:
            raise StoreError(f'Missing key attribute {e} for table {table}')

    def get_item(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._table(table).get(self._key_of(table, key))
            return copy.deepcopy(item)

    def put_item(self, table: str, item: Dict[str, Any], unique_on: Sequence[str] = ()) -> None:
        with self._lock:
            self._check_put(table, item, unique_on)
            self._table(table)[self._key_of(table, item)] = copy.deepcopy(item)

    def _check_put(self, table: str, item: Dict[str, Any], unique_on: Sequence[str]) -> None:
        existing = self._table(table).get(self._key_of(table, item))
        if existing is not None and any(attr in existing for attr in unique_on):
            raise ConditionFailedError('item already exists')

    def update_item(self, table: str, key: Dict[str, Any], update: ItemUpdate) -> Dict[str, Any]:
        with self._lock:
            rows = self._table(table)
            key_tuple = self._key_of(table, key)
            new_item = apply_update(rows.get(key_tuple), key, update)
            rows[key_tuple] = new_item
            return copy.deepcopy(new_item)

    def query(self,
              table: str,
              key_name: str,
              key_value: Any,
              limit: int,
              start_key: Optional[Dict[str, Any]] = None,
              descending: bool = False,
              index_name: Optional[str] = None,
              sort_key: Optional[str] = None) -> Page:
        with self._lock:
            schema = self.key_schema[table]
            order_by = sort_key or (schema[1] if len(schema) > 1 else schema[0])
            matches = [item for item in self._table(table).values() if item.get(key_name) == key_value]
            matches.sort(key=lambda item: (str(item.get(order_by, '')), self._key_of(table, item)),
                         reverse=descending)

            start = 0
            if start_key:
                start_tuple = self._key_of(table, start_key)
                for position, item in enumerate(matches):
                    if self._key_of(table, item) == start_tuple:
                        start = position + 1
                        break

            selected = matches[start:start + limit]
            last_key = None
            if start + limit < len(matches) and selected:
                last = selected[-1]
                last_key = {name: last[name] for name in schema}
                if sort_key and sort_key in last:
                    last_key[sort_key] = last[sort_key]
            return Page(items=copy.deepcopy(selected), last_key=last_key)

    def transact_write(self, operations: List[TransactOperation]) -> None:
        with self._lock:
            staged = []
            for operation in operations:
                if isinstance(operation, TransactPut):
                    self._check_put(operation.table, operation.item, operation.unique_on)
                    staged.append((operation.table, self._key_of(operation.table, operation.item),
                                   copy.deepcopy(operation.item)))
                else:
                    key_tuple = self._key_of(operation.table, operation.key)
                    current = self._table(operation.table).get(key_tuple)
                    staged.append((operation.table, key_tuple, apply_update(current, operation.key, operation.update)))
            for table, key_tuple, item in staged:
                self._tables[table][key_tuple] = item

    def ping(self) -> bool:
        return True
