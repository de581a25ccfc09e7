"""
Durable store adapter interface shared by the DynamoDB and in-process backends.

Every mutation the services perform goes through one conditional write, so the
backends only have to agree on the semantics described by ``ItemUpdate``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from .config import AppConfig


class StoreError(Exception):
    """Custom exception for durable store errors."""
    pass


class ConditionFailedError(StoreError):
    """A conditional write did not apply because its condition was false."""
    pass


class StoreUnavailableError(StoreError):
    """The store could not be reached, or kept throttling after all retries."""
    pass


@dataclass
class ItemUpdate:
    """Description of a single atomic update against one item.

    increment: attribute -> delta, missing attributes count as 0
    assign: attribute -> value, always overwritten
    assign_if_absent: attribute -> value, written only when the attribute is missing
    add_to_set: attribute -> values added to a string set
    require_minimum: attribute -> minimum value the stored attribute must already hold
    require_exists: the item must already exist
    """
    increment: Dict[str, int] = field(default_factory=dict)
    assign: Dict[str, Any] = field(default_factory=dict)
    assign_if_absent: Dict[str, Any] = field(default_factory=dict)
    add_to_set: Dict[str, Set[str]] = field(default_factory=dict)
    require_minimum: Dict[str, int] = field(default_factory=dict)
    require_exists: bool = False

    def is_empty(self) -> bool:
        return not (self.increment or self.assign or self.assign_if_absent or self.add_to_set)


@dataclass
class Page:
    """One page of query results."""
    items: List[Dict[str, Any]]
    last_key: Optional[Dict[str, Any]] = None

    @property
    def has_more(self) -> bool:
        return self.last_key is not None


@dataclass
class TransactPut:
    table: str
    item: Dict[str, Any]
    unique_on: Sequence[str] = ()


@dataclass
class TransactUpdate:
    table: str
    key: Dict[str, Any]
    update: ItemUpdate


TransactOperation = Union[TransactPut, TransactUpdate]


class Store:
    """Operations every backend provides. Keys are dictionaries of key attribute values."""

    def get_item(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put_item(self, table: str, item: Dict[str, Any], unique_on: Sequence[str] = ()) -> None:
        raise NotImplementedError

    def update_item(self, table: str, key: Dict[str, Any], update: ItemUpdate) -> Dict[str, Any]:
        raise NotImplementedError

    def query(self,
              table: str,
              key_name: str,
              key_value: Any,
              limit: int,
              start_key: Optional[Dict[str, Any]] = None,
              descending: bool = False,
              index_name: Optional[str] = None,
              sort_key: Optional[str] = None) -> Page:
        raise NotImplementedError

    def transact_write(self, operations: List[TransactOperation]) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


def create_store(config: AppConfig) -> Store:
    """Build the store backend named by ``STORE_BACKEND``."""
    if config.store_backend == 'memory':
        from .memory_store import MemoryStore
        return MemoryStore.from_config(config.dynamodb)
    if config.store_backend == 'dynamodb':
        from .dynamodb_client import DynamoDBStore
        return DynamoDBStore(config.dynamodb)
    raise StoreError(f'Unknown store backend: {config.store_backend}')
