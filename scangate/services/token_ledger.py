"""
Token Ledger Service for per-subject token balances.

Balances are only ever changed by single conditional writes, so concurrent workers
cannot drive a balance below zero. Mutations fail closed when the store is unavailable;
the display read fails open.
"""

from typing import Any, Dict, Optional, Tuple

from ..models.errors import InsufficientTokensError, UpstreamUnavailableError, ValidationError
from ..utils.config import DynamoDBConfig
from ..utils.logging_config import get_logger
from ..utils.store import ConditionFailedError, ItemUpdate, Store, StoreError
from ..utils.timestamp_utils import now_iso

logger = get_logger(__name__)


def _require_subject(subject_id: str) -> None:
    if not subject_id or not str(subject_id).strip():
        raise ValidationError('User ID is required')


class TokenLedger:
    """Grant and consume tokens against the tokens table."""

    def __init__(self, store: Store, config: DynamoDBConfig):
        self.store = store
        self.table = config.tokens_table

    def balance_of(self, subject_id: str) -> int:
        """Current balance, 0 when the subject has no ledger row yet.

        Raises:
            UpstreamUnavailableError: If the store cannot be read
        """
        _require_subject(subject_id)
        try:
            item = self.store.get_item(self.table, {'userId': subject_id})
        except StoreError as e:
            logger.error(f'Error getting token balance for {subject_id}: {e}')
            raise UpstreamUnavailableError('Token balance is temporarily unavailable')
        if not item:
            logger.debug(f'No token record found for {subject_id}, balance is 0')
            return 0
        return int(item.get('balance', 0))

    def display_balance(self, subject_id: str) -> Optional[int]:
        """Balance for display only. Returns None instead of failing when the store is down."""
        try:
            return self.balance_of(subject_id)
        except UpstreamUnavailableError:
            logger.warning(f'Token balance unavailable for {subject_id}, reporting unknown')
            return None

    def grant(self, subject_id: str, amount: int) -> int:
        """
        Add tokens unconditionally, creating the ledger row if needed.

        Args:
            subject_id: Subject to credit
            amount: Non-negative number of tokens, 0 only initialises the row

        Returns:
            New balance

        Raises:
            ValidationError: If amount is negative or not an integer
            UpstreamUnavailableError: If the write could not be made
        """
        _require_subject(subject_id)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError('Token amount must be a non-negative integer')

        update = ItemUpdate(increment={'balance': amount}, assign={'updatedAt': now_iso()})
        try:
            item = self.store.update_item(self.table, {'userId': subject_id}, update)
        except StoreError as e:
            logger.error(f'Error adding {amount} tokens to {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not update token balance')

        balance = int(item['balance'])
        logger.info(f'Added {amount} tokens to {subject_id}, new balance: {balance}')
        return balance

    def consume(self, subject_id: str, amount: int = 1) -> int:
        """
        Atomically subtract tokens if the balance covers the amount.

        Returns:
            New balance

        Raises:
            InsufficientTokensError: If the balance is lower than amount; nothing changes
            UpstreamUnavailableError: If the store is unavailable; access must be denied
        """
        _require_subject(subject_id)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError('Token amount must be a positive integer')

        update = ItemUpdate(increment={'balance': -amount},
                            assign={'updatedAt': now_iso()},
                            require_minimum={'balance': amount})
        try:
            item = self.store.update_item(self.table, {'userId': subject_id}, update)
        except ConditionFailedError:
            balance = self.display_balance(subject_id)
            logger.info(f'Insufficient tokens for {subject_id}: balance {balance}, requested {amount}')
            raise InsufficientTokensError(balance or 0)
        except StoreError as e:
            logger.error(f'Error consuming token for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not verify token balance')

        balance = int(item['balance'])
        logger.info(f'Consumed {amount} token(s) for {subject_id}, new balance: {balance}')
        return balance

    def open_account(self, subject_id: str, initial_balance: int) -> Tuple[int, bool]:
        """
        Create the ledger row with an initial balance if it does not exist yet.

        Repeating the call never credits twice, so the initial allotment is applied at
        most once per subject however many workers race on it.

        Returns:
            Tuple of (balance, created)
        """
        _require_subject(subject_id)
        if isinstance(initial_balance, bool) or not isinstance(initial_balance, int) or initial_balance < 0:
            raise ValidationError('Initial balance must be a non-negative integer')

        now = now_iso()
        item = {'userId': subject_id, 'balance': initial_balance, 'createdAt': now, 'updatedAt': now}
        try:
            self.store.put_item(self.table, item, unique_on=('userId',))
        except ConditionFailedError:
            balance = self.balance_of(subject_id)
            logger.debug(f'Ledger row for {subject_id} already exists with balance {balance}')
            return balance, False
        except StoreError as e:
            logger.error(f'Error opening ledger row for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not initialise token balance')

        logger.info(f'Opened ledger row for {subject_id} with {initial_balance} tokens')
        return initial_balance, True

    def can_consume(self, subject_id: str) -> Dict[str, Any]:
        """Whether the subject currently holds at least one token."""
        balance = self.balance_of(subject_id)
        can_scan = balance > 0
        return {
            'canScan': can_scan,
            'reason': 'tokens_available' if can_scan else 'no_tokens',
            'scansRemaining': balance,
            'tokenBalance': balance,
        }
