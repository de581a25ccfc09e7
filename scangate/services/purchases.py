"""
Purchase Service crediting token packs.

With idempotency enforced, the purchase record (keyed by the store transaction id) and
the balance increment commit together, so a redelivered purchase credits nothing.
With it disabled, every delivery credits and appends a record.
"""

import uuid
from typing import Any, Dict, Optional

from ..models.core import PurchaseRecord
from ..models.errors import UpstreamUnavailableError, ValidationError
from ..utils.config import DynamoDBConfig, PurchaseConfig, TokenPack
from ..utils.logging_config import get_logger
from ..utils.store import ConditionFailedError, ItemUpdate, Store, StoreError, TransactPut, TransactUpdate
from ..utils.timestamp_utils import now_iso
from .token_ledger import TokenLedger

logger = get_logger(__name__)


class PurchaseService:
    """Validate pack ids, credit the ledger and record purchases."""

    def __init__(self, store: Store, ledger: TokenLedger, config: DynamoDBConfig, purchases: PurchaseConfig):
        self.store = store
        self.ledger = ledger
        self.table = config.purchases_table
        self.tokens_table = config.tokens_table
        self.packs = purchases.token_packs
        self.enforce_idempotency = purchases.enforce_idempotency

    def get_pack(self, pack_id: Optional[str]) -> TokenPack:
        if not pack_id or pack_id not in self.packs:
            raise ValidationError('Invalid pack ID')
        return self.packs[pack_id]

    def purchase(self, subject_id: str, pack_id: str, transaction_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Credit a token pack to the subject.

        Returns:
            Dictionary with tokenBalance, tokensAdded, packPurchased, purchase and duplicate

        Raises:
            ValidationError: If the subject or pack id is invalid
            UpstreamUnavailableError: If the credit could not be written
        """
        if not subject_id:
            raise ValidationError('User ID is required')
        pack = self.get_pack(pack_id)

        if self.enforce_idempotency and transaction_id:
            return self._purchase_once(subject_id, pack, transaction_id)

        balance = self.ledger.grant(subject_id, pack.tokens)
        record = PurchaseRecord(purchase_id=f'purchase-{uuid.uuid4()}',
                                user_id=subject_id,
                                pack_id=pack.pack_id,
                                tokens=pack.tokens,
                                price=pack.price,
                                purchase_date=now_iso(),
                                transaction_id=transaction_id)
        try:
            self.store.put_item(self.table, record.to_item())
            logger.info(f'Purchase saved: {record.purchase_id} for user {subject_id}')
        except StoreError as e:
            # The tokens are already credited, the record is bookkeeping only
            logger.error(f'Error saving purchase {record.purchase_id} for {subject_id}: {e}')
            record = None
        return self._result(balance, pack, record, duplicate=False)

    def _purchase_once(self, subject_id: str, pack: TokenPack, transaction_id: str) -> Dict[str, Any]:
        now = now_iso()
        record = PurchaseRecord(purchase_id=f'purchase-txn-{transaction_id}',
                                user_id=subject_id,
                                pack_id=pack.pack_id,
                                tokens=pack.tokens,
                                price=pack.price,
                                purchase_date=now,
                                transaction_id=transaction_id)
        credit = ItemUpdate(increment={'balance': pack.tokens}, assign={'updatedAt': now})
        try:
            self.store.transact_write([
                TransactPut(self.table, record.to_item(), unique_on=('purchaseId',)),
                TransactUpdate(self.tokens_table, {'userId': subject_id}, credit),
            ])
        except ConditionFailedError:
            existing = self._get_record(record.purchase_id)
            if existing is not None and existing.user_id != subject_id:
                logger.warning(f'Transaction {transaction_id} was credited to another user, refusing it for '
                               f'{subject_id}')
                raise ValidationError('Transaction ID has already been used')
            logger.warning(f'Transaction {transaction_id} was already credited, skipping grant')
            return self._result(self.ledger.balance_of(subject_id), pack, existing, duplicate=True)
        except StoreError as e:
            logger.error(f'Error crediting transaction {transaction_id} for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not update token balance')

        balance = self.ledger.balance_of(subject_id)
        logger.info(f'Purchase saved: {record.purchase_id} for user {subject_id}, new balance: {balance}')
        return self._result(balance, pack, record, duplicate=False)

    def _get_record(self, purchase_id: str) -> Optional[PurchaseRecord]:
        try:
            item = self.store.get_item(self.table, {'purchaseId': purchase_id})
        except StoreError as e:
            logger.warning(f'Could not read purchase {purchase_id}: {e}')
            return None
        return PurchaseRecord.from_item(item) if item else None

    @staticmethod
    def _result(balance: int, pack: TokenPack, record: Optional[PurchaseRecord], duplicate: bool) -> Dict[str, Any]:
        return {
            'tokenBalance': balance,
            'scansRemaining': balance,
            'packPurchased': pack.pack_id,
            'tokensAdded': 0 if duplicate else pack.tokens,
            'purchase': record.to_item() if record else None,
            'duplicate': duplicate,
        }

    def add_test_tokens(self, subject_id: str, tokens: Any) -> int:
        """Credit an arbitrary positive amount, for development environments only."""
        if isinstance(tokens, bool) or not isinstance(tokens, int) or tokens <= 0:
            raise ValidationError('Invalid tokens amount. Must be a positive number.')
        balance = self.ledger.grant(subject_id, tokens)
        logger.info(f'[TEST] Manual token addition: userId={subject_id}, tokens={tokens}, newBalance={balance}')
        return balance
