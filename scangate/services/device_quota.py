"""
Device Quota Service tracking free scans per physical device.

The counter is attributed to the device rather than the account, so deleting the app,
switching accounts or re-creating a guest does not reset the free allotment.
Reads fail open: with no device id, or no store, nothing can be enforced.
"""

from typing import Optional

from ..models.core import DeviceRecord
from ..utils.config import DynamoDBConfig, QuotaConfig
from ..utils.logging_config import get_logger
from ..utils.store import ItemUpdate, Store, StoreError
from ..utils.timestamp_utils import now_iso

logger = get_logger(__name__)

UNKNOWN_DEVICE = 'unknown'


def is_known_device(device_id: Optional[str]) -> bool:
    return bool(device_id) and device_id != UNKNOWN_DEVICE


class DeviceQuotaTracker:
    """Per-device free scan counter backed by the device scans table."""

    def __init__(self, store: Store, config: DynamoDBConfig, quota: QuotaConfig):
        self.store = store
        self.table = config.device_scans_table
        self.purchases_table = config.purchases_table
        self.purchases_user_index = config.purchases_user_index
        self.limit = quota.free_scan_limit

    def get_record(self, device_id: str) -> Optional[DeviceRecord]:
        """The stored device record, or None. Store errors propagate."""
        if not is_known_device(device_id):
            return None
        item = self.store.get_item(self.table, {'deviceId': device_id})
        return DeviceRecord.from_item(item) if item else None

    def scans_used(self, device_id: Optional[str]) -> int:
        """Free scans used by the device, 0 for absent ids or when the store is unavailable."""
        if not is_known_device(device_id):
            return 0
        try:
            record = self.get_record(device_id)
        except StoreError as e:
            logger.warning(f'Error getting device scan count for {device_id}, treating as 0: {e}')
            return 0
        return record.free_scans_used if record else 0

    def is_exhausted(self, device_id: Optional[str]) -> bool:
        """Whether the device has used its whole free allotment."""
        if not is_known_device(device_id):
            return False
        used = self.scans_used(device_id)
        exhausted = used >= self.limit
        if exhausted:
            logger.warning(f'Device {device_id} has exhausted free scans ({used}/{self.limit})')
        return exhausted

    def record_scan(self, device_id: Optional[str], subject_id: Optional[str]) -> int:
        """
        Increment the free scan counter and link the subject, in one atomic update.

        Returns:
            New count, or 0 when the device id is absent

        Raises:
            StoreError: If the update fails
        """
        if not is_known_device(device_id):
            logger.warning('Cannot increment device scan count: invalid deviceId')
            return 0

        now = now_iso()
        update = ItemUpdate(increment={'freeScansUsed': 1},
                            assign={'updatedAt': now},
                            assign_if_absent={'createdAt': now})
        if subject_id:
            update.add_to_set['linkedUserIds'] = {subject_id}

        item = self.store.update_item(self.table, {'deviceId': device_id}, update)
        count = int(item['freeScansUsed'])
        logger.info(f'Device {device_id} free scan count incremented to {count}')
        return count

    def link_account(self, device_id: Optional[str], subject_id: str) -> None:
        """Create the device record if needed and link the subject, leaving the counter alone."""
        if not is_known_device(device_id) or not subject_id:
            return
        now = now_iso()
        update = ItemUpdate(assign={'updatedAt': now},
                            assign_if_absent={'createdAt': now, 'freeScansUsed': 0},
                            add_to_set={'linkedUserIds': {subject_id}})
        try:
            self.store.update_item(self.table, {'deviceId': device_id}, update)
        except StoreError as e:
            logger.warning(f'Could not link {subject_id} to device {device_id}: {e}')

    def has_purchased(self, subject_id: Optional[str]) -> bool:
        """Whether the subject has at least one purchase record. Fails open to False."""
        if not subject_id:
            return False
        try:
            page = self.store.query(self.purchases_table,
                                    key_name='userId',
                                    key_value=subject_id,
                                    limit=1,
                                    index_name=self.purchases_user_index,
                                    sort_key='purchaseDate')
        except StoreError as e:
            logger.warning(f'Error checking purchases for {subject_id}: {e}')
            return False
        return len(page.items) > 0
