"""
Scan Record Service for deduplicated scan history.
"""

import base64
import binascii
import hashlib
import json
import re
from typing import Any, Dict, Optional

from ..models.core import ScanRecord
from ..models.errors import NotFoundError, UpstreamUnavailableError, ValidationError
from ..utils.config import DynamoDBConfig, ScanHistoryConfig
from ..utils.logging_config import get_logger
from ..utils.store import ConditionFailedError, ItemUpdate, Store, StoreError
from ..utils.timestamp_utils import expires_at, month_key, now_iso

logger = get_logger(__name__)

CONTENT_HASH_PATTERN = re.compile(r'images/([^./?#]+)')
UPDATABLE_FIELDS = ('label', 'note')


def content_fingerprint(content_ref: str) -> str:
    """Stable digest of a content reference.

    Content-addressed references carry their hash as ``images/<hash>.<ext>``; anything
    else is hashed whole.
    """
    match = CONTENT_HASH_PATTERN.search(content_ref)
    if match:
        return match.group(1)
    return hashlib.sha256(content_ref.encode('utf-8')).hexdigest()[:32]


def derive_scan_id(subject_id: str, content_ref: Optional[str] = None, request_id: Optional[str] = None) -> str:
    """Deterministic scan id, preferring the content fingerprint over the request id."""
    if content_ref:
        return f'{subject_id}-{content_fingerprint(content_ref)}'
    if request_id:
        return f'{subject_id}-{request_id}'
    raise ValidationError('Either contentRef or requestId is required')


def encode_cursor(last_key: Optional[Dict[str, Any]]) -> Optional[str]:
    if not last_key:
        return None
    return base64.urlsafe_b64encode(json.dumps(last_key, sort_keys=True).encode('utf-8')).decode('ascii')


def decode_cursor(cursor: Optional[str]) -> Optional[Dict[str, Any]]:
    if not cursor:
        return None
    try:
        decoded = json.loads(base64.urlsafe_b64decode(cursor.encode('ascii')))
    except (binascii.Error, ValueError, UnicodeError):
        raise ValidationError('Invalid cursor')
    if not isinstance(decoded, dict):
        raise ValidationError('Invalid cursor')
    return decoded


class ScanRecordStore:
    """Idempotent create, partial update and paged listing of scan records."""

    def __init__(self, store: Store, config: DynamoDBConfig, history: ScanHistoryConfig):
        self.store = store
        self.table = config.scan_history_table
        self.timestamp_index = config.scan_history_timestamp_index
        self.history = history

    def insert_if_absent(self,
                         subject_id: str,
                         status: str,
                         content_ref: Optional[str] = None,
                         request_id: Optional[str] = None,
                         score: Optional[float] = None,
                         **details: Any) -> ScanRecord:
        """
        Create the scan record unless one already exists for the same subject and content.

        Args:
            subject_id: Owner of the record
            status: Outcome status, e.g. authentic, flagged, unverifiable
            content_ref: Content-addressed reference of the scanned image
            request_id: Fallback identity when there is no content reference
            score: Detection probability
            **details: Optional success, ai_probability, human_probability, source, label, note

        Returns:
            The stored record; on a repeat call, the record written first

        Raises:
            ValidationError: If subject, status or both identities are missing
            UpstreamUnavailableError: If the store cannot be written
        """
        if not subject_id:
            raise ValidationError('User ID is required')
        if not status:
            raise ValidationError('Status is required')
        scan_id = derive_scan_id(subject_id, content_ref, request_id)

        timestamp = now_iso()
        record = ScanRecord(user_id=subject_id,
                            scan_id=scan_id,
                            timestamp=timestamp,
                            created_at=timestamp,
                            status=status,
                            month_key=month_key(),
                            expires_at=expires_at(self.history.retention_days),
                            score=score,
                            ai_probability=details.get('ai_probability'),
                            human_probability=details.get('human_probability'),
                            success=details.get('success', True),
                            content_ref=content_ref,
                            request_id=request_id,
                            source=details.get('source') or 'image-analysis',
                            label=details.get('label'),
                            note=details.get('note'))

        try:
            self.store.put_item(self.table, record.to_item(), unique_on=('userId', 'scanId'))
        except ConditionFailedError:
            logger.info(f'Scan {scan_id} already exists for user {subject_id}, returning existing record')
            existing = self.get(subject_id, scan_id)
            if existing is None:
                # Expired between the failed put and the read
                logger.warning(f'Scan {scan_id} vanished after conditional put failed')
                return record
            return existing
        except StoreError as e:
            logger.error(f'Error creating scan history for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not save scan history')

        logger.info(f'Scan history created for user: {subject_id}, scan: {scan_id}')
        return record

    def get(self, subject_id: str, scan_id: str) -> Optional[ScanRecord]:
        try:
            item = self.store.get_item(self.table, {'userId': subject_id, 'scanId': scan_id})
        except StoreError as e:
            logger.error(f'Error reading scan {scan_id}: {e}')
            raise UpstreamUnavailableError('Could not read scan history')
        return ScanRecord.from_item(item) if item else None

    def update(self, subject_id: str, scan_id: str, changes: Dict[str, Any]) -> ScanRecord:
        """
        Apply a partial update of label and/or note.

        Raises:
            ValidationError: If no updatable field is given
            NotFoundError: If the subject has no such scan
        """
        if not subject_id:
            raise ValidationError('User ID is required')
        if not scan_id:
            raise ValidationError('Scan ID is required')
        fields = {name: (changes[name] or None) for name in UPDATABLE_FIELDS if name in changes}
        if not fields:
            raise ValidationError('No fields to update. Provide label and/or note.')

        try:
            item = self.store.update_item(self.table,
                                          {'userId': subject_id, 'scanId': scan_id},
                                          ItemUpdate(assign=fields, require_exists=True))
        except ConditionFailedError:
            raise NotFoundError('Scan not found or access denied')
        except StoreError as e:
            logger.error(f'Error updating scan {scan_id}: {e}')
            raise UpstreamUnavailableError('Could not update scan history')

        logger.info(f'Scan history updated for user: {subject_id}, scan: {scan_id}')
        return ScanRecord.from_item(item)

    def list(self, subject_id: str, limit: Optional[int] = None, cursor: Optional[str] = None) -> Dict[str, Any]:
        """
        One page of the subject's scans, newest first.

        Returns:
            Dictionary with scans, count, hasMore and cursor for the next page
        """
        if not subject_id:
            raise ValidationError('User ID is required')
        limit = self.history.default_page_size if limit is None else limit
        if limit < 1 or limit > self.history.max_page_size:
            raise ValidationError(f'Invalid limit. Limit must be between 1 and {self.history.max_page_size}.')

        try:
            page = self.store.query(self.table,
                                    key_name='userId',
                                    key_value=subject_id,
                                    limit=limit,
                                    start_key=decode_cursor(cursor),
                                    descending=True,
                                    index_name=self.timestamp_index,
                                    sort_key='timestamp')
        except StoreError as e:
            logger.error(f'Error getting scan history for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not read scan history')

        scans = [ScanRecord.from_item(item) for item in page.items]
        return {
            'scans': scans,
            'count': len(scans),
            'hasMore': page.has_more,
            'cursor': encode_cursor(page.last_key),
        }
