"""
Scan Gate Service running a paid scan behind the token ledger.
"""

from typing import Any, Dict, Optional

from ..models.errors import UpstreamUnavailableError, ValidationError
from ..utils.config import DetectionConfig
from ..utils.detection_client import DetectionError, DetectionService
from ..utils.logging_config import get_logger
from ..utils.s3_client import S3Error, S3ObjectStore
from ..utils.store import StoreError
from .device_quota import DeviceQuotaTracker
from .scan_records import ScanRecordStore
from .token_ledger import TokenLedger

logger = get_logger(__name__)

AUTHENTIC = 'authentic'
FLAGGED = 'flagged'
UNVERIFIABLE = 'unverifiable'

CONTENT_TYPE_EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/jpg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif',
    'image/heic': 'heic',
}


def classify(score: Optional[float], thresholds: DetectionConfig) -> str:
    """Map a manipulation probability onto authentic, flagged or unverifiable."""
    if score is None:
        return UNVERIFIABLE
    if score < thresholds.authentic_threshold:
        return AUTHENTIC
    if score > thresholds.deepfake_threshold:
        return FLAGGED
    return UNVERIFIABLE


class ScanGate:
    """Consume a token, run detection and record the outcome."""

    def __init__(self,
                 ledger: TokenLedger,
                 quota_tracker: DeviceQuotaTracker,
                 records: ScanRecordStore,
                 object_store: S3ObjectStore,
                 detector: Optional[DetectionService],
                 thresholds: DetectionConfig):
        self.ledger = ledger
        self.quota_tracker = quota_tracker
        self.records = records
        self.object_store = object_store
        self.detector = detector
        self.thresholds = thresholds

    def scan(self,
             subject_id: str,
             image: bytes,
             content_type: str,
             device_id: Optional[str] = None,
             request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one gated scan.

        Raises:
            ValidationError: If the image or content type is unusable
            InsufficientTokensError: If the subject has no token to spend
            UpstreamUnavailableError: If storage, the ledger or detection is unavailable
        """
        if not image:
            raise ValidationError('Image is required')
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type.lower()) if isinstance(content_type, str) else None
        if extension is None:
            raise ValidationError(f'Unsupported content type: {content_type}')
        if self.detector is None:
            raise UpstreamUnavailableError('Detection service is not configured')

        try:
            content_ref = self.object_store.put(image, content_type, extension)
        except S3Error as e:
            logger.error(f'Image upload failed for {subject_id}: {e}')
            raise UpstreamUnavailableError('Could not store image')

        # Fails closed: no token, no scan
        balance = self.ledger.consume(subject_id)

        try:
            score = self.detector.analyze(content_ref)
        except DetectionError as e:
            logger.error(f'Detection failed for {content_ref}, refunding token to {subject_id}: {e}')
            balance = self.ledger.grant(subject_id, 1)
            raise UpstreamUnavailableError('Detection service unavailable', tokenBalance=balance)

        status = classify(score, self.thresholds)
        record = self.records.insert_if_absent(subject_id,
                                               status=status,
                                               content_ref=content_ref,
                                               request_id=request_id,
                                               score=score)

        if not self.quota_tracker.has_purchased(subject_id):
            try:
                self.quota_tracker.record_scan(device_id, subject_id)
            except StoreError as e:
                logger.warning(f'Could not record free scan for device {device_id}: {e}')

        logger.info(f'Scan {record.scan_id} for {subject_id}: {status} (score {score}), balance {balance}')
        return {
            'status': status,
            'score': score,
            'scan': record,
            'tokenBalance': balance,
            'scansRemaining': balance,
        }
