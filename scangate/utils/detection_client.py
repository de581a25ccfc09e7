"""
Sightengine deepfake detection client.

The detector fetches the image itself from its content reference, so stored objects
must be readable at that URL.
"""

from typing import Any, Dict, Optional

import requests

from .config import DetectionConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class DetectionError(Exception):
    """Custom exception for detection service errors."""
    pass


class DetectionService:
    """External manipulation detector. ``analyze`` returns a probability in [0, 1] or None."""

    def analyze(self, content_ref: str) -> Optional[float]:
        raise NotImplementedError


class SightengineDetector(DetectionService):
    """Deepfake probability from the Sightengine ``check`` endpoint."""

    def __init__(self, config: DetectionConfig, session: Optional[requests.Session] = None):
        """
        Initialize the detector.

        Args:
            config: DetectionConfig with endpoint, credentials and timeout
            session: HTTP session, a new one when None
        """
        if not config.is_configured:
            raise DetectionError('SIGHTENGINE_API_USER and SIGHTENGINE_API_SECRET must be set')
        self.config = config
        self.session = session or requests.Session()

        logger.info(f'Initialized Sightengine detector at {config.api_url}')

    def analyze(self, content_ref: str) -> Optional[float]:
        """
        Ask the detector for the probability that the image is a deepfake.

        Args:
            content_ref: URL of the stored image

        Returns:
            Deepfake probability, or None when the response carries no score

        Raises:
            DetectionError: On timeouts, connection failures, HTTP errors or a failed check
        """
        params = {
            'url': content_ref,
            'models': 'deepfake',
            'api_user': self.config.api_user,
            'api_secret': self.config.api_secret,
        }
        try:
            response = self.session.get(self.config.api_url, params=params, timeout=self.config.timeout)
        except requests.exceptions.Timeout:
            logger.error(f'Sightengine request timed out after {self.config.timeout}s for {content_ref}')
            raise DetectionError('Detection request timed out')
        except requests.exceptions.RequestException as e:
            logger.error(f'Sightengine request failed for {content_ref}: {e}')
            raise DetectionError(f'Detection request failed: {e}')

        payload = self._json(response)
        if response.status_code >= 400:
            logger.error(f'Sightengine API error {response.status_code}: {payload or response.text[:200]}')
            raise DetectionError(f'Detection API error: {response.status_code}')
        if payload.get('status') != 'success':
            logger.error(f'Sightengine check did not succeed: {payload}')
            raise DetectionError(f'Detection check failed with status {payload.get("status")}')

        score = (payload.get('type') or {}).get('deepfake')
        if score is None:
            logger.warning(f'Sightengine response for {content_ref} has no deepfake score')
            return None
        logger.debug(f'Sightengine deepfake score for {content_ref}: {score}')
        return float(score)

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}


def create_detector(config: DetectionConfig) -> Optional[DetectionService]:
    """The configured detector, or None when no credentials are set."""
    if not config.is_configured:
        logger.warning('Detection service credentials are not set, scans will be refused')
        return None
    return SightengineDetector(config)
